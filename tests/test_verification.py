"""
Integration tests for the payment verification pipeline.

Covers the end-to-end flow: checkout, payment intent, gateway completion,
signed callback, fraud scoring, status transition and stock reservation.
"""
import dataclasses
import uuid
from typing import Any
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from orderflow.container import Container
from orderflow.core.errors import (
    FraudBlocked,
    GatewayUnavailable,
    IntegrityMismatch,
    InvalidSignature,
    NotFound,
)
from orderflow.core.idempotency import IdempotencyStore
from orderflow.database.models import (
    IdempotencyRecord,
    Order,
    OrderPaymentStatus,
    OrderStatus,
    Payment,
    PaymentEvent,
    PaymentStatus,
    SecurityEvent,
)
from orderflow.fraud import PaymentAttempt, Recommendation, RiskAssessment, RiskHistory, RiskLevel
from orderflow.integrations.fake_gateway import FakeGateway


class BlockingScorer:
    """Scorer that blocks every attempt."""

    def assess(self, attempt: PaymentAttempt, history: RiskHistory) -> RiskAssessment:
        return RiskAssessment(
            payment_id=attempt.payment_id,
            order_id=attempt.order_id,
            score=95,
            level=RiskLevel.HIGH,
            factors=["BLOCKLISTED_IP"],
            recommendation=Recommendation.BLOCK,
        )


class FlaggingScorer:
    """Scorer that flags every attempt without blocking."""

    def assess(self, attempt: PaymentAttempt, history: RiskHistory) -> RiskAssessment:
        return RiskAssessment(
            payment_id=attempt.payment_id,
            order_id=attempt.order_id,
            score=70,
            level=RiskLevel.HIGH,
            factors=["EMAIL_MISMATCH"],
            recommendation=Recommendation.FLAG,
        )


async def security_events(container: Container, event: str) -> int:
    async with container.session_factory() as session:
        return await session.scalar(select(func.count(SecurityEvent.id)).where(SecurityEvent.event == event))


class TestPaymentVerifier:
    """Test suite for PaymentVerifier.verify."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_successful_capture(
        self,
        container: Container,
        variant_id: uuid.UUID,
        place_order: Any,
        pay: Any,
        stock: Any,
    ) -> None:
        """Two units at 500 each: captured, order processing, 2 units reserved."""
        result = await place_order(variant_id, quantity=2)
        assert result.order.subtotal_amount == 1000
        assert await stock(variant_id) == (5, 0)

        request = await pay(result.order.id)
        async with container.session_factory() as session:
            verified = await container.verifier.verify(session, request)

        assert verified["success"] is True
        assert verified["status"] == PaymentStatus.CAPTURED.value
        assert verified["order_status"] == OrderStatus.PROCESSING.value
        assert verified["order_number"] == result.order.order_number
        assert verified["amount"] == result.order.total_amount
        assert verified["currency"] == "INR"
        assert verified["gateway_payment_id"] == request.gateway_payment_id
        assert verified["risk_level"] == RiskLevel.LOW.value

        assert await stock(variant_id) == (3, 2)

        async with container.session_factory() as session:
            order = await session.get(Order, result.order.id)
            assert order.status == OrderStatus.PROCESSING.value
            assert order.payment_status == OrderPaymentStatus.PAID.value
            payment = await session.get(Payment, request.payment_id)
            assert payment.status == PaymentStatus.CAPTURED.value
            assert payment.fraud_risk_score == verified["risk_score"]

        assert await security_events(container, "payment_verified") == 1
        assert await security_events(container, "fraud_risk_assessed") == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_replay_returns_identical_result(
        self,
        container: Container,
        gateway: FakeGateway,
        variant_id: uuid.UUID,
        place_order: Any,
        pay: Any,
        stock: Any,
    ) -> None:
        result = await place_order(variant_id, quantity=2)
        request = await pay(result.order.id)

        async with container.session_factory() as session:
            first = await container.verifier.verify(session, request)
        fetches = len([c for c in gateway.calls if c["method"] == "fetch_payment"])

        async with container.session_factory() as session:
            second = await container.verifier.verify(session, request)

        assert second == first
        assert len([c for c in gateway.calls if c["method"] == "fetch_payment"]) == fetches
        assert await stock(variant_id) == (3, 2)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_replay_after_cache_loss_is_already_processed(
        self,
        container: Container,
        variant_id: uuid.UUID,
        place_order: Any,
        pay: Any,
        stock: Any,
    ) -> None:
        result = await place_order(variant_id, quantity=2)
        request = await pay(result.order.id)
        async with container.session_factory() as session:
            await container.verifier.verify(session, request)

        await container.idempotency.invalidate(IdempotencyStore.verify_key(request.gateway_payment_id))

        async with container.session_factory() as session:
            again = await container.verifier.verify(session, request)

        assert again["already_processed"] is True
        assert again["success"] is True
        assert again["status"] == PaymentStatus.CAPTURED.value
        assert await stock(variant_id) == (3, 2)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_that_missed_the_cache_keeps_first_result(
        self,
        container: Container,
        variant_id: uuid.UUID,
        place_order: Any,
        pay: Any,
    ) -> None:
        result = await place_order(variant_id, quantity=2)
        request = await pay(result.order.id)
        async with container.session_factory() as session:
            first = await container.verifier.verify(session, request)

        # Duplicate looked up the key before the first result was stored
        with patch.object(container.idempotency, "check", return_value=None):
            async with container.session_factory() as session:
                second = await container.verifier.verify(session, request)

        async with container.session_factory() as session:
            third = await container.verifier.verify(session, request)

        assert second == first
        assert third == first

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_applied_result_supersedes_early_duplicate(
        self,
        container: Container,
        variant_id: uuid.UUID,
        place_order: Any,
        pay: Any,
    ) -> None:
        result = await place_order(variant_id, quantity=2)
        request = await pay(result.order.id)
        key = IdempotencyStore.verify_key(request.gateway_payment_id)
        # A duplicate stored its already-processed answer before the winner saved
        await container.idempotency.save(key, {"success": True, "already_processed": True}, 3600)

        with patch.object(container.idempotency, "check", return_value=None):
            async with container.session_factory() as session:
                first = await container.verifier.verify(session, request)

        async with container.session_factory() as session:
            replay = await container.verifier.verify(session, request)

        assert first["status"] == PaymentStatus.CAPTURED.value
        assert replay == first

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_tampered_signature_mutates_nothing(
        self,
        container: Container,
        gateway: FakeGateway,
        variant_id: uuid.UUID,
        place_order: Any,
        pay: Any,
        stock: Any,
    ) -> None:
        result = await place_order(variant_id, quantity=2)
        request = await pay(result.order.id)
        signature = request.signature
        tampered = dataclasses.replace(
            request, signature=("0" if signature[0] != "0" else "1") + signature[1:]
        )
        calls_before = len(gateway.calls)

        async with container.session_factory() as session:
            with pytest.raises(InvalidSignature):
                await container.verifier.verify(session, tampered)

        assert len(gateway.calls) == calls_before
        assert await stock(variant_id) == (5, 0)
        async with container.session_factory() as session:
            payment = await session.get(Payment, request.payment_id)
            assert payment.status == PaymentStatus.PENDING.value
            assert await session.scalar(select(func.count(IdempotencyRecord.key))) == 0
        assert await security_events(container, "invalid_payment_signature") == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_amount_mismatch_mutates_nothing(
        self,
        container: Container,
        variant_id: uuid.UUID,
        place_order: Any,
        pay: Any,
        stock: Any,
    ) -> None:
        result = await place_order(variant_id, quantity=2)
        request = await pay(result.order.id, amount=result.order.total_amount - 1)

        async with container.session_factory() as session:
            with pytest.raises(IntegrityMismatch) as exc_info:
                await container.verifier.verify(session, request)

        assert "amount" in exc_info.value.details["mismatches"]
        assert await stock(variant_id) == (5, 0)
        async with container.session_factory() as session:
            payment = await session.get(Payment, request.payment_id)
            order = await session.get(Order, result.order.id)
            assert payment.status == PaymentStatus.PENDING.value
            assert order.status == OrderStatus.PENDING.value
            assert order.payment_status == OrderPaymentStatus.PENDING.value
        assert await security_events(container, "payment_integrity_mismatch") == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_callback_for_another_gateway_order(
        self,
        container: Container,
        variant_id: uuid.UUID,
        place_order: Any,
        pay: Any,
    ) -> None:
        first = await place_order(variant_id, quantity=1, email="first@example.com")
        second = await place_order(variant_id, quantity=1, email="second@example.com")
        first_request = await pay(first.order.id)
        second_request = await pay(second.order.id)
        # Valid signature for the second order, pointed at the first payment
        crossed = dataclasses.replace(second_request, payment_id=first_request.payment_id)

        async with container.session_factory() as session:
            with pytest.raises(IntegrityMismatch):
                await container.verifier.verify(session, crossed)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_fraud_block(
        self,
        container: Container,
        gateway: FakeGateway,
        variant_id: uuid.UUID,
        place_order: Any,
        pay: Any,
        stock: Any,
    ) -> None:
        container.verifier.fraud_detector.scorer = BlockingScorer()
        result = await place_order(variant_id, quantity=2)
        request = await pay(result.order.id)

        async with container.session_factory() as session:
            with pytest.raises(FraudBlocked) as exc_info:
                await container.verifier.verify(session, request)

        assert exc_info.value.details["risk_score"] == 95
        assert await stock(variant_id) == (5, 0)
        async with container.session_factory() as session:
            payment = await session.get(Payment, request.payment_id)
            order = await session.get(Order, result.order.id)
            assert payment.status == PaymentStatus.FAILED.value
            assert payment.failure_reason == "fraud_detected"
            assert payment.fraud_risk_level == RiskLevel.HIGH.value
            assert order.payment_status == OrderPaymentStatus.FAILED.value
            assert order.status == OrderStatus.PENDING.value
            events = (
                await session.execute(
                    select(PaymentEvent.event_type).where(PaymentEvent.payment_id == request.payment_id)
                )
            ).scalars()
            assert "payment.fraud_blocked" in list(events)
        assert await security_events(container, "payment_fraud_blocked") == 1

        # Replays stay blocked without another gateway round trip
        fetches = len([c for c in gateway.calls if c["method"] == "fetch_payment"])
        async with container.session_factory() as session:
            with pytest.raises(FraudBlocked):
                await container.verifier.verify(session, request)
        assert len([c for c in gateway.calls if c["method"] == "fetch_payment"]) == fetches

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_high_risk_is_flagged_but_allowed(
        self,
        container: Container,
        variant_id: uuid.UUID,
        place_order: Any,
        pay: Any,
        stock: Any,
    ) -> None:
        container.verifier.fraud_detector.scorer = FlaggingScorer()
        result = await place_order(variant_id, quantity=1)
        request = await pay(result.order.id)

        async with container.session_factory() as session:
            verified = await container.verifier.verify(session, request)

        assert verified["success"] is True
        assert verified["risk_level"] == RiskLevel.HIGH.value
        assert await stock(variant_id) == (4, 1)
        assert await security_events(container, "high_risk_payment_flagged") == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_scorer_failure_fails_open(
        self,
        container: Container,
        variant_id: uuid.UUID,
        place_order: Any,
        pay: Any,
        mocker: Any,
    ) -> None:
        mocker.patch.object(
            container.verifier.fraud_detector.scorer, "assess", side_effect=RuntimeError("scorer down")
        )
        result = await place_order(variant_id, quantity=1)
        request = await pay(result.order.id)

        async with container.session_factory() as session:
            verified = await container.verifier.verify(session, request)

        assert verified["success"] is True
        assert verified["risk_level"] == RiskLevel.MEDIUM.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_unavailable_is_retryable(
        self,
        container: Container,
        gateway: FakeGateway,
        variant_id: uuid.UUID,
        place_order: Any,
        pay: Any,
        stock: Any,
    ) -> None:
        result = await place_order(variant_id, quantity=2)
        request = await pay(result.order.id)
        gateway.configure(unavailable=True)

        async with container.session_factory() as session:
            with pytest.raises(GatewayUnavailable):
                await container.verifier.verify(session, request)

        async with container.session_factory() as session:
            payment = await session.get(Payment, request.payment_id)
            assert payment.status == PaymentStatus.PENDING.value
            assert await session.scalar(select(func.count(IdempotencyRecord.key))) == 0

        gateway.configure(unavailable=False)
        async with container.session_factory() as session:
            verified = await container.verifier.verify(session, request)
        assert verified["status"] == PaymentStatus.CAPTURED.value
        assert await stock(variant_id) == (3, 2)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_payment_fails_order(
        self,
        container: Container,
        variant_id: uuid.UUID,
        place_order: Any,
        pay: Any,
        stock: Any,
    ) -> None:
        result = await place_order(variant_id, quantity=2)
        request = await pay(
            result.order.id,
            status="failed",
            error_code="BAD_REQUEST_ERROR",
            error_description="Payment was declined by the bank",
        )

        async with container.session_factory() as session:
            verified = await container.verifier.verify(session, request)

        assert verified["success"] is False
        assert verified["status"] == PaymentStatus.FAILED.value
        assert verified["order_status"] == OrderStatus.FAILED.value
        assert await stock(variant_id) == (5, 0)
        async with container.session_factory() as session:
            payment = await session.get(Payment, request.payment_id)
            assert payment.failure_reason == "Payment was declined by the bank"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_authorized_payment_reserves_stock(
        self,
        container: Container,
        variant_id: uuid.UUID,
        place_order: Any,
        pay: Any,
        stock: Any,
    ) -> None:
        result = await place_order(variant_id, quantity=1)
        request = await pay(result.order.id, status="authorized")

        async with container.session_factory() as session:
            verified = await container.verifier.verify(session, request)

        assert verified["success"] is True
        assert verified["status"] == PaymentStatus.AUTHORIZED.value
        assert verified["order_status"] == OrderStatus.PENDING.value
        assert await stock(variant_id) == (4, 1)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_payment(
        self, container: Container, variant_id: uuid.UUID, place_order: Any, pay: Any
    ) -> None:
        result = await place_order(variant_id, quantity=1)
        request = await pay(result.order.id)

        async with container.session_factory() as session:
            with pytest.raises(NotFound):
                await container.verifier.verify(
                    session, dataclasses.replace(request, payment_id=uuid.uuid4())
                )
