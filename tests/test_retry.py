"""
Tests for payment retry, sync and cleanup jobs.
"""
import uuid
from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy import select, update

from orderflow.container import Container
from orderflow.core.errors import NotFound, ValidationError
from orderflow.database.models import (
    Order,
    OrderPaymentStatus,
    OrderStatus,
    Payment,
    PaymentEvent,
    PaymentStatus,
    utcnow,
)
from orderflow.integrations.fake_gateway import FakeGateway


async def fail_payment(container: Container, place_order: Any, pay: Any, variant_id: uuid.UUID) -> Any:
    """Place an order whose payment fails and is picked up by a sync."""
    result = await place_order(variant_id, quantity=1)
    request = await pay(result.order.id, status="failed", error_description="Card declined")
    synced = await container.retry_service.sync_payment_status(request.payment_id)
    assert synced["updated"] is True
    return result, request


async def backdate_order(container: Container, order_id: uuid.UUID, minutes: int) -> None:
    async with container.session_factory() as session:
        await session.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(updated_at=utcnow() - timedelta(minutes=minutes))
        )
        await session.commit()


async def backdate_payment(container: Container, payment_id: uuid.UUID, days: int) -> None:
    async with container.session_factory() as session:
        await session.execute(
            update(Payment)
            .where(Payment.id == payment_id)
            .values(created_at=utcnow() - timedelta(days=days))
        )
        await session.commit()


class TestRetryFailedPayments:
    """Test suite for PaymentRetryService.retry_failed_payments."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_order_gets_new_attempt(
        self,
        container: Container,
        gateway: FakeGateway,
        variant_id: uuid.UUID,
        place_order: Any,
        pay: Any,
    ) -> None:
        result, request = await fail_payment(container, place_order, pay, variant_id)
        await backdate_order(container, result.order.id, minutes=31)

        outcome = await container.retry_service.retry_failed_payments()

        assert outcome["processed"] == 1
        assert outcome["succeeded"] == 1
        retried = outcome["retried"][0]
        assert retried["retry_count"] == 1
        assert retried["gateway_order_id"] != request.gateway_order_id
        assert retried["gateway_order_id"] in gateway.orders

        async with container.session_factory() as session:
            order = await session.get(Order, result.order.id)
            payment = await session.get(Payment, uuid.UUID(retried["payment_id"]))
            assert order.status == OrderStatus.PENDING.value
            assert order.payment_status == OrderPaymentStatus.PENDING.value
            assert payment.status == PaymentStatus.PENDING.value
            assert payment.original_payment_id == request.payment_id
            assert payment.idempotency_key == f"order:{result.order.id}:attempt:1"

            events = (
                await session.execute(
                    select(PaymentEvent.event_type).where(PaymentEvent.payment_id == payment.id)
                )
            ).scalars()
            assert list(events) == ["payment.retry_created"]

        # The order is pending again, so a second run finds nothing
        again = await container.retry_service.retry_failed_payments()
        assert again["processed"] == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cooldown_is_respected(
        self, container: Container, variant_id: uuid.UUID, place_order: Any, pay: Any
    ) -> None:
        await fail_payment(container, place_order, pay, variant_id)

        outcome = await container.retry_service.retry_failed_payments()

        assert outcome["processed"] == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_max_retries_exceeded(
        self, container: Container, variant_id: uuid.UUID, place_order: Any, pay: Any
    ) -> None:
        result, _ = await fail_payment(container, place_order, pay, variant_id)
        await backdate_order(container, result.order.id, minutes=31)

        outcome = await container.retry_service.retry_failed_payments(max_retries=0)

        assert outcome["skipped"] == 1
        assert "Max retries exceeded" in outcome["errors"][0]

        async with container.session_factory() as session:
            order = await session.get(Order, result.order.id)
            assert order.status == OrderStatus.PAYMENT_FAILED.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_verify_failure_is_not_retried(
        self, container: Container, variant_id: uuid.UUID, place_order: Any, pay: Any
    ) -> None:
        result = await place_order(variant_id, quantity=1)
        request = await pay(result.order.id, status="failed")
        async with container.session_factory() as session:
            await container.verifier.verify(session, request)
        await backdate_order(container, result.order.id, minutes=31)

        outcome = await container.retry_service.retry_failed_payments()

        assert outcome["processed"] == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_outage_counts_as_failed(
        self,
        container: Container,
        gateway: FakeGateway,
        variant_id: uuid.UUID,
        place_order: Any,
        pay: Any,
    ) -> None:
        result, _ = await fail_payment(container, place_order, pay, variant_id)
        await backdate_order(container, result.order.id, minutes=31)
        gateway.configure(unavailable=True)

        outcome = await container.retry_service.retry_failed_payments()

        assert outcome["failed"] == 1
        async with container.session_factory() as session:
            order = await session.get(Order, result.order.id)
            assert order.status == OrderStatus.PAYMENT_FAILED.value


class TestSyncPaymentStatus:
    """Test suite for PaymentRetryService sync jobs."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_sync_applies_captured_payment(
        self, container: Container, variant_id: uuid.UUID, place_order: Any, pay: Any, stock: Any
    ) -> None:
        result = await place_order(variant_id, quantity=2)
        request = await pay(result.order.id)

        synced = await container.retry_service.sync_payment_status(request.payment_id)

        assert synced == {
            "success": True,
            "updated": True,
            "status": PaymentStatus.CAPTURED.value,
            "message": "Gateway reports captured",
        }
        assert await stock(variant_id) == (3, 2)

        again = await container.retry_service.sync_payment_status(request.payment_id)
        assert again["updated"] is False
        assert again["message"] == "Payment already settled"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_sync_without_gateway_order(
        self, container: Container, variant_id: uuid.UUID, place_order: Any
    ) -> None:
        result = await place_order(variant_id, quantity=1)

        synced = await container.retry_service.sync_payment_status(result.payment.id)

        assert synced["success"] is False
        assert synced["message"] == "Payment has no gateway order"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_sync_before_customer_pays(
        self, container: Container, variant_id: uuid.UUID, place_order: Any
    ) -> None:
        result = await place_order(variant_id, quantity=1)
        async with container.session_factory() as session:
            await container.intent_service.create_intent(session, result.order.id)

        synced = await container.retry_service.sync_payment_status(result.payment.id)

        assert synced["updated"] is False
        assert synced["status"] == PaymentStatus.PENDING.value
        assert synced["message"] == "No payment attempt at the gateway yet"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_sync_unknown_payment(self, container: Container) -> None:
        with pytest.raises(NotFound):
            await container.retry_service.sync_payment_status(uuid.uuid4())

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_sync_stale_payments(
        self, container: Container, variant_id: uuid.UUID, place_order: Any, pay: Any
    ) -> None:
        stale = await place_order(variant_id, quantity=1, email="stale@example.com")
        stale_request = await pay(stale.order.id)
        fresh = await place_order(variant_id, quantity=1, email="fresh@example.com")
        await pay(fresh.order.id)

        async with container.session_factory() as session:
            await session.execute(
                update(Payment)
                .where(Payment.id == stale_request.payment_id)
                .values(created_at=utcnow() - timedelta(minutes=20))
            )
            await session.commit()

        outcome = await container.retry_service.sync_stale_payments()

        assert outcome["processed"] == 1
        assert outcome["updated"] == 1
        async with container.session_factory() as session:
            payment = await session.get(Payment, stale_request.payment_id)
            assert payment.status == PaymentStatus.CAPTURED.value


class TestCleanupOldFailures:
    """Test suite for PaymentRetryService.cleanup_old_failures."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_days_old_minimum(self, container: Container) -> None:
        with pytest.raises(ValidationError):
            await container.retry_service.cleanup_old_failures(days_old=6)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancelled_order_failure_archived(
        self, container: Container, variant_id: uuid.UUID, place_order: Any, pay: Any
    ) -> None:
        result, request = await fail_payment(container, place_order, pay, variant_id)
        async with container.session_factory() as session:
            await container.state_machine.cancel_order(session, result.order.id)
        await backdate_payment(container, request.payment_id, days=31)

        outcome = await container.retry_service.cleanup_old_failures(days_old=30)

        assert outcome["cleaned"] == 1
        assert outcome["payment_ids"] == [str(request.payment_id)]
        async with container.session_factory() as session:
            payment = await session.get(Payment, request.payment_id)
            assert payment.status == PaymentStatus.ARCHIVED.value
            assert payment.archived_at is not None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_superseded_failure_archived(
        self, container: Container, variant_id: uuid.UUID, place_order: Any, pay: Any
    ) -> None:
        result, failed = await fail_payment(container, place_order, pay, variant_id)
        await backdate_order(container, result.order.id, minutes=31)
        await container.retry_service.retry_failed_payments()

        retry_request = await pay(result.order.id)
        async with container.session_factory() as session:
            await container.verifier.verify(session, retry_request)
        await backdate_payment(container, failed.payment_id, days=31)

        outcome = await container.retry_service.cleanup_old_failures(days_old=30)

        assert outcome["payment_ids"] == [str(failed.payment_id)]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_open_failure_is_kept(
        self, container: Container, variant_id: uuid.UUID, place_order: Any, pay: Any
    ) -> None:
        _, request = await fail_payment(container, place_order, pay, variant_id)
        await backdate_payment(container, request.payment_id, days=31)

        outcome = await container.retry_service.cleanup_old_failures(days_old=30)

        assert outcome["cleaned"] == 0
