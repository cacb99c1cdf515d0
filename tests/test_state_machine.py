"""
Tests for order/payment status transitions.
"""
import uuid
from typing import Any

import pytest
from sqlalchemy import select

from orderflow.container import Container
from orderflow.core.errors import IntegrityMismatch, InvalidTransition, ValidationError
from orderflow.core.state_machine import (
    ALREADY_PROCESSED,
    can_transition,
    check_integrity,
    ensure_transition,
)
from orderflow.database.models import (
    InventoryAdjustment,
    Order,
    OrderPaymentStatus,
    OrderStatus,
    Payment,
    PaymentStatus,
)
from orderflow.integrations.fake_gateway import FakeGateway
from orderflow.integrations.gateway import parse_gateway_payment


class TestTransitionTable:
    """Test suite for the allowed transition tables."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.PENDING, OrderStatus.PROCESSING),
            (OrderStatus.PENDING, OrderStatus.FAILED),
            (OrderStatus.PAYMENT_FAILED, OrderStatus.PENDING),
            (OrderStatus.PROCESSING, OrderStatus.SHIPPED),
            (OrderStatus.SHIPPED, OrderStatus.DELIVERED),
            (OrderStatus.SHIPPED, OrderStatus.CANCELLED),
            (PaymentStatus.PENDING, PaymentStatus.CAPTURED),
            (PaymentStatus.CAPTURED, PaymentStatus.REFUNDED),
            (PaymentStatus.FAILED, PaymentStatus.ARCHIVED),
        ],
    )
    def test_allowed(self, current: Any, target: Any) -> None:
        assert can_transition(current, target)
        ensure_transition(current, target)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.DELIVERED, OrderStatus.CANCELLED),
            (OrderStatus.CANCELLED, OrderStatus.PENDING),
            (OrderStatus.DELIVERED, OrderStatus.PENDING),
            (PaymentStatus.CAPTURED, PaymentStatus.PENDING),
            (PaymentStatus.FAILED, PaymentStatus.CAPTURED),
            (PaymentStatus.REFUNDED, PaymentStatus.CAPTURED),
        ],
    )
    def test_rejected(self, current: Any, target: Any) -> None:
        assert not can_transition(current, target)
        with pytest.raises(InvalidTransition) as exc_info:
            ensure_transition(current, target)
        assert exc_info.value.details == {"from": current.value, "to": target.value}

    @pytest.mark.unit
    def test_plain_strings_resolve(self) -> None:
        assert can_transition("pending", "processing")
        assert can_transition("captured", "refunded")
        assert not can_transition("delivered", "cancelled")

    @pytest.mark.unit
    def test_invalid_transition_is_a_validation_error(self) -> None:
        with pytest.raises(ValidationError):
            ensure_transition(OrderStatus.CANCELLED, OrderStatus.SHIPPED)


class TestCheckIntegrity:
    """Test suite for gateway/local payment comparison."""

    @pytest.mark.unit
    def test_matching_values_pass(self) -> None:
        payment = Payment(id=uuid.uuid4(), amount=1180, currency="INR", gateway_order_id="order_A")
        gateway_payment = parse_gateway_payment(
            {"id": "pay_A", "order_id": "order_A", "amount": 1180, "currency": "inr", "status": "captured"}
        )

        check_integrity(payment, gateway_payment)

    @pytest.mark.unit
    def test_every_mismatch_reported(self) -> None:
        payment = Payment(id=uuid.uuid4(), amount=1180, currency="INR", gateway_order_id="order_A")
        gateway_payment = parse_gateway_payment(
            {"id": "pay_A", "order_id": "order_B", "amount": 999, "currency": "USD", "status": "captured"}
        )

        with pytest.raises(IntegrityMismatch) as exc_info:
            check_integrity(payment, gateway_payment)

        assert set(exc_info.value.details["mismatches"]) == {"gateway_order_id", "amount", "currency"}


class TestOrderStateMachine:
    """Test suite for OrderStateMachine against the database."""

    async def _captured(
        self, container: Container, gateway: FakeGateway, variant_id: uuid.UUID, place_order: Any, pay: Any
    ) -> Any:
        result = await place_order(variant_id, quantity=2)
        request = await pay(result.order.id)
        gateway_payment = await gateway.fetch_payment(request.gateway_payment_id)
        async with container.session_factory() as session:
            transition = await container.state_machine.apply_gateway_payment(
                session, request.payment_id, gateway_payment
            )
        return result, request, transition

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_capture_moves_order_and_reserves_stock(
        self,
        container: Container,
        gateway: FakeGateway,
        variant_id: uuid.UUID,
        place_order: Any,
        pay: Any,
        stock: Any,
    ) -> None:
        result, request, transition = await self._captured(container, gateway, variant_id, place_order, pay)

        assert transition.status == PaymentStatus.CAPTURED.value
        assert transition.applied
        assert transition.order_status == OrderStatus.PROCESSING.value
        assert transition.order_payment_status == OrderPaymentStatus.PAID.value
        assert transition.oversold == []
        assert await stock(variant_id) == (3, 2)

        async with container.session_factory() as session:
            payment = await session.get(Payment, request.payment_id)
            assert payment.gateway_payment_id == request.gateway_payment_id
            assert payment.captured_at is not None
            assert payment.payment_method == "card"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_second_application_is_a_no_op(
        self,
        container: Container,
        gateway: FakeGateway,
        variant_id: uuid.UUID,
        place_order: Any,
        pay: Any,
        stock: Any,
    ) -> None:
        _, request, _ = await self._captured(container, gateway, variant_id, place_order, pay)
        gateway_payment = await gateway.fetch_payment(request.gateway_payment_id)

        async with container.session_factory() as session:
            again = await container.state_machine.apply_gateway_payment(
                session, request.payment_id, gateway_payment
            )

        assert again.status == ALREADY_PROCESSED
        assert not again.applied
        assert await stock(variant_id) == (3, 2)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_created_payment_leaves_everything_pending(
        self,
        container: Container,
        gateway: FakeGateway,
        variant_id: uuid.UUID,
        place_order: Any,
        pay: Any,
    ) -> None:
        result = await place_order(variant_id, quantity=1)
        request = await pay(result.order.id, status="created")
        gateway_payment = await gateway.fetch_payment(request.gateway_payment_id)

        async with container.session_factory() as session:
            transition = await container.state_machine.apply_gateway_payment(
                session, request.payment_id, gateway_payment
            )

        assert transition.status == PaymentStatus.PENDING.value
        assert not transition.applied

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_oversell_is_reported_not_negative(
        self,
        container: Container,
        gateway: FakeGateway,
        variant_id: uuid.UUID,
        place_order: Any,
        pay: Any,
        stock: Any,
    ) -> None:
        first = await place_order(variant_id, quantity=4, email="first@example.com")
        second = await place_order(variant_id, quantity=4, email="second@example.com")

        for result in (first, second):
            request = await pay(result.order.id)
            gateway_payment = await gateway.fetch_payment(request.gateway_payment_id)
            async with container.session_factory() as session:
                transition = await container.state_machine.apply_gateway_payment(
                    session, request.payment_id, gateway_payment
                )

        assert [r.as_dict()["shortfall"] for r in transition.oversold] == [3]
        assert await stock(variant_id) == (0, 5)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_full_refund_releases_stock(
        self,
        container: Container,
        gateway: FakeGateway,
        variant_id: uuid.UUID,
        place_order: Any,
        pay: Any,
        stock: Any,
    ) -> None:
        result, request, _ = await self._captured(container, gateway, variant_id, place_order, pay)
        total = result.order.total_amount

        async with container.session_factory() as session:
            partial = await container.state_machine.record_refund(session, request.payment_id, 100)
        assert partial.payment_status == PaymentStatus.PARTIALLY_REFUNDED.value
        assert partial.order_payment_status == OrderPaymentStatus.PARTIALLY_REFUNDED.value
        assert await stock(variant_id) == (3, 2)

        async with container.session_factory() as session:
            full = await container.state_machine.record_refund(session, request.payment_id, total - 100)
        assert full.payment_status == PaymentStatus.REFUNDED.value
        assert full.order_payment_status == OrderPaymentStatus.REFUNDED.value
        assert await stock(variant_id) == (5, 0)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_cannot_exceed_amount(
        self,
        container: Container,
        gateway: FakeGateway,
        variant_id: uuid.UUID,
        place_order: Any,
        pay: Any,
    ) -> None:
        result, request, _ = await self._captured(container, gateway, variant_id, place_order, pay)

        async with container.session_factory() as session:
            with pytest.raises(ValidationError):
                await container.state_machine.record_refund(
                    session, request.payment_id, result.order.total_amount + 1
                )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_paid_order_releases_stock(
        self,
        container: Container,
        gateway: FakeGateway,
        variant_id: uuid.UUID,
        place_order: Any,
        pay: Any,
        stock: Any,
    ) -> None:
        result, _, _ = await self._captured(container, gateway, variant_id, place_order, pay)

        async with container.session_factory() as session:
            order = await container.state_machine.cancel_order(session, result.order.id, reason="customer_request")

        assert order.status == OrderStatus.CANCELLED.value
        assert order.cancelled_at is not None
        assert await stock(variant_id) == (5, 0)

        async with container.session_factory() as session:
            reasons = (
                await session.execute(
                    select(InventoryAdjustment.reason).where(
                        InventoryAdjustment.reference_id == str(result.order.id)
                    )
                )
            ).scalars()
            assert sorted(reasons) == ["order_cancelled", "order_payment"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_unpaid_order_touches_no_stock(
        self, container: Container, variant_id: uuid.UUID, place_order: Any, stock: Any
    ) -> None:
        result = await place_order(variant_id, quantity=2)

        async with container.session_factory() as session:
            await container.state_machine.cancel_order(session, result.order.id)

        assert await stock(variant_id) == (5, 0)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_illegal_order_transition_writes_nothing(
        self, container: Container, variant_id: uuid.UUID, place_order: Any
    ) -> None:
        result = await place_order(variant_id, quantity=1)
        async with container.session_factory() as session:
            await container.state_machine.cancel_order(session, result.order.id)

        async with container.session_factory() as session:
            with pytest.raises(InvalidTransition):
                await container.state_machine.cancel_order(session, result.order.id)

        async with container.session_factory() as session:
            order = await session.get(Order, result.order.id)
            assert order.status == OrderStatus.CANCELLED.value
