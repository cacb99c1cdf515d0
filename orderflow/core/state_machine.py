"""
Order and payment state machine.

Every status change of an Order or Payment goes through this module.
Transitions triggered by the gateway run in one transaction:

1. Lock the Payment row
2. Short-circuit if the payment (or a sibling) already succeeded
3. Check gateway values against the stored payment
4. Compare-and-swap the payment status from pending
5. Update the order
6. Record the payment event
7. Reserve stock for captured/authorized payments
8. Commit

Security log entries are written after commit, so a rolled-back
transition is never reported as applied.
"""
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Union

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.config import Settings, get_settings
from orderflow.core.errors import (
    IntegrityMismatch,
    InternalError,
    InvalidTransition,
    NotFound,
    OrderflowError,
    ValidationError,
)
from orderflow.core.inventory import InventoryService, ReservationResult
from orderflow.database.models import (
    SUCCESSFUL_PAYMENT_STATUSES,
    Order,
    OrderItem,
    OrderPaymentStatus,
    OrderStatus,
    Payment,
    PaymentEvent,
    PaymentStatus,
    ProductVariant,
    utcnow,
)
from orderflow.fraud.models import RiskAssessment
from orderflow.integrations.gateway import GatewayPayment
from orderflow.monitoring.security_log import SecurityCategory, SecurityLogger

logger = structlog.get_logger(__name__)

_CANCELLABLE = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.FAILED,
    OrderStatus.PAYMENT_FAILED,
)
_PAYMENT_FAILURE = frozenset({OrderStatus.FAILED, OrderStatus.PAYMENT_FAILED})


def _order_transitions() -> Dict[OrderStatus, FrozenSet[OrderStatus]]:
    forward = {
        OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.PROCESSING},
        OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.SHIPPED},
        OrderStatus.PROCESSING: {OrderStatus.SHIPPED},
        OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
        OrderStatus.DELIVERED: set(),
        OrderStatus.CANCELLED: set(),
        # Retry re-arms a failed order
        OrderStatus.FAILED: {OrderStatus.PENDING},
        OrderStatus.PAYMENT_FAILED: {OrderStatus.PENDING},
    }
    table = {}
    for status, targets in forward.items():
        allowed = set(targets) | _PAYMENT_FAILURE
        if status in _CANCELLABLE:
            allowed.add(OrderStatus.CANCELLED)
        allowed.discard(status)
        table[status] = frozenset(allowed)
    return table


ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = _order_transitions()

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.AUTHORIZED, PaymentStatus.CAPTURED, PaymentStatus.FAILED}
    ),
    PaymentStatus.AUTHORIZED: frozenset({PaymentStatus.CAPTURED, PaymentStatus.FAILED}),
    PaymentStatus.CAPTURED: frozenset(
        {PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED}
    ),
    PaymentStatus.PARTIALLY_REFUNDED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.ARCHIVED}),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.ARCHIVED: frozenset(),
}

StatusLike = Union[str, OrderStatus, PaymentStatus]


def can_transition(current: StatusLike, target: StatusLike) -> bool:
    """
    Check whether a status change is allowed.

    Works for both order and payment statuses; the enum of ``current``
    selects the table (plain strings are looked up as order statuses first).
    """
    if isinstance(current, PaymentStatus):
        return PaymentStatus(target) in PAYMENT_TRANSITIONS[current]
    if isinstance(current, OrderStatus):
        return OrderStatus(target) in ORDER_TRANSITIONS[current]
    try:
        return OrderStatus(target) in ORDER_TRANSITIONS[OrderStatus(current)]
    except ValueError:
        return PaymentStatus(target) in PAYMENT_TRANSITIONS[PaymentStatus(current)]


def ensure_transition(current: StatusLike, target: StatusLike) -> None:
    """
    Raise InvalidTransition unless ``current -> target`` is allowed.

    Raises:
        InvalidTransition: If the transition is not in the table
    """
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Cannot transition from {getattr(current, 'value', current)} "
            f"to {getattr(target, 'value', target)}",
            details={
                "from": getattr(current, "value", current),
                "to": getattr(target, "value", target),
            },
        )


# gateway status -> (payment status, order payment status, order status)
_GATEWAY_STATUS_MAP = {
    "captured": (PaymentStatus.CAPTURED, OrderPaymentStatus.PAID, OrderStatus.PROCESSING),
    "authorized": (PaymentStatus.AUTHORIZED, OrderPaymentStatus.AUTHORIZED, OrderStatus.PENDING),
    "failed": (PaymentStatus.FAILED, OrderPaymentStatus.FAILED, None),
}

ALREADY_PROCESSED = "already_processed"


@dataclass
class TransitionResult:
    """What a gateway-driven transition did."""

    status: str
    payment_id: uuid.UUID
    order_id: uuid.UUID
    payment_status: str
    order_status: str
    order_payment_status: str
    reservations: List[ReservationResult] = field(default_factory=list)

    @property
    def applied(self) -> bool:
        return self.status not in (ALREADY_PROCESSED, PaymentStatus.PENDING.value)

    @property
    def oversold(self) -> List[ReservationResult]:
        return [r for r in self.reservations if r.oversold]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "payment_id": str(self.payment_id),
            "order_id": str(self.order_id),
            "payment_status": self.payment_status,
            "order_status": self.order_status,
            "order_payment_status": self.order_payment_status,
            "oversold": [r.as_dict() for r in self.oversold],
        }


def check_integrity(payment: Payment, gateway_payment: GatewayPayment) -> None:
    """
    Compare gateway-reported values with the stored payment.

    Raises:
        IntegrityMismatch: On any disagreement in order id, amount or currency
    """
    mismatches = {}
    if not payment.gateway_order_id or gateway_payment.order_id != payment.gateway_order_id:
        mismatches["gateway_order_id"] = {
            "expected": payment.gateway_order_id,
            "actual": gateway_payment.order_id,
        }
    if gateway_payment.amount != payment.amount:
        mismatches["amount"] = {"expected": payment.amount, "actual": gateway_payment.amount}
    if gateway_payment.currency.upper() != payment.currency.upper():
        mismatches["currency"] = {
            "expected": payment.currency,
            "actual": gateway_payment.currency,
        }
    if mismatches:
        raise IntegrityMismatch(
            "Gateway payment does not match stored payment",
            details={"payment_id": str(payment.id), "mismatches": mismatches},
        )


class OrderStateMachine:
    """
    Applies status transitions to orders and payments.

    Owns the transaction for every operation: callers pass a session with
    no pending work and get either a committed transition or an exception
    with nothing written.
    """

    def __init__(
        self,
        inventory: InventoryService,
        security_logger: SecurityLogger,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.inventory = inventory
        self.security_logger = security_logger

    async def _lock_payment(self, db: AsyncSession, payment_id: uuid.UUID) -> Payment:
        stmt = (
            select(Payment)
            .where(Payment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        payment = (await db.execute(stmt)).scalar_one_or_none()
        if payment is None:
            raise NotFound("Payment not found", details={"payment_id": str(payment_id)})
        return payment

    async def _load_order(self, db: AsyncSession, order_id: uuid.UUID) -> Order:
        order = await db.get(Order, order_id, with_for_update=True, populate_existing=True)
        if order is None:
            raise NotFound("Order not found", details={"order_id": str(order_id)})
        return order

    async def has_successful_payment(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        exclude_payment_id: Optional[uuid.UUID] = None,
    ) -> bool:
        stmt = select(Payment.id).where(
            Payment.order_id == order_id,
            Payment.status.in_(SUCCESSFUL_PAYMENT_STATUSES),
        )
        if exclude_payment_id is not None:
            stmt = stmt.where(Payment.id != exclude_payment_id)
        return (await db.execute(stmt.limit(1))).first() is not None

    def _result(self, status: str, payment: Payment, order: Order, **kwargs: Any) -> TransitionResult:
        return TransitionResult(
            status=status,
            payment_id=payment.id,
            order_id=order.id,
            payment_status=payment.status,
            order_status=order.status,
            order_payment_status=order.payment_status,
            **kwargs,
        )

    @staticmethod
    def _move_order(order: Order, target: Optional[OrderStatus]) -> None:
        if target is None or order.status == target.value:
            return
        ensure_transition(OrderStatus(order.status), target)
        order.status = target.value

    async def _cas_payment(
        self, db: AsyncSession, payment: Payment, target: PaymentStatus, **values: Any
    ) -> bool:
        """Move a payment out of pending. False when someone else got there first."""
        ensure_transition(PaymentStatus.PENDING, target)
        result = await db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING.value)
            .values(status=target.value, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await db.refresh(payment)
        return True

    def _record_event(
        self,
        db: AsyncSession,
        payment: Payment,
        event_type: str,
        event_data: Dict[str, Any],
        correlation_id: uuid.UUID,
    ) -> None:
        db.add(
            PaymentEvent(
                payment_id=payment.id,
                order_id=payment.order_id,
                event_type=event_type,
                event_data=event_data,
                correlation_id=correlation_id,
            )
        )

    async def _reserve_order_stock(self, db: AsyncSession, order: Order) -> List[ReservationResult]:
        items = (await db.execute(select(OrderItem).where(OrderItem.order_id == order.id))).scalars()
        reservations = []
        for item in items:
            if item.variant_id is None:
                continue
            variant = await db.get(ProductVariant, item.variant_id)
            if variant is None or not variant.track_inventory:
                continue
            reservations.append(
                await self.inventory.reserve(
                    db,
                    item.variant_id,
                    self.settings.default_location_id,
                    item.quantity,
                    reference_id=str(order.id),
                )
            )
        return reservations

    async def _release_order_stock(
        self, db: AsyncSession, order: Order, reason: str
    ) -> List[ReservationResult]:
        items = (await db.execute(select(OrderItem).where(OrderItem.order_id == order.id))).scalars()
        releases = []
        for item in items:
            if item.variant_id is None:
                continue
            variant = await db.get(ProductVariant, item.variant_id)
            if variant is None or not variant.track_inventory:
                continue
            releases.append(
                await self.inventory.release(
                    db,
                    item.variant_id,
                    self.settings.default_location_id,
                    item.quantity,
                    reference_id=str(order.id),
                    reason=reason,
                )
            )
        return releases

    async def _fail_transaction(self, db: AsyncSession, operation: str, error: Exception) -> None:
        await db.rollback()
        if isinstance(error, OrderflowError):
            raise error
        logger.error("state_transition_failed", operation=operation, error=str(error), exc_info=True)
        raise InternalError(f"{operation} failed, transaction rolled back") from error

    async def apply_gateway_payment(
        self,
        db: AsyncSession,
        payment_id: uuid.UUID,
        gateway_payment: GatewayPayment,
        assessment: Optional[RiskAssessment] = None,
        failed_order_status: OrderStatus = OrderStatus.FAILED,
        correlation_id: Optional[uuid.UUID] = None,
    ) -> TransitionResult:
        """
        Apply an authoritative gateway payment to a local payment.

        Args:
            db: Database session with no pending work
            payment_id: Local payment id
            gateway_payment: Payment as fetched from the gateway
            assessment: Optional fraud assessment copied onto the payment
            failed_order_status: Order status for a gateway-reported failure
            correlation_id: Optional id tying the event rows together

        Returns:
            TransitionResult: ``status`` is the new payment status,
            ``already_processed`` for a no-op, or ``pending`` when the
            gateway has not settled the payment yet

        Raises:
            NotFound: Unknown payment
            IntegrityMismatch: Gateway values disagree with the payment
            InternalError: Anything failed inside the transaction
        """
        correlation_id = correlation_id or uuid.uuid4()

        try:
            # Step 1: Lock
            payment = await self._lock_payment(db, payment_id)
            order = await self._load_order(db, payment.order_id)

            # Step 2: Already processed?
            if payment.status != PaymentStatus.PENDING.value or await self.has_successful_payment(
                db, order.id, exclude_payment_id=payment.id
            ):
                await db.commit()
                logger.info(
                    "payment_already_processed",
                    correlation_id=str(correlation_id),
                    payment_id=str(payment.id),
                    payment_status=payment.status,
                )
                return self._result(ALREADY_PROCESSED, payment, order)

            # Step 3: Integrity
            check_integrity(payment, gateway_payment)

            mapping = _GATEWAY_STATUS_MAP.get(gateway_payment.status)
            if mapping is None:
                await db.commit()
                logger.info(
                    "gateway_payment_not_settled",
                    correlation_id=str(correlation_id),
                    payment_id=str(payment.id),
                    gateway_status=gateway_payment.status,
                )
                return self._result(PaymentStatus.PENDING.value, payment, order)

            payment_status, order_payment_status, order_status = mapping
            if payment_status == PaymentStatus.FAILED:
                order_status = failed_order_status

            # Step 4: Compare-and-swap
            now = utcnow()
            values: Dict[str, Any] = {
                "gateway_payment_id": gateway_payment.id,
                "gateway_response": gateway_payment.model_dump(mode="json"),
                "payment_method": gateway_payment.method,
            }
            if gateway_payment.card is not None:
                values["card_last4"] = gateway_payment.card.last4
                values["card_network"] = gateway_payment.card.network
            if assessment is not None:
                values["fraud_risk_score"] = assessment.score
                values["fraud_risk_level"] = assessment.level.value
            if payment_status == PaymentStatus.CAPTURED:
                values["captured_at"] = now
            elif payment_status == PaymentStatus.AUTHORIZED:
                values["authorized_at"] = now
            else:
                values["failed_at"] = now
                values["failure_reason"] = (
                    getattr(gateway_payment, "error_description", None)
                    or getattr(gateway_payment, "error_code", None)
                    or "payment_failed"
                )

            if not await self._cas_payment(db, payment, payment_status, **values):
                await db.commit()
                logger.info(
                    "payment_transition_lost_race",
                    correlation_id=str(correlation_id),
                    payment_id=str(payment.id),
                )
                return self._result(ALREADY_PROCESSED, payment, order)

            # Step 5: Order
            previous_order_status = order.status
            self._move_order(order, order_status)
            order.payment_status = order_payment_status.value
            if payment_status == PaymentStatus.CAPTURED:
                order.processed_at = now
            order.updated_at = now

            # Step 6: Event
            self._record_event(
                db,
                payment,
                f"payment.{payment_status.value}",
                {
                    "gateway_payment_id": gateway_payment.id,
                    "amount": gateway_payment.amount,
                    "currency": gateway_payment.currency,
                    "previous_status": PaymentStatus.PENDING.value,
                    "order_status": order.status,
                    "previous_order_status": previous_order_status,
                    "risk_score": assessment.score if assessment else None,
                },
                correlation_id,
            )

            # Step 7: Stock
            reservations: List[ReservationResult] = []
            if payment_status.value in SUCCESSFUL_PAYMENT_STATUSES:
                reservations = await self._reserve_order_stock(db, order)

            # Step 8: Commit
            await db.commit()
        except Exception as e:
            await self._fail_transaction(db, "apply_gateway_payment", e)

        result = self._result(payment_status.value, payment, order, reservations=reservations)
        logger.info(
            "payment_transition_applied",
            correlation_id=str(correlation_id),
            payment_id=str(payment.id),
            order_id=str(order.id),
            payment_status=result.payment_status,
            order_status=result.order_status,
        )
        await self.security_logger.info(
            SecurityCategory.PAYMENT,
            "payment_status_transition",
            f"Payment moved to {result.payment_status}",
            order_id=order.id,
            payment_id=payment.id,
            details={
                "gateway_payment_id": gateway_payment.id,
                "order_status": result.order_status,
                "order_payment_status": result.order_payment_status,
            },
        )
        for reservation in result.oversold:
            await self.security_logger.warning(
                SecurityCategory.INVENTORY,
                "inventory_oversold",
                f"Reserved {reservation.applied} of {reservation.requested} units",
                order_id=order.id,
                payment_id=payment.id,
                details=reservation.as_dict(),
            )
        return result

    async def mark_fraud_blocked(
        self,
        db: AsyncSession,
        payment_id: uuid.UUID,
        assessment: RiskAssessment,
        gateway_payment: Optional[GatewayPayment] = None,
        correlation_id: Optional[uuid.UUID] = None,
    ) -> TransitionResult:
        """
        Fail a pending payment on a fraud decision.

        The order's payment status becomes failed; its status is untouched
        and no stock is reserved.
        """
        correlation_id = correlation_id or uuid.uuid4()
        try:
            payment = await self._lock_payment(db, payment_id)
            order = await self._load_order(db, payment.order_id)
            if payment.status != PaymentStatus.PENDING.value:
                await db.commit()
                return self._result(ALREADY_PROCESSED, payment, order)

            values: Dict[str, Any] = {
                "failure_reason": "fraud_detected",
                "failed_at": utcnow(),
                "fraud_risk_score": assessment.score,
                "fraud_risk_level": assessment.level.value,
            }
            if gateway_payment is not None:
                values["gateway_payment_id"] = gateway_payment.id
                values["gateway_response"] = gateway_payment.model_dump(mode="json")
                values["payment_method"] = gateway_payment.method

            if not await self._cas_payment(db, payment, PaymentStatus.FAILED, **values):
                await db.commit()
                return self._result(ALREADY_PROCESSED, payment, order)

            order.payment_status = OrderPaymentStatus.FAILED.value
            order.updated_at = utcnow()
            self._record_event(
                db,
                payment,
                "payment.fraud_blocked",
                {
                    "risk_score": assessment.score,
                    "risk_level": assessment.level.value,
                    "factors": list(assessment.factors),
                },
                correlation_id,
            )
            await db.commit()
        except Exception as e:
            await self._fail_transaction(db, "mark_fraud_blocked", e)

        logger.warning(
            "payment_fraud_blocked",
            correlation_id=str(correlation_id),
            payment_id=str(payment.id),
            risk_score=assessment.score,
        )
        return self._result(PaymentStatus.FAILED.value, payment, order)

    async def record_refund(
        self,
        db: AsyncSession,
        payment_id: uuid.UUID,
        amount: int,
        correlation_id: Optional[uuid.UUID] = None,
    ) -> TransitionResult:
        """
        Record a gateway refund against a captured payment.

        A refund that brings the refunded total to the payment amount
        marks it refunded and releases the order's reserved stock.
        """
        correlation_id = correlation_id or uuid.uuid4()
        if amount <= 0:
            raise ValidationError("Refund amount must be positive")

        try:
            payment = await self._lock_payment(db, payment_id)
            order = await self._load_order(db, payment.order_id)

            current = PaymentStatus(payment.status)
            refunded_total = payment.refunded_amount + amount
            if refunded_total > payment.amount:
                raise ValidationError(
                    "Refund exceeds payment amount",
                    details={"amount": payment.amount, "refunded": refunded_total},
                )
            target = (
                PaymentStatus.REFUNDED
                if refunded_total == payment.amount
                else PaymentStatus.PARTIALLY_REFUNDED
            )
            if current != target:
                ensure_transition(current, target)

            now = utcnow()
            payment.status = target.value
            payment.refunded_amount = refunded_total
            payment.refunded_at = now
            order.payment_status = (
                OrderPaymentStatus.REFUNDED.value
                if target == PaymentStatus.REFUNDED
                else OrderPaymentStatus.PARTIALLY_REFUNDED.value
            )
            order.updated_at = now

            self._record_event(
                db,
                payment,
                f"payment.{target.value}",
                {"amount": amount, "refunded_total": refunded_total},
                correlation_id,
            )

            if target == PaymentStatus.REFUNDED:
                await self._release_order_stock(db, order, reason="order_refunded")
            await db.commit()
        except Exception as e:
            await self._fail_transaction(db, "record_refund", e)

        logger.info(
            "payment_refund_recorded",
            correlation_id=str(correlation_id),
            payment_id=str(payment.id),
            amount=amount,
            status=payment.status,
        )
        return self._result(payment.status, payment, order)

    async def cancel_order(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Cancel a pre-delivery order.

        Releases reserved stock when the order held a successful payment.

        Raises:
            NotFound: Unknown order
            InvalidTransition: Order is delivered or already cancelled
        """
        try:
            order = await self._load_order(db, order_id)
            ensure_transition(OrderStatus(order.status), OrderStatus.CANCELLED)

            held_stock = await self.has_successful_payment(db, order.id)
            order.status = OrderStatus.CANCELLED.value
            order.cancelled_at = utcnow()
            order.updated_at = order.cancelled_at
            if held_stock:
                await self._release_order_stock(db, order, reason="order_cancelled")
            await db.commit()
        except Exception as e:
            await self._fail_transaction(db, "cancel_order", e)

        logger.info("order_cancelled", order_id=str(order.id), reason=reason, released_stock=held_stock)
        await self.security_logger.info(
            SecurityCategory.PAYMENT,
            "order_cancelled",
            f"Order {order.order_number} cancelled",
            order_id=order.id,
            details={"reason": reason, "released_stock": held_stock},
        )
        return order
