"""
Payment intents: the gateway session parameters handed to client checkout.

Creating an intent is idempotent per order: a pending payment that already
has a gateway order is reused, so a double-clicked "Pay" button never
opens two remote orders for the same attempt.
"""
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.errors import AlreadyProcessed, InternalError, NotFound, ValidationError
from orderflow.core.orders import initial_idempotency_key
from orderflow.core.state_machine import ensure_transition
from orderflow.database.models import (
    SUCCESSFUL_PAYMENT_STATUSES,
    Order,
    OrderPaymentStatus,
    OrderStatus,
    Payment,
    PaymentEvent,
    PaymentStatus,
    utcnow,
)
from orderflow.integrations.gateway import PaymentGateway

logger = structlog.get_logger(__name__)

_NOT_PAYABLE = (
    OrderStatus.CANCELLED.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
)
_INTENT_ATTEMPTS = 2


@dataclass
class PaymentIntent:
    """Parameters for the client-side checkout widget."""

    key_id: str
    gateway_order_id: str
    amount: int
    currency: str
    payment_id: str
    order_id: str
    order_number: str
    email: str
    contact: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def receipt_for(order: Order, payment: Payment) -> str:
    return f"{order.order_number}-{str(payment.id)[:8]}"


class PaymentIntentService:
    """Creates or reuses the gateway order for an order's current attempt."""

    def __init__(self, gateway: PaymentGateway):
        self.gateway = gateway

    async def _latest_payment(
        self, db: AsyncSession, order_id: uuid.UUID, status: Optional[str] = None
    ) -> Optional[Payment]:
        stmt = select(Payment).where(Payment.order_id == order_id)
        if status is not None:
            stmt = stmt.where(Payment.status == status)
        stmt = stmt.order_by(Payment.retry_count.desc(), Payment.created_at.desc()).limit(1)
        return (await db.execute(stmt)).scalar_one_or_none()

    async def _has_successful_payment(self, db: AsyncSession, order_id: uuid.UUID) -> bool:
        stmt = (
            select(Payment.id)
            .where(Payment.order_id == order_id, Payment.status.in_(SUCCESSFUL_PAYMENT_STATUSES))
            .limit(1)
        )
        return (await db.execute(stmt)).first() is not None

    def _intent(self, order: Order, payment: Payment) -> PaymentIntent:
        return PaymentIntent(
            key_id=self.gateway.key_id,
            gateway_order_id=payment.gateway_order_id,
            amount=payment.amount,
            currency=payment.currency,
            payment_id=str(payment.id),
            order_id=str(order.id),
            order_number=order.order_number,
            email=order.email,
            contact=order.phone,
        )

    async def _new_attempt(self, db: AsyncSession, order: Order) -> Payment:
        """Open a fresh pending payment for an order whose last attempt failed."""
        previous = await self._latest_payment(db, order.id)
        attempt = previous.retry_count + 1 if previous is not None else 0

        if order.status != OrderStatus.PENDING.value:
            ensure_transition(OrderStatus(order.status), OrderStatus.PENDING)
            order.status = OrderStatus.PENDING.value
        order.payment_status = OrderPaymentStatus.PENDING.value
        order.updated_at = utcnow()

        payment = Payment(
            order_id=order.id,
            idempotency_key=initial_idempotency_key(order.id, attempt),
            amount=order.total_amount,
            currency=order.currency,
            status=PaymentStatus.PENDING.value,
            gateway=self.gateway.name,
            retry_count=attempt,
            original_payment_id=previous.id if previous is not None else None,
        )
        db.add(payment)
        await db.flush()
        db.add(
            PaymentEvent(
                payment_id=payment.id,
                order_id=order.id,
                event_type="payment.created",
                event_data={"amount": payment.amount, "retry_count": attempt, "source": "intent"},
                correlation_id=uuid.uuid4(),
            )
        )
        await db.commit()
        return payment

    async def create_intent(self, db: AsyncSession, order_id: uuid.UUID) -> PaymentIntent:
        """
        Return checkout parameters for an order, creating the gateway order if needed.

        Args:
            db: Database session
            order_id: Local order id

        Returns:
            PaymentIntent: key id, gateway order id, amount and currency

        Raises:
            NotFound: Unknown order
            AlreadyProcessed: Order already has a captured/authorized payment
            ValidationError: Order is cancelled or already fulfilled
            GatewayUnavailable: Gateway could not create the remote order
        """
        for _ in range(_INTENT_ATTEMPTS):
            order = await db.get(Order, order_id, populate_existing=True)
            if order is None:
                raise NotFound("Order not found")

            if await self._has_successful_payment(db, order.id):
                await db.commit()
                raise AlreadyProcessed("Order already paid", details={"order_id": str(order.id)})

            if order.status in _NOT_PAYABLE:
                await db.commit()
                raise ValidationError(
                    "Order can no longer be paid", details={"status": order.status}
                )

            payment = await self._latest_payment(db, order.id, PaymentStatus.PENDING.value)

            # Step 1: Reuse an open remote order
            if payment is not None and payment.gateway_order_id:
                await db.commit()
                logger.info(
                    "payment_intent_reused",
                    order_id=str(order.id),
                    payment_id=str(payment.id),
                    gateway_order_id=payment.gateway_order_id,
                )
                return self._intent(order, payment)

            # Step 2: Make sure there is a pending attempt
            if payment is None:
                try:
                    payment = await self._new_attempt(db, order)
                except IntegrityError:
                    # Concurrent request opened the same attempt
                    await db.rollback()
                    continue
            else:
                await db.commit()

            # Step 3: Remote order (no local mutation if this fails)
            remote = await self.gateway.create_remote_order(
                amount=payment.amount,
                currency=payment.currency,
                receipt=receipt_for(order, payment),
                notes={
                    "order_id": str(order.id),
                    "order_number": order.order_number,
                    "payment_id": str(payment.id),
                    "customer_email": order.email,
                },
            )

            # Step 4: Attach it unless a concurrent request already did
            result = await db.execute(
                update(Payment)
                .where(
                    Payment.id == payment.id,
                    Payment.status == PaymentStatus.PENDING.value,
                    Payment.gateway_order_id.is_(None),
                )
                .values(
                    gateway_order_id=remote.id,
                    gateway=self.gateway.name,
                    gateway_response=remote.model_dump(mode="json"),
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if result.rowcount == 1:
                await db.refresh(payment)
                logger.info(
                    "payment_intent_created",
                    order_id=str(order.id),
                    payment_id=str(payment.id),
                    gateway_order_id=remote.id,
                    amount=payment.amount,
                )
                return self._intent(order, payment)

            logger.info(
                "payment_intent_race_lost",
                order_id=str(order.id),
                payment_id=str(payment.id),
                orphaned_gateway_order_id=remote.id,
            )

        raise InternalError("Could not create a payment intent")

    async def get_status(self, db: AsyncSession, order_id: uuid.UUID) -> Dict[str, Any]:
        """Order and latest payment status for polling clients."""
        order = await db.get(Order, order_id)
        if order is None:
            raise NotFound("Order not found")
        payment = await self._latest_payment(db, order.id)
        return {
            "order_id": str(order.id),
            "order_number": order.order_number,
            "status": order.status,
            "payment_status": order.payment_status,
            "total_amount": order.total_amount,
            "currency": order.currency,
            "payment": (
                {
                    "id": str(payment.id),
                    "status": payment.status,
                    "gateway": payment.gateway,
                    "payment_method": payment.payment_method,
                    "gateway_order_id": payment.gateway_order_id,
                    "retry_count": payment.retry_count,
                    "created_at": payment.created_at.isoformat(),
                    "captured_at": payment.captured_at.isoformat() if payment.captured_at else None,
                }
                if payment is not None
                else None
            ),
        }
