"""
Order creation from a cart.

Orchestrates checkout:
1. Claim the cart (active -> converted), then validate shipping and stock
2. Compute totals server side from a pricing snapshot
3. Generate a unique order number
4. Persist Order + OrderItems + pending Payment
5. Commit (all rows or none; a failure leaves the cart active)
"""
import re
import secrets
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.config import PricingConfig, Settings, get_settings
from orderflow.core.errors import (
    EmptyCart,
    InsufficientInventory,
    InternalError,
    NotFound,
    OrderflowError,
    ValidationError,
)
from orderflow.core.inventory import InventoryService
from orderflow.database.models import (
    Cart,
    CartItem,
    CartStatus,
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
from orderflow.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ORDER_NUMBER_ATTEMPTS = 10
_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class Address(BaseModel):
    """Postal address snapshot stored on the order."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=255)
    line1: str = Field(..., min_length=1, max_length=255)
    line2: Optional[str] = Field(default=None, max_length=255)
    city: str = Field(..., min_length=1, max_length=100)
    state: Optional[str] = Field(default=None, max_length=100)
    postal_code: str = Field(..., min_length=1, max_length=20)
    country: str = Field(default="IN", min_length=2, max_length=2)


class CustomerInfo(BaseModel):
    """Customer details captured at checkout."""

    email: str = Field(..., max_length=255)
    phone: Optional[str] = Field(default=None, max_length=32)
    shipping_address: Address
    billing_address: Optional[Address] = None
    customer_note: Optional[str] = Field(default=None, max_length=1000)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip().lower()
        if not _EMAIL.match(v):
            raise ValueError("Invalid email address")
        return v


@dataclass
class CheckoutResult:
    order: Order
    payment: Payment
    items: List[OrderItem]


def initial_idempotency_key(order_id: uuid.UUID, attempt: int = 0) -> str:
    """Payment idempotency key for an order's n-th attempt."""
    return f"order:{order_id}:attempt:{attempt}"


class OrderService:
    """Cart-to-order conversion with consistent monetary snapshots."""

    def __init__(self, inventory: InventoryService, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.inventory = inventory

    async def _generate_order_number(self, db: AsyncSession) -> str:
        """Date prefix plus random 4-digit suffix, retried on collision."""
        today = utcnow().strftime("%Y%m%d")
        for _ in range(ORDER_NUMBER_ATTEMPTS):
            candidate = f"ORD-{today}-{secrets.randbelow(10000):04d}"
            taken = await db.scalar(select(Order.id).where(Order.order_number == candidate))
            if taken is None:
                return candidate
            logger.warning("order_number_collision", order_number=candidate)
        raise InternalError("Could not allocate a unique order number")

    async def _check_stock(self, db: AsyncSession, items: List[CartItem]) -> None:
        for item in items:
            variant = await db.get(ProductVariant, item.variant_id)
            if variant is None:
                raise NotFound(
                    "Product variant no longer exists",
                    details={"variant_id": str(item.variant_id)},
                )
            if not variant.track_inventory:
                continue
            available = await self.inventory.available_quantity(db, variant.id)
            if item.quantity > available:
                raise InsufficientInventory(
                    f"Only {available} units of {item.product_title} available",
                    details={
                        "variant_id": str(variant.id),
                        "requested": item.quantity,
                        "available": available,
                    },
                )

    async def _claim_cart(self, db: AsyncSession, cart: Cart) -> None:
        """Flip the cart from active to converted; a concurrent checkout loses."""
        result = await db.execute(
            update(Cart)
            .where(Cart.id == cart.id, Cart.status == CartStatus.ACTIVE.value)
            .values(status=CartStatus.CONVERTED.value, completed_at=utcnow(), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.refresh(cart)
            raise ValidationError("Cart is no longer active", details={"status": cart.status})
        await db.refresh(cart)

    async def create_order(
        self,
        db: AsyncSession,
        cart: Cart,
        customer: CustomerInfo,
        shipping_method: str,
        pricing: PricingConfig,
    ) -> CheckoutResult:
        """
        Create an order and its pending payment from a cart.

        Client-submitted totals are never used: every amount is computed
        here from the cart lines and the pricing snapshot.

        Args:
            db: Database session
            cart: Active cart to convert
            customer: Customer contact and address details
            shipping_method: Shipping method id from the pricing table
            pricing: Pricing snapshot used for tax and shipping

        Returns:
            CheckoutResult: Order, pending payment and order items

        Raises:
            ValidationError: Inactive cart or unknown shipping method
            EmptyCart: Cart has no items
            InsufficientInventory: A trackable line exceeds available stock
            InternalError: Unexpected failure, nothing was written
        """
        correlation_id = uuid.uuid4()
        cart_id = cart.id
        logger.info(
            "order_creation_started",
            correlation_id=str(correlation_id),
            cart_id=str(cart_id),
            shipping_method=shipping_method,
        )

        try:
            # Step 1: Claim the cart, then validate
            await self._claim_cart(db, cart)

            items = list(
                (await db.execute(select(CartItem).where(CartItem.cart_id == cart.id))).scalars()
            )
            if not items:
                raise EmptyCart("Cart is empty")

            shipping = pricing.shipping_for(shipping_method)
            if shipping is None:
                raise ValidationError(
                    "Unknown shipping method",
                    details={"shipping_method": shipping_method},
                )

            await self._check_stock(db, items)

            # Step 2: Totals
            subtotal = sum(item.price * item.quantity for item in items)
            discount = min(cart.discount_amount, subtotal)
            tax = pricing.calculate_tax(subtotal - discount)
            total = subtotal + tax + shipping - discount
            if total <= 0:
                raise ValidationError("Order total must be positive")

            # Step 3: Order number
            order_number = await self._generate_order_number(db)

            # Step 4: Persist
            order = Order(
                order_number=order_number,
                cart_id=cart.id,
                status=OrderStatus.PENDING.value,
                payment_status=OrderPaymentStatus.PENDING.value,
                currency=pricing.currency,
                subtotal_amount=subtotal,
                tax_amount=tax,
                shipping_amount=shipping,
                discount_amount=discount,
                total_amount=total,
                email=customer.email,
                phone=customer.phone,
                shipping_address=customer.shipping_address.model_dump(),
                billing_address=(
                    customer.billing_address.model_dump() if customer.billing_address else None
                ),
                shipping_method=shipping_method,
                customer_note=customer.customer_note,
                ip_address=customer.ip_address,
                user_agent=customer.user_agent,
                pricing_snapshot=pricing.as_snapshot(),
            )
            db.add(order)
            await db.flush()

            order_items = []
            for item in items:
                line_total = item.price * item.quantity
                order_item = OrderItem(
                    order_id=order.id,
                    variant_id=item.variant_id,
                    product_id=item.product_id,
                    product_title=item.product_title,
                    product_handle=item.product_handle,
                    product_image=item.product_image,
                    variant_title=item.variant_title,
                    sku=item.sku,
                    quantity=item.quantity,
                    price=item.price,
                    compare_at_price=item.compare_at_price,
                    subtotal=line_total,
                    total=line_total,
                )
                db.add(order_item)
                order_items.append(order_item)

            payment = Payment(
                order_id=order.id,
                idempotency_key=initial_idempotency_key(order.id),
                amount=total,
                currency=pricing.currency,
                status=PaymentStatus.PENDING.value,
                retry_count=0,
            )
            db.add(payment)
            await db.flush()

            db.add(
                PaymentEvent(
                    payment_id=payment.id,
                    order_id=order.id,
                    event_type="payment.created",
                    event_data=self._event_data(order, payment),
                    correlation_id=correlation_id,
                )
            )

            # Step 5: Commit
            await db.commit()

        except OrderflowError:
            await db.rollback()
            raise
        except Exception as e:
            await db.rollback()
            logger.error(
                "order_creation_failed",
                correlation_id=str(correlation_id),
                cart_id=str(cart_id),
                error=str(e),
                exc_info=True,
            )
            raise InternalError("Order creation failed") from e

        metrics.record_order_created(order.currency, shipping_method, order.total_amount)
        logger.info(
            "order_created",
            correlation_id=str(correlation_id),
            order_id=str(order.id),
            order_number=order.order_number,
            total_amount=order.total_amount,
            currency=order.currency,
        )
        return CheckoutResult(order=order, payment=payment, items=order_items)

    @staticmethod
    def _event_data(order: Order, payment: Payment) -> Dict[str, Any]:
        return {
            "order_number": order.order_number,
            "amount": payment.amount,
            "currency": payment.currency,
            "status": payment.status,
        }

    async def get_order(self, db: AsyncSession, order_id: uuid.UUID) -> Order:
        order = await db.get(Order, order_id)
        if order is None:
            raise NotFound("Order not found")
        return order

    async def get_order_items(self, db: AsyncSession, order_id: uuid.UUID) -> List[OrderItem]:
        stmt = select(OrderItem).where(OrderItem.order_id == order_id)
        return list((await db.execute(stmt)).scalars())
