"""SQLAlchemy database models for the order/payment pipeline."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class CartStatus(str, Enum):
    ACTIVE = "active"
    CONVERTED = "converted"
    ABANDONED = "abandoned"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"
    PAYMENT_FAILED = "payment_failed"


class OrderPaymentStatus(str, Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    PAID = "paid"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"
    FAILED = "failed"


class FulfillmentStatus(str, Enum):
    UNFULFILLED = "unfulfilled"
    PARTIALLY_FULFILLED = "partially_fulfilled"
    FULFILLED = "fulfilled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    ARCHIVED = "archived"


SUCCESSFUL_PAYMENT_STATUSES = (PaymentStatus.CAPTURED.value, PaymentStatus.AUTHORIZED.value)


def _in_clause(values: Any) -> str:
    return ", ".join(f"'{v.value}'" for v in values)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Product(Base):
    """Catalog product. Only the fields the cart snapshots are modelled."""

    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    handle: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return f"<Product(id={self.id}, handle={self.handle})>"


class ProductVariant(Base):
    """Purchasable variant with its own price and stock tracking flag."""

    __tablename__ = "product_variants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("products.id"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="Default")
    sku: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, unique=True)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    compare_at_price: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    track_inventory: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (CheckConstraint("price >= 0", name="variant_non_negative_price"),)

    def __repr__(self) -> str:
        return f"<ProductVariant(id={self.id}, sku={self.sku}, price={self.price})>"


class Cart(Base):
    """
    Anonymous shopping cart keyed by an opaque client token.

    Converted (never deleted) once an order is created from it.
    """

    __tablename__ = "carts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    token: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CartStatus.ACTIVE.value
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    subtotal_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tax_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            f"status IN ({_in_clause(CartStatus)})", name="valid_cart_status"
        ),
        Index(
            "uq_carts_active_token",
            "token",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    def __repr__(self) -> str:
        return f"<Cart(id={self.id}, status={self.status}, total={self.total_amount})>"


class CartItem(Base):
    """Cart line with product fields snapshotted at add time."""

    __tablename__ = "cart_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    cart_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("carts.id"), nullable=False, index=True
    )
    variant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("product_variants.id"), nullable=False
    )
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    product_title: Mapped[str] = mapped_column(String(255), nullable=False)
    product_handle: Mapped[str] = mapped_column(String(255), nullable=False)
    product_image: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    variant_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sku: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    compare_at_price: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    subtotal: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="cart_item_positive_quantity"),
        UniqueConstraint("cart_id", "variant_id", name="uq_cart_items_cart_variant"),
    )


class Order(Base):
    """
    Durable purchase record.

    Never deleted, only status-transitioned. The monetary breakdown always
    satisfies total = subtotal + tax + shipping - discount.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    cart_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OrderStatus.PENDING.value, index=True
    )
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OrderPaymentStatus.PENDING.value
    )
    fulfillment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=FulfillmentStatus.UNFULFILLED.value
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    subtotal_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    tax_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    shipping_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    shipping_address: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    billing_address: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    shipping_method: Mapped[str] = mapped_column(String(50), nullable=False)
    customer_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pricing_snapshot: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "total_amount = subtotal_amount + tax_amount + shipping_amount - discount_amount",
            name="order_total_breakdown",
        ),
        CheckConstraint("total_amount >= 0", name="order_non_negative_total"),
        CheckConstraint(f"status IN ({_in_clause(OrderStatus)})", name="valid_order_status"),
        CheckConstraint(
            f"payment_status IN ({_in_clause(OrderPaymentStatus)})",
            name="valid_order_payment_status",
        ),
        CheckConstraint("length(currency) = 3", name="order_valid_currency"),
        Index("idx_orders_status_payment_status", "status", "payment_status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, number={self.order_number}, status={self.status}, "
            f"payment_status={self.payment_status}, total={self.total_amount})>"
        )


class OrderItem(Base):
    """Immutable snapshot of a cart line at checkout."""

    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False, index=True
    )
    variant_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    product_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    product_title: Mapped[str] = mapped_column(String(255), nullable=False)
    product_handle: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    product_image: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    variant_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sku: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    compare_at_price: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    subtotal: Mapped[int] = mapped_column(Integer, nullable=False)
    total: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (CheckConstraint("quantity >= 1", name="order_item_positive_quantity"),)


class Payment(Base):
    """
    One gateway attempt for an order.

    An order may have several payments across retries, but at most one of
    them may be captured or authorized at a time.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False, index=True
    )
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True
    )
    gateway: Mapped[str] = mapped_column(String(50), nullable=False, default="razorpay")
    gateway_order_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, unique=True
    )
    gateway_response: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    original_payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    payment_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    card_last4: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    card_network: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    fraud_risk_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    fraud_risk_level: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refunded_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    authorized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    captured_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="payment_positive_amount"),
        CheckConstraint("retry_count >= 0", name="payment_non_negative_retry_count"),
        CheckConstraint(f"status IN ({_in_clause(PaymentStatus)})", name="valid_payment_status"),
        CheckConstraint("length(currency) = 3", name="payment_valid_currency"),
        Index("idx_payments_order_status", "order_id", "status"),
        Index(
            "uq_payments_order_successful",
            "order_id",
            unique=True,
            postgresql_where=text("status IN ('captured', 'authorized')"),
            sqlite_where=text("status IN ('captured', 'authorized')"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, order_id={self.order_id}, "
            f"amount={self.amount}, status={self.status}, retry_count={self.retry_count})>"
        )


class PaymentEvent(Base):
    """
    Payment events audit trail table.

    Written in the same transaction as the state change it describes.
    Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    payment_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    correlation_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentEvent(id={self.id}, payment_id={self.payment_id}, "
            f"type={self.event_type})>"
        )


class IdempotencyRecord(Base):
    """Durable tier of the idempotency store."""

    __tablename__ = "idempotency_records"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    result: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class StockLevel(Base):
    """Per-location stock of a variant."""

    __tablename__ = "stock_levels"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    variant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("product_variants.id"), nullable=False, index=True
    )
    location_id: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    available_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("variant_id", "location_id", name="uq_stock_variant_location"),
        CheckConstraint("available_quantity >= 0", name="stock_non_negative_available"),
        CheckConstraint("reserved_quantity >= 0", name="stock_non_negative_reserved"),
    )

    def __repr__(self) -> str:
        return (
            f"<StockLevel(variant_id={self.variant_id}, location={self.location_id}, "
            f"available={self.available_quantity}, reserved={self.reserved_quantity})>"
        )


class InventoryAdjustment(Base):
    """Append-only log of reservations and releases."""

    __tablename__ = "inventory_adjustments"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    variant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    location_id: Mapped[str] = mapped_column(String(64), nullable=False)
    adjustment_type: Mapped[str] = mapped_column(String(20), nullable=False)
    requested_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    applied_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(100), nullable=False)
    reference_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class SecurityEvent(Base):
    """Append-only security and audit log."""

    __tablename__ = "security_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    level: Mapped[str] = mapped_column(String(10), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    event: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    __table_args__ = (
        CheckConstraint(
            "level IN ('info', 'warning', 'error', 'critical')", name="valid_security_level"
        ),
    )


__all__: List[str] = [
    "Base",
    "Cart",
    "CartItem",
    "CartStatus",
    "FulfillmentStatus",
    "IdempotencyRecord",
    "InventoryAdjustment",
    "Order",
    "OrderItem",
    "OrderPaymentStatus",
    "OrderStatus",
    "Payment",
    "PaymentEvent",
    "PaymentStatus",
    "Product",
    "ProductVariant",
    "SUCCESSFUL_PAYMENT_STATUSES",
    "SecurityEvent",
    "StockLevel",
    "utcnow",
]
