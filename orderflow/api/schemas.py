"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from orderflow.core.orders import Address


class AddCartItemRequest(BaseModel):
    """Request schema for adding a variant to the cart."""

    variant_id: UUID = Field(..., description="Product variant id")
    quantity: int = Field(default=1, ge=1, le=100, description="Units to add")


class UpdateCartItemRequest(BaseModel):
    """Zero removes the line."""

    quantity: int = Field(..., ge=0, le=100, description="New quantity")


class CartItemResponse(BaseModel):
    id: str
    variant_id: str
    product_title: str
    variant_title: Optional[str] = None
    sku: Optional[str] = None
    quantity: int
    price: int = Field(..., description="Unit price in minor units")
    subtotal: int


class CartResponse(BaseModel):
    """Cart with server-computed totals, all in minor units."""

    id: Optional[str] = None
    currency: str
    item_count: int
    subtotal_amount: int
    discount_amount: int
    tax_amount: int
    total_amount: int
    items: List[CartItemResponse] = Field(default_factory=list)


class CheckoutRequest(BaseModel):
    """
    Request schema for checkout.

    Carries no amounts: totals are computed server side from the cart.
    """

    email: str = Field(..., max_length=255)
    phone: Optional[str] = Field(default=None, max_length=32)
    shipping_address: Address
    billing_address: Optional[Address] = None
    shipping_method: str = Field(default="standard", max_length=50)
    customer_note: Optional[str] = Field(default=None, max_length=1000)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "email": "asha@example.com",
                    "phone": "+919812345678",
                    "shipping_address": {
                        "name": "Asha Rao",
                        "line1": "12 MG Road",
                        "city": "Bengaluru",
                        "state": "KA",
                        "postal_code": "560001",
                        "country": "IN",
                    },
                    "shipping_method": "standard",
                }
            ]
        }
    }


class OrderItemResponse(BaseModel):
    variant_id: Optional[str] = None
    product_title: str
    variant_title: Optional[str] = None
    quantity: int
    price: int
    total: int


class CheckoutResponse(BaseModel):
    """Response schema for checkout."""

    order_id: str
    order_number: str
    payment_id: str
    status: str
    payment_status: str
    currency: str
    subtotal_amount: int
    tax_amount: int
    shipping_amount: int
    discount_amount: int
    total_amount: int
    items: List[OrderItemResponse]


class PaymentIntentResponse(BaseModel):
    """Parameters for client-side checkout."""

    key_id: str
    gateway_order_id: str
    amount: int = Field(..., description="Amount in minor units")
    currency: str
    payment_id: str
    order_id: str
    order_number: str
    email: str
    contact: Optional[str] = None


class VerifyPaymentRequest(BaseModel):
    """
    Callback posted by client checkout.

    Only identifiers and the signature; amount and status come from the gateway.
    """

    razorpay_order_id: str = Field(..., min_length=1, max_length=64)
    razorpay_payment_id: str = Field(..., min_length=1, max_length=64)
    razorpay_signature: str = Field(..., min_length=1, max_length=128)
    payment_id: UUID = Field(..., description="Local payment id")

    @field_validator("razorpay_order_id", "razorpay_payment_id", "razorpay_signature")
    @classmethod
    def strip_value(cls, v: str) -> str:
        return v.strip()


class VerifyPaymentResponse(BaseModel):
    success: bool
    message: str
    status: str
    order_id: str
    order_number: Optional[str] = None
    order_status: Optional[str] = None
    payment_id: str
    already_processed: bool = False
    risk_score: Optional[int] = None
    risk_level: Optional[str] = None


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="Processing status")
    event_type: str
    entity_id: str
    message: Optional[str] = Field(default=None, description="Status message")


class RetryBatchResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int
    skipped: int
    errors: List[str]
    retried: List[Dict[str, Any]]


class SyncPaymentRequest(BaseModel):
    payment_id: UUID


class SyncPaymentResponse(BaseModel):
    success: bool
    updated: bool
    status: str
    message: str


class CleanupResponse(BaseModel):
    cleaned: int
    days_old: int
    payment_ids: List[str] = Field(default_factory=list)


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/degraded/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
