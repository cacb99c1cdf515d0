"""
API routes for cart, checkout, payments, webhooks and admin jobs.
"""
import time
import uuid
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.container import Container, get_container
from orderflow.core.errors import AlreadyProcessed, OrderflowError, ValidationError
from orderflow.core.orders import CustomerInfo
from orderflow.core.verification import VerificationRequest
from orderflow.database.connection import get_db
from orderflow.database.models import Cart

from .dependencies import CART_COOKIE, client_ip, require_admin, to_http_exception
from .rate_limit import rate_limit
from .schemas import (
    AddCartItemRequest,
    CartResponse,
    CheckoutRequest,
    CheckoutResponse,
    CleanupResponse,
    HealthCheckResponse,
    PaymentIntentResponse,
    RetryBatchResponse,
    SyncPaymentRequest,
    SyncPaymentResponse,
    UpdateCartItemRequest,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
cart_router = APIRouter(prefix="/cart", tags=["cart"])
checkout_router = APIRouter(tags=["checkout"])
order_router = APIRouter(prefix="/orders", tags=["orders"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])
monitoring_router = APIRouter(tags=["monitoring"])


async def _cart_payload(container: Container, db: AsyncSession, cart: Optional[Cart]) -> Dict[str, Any]:
    if cart is None:
        return {
            "id": None,
            "currency": container.settings.default_currency,
            "item_count": 0,
            "subtotal_amount": 0,
            "discount_amount": 0,
            "tax_amount": 0,
            "total_amount": 0,
            "items": [],
        }
    items = await container.cart_service.get_items(db, cart)
    return {
        "id": str(cart.id),
        "currency": cart.currency,
        "item_count": sum(item.quantity for item in items),
        "subtotal_amount": cart.subtotal_amount,
        "discount_amount": cart.discount_amount,
        "tax_amount": cart.tax_amount,
        "total_amount": cart.total_amount,
        "items": [
            {
                "id": str(item.id),
                "variant_id": str(item.variant_id),
                "product_title": item.product_title,
                "variant_title": item.variant_title,
                "sku": item.sku,
                "quantity": item.quantity,
                "price": item.price,
                "subtotal": item.subtotal,
            }
            for item in items
        ],
    }


def _set_cart_cookie(response: Response, container: Container, token: str) -> None:
    response.set_cookie(
        CART_COOKIE,
        token,
        max_age=container.settings.cart_ttl_days * 86400,
        httponly=True,
        samesite="lax",
        secure=container.settings.is_production,
    )


async def _require_cart(container: Container, db: AsyncSession, request: Request) -> Cart:
    cart = await container.cart_service.get_active_cart(db, request.cookies.get(CART_COOKIE))
    if cart is None:
        await db.commit()
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "message": "Cart not found"},
        )
    return cart


# Cart


@cart_router.get("", response_model=CartResponse, summary="View cart")
async def get_cart(
    request: Request,
    container: Container = Depends(get_container),
    db: AsyncSession = Depends(get_db),
    _: None = Depends(rate_limit("cart")),
) -> Dict[str, Any]:
    cart = await container.cart_service.get_active_cart(db, request.cookies.get(CART_COOKIE))
    payload = await _cart_payload(container, db, cart)
    await db.commit()
    return payload


@cart_router.post(
    "/items",
    response_model=CartResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add to cart",
    description="Add a variant to the caller's cart, creating the cart on first use",
)
async def add_cart_item(
    body: AddCartItemRequest,
    request: Request,
    response: Response,
    container: Container = Depends(get_container),
    db: AsyncSession = Depends(get_db),
    _: None = Depends(rate_limit("cart")),
) -> Dict[str, Any]:
    token = request.cookies.get(CART_COOKIE)
    try:
        cart = await container.cart_service.get_or_create_cart(db, token)
        await container.cart_service.add_item(db, cart, body.variant_id, body.quantity)
    except OrderflowError as e:
        logger.warning("api_add_cart_item_error", error=e.message, code=e.code)
        raise to_http_exception(e)

    if cart.token != token:
        _set_cart_cookie(response, container, cart.token)
    return await _cart_payload(container, db, cart)


@cart_router.patch("/items/{item_id}", response_model=CartResponse, summary="Update cart line")
async def update_cart_item(
    item_id: uuid.UUID,
    body: UpdateCartItemRequest,
    request: Request,
    container: Container = Depends(get_container),
    db: AsyncSession = Depends(get_db),
    _: None = Depends(rate_limit("cart")),
) -> Dict[str, Any]:
    cart = await _require_cart(container, db, request)
    try:
        await container.cart_service.update_item_quantity(db, cart, item_id, body.quantity)
    except OrderflowError as e:
        raise to_http_exception(e)
    return await _cart_payload(container, db, cart)


@cart_router.delete("/items/{item_id}", response_model=CartResponse, summary="Remove cart line")
async def remove_cart_item(
    item_id: uuid.UUID,
    request: Request,
    container: Container = Depends(get_container),
    db: AsyncSession = Depends(get_db),
    _: None = Depends(rate_limit("cart")),
) -> Dict[str, Any]:
    cart = await _require_cart(container, db, request)
    try:
        await container.cart_service.remove_item(db, cart, item_id)
    except OrderflowError as e:
        raise to_http_exception(e)
    return await _cart_payload(container, db, cart)


# Checkout


@checkout_router.post(
    "/checkout",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Checkout",
    description="Create an order and its pending payment from the caller's cart",
)
async def checkout(
    body: CheckoutRequest,
    request: Request,
    response: Response,
    container: Container = Depends(get_container),
    db: AsyncSession = Depends(get_db),
    _: None = Depends(rate_limit("checkout")),
) -> Dict[str, Any]:
    start_time = time.time()
    cart = await _require_cart(container, db, request)
    try:
        customer = CustomerInfo(
            email=body.email,
            phone=body.phone,
            shipping_address=body.shipping_address,
            billing_address=body.billing_address,
            customer_note=body.customer_note,
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except ValueError as e:
        raise to_http_exception(ValidationError(str(e)))

    try:
        result = await container.order_service.create_order(
            db, cart, customer, body.shipping_method, container.settings.pricing_snapshot()
        )
    except OrderflowError as e:
        logger.warning("api_checkout_error", error=e.message, code=e.code)
        raise to_http_exception(e)

    response.delete_cookie(CART_COOKIE)
    order = result.order
    logger.info(
        "api_checkout_success",
        order_id=str(order.id),
        order_number=order.order_number,
        duration_seconds=time.time() - start_time,
    )
    return {
        "order_id": str(order.id),
        "order_number": order.order_number,
        "payment_id": str(result.payment.id),
        "status": order.status,
        "payment_status": order.payment_status,
        "currency": order.currency,
        "subtotal_amount": order.subtotal_amount,
        "tax_amount": order.tax_amount,
        "shipping_amount": order.shipping_amount,
        "discount_amount": order.discount_amount,
        "total_amount": order.total_amount,
        "items": [
            {
                "variant_id": str(item.variant_id) if item.variant_id else None,
                "product_title": item.product_title,
                "variant_title": item.variant_title,
                "quantity": item.quantity,
                "price": item.price,
                "total": item.total,
            }
            for item in result.items
        ],
    }


# Orders / payments


@order_router.post(
    "/{order_id}/payment",
    response_model=PaymentIntentResponse,
    summary="Create payment intent",
    description="Return gateway checkout parameters, reusing an open gateway order",
    responses={200: {"description": "Intent, or an informational body when already paid"}},
)
async def create_payment_intent(
    order_id: uuid.UUID,
    container: Container = Depends(get_container),
    db: AsyncSession = Depends(get_db),
    _: None = Depends(rate_limit("payment")),
) -> Any:
    try:
        intent = await container.intent_service.create_intent(db, order_id)
    except AlreadyProcessed as e:
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"success": False, "already_processed": True, "message": e.message},
        )
    except OrderflowError as e:
        logger.warning("api_payment_intent_error", order_id=str(order_id), error=e.message, code=e.code)
        raise to_http_exception(e)
    return intent.as_dict()


@order_router.get("/{order_id}/payment", summary="Payment status")
async def get_payment_status(
    order_id: uuid.UUID,
    container: Container = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    try:
        return await container.intent_service.get_status(db, order_id)
    except OrderflowError as e:
        raise to_http_exception(e)


@payment_router.post(
    "/verify",
    response_model=VerifyPaymentResponse,
    summary="Verify payment callback",
    description="Verify the gateway callback signature and apply the authoritative payment",
)
async def verify_payment(
    body: VerifyPaymentRequest,
    request: Request,
    container: Container = Depends(get_container),
    db: AsyncSession = Depends(get_db),
    _: None = Depends(rate_limit("payment")),
) -> Dict[str, Any]:
    verification = VerificationRequest(
        gateway_order_id=body.razorpay_order_id,
        gateway_payment_id=body.razorpay_payment_id,
        signature=body.razorpay_signature,
        payment_id=body.payment_id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    try:
        return await container.verifier.verify(db, verification)
    except OrderflowError as e:
        logger.warning(
            "api_verify_payment_error",
            payment_id=str(body.payment_id),
            error=e.message,
            code=e.code,
        )
        raise to_http_exception(e)


# Webhooks


@webhook_router.post(
    "/razorpay",
    response_model=WebhookResponse,
    summary="Gateway webhook endpoint",
    description="Handle gateway webhook events",
)
async def razorpay_webhook(
    request: Request,
    signature: Optional[str] = Header(default=None, alias="X-Razorpay-Signature"),
    container: Container = Depends(get_container),
    db: AsyncSession = Depends(get_db),
    _: None = Depends(rate_limit("webhook")),
) -> Dict[str, Any]:
    """
    Handle gateway webhook events.

    Verifies signature over the raw body and processes events with deduplication.
    """
    body = await request.body()
    handler = container.webhook_handler
    try:
        event = await handler.verify_signature(body, signature, ip_address=client_ip(request))
        result = await handler.process_event(event, db)
    except OrderflowError as e:
        logger.error("api_webhook_error", error=e.message, code=e.code)
        raise to_http_exception(e)

    return {
        "status": result["status"],
        "event_type": result["event_type"],
        "entity_id": result["entity_id"],
        "message": result.get("message"),
    }


# Admin


@admin_router.post(
    "/payments/retry",
    response_model=RetryBatchResponse,
    summary="Retry failed payments",
)
async def retry_failed_payments(
    max_retries: Optional[int] = Query(default=None, ge=0, le=10),
    retry_delay_minutes: Optional[int] = Query(default=None, ge=0),
    batch_size: Optional[int] = Query(default=None, ge=1, le=500),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    try:
        return await container.retry_service.retry_failed_payments(
            max_retries=max_retries,
            retry_delay_minutes=retry_delay_minutes,
            batch_size=batch_size,
        )
    except OrderflowError as e:
        raise to_http_exception(e, admin=True)


@admin_router.patch(
    "/payments/retry",
    response_model=SyncPaymentResponse,
    summary="Sync a payment with the gateway",
)
async def sync_payment(
    body: SyncPaymentRequest,
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    try:
        return await container.retry_service.sync_payment_status(body.payment_id)
    except OrderflowError as e:
        raise to_http_exception(e, admin=True)


@admin_router.delete(
    "/payments/retry",
    response_model=CleanupResponse,
    summary="Archive old failed payments",
)
async def cleanup_failed_payments(
    days_old: Optional[int] = Query(default=None),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    try:
        return await container.retry_service.cleanup_old_failures(days_old=days_old)
    except OrderflowError as e:
        raise to_http_exception(e, admin=True)


@admin_router.post("/orders/{order_id}/cancel", summary="Cancel an order")
async def cancel_order(
    order_id: uuid.UUID,
    reason: Optional[str] = Query(default=None, max_length=255),
    container: Container = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    try:
        order = await container.state_machine.cancel_order(db, order_id, reason=reason)
    except OrderflowError as e:
        raise to_http_exception(e, admin=True)
    return {"order_id": str(order.id), "status": order.status}


# Monitoring


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(container: Container = Depends(get_container)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await container.health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(container: Container = Depends(get_container)) -> Dict[str, Any]:
    return await container.health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(container: Container = Depends(get_container)) -> Dict[str, Any]:
    result = await container.health_check.readiness()
    if result["status"] == "unhealthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
