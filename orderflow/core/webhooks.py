"""
Gateway webhook handler with signature verification and event deduplication.

Implements:
- Webhook signature verification over the raw body
- Event deduplication through the idempotency store
- Event type routing to registered handlers
- Re-fetching payments from the gateway instead of trusting the webhook entity
"""
import json
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.config import Settings, get_settings
from orderflow.core.errors import InternalError, InvalidSignature, OrderflowError, ValidationError
from orderflow.core.idempotency import IdempotencyStore
from orderflow.core.signature import SignatureVerifier
from orderflow.core.state_machine import OrderStateMachine
from orderflow.database.models import OrderStatus, Payment, PaymentStatus
from orderflow.integrations.gateway import PaymentGateway, pick_settled_payment
from orderflow.monitoring.metrics import metrics
from orderflow.monitoring.security_log import SecurityCategory, SecurityLogger

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Dict[str, Any], AsyncSession], Awaitable[Dict[str, Any]]]

PAYMENT_EVENTS = ("payment.captured", "payment.authorized", "payment.failed")


def _entity(event: Dict[str, Any], name: str) -> Optional[Dict[str, Any]]:
    payload = event.get("payload")
    wrapper = payload.get(name) if isinstance(payload, dict) else None
    entity = wrapper.get("entity") if isinstance(wrapper, dict) else None
    return entity if isinstance(entity, dict) else None


def _entity_id(event: Dict[str, Any]) -> Optional[str]:
    payload = event.get("payload")
    if not isinstance(payload, dict):
        return None
    # Known entities first, then whatever else the event carries
    names = ["refund", "payment", "order"] + sorted(set(payload) - {"refund", "payment", "order"})
    for name in names:
        entity = _entity(event, name)
        if entity and entity.get("id"):
            return str(entity["id"])
    return None


class GatewayWebhookHandler:
    """
    Handles gateway webhook events with deduplication and processing.

    Features:
    - Signature verification using the webhook secret
    - Event deduplication keyed by event type and entity id
    - Event type routing to appropriate handlers
    - Failed events are not recorded, so the gateway's redelivery retries them
    """

    def __init__(
        self,
        signature_verifier: SignatureVerifier,
        idempotency: IdempotencyStore,
        gateway: PaymentGateway,
        state_machine: OrderStateMachine,
        security_logger: SecurityLogger,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.signature_verifier = signature_verifier
        self.idempotency = idempotency
        self.gateway = gateway
        self.state_machine = state_machine
        self.security_logger = security_logger
        self.event_handlers: Dict[str, EventHandler] = {}

        for event_type in PAYMENT_EVENTS:
            self.register_handler(event_type, self.handle_payment_event)
        self.register_handler("order.paid", self.handle_order_paid)
        self.register_handler("refund.processed", self.handle_refund_processed)

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Gateway event type (e.g., 'payment.captured')
            handler: Async callable taking (event, db)
        """
        self.event_handlers[event_type] = handler
        logger.debug("webhook_handler_registered", event_type=event_type)

    async def verify_signature(
        self, body: bytes, signature: Optional[str], ip_address: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Verify webhook signature and parse the event.

        Args:
            body: Raw request body as bytes
            signature: X-Razorpay-Signature header value
            ip_address: Caller IP for the security log

        Returns:
            Dict[str, Any]: Parsed event

        Raises:
            InvalidSignature: If signature verification fails
            ValidationError: If the body is not a webhook event
        """
        try:
            self.signature_verifier.verify_webhook_signature(body, signature)
        except InvalidSignature as e:
            await self.security_logger.warning(
                SecurityCategory.WEBHOOK,
                "webhook_signature_invalid",
                e.message,
                ip_address=ip_address,
            )
            raise

        try:
            event = json.loads(body)
        except ValueError as e:
            raise ValidationError("Invalid JSON payload") from e
        if not isinstance(event, dict) or not event.get("event") or not event.get("payload"):
            raise ValidationError("Invalid payload structure")

        logger.info("webhook_signature_verified", event_type=event["event"])
        return event

    async def process_event(self, event: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
        """
        Process a verified webhook event.

        Args:
            event: Verified event
            db: Database session for handlers

        Returns:
            Dict[str, Any]: Processing result

        Raises:
            OrderflowError: If the handler fails (the event stays unprocessed)
        """
        event_type = event["event"]
        entity_id = _entity_id(event)
        if entity_id is None:
            raise ValidationError("Webhook event has no entity id")

        logger.info("processing_webhook_event", event_type=event_type, entity_id=entity_id)

        # Check for duplicate events
        key = IdempotencyStore.webhook_key(event_type, entity_id)
        cached = await self.idempotency.check(key)
        if cached is not None:
            logger.info("webhook_event_already_processed", event_type=event_type, entity_id=entity_id)
            metrics.record_webhook_event(event_type, "duplicate")
            return {
                "status": "duplicate",
                "event_type": event_type,
                "entity_id": entity_id,
                "message": "Event already processed",
                "result": cached,
            }

        # Route event to appropriate handler
        handler = self.event_handlers.get(event_type)
        if handler is None:
            logger.warning("webhook_no_handler", event_type=event_type, entity_id=entity_id)
            result = {"message": f"No handler registered for event type: {event_type}"}
            await self.idempotency.save(key, result, self.settings.idempotency_success_ttl)
            metrics.record_webhook_event(event_type, "no_handler")
            return {
                "status": "no_handler",
                "event_type": event_type,
                "entity_id": entity_id,
                "result": result,
            }

        try:
            result = await handler(event, db)
        except OrderflowError as e:
            logger.error(
                "webhook_event_processing_failed",
                event_type=event_type,
                entity_id=entity_id,
                error=e.message,
            )
            metrics.record_webhook_event(event_type, "error")
            raise
        except Exception as e:
            logger.error(
                "webhook_event_processing_failed",
                event_type=event_type,
                entity_id=entity_id,
                error=str(e),
                exc_info=True,
            )
            metrics.record_webhook_event(event_type, "error")
            raise InternalError(f"Failed to process {event_type} for {entity_id}") from e

        # Mark event as successfully processed
        await self.idempotency.save(key, result, self.settings.idempotency_success_ttl)
        metrics.record_webhook_event(event_type, "success")
        logger.info("webhook_event_processed_successfully", event_type=event_type, entity_id=entity_id)

        return {
            "status": "success",
            "event_type": event_type,
            "entity_id": entity_id,
            "result": result,
        }

    async def _find_payment(
        self, db: AsyncSession, gateway_order_id: Optional[str], gateway_payment_id: str
    ) -> Optional[Payment]:
        stmt = select(Payment).where(Payment.gateway_payment_id == gateway_payment_id)
        payment = (await db.execute(stmt)).scalar_one_or_none()
        if payment is not None or not gateway_order_id:
            return payment
        stmt = (
            select(Payment)
            .where(Payment.gateway_order_id == gateway_order_id)
            .order_by(Payment.created_at.desc())
            .limit(1)
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    async def handle_payment_event(self, event: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
        """
        Handle payment.captured / payment.authorized / payment.failed.

        The payment is re-fetched from the gateway; the webhook entity only
        tells us which payment to look at.
        """
        entity = _entity(event, "payment")
        if entity is None or not entity.get("id"):
            raise ValidationError("Payment entity not found in payload")

        gateway_payment = await self.gateway.fetch_payment(str(entity["id"]))
        payment = await self._find_payment(db, gateway_payment.order_id, gateway_payment.id)
        if payment is None:
            logger.warning(
                "webhook_payment_not_found",
                gateway_order_id=gateway_payment.order_id,
                gateway_payment_id=gateway_payment.id,
            )
            return {"processed": False, "reason": "payment_not_found"}

        transition = await self.state_machine.apply_gateway_payment(
            db,
            payment.id,
            gateway_payment,
            failed_order_status=OrderStatus.PAYMENT_FAILED,
            correlation_id=uuid.uuid4(),
        )
        return {"processed": transition.applied, **transition.as_dict()}

    async def handle_order_paid(self, event: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
        """
        Handle order.paid by settling the order's most decisive gateway payment.

        The event only names the gateway order; its payments are fetched
        from the gateway and applied like a payment event.
        """
        entity = _entity(event, "order")
        if entity is None or not entity.get("id"):
            raise ValidationError("Order entity not found in payload")
        gateway_order_id = str(entity["id"])

        gateway_payment = pick_settled_payment(await self.gateway.fetch_order_payments(gateway_order_id))
        if gateway_payment is None:
            logger.warning("webhook_order_has_no_payments", gateway_order_id=gateway_order_id)
            return {"processed": False, "reason": "no_gateway_payment"}

        payment = await self._find_payment(db, gateway_order_id, gateway_payment.id)
        if payment is None:
            logger.warning("webhook_payment_not_found", gateway_order_id=gateway_order_id)
            return {"processed": False, "reason": "payment_not_found"}

        transition = await self.state_machine.apply_gateway_payment(
            db,
            payment.id,
            gateway_payment,
            failed_order_status=OrderStatus.PAYMENT_FAILED,
            correlation_id=uuid.uuid4(),
        )
        return {"processed": transition.applied, **transition.as_dict()}

    async def handle_refund_processed(self, event: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
        """Handle refund.processed by recording the refund on the captured payment."""
        refund = _entity(event, "refund")
        if refund is None or not refund.get("payment_id"):
            raise ValidationError("Refund entity not found in payload")
        try:
            amount = int(refund.get("amount", 0))
        except (TypeError, ValueError) as e:
            raise ValidationError("Refund amount is not an integer") from e

        payment = await self._find_payment(db, None, str(refund["payment_id"]))
        if payment is None:
            logger.warning("webhook_refund_payment_not_found", gateway_payment_id=refund["payment_id"])
            return {"processed": False, "reason": "payment_not_found"}
        if payment.status not in (PaymentStatus.CAPTURED.value, PaymentStatus.PARTIALLY_REFUNDED.value):
            return {"processed": False, "reason": f"payment_{payment.status}"}

        transition = await self.state_machine.record_refund(db, payment.id, amount)
        return {"processed": True, **transition.as_dict()}
