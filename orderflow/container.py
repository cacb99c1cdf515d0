"""
Service wiring.

Builds every pipeline service once from settings. The API resolves the
container through ``get_container`` (overridable in tests) and the worker
builds its own.
"""
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow.config import Settings, get_settings
from orderflow.core.cart import CartService
from orderflow.core.idempotency import IdempotencyStore
from orderflow.core.inventory import InventoryService
from orderflow.core.orders import OrderService
from orderflow.core.payment_intents import PaymentIntentService
from orderflow.core.retry import PaymentRetryService
from orderflow.core.signature import SignatureVerifier
from orderflow.core.state_machine import OrderStateMachine
from orderflow.core.verification import PaymentVerifier
from orderflow.core.webhooks import GatewayWebhookHandler
from orderflow.database.connection import get_session_factory
from orderflow.fraud import FraudDetector, HistoryCollector, RuleBasedRiskScorer, rules_from_settings
from orderflow.integrations.gateway import PaymentGateway
from orderflow.integrations.razorpay_client import RazorpayGateway
from orderflow.monitoring.health import HealthCheck
from orderflow.monitoring.security_log import SecurityLogger

logger = structlog.get_logger(__name__)


@dataclass
class Container:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    redis_client: Optional[aioredis.Redis]
    gateway: PaymentGateway
    security_logger: SecurityLogger
    idempotency: IdempotencyStore
    inventory: InventoryService
    cart_service: CartService
    order_service: OrderService
    state_machine: OrderStateMachine
    intent_service: PaymentIntentService
    verifier: PaymentVerifier
    webhook_handler: GatewayWebhookHandler
    retry_service: PaymentRetryService
    health_check: HealthCheck

    async def close(self) -> None:
        """Release network clients. The idempotency store owns the shared Redis client."""
        await self.idempotency.close()
        await self.gateway.close()


def build_container(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    gateway: Optional[PaymentGateway] = None,
    redis_client: Optional[aioredis.Redis] = None,
) -> Container:
    """
    Wire all services.

    Args:
        settings: Optional settings override
        session_factory: Session factory (defaults to the global one)
        gateway: Payment gateway adapter (defaults to Razorpay)
        redis_client: Redis client (created from settings when a URL is set)
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    if redis_client is None and settings.redis_url:
        redis_client = aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    gateway = gateway or RazorpayGateway(settings)

    security_logger = SecurityLogger(session_factory)
    idempotency = IdempotencyStore(session_factory, redis_client=redis_client, settings=settings)
    inventory = InventoryService(default_location_id=settings.default_location_id)
    state_machine = OrderStateMachine(inventory, security_logger, settings=settings)
    signature_verifier = SignatureVerifier(
        settings.razorpay_key_secret, settings.razorpay_webhook_secret
    )
    fraud_detector = FraudDetector(
        scorer=RuleBasedRiskScorer(rules_from_settings(settings)),
        history_collector=HistoryCollector(),
    )

    container = Container(
        settings=settings,
        session_factory=session_factory,
        redis_client=redis_client,
        gateway=gateway,
        security_logger=security_logger,
        idempotency=idempotency,
        inventory=inventory,
        cart_service=CartService(inventory, settings=settings),
        order_service=OrderService(inventory, settings=settings),
        state_machine=state_machine,
        intent_service=PaymentIntentService(gateway),
        verifier=PaymentVerifier(
            signature_verifier,
            idempotency,
            gateway,
            fraud_detector,
            state_machine,
            security_logger,
            settings=settings,
        ),
        webhook_handler=GatewayWebhookHandler(
            signature_verifier,
            idempotency,
            gateway,
            state_machine,
            security_logger,
            settings=settings,
        ),
        retry_service=PaymentRetryService(
            gateway, state_machine, session_factory, security_logger, settings=settings
        ),
        health_check=HealthCheck(session_factory, redis_client, gateway),
    )
    logger.info("container_built", gateway=gateway.name, redis=redis_client is not None)
    return container


_container: Optional[Container] = None


def get_container() -> Container:
    """Process-wide container, built on first use."""
    global _container
    if _container is None:
        _container = build_container()
    return _container


async def close_container() -> None:
    global _container
    if _container is not None:
        await _container.close()
        _container = None
