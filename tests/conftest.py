"""
Pytest configuration and fixtures.

Every test gets its own SQLite database file, a fake gateway and a fully
wired service container. Nothing touches the network.
"""
import os

os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_orderflow")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "test_key_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "test_webhook_secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./orderflow-test.db")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")

import uuid
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional, Tuple

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from orderflow.config import Settings
from orderflow.container import Container, build_container
from orderflow.core.orders import Address, CheckoutResult, CustomerInfo
from orderflow.core.verification import VerificationRequest
from orderflow.database.connection import build_engine, build_session_factory
from orderflow.database.models import Base, Product, ProductVariant, StockLevel
from orderflow.integrations.fake_gateway import FakeGateway

VARIANT_PRICE = 500
INITIAL_STOCK = 5


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without a database")
    config.addinivalue_line("markers", "integration: tests against the SQLite database")
    config.addinivalue_line("markers", "race: concurrent delivery tests")


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        razorpay_key_id="rzp_test_orderflow",
        razorpay_key_secret="test_key_secret",
        razorpay_webhook_secret="test_webhook_secret",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'orderflow.db'}",
        redis_url=None,
        admin_api_key="test-admin-key",
        app_name="orderflow-test",
        app_env="test",
        log_level="DEBUG",
        gateway_max_attempts=3,
        gateway_retry_base_delay=0,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create test engine with a fresh schema."""
    engine = build_engine(test_settings, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway(key_id="rzp_test_orderflow")


@pytest_asyncio.fixture
async def container(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    gateway: FakeGateway,
) -> AsyncGenerator[Container, Any]:
    """Service container wired to the test database and fake gateway."""
    container = build_container(
        settings=test_settings,
        session_factory=session_factory,
        gateway=gateway,
    )
    yield container
    await container.close()


@pytest_asyncio.fixture
async def variant_id(session_factory: async_sessionmaker[AsyncSession]) -> uuid.UUID:
    """Seed one product with a tracked variant priced 500 and 5 units in stock."""
    async with session_factory() as session:
        product = Product(title="Canvas Tote", handle=f"canvas-tote-{uuid.uuid4().hex[:8]}")
        session.add(product)
        await session.flush()
        variant = ProductVariant(
            product_id=product.id,
            title="Natural",
            sku=f"TOTE-{uuid.uuid4().hex[:8]}",
            price=VARIANT_PRICE,
            track_inventory=True,
        )
        session.add(variant)
        await session.flush()
        session.add(
            StockLevel(
                variant_id=variant.id,
                location_id="default",
                available_quantity=INITIAL_STOCK,
                reserved_quantity=0,
            )
        )
        await session.commit()
        return variant.id


@pytest.fixture
def customer() -> CustomerInfo:
    """Sample checkout customer."""
    return CustomerInfo(
        email="Asha.Rao@Example.com",
        phone="+919876543210",
        shipping_address=Address(
            name="Asha Rao",
            line1="12 MG Road",
            city="Bengaluru",
            state="KA",
            postal_code="560001",
        ),
    )


@pytest.fixture
def place_order(
    container: Container, customer: CustomerInfo
) -> Callable[..., Awaitable[CheckoutResult]]:
    """Cart -> checkout helper returning the CheckoutResult."""

    async def _place_order(
        variant_id: uuid.UUID,
        quantity: int = 2,
        shipping_method: str = "standard",
        email: Optional[str] = None,
    ) -> CheckoutResult:
        buyer = customer if email is None else customer.model_copy(update={"email": email})
        async with container.session_factory() as session:
            cart = await container.cart_service.get_or_create_cart(session, None)
            await container.cart_service.add_item(session, cart, variant_id, quantity)
            return await container.order_service.create_order(
                session, cart, buyer, shipping_method, container.settings.pricing_snapshot()
            )

    return _place_order


@pytest.fixture
def pay(
    container: Container, gateway: FakeGateway
) -> Callable[..., Awaitable[VerificationRequest]]:
    """
    Create the payment intent for an order and complete it at the fake gateway.

    Returns a correctly signed VerificationRequest.
    """

    async def _pay(order_id: uuid.UUID, status: str = "captured", **fields: Any) -> VerificationRequest:
        async with container.session_factory() as session:
            intent = await container.intent_service.create_intent(session, order_id)
        gateway_payment_id = gateway.complete_payment(intent.gateway_order_id, status=status, **fields)
        signature = container.verifier.signature_verifier.generate_payment_signature(
            intent.gateway_order_id, gateway_payment_id
        )
        return VerificationRequest(
            gateway_order_id=intent.gateway_order_id,
            gateway_payment_id=gateway_payment_id,
            signature=signature,
            payment_id=uuid.UUID(intent.payment_id),
            ip_address="203.0.113.10",
        )

    return _pay


@pytest.fixture
def stock(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[uuid.UUID], Awaitable[Tuple[int, int]]]:
    """(available, reserved) for a variant at the default location, read fresh."""

    async def _stock(variant_id: uuid.UUID) -> Tuple[int, int]:
        async with session_factory() as session:
            row = (
                await session.execute(
                    select(StockLevel.available_quantity, StockLevel.reserved_quantity).where(
                        StockLevel.variant_id == variant_id,
                        StockLevel.location_id == "default",
                    )
                )
            ).one()
            return row.available_quantity, row.reserved_quantity

    return _stock
