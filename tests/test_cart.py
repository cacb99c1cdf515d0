"""
Tests for cart management.
"""
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import update

from orderflow.container import Container
from orderflow.core.errors import InsufficientInventory, NotFound, ValidationError
from orderflow.database.models import Cart, CartStatus, StockLevel, utcnow


class TestCartService:
    """Test suite for CartService."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_add_item_creates_line_and_totals(
        self, container: Container, variant_id: uuid.UUID
    ) -> None:
        service = container.cart_service
        async with container.session_factory() as session:
            cart = await service.get_or_create_cart(session, None)
            item = await service.add_item(session, cart, variant_id, 2)

            assert item.quantity == 2
            assert item.subtotal == 1000
            assert cart.subtotal_amount == 1000
            assert cart.tax_amount == 180
            assert cart.total_amount == 1180
            assert await service.get_item_count(session, cart) == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_adding_same_variant_merges_lines(
        self, container: Container, variant_id: uuid.UUID
    ) -> None:
        service = container.cart_service
        async with container.session_factory() as session:
            cart = await service.get_or_create_cart(session, None)
            await service.add_item(session, cart, variant_id, 1)
            await service.add_item(session, cart, variant_id, 2)

            items = await service.get_items(session, cart)
            assert len(items) == 1
            assert items[0].quantity == 3

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cannot_add_more_than_available(
        self, container: Container, variant_id: uuid.UUID
    ) -> None:
        service = container.cart_service
        async with container.session_factory() as session:
            cart = await service.get_or_create_cart(session, None)

            with pytest.raises(InsufficientInventory) as exc_info:
                await service.add_item(session, cart, variant_id, 6)

            assert exc_info.value.details["available"] == 5

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stock_elsewhere_does_not_count(
        self, container: Container, variant_id: uuid.UUID
    ) -> None:
        service = container.cart_service
        async with container.session_factory() as session:
            session.add(
                StockLevel(
                    variant_id=variant_id,
                    location_id="warehouse-2",
                    available_quantity=10,
                    reserved_quantity=0,
                )
            )
            await session.commit()
            cart = await service.get_or_create_cart(session, None)

            with pytest.raises(InsufficientInventory) as exc_info:
                await service.add_item(session, cart, variant_id, 6)

            assert exc_info.value.details["available"] == 5

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_quantity_bounds(self, container: Container, variant_id: uuid.UUID) -> None:
        service = container.cart_service
        async with container.session_factory() as session:
            cart = await service.get_or_create_cart(session, None)

            with pytest.raises(ValidationError):
                await service.add_item(session, cart, variant_id, 0)
            with pytest.raises(ValidationError):
                await service.add_item(session, cart, variant_id, 101)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_variant(self, container: Container, variant_id: uuid.UUID) -> None:
        service = container.cart_service
        async with container.session_factory() as session:
            cart = await service.get_or_create_cart(session, None)

            with pytest.raises(NotFound):
                await service.add_item(session, cart, uuid.uuid4(), 1)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_update_and_remove_lines(
        self, container: Container, variant_id: uuid.UUID
    ) -> None:
        service = container.cart_service
        async with container.session_factory() as session:
            cart = await service.get_or_create_cart(session, None)
            item = await service.add_item(session, cart, variant_id, 1)

            updated = await service.update_item_quantity(session, cart, item.id, 4)
            assert updated is not None and updated.quantity == 4
            assert cart.subtotal_amount == 2000

            assert await service.update_item_quantity(session, cart, item.id, 0) is None
            assert await service.get_items(session, cart) == []
            assert cart.total_amount == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_clear_cart(self, container: Container, variant_id: uuid.UUID) -> None:
        service = container.cart_service
        async with container.session_factory() as session:
            cart = await service.get_or_create_cart(session, None)
            await service.add_item(session, cart, variant_id, 2)

            await service.clear_cart(session, cart)

            assert await service.get_item_count(session, cart) == 0
            assert cart.subtotal_amount == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_same_token_returns_same_cart(self, container: Container) -> None:
        service = container.cart_service
        async with container.session_factory() as session:
            cart = await service.get_or_create_cart(session, None)
            again = await service.get_or_create_cart(session, cart.token)

            assert again.id == cart.id

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_expired_cart_is_abandoned(self, container: Container) -> None:
        service = container.cart_service
        async with container.session_factory() as session:
            cart = await service.get_or_create_cart(session, None)
            cart_id, token = cart.id, cart.token
            await session.execute(
                update(Cart).where(Cart.id == cart_id).values(expires_at=utcnow() - timedelta(minutes=1))
            )
            await session.commit()

            assert await service.get_active_cart(session, token) is None
            await session.commit()

        async with container.session_factory() as session:
            stored = await session.get(Cart, cart_id)
            assert stored is not None and stored.status == CartStatus.ABANDONED.value
