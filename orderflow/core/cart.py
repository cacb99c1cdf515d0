"""
Anonymous shopping carts keyed by an opaque client token.

Line items snapshot product fields at add time, so later catalog edits
never change what a shopper already has in their cart.
"""
import secrets
import uuid
from datetime import timedelta
from typing import List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.config import PricingConfig, Settings, get_settings
from orderflow.core.errors import InsufficientInventory, NotFound, OrderflowError, ValidationError
from orderflow.core.inventory import InventoryService
from orderflow.database.models import (
    Cart,
    CartItem,
    CartStatus,
    Product,
    ProductVariant,
    utcnow,
)

logger = structlog.get_logger(__name__)

MAX_LINE_QUANTITY = 100


class CartService:
    """Cart lifecycle and line item mutations."""

    def __init__(self, inventory: InventoryService, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.inventory = inventory

    @staticmethod
    def generate_token() -> str:
        return secrets.token_urlsafe(32)

    async def get_active_cart(self, db: AsyncSession, token: Optional[str]) -> Optional[Cart]:
        """Active, unexpired cart for a token. Expired carts are marked abandoned."""
        if not token:
            return None

        now = utcnow()
        await db.execute(
            update(Cart)
            .where(
                Cart.token == token,
                Cart.status == CartStatus.ACTIVE.value,
                Cart.expires_at <= now,
            )
            .values(status=CartStatus.ABANDONED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        stmt = select(Cart).where(
            Cart.token == token,
            Cart.status == CartStatus.ACTIVE.value,
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    async def get_or_create_cart(
        self,
        db: AsyncSession,
        token: Optional[str],
        pricing: Optional[PricingConfig] = None,
    ) -> Cart:
        """Return the caller's active cart, creating one with a fresh token if needed."""
        pricing = pricing or self.settings.pricing_snapshot()
        cart = await self.get_active_cart(db, token)
        if cart is not None:
            await db.commit()
            return cart

        cart = Cart(
            token=self.generate_token(),
            status=CartStatus.ACTIVE.value,
            currency=pricing.currency,
            expires_at=utcnow() + timedelta(days=self.settings.cart_ttl_days),
        )
        db.add(cart)
        await db.commit()
        logger.info("cart_created", cart_id=str(cart.id))
        return cart

    async def get_items(self, db: AsyncSession, cart: Cart) -> List[CartItem]:
        stmt = select(CartItem).where(CartItem.cart_id == cart.id).order_by(CartItem.created_at)
        return list((await db.execute(stmt)).scalars())

    async def get_item_count(self, db: AsyncSession, cart: Cart) -> int:
        """Total units in the cart."""
        total = await db.scalar(
            select(func.coalesce(func.sum(CartItem.quantity), 0)).where(CartItem.cart_id == cart.id)
        )
        return int(total or 0)

    async def _ensure_stock(self, db: AsyncSession, variant: ProductVariant, quantity: int) -> None:
        if not variant.track_inventory:
            return
        available = await self.inventory.available_quantity(db, variant.id)
        if quantity > available:
            raise InsufficientInventory(
                f"Only {available} units available",
                details={
                    "variant_id": str(variant.id),
                    "requested": quantity,
                    "available": available,
                },
            )

    async def _recalculate(self, db: AsyncSession, cart: Cart, pricing: PricingConfig) -> None:
        await db.flush()
        subtotal = await db.scalar(
            select(func.coalesce(func.sum(CartItem.subtotal), 0)).where(CartItem.cart_id == cart.id)
        )
        subtotal = int(subtotal or 0)
        discount = min(cart.discount_amount, subtotal)
        tax = pricing.calculate_tax(subtotal - discount)

        cart.subtotal_amount = subtotal
        cart.discount_amount = discount
        cart.tax_amount = tax
        cart.total_amount = subtotal - discount + tax
        cart.updated_at = utcnow()

    def _ensure_active(self, cart: Cart) -> None:
        if cart.status != CartStatus.ACTIVE.value:
            raise ValidationError("Cart is no longer active", details={"status": cart.status})

    async def _get_line(self, db: AsyncSession, cart: Cart, item_id: uuid.UUID) -> CartItem:
        item = await db.get(CartItem, item_id)
        if item is None or item.cart_id != cart.id:
            raise NotFound("Cart item not found")
        return item

    async def add_item(
        self,
        db: AsyncSession,
        cart: Cart,
        variant_id: uuid.UUID,
        quantity: int = 1,
        pricing: Optional[PricingConfig] = None,
    ) -> CartItem:
        """
        Add a variant to the cart, merging with an existing line.

        Args:
            db: Database session
            cart: Active cart
            variant_id: Variant to add
            quantity: Units to add (>= 1)
            pricing: Pricing snapshot for totals

        Returns:
            CartItem: The new or merged line

        Raises:
            ValidationError: Bad quantity or inactive cart/product
            NotFound: Unknown variant
            InsufficientInventory: Combined quantity exceeds available stock
        """
        pricing = pricing or self.settings.pricing_snapshot()
        if quantity < 1 or quantity > MAX_LINE_QUANTITY:
            raise ValidationError(f"Quantity must be between 1 and {MAX_LINE_QUANTITY}")
        self._ensure_active(cart)

        try:
            variant = await db.get(ProductVariant, variant_id)
            if variant is None:
                raise NotFound("Product variant not found")
            product = await db.get(Product, variant.product_id)
            if product is None or product.status != "active":
                raise ValidationError("Product is not available")

            existing = (
                await db.execute(
                    select(CartItem).where(
                        CartItem.cart_id == cart.id, CartItem.variant_id == variant.id
                    )
                )
            ).scalar_one_or_none()

            new_quantity = quantity + (existing.quantity if existing else 0)
            if new_quantity > MAX_LINE_QUANTITY:
                raise ValidationError(f"Quantity must be between 1 and {MAX_LINE_QUANTITY}")
            await self._ensure_stock(db, variant, new_quantity)

            if existing is not None:
                existing.quantity = new_quantity
                existing.subtotal = existing.price * new_quantity
                item = existing
            else:
                item = CartItem(
                    cart_id=cart.id,
                    variant_id=variant.id,
                    product_id=product.id,
                    product_title=product.title,
                    product_handle=product.handle,
                    product_image=product.image_url,
                    variant_title=variant.title,
                    sku=variant.sku,
                    quantity=new_quantity,
                    price=variant.price,
                    compare_at_price=variant.compare_at_price,
                    subtotal=variant.price * new_quantity,
                )
                db.add(item)

            await self._recalculate(db, cart, pricing)
            await db.commit()
        except OrderflowError:
            await db.rollback()
            raise

        logger.info(
            "cart_item_added",
            cart_id=str(cart.id),
            variant_id=str(variant_id),
            quantity=item.quantity,
        )
        return item

    async def update_item_quantity(
        self,
        db: AsyncSession,
        cart: Cart,
        item_id: uuid.UUID,
        quantity: int,
        pricing: Optional[PricingConfig] = None,
    ) -> Optional[CartItem]:
        """Set a line's quantity. Zero or less removes the line and returns None."""
        pricing = pricing or self.settings.pricing_snapshot()
        if quantity <= 0:
            await self.remove_item(db, cart, item_id, pricing)
            return None
        if quantity > MAX_LINE_QUANTITY:
            raise ValidationError(f"Quantity must be between 1 and {MAX_LINE_QUANTITY}")
        self._ensure_active(cart)

        try:
            item = await self._get_line(db, cart, item_id)
            variant = await db.get(ProductVariant, item.variant_id)
            if variant is None:
                raise NotFound("Product variant not found")
            await self._ensure_stock(db, variant, quantity)

            item.quantity = quantity
            item.subtotal = item.price * quantity
            await self._recalculate(db, cart, pricing)
            await db.commit()
        except OrderflowError:
            await db.rollback()
            raise

        logger.info("cart_item_updated", cart_id=str(cart.id), item_id=str(item_id), quantity=quantity)
        return item

    async def remove_item(
        self,
        db: AsyncSession,
        cart: Cart,
        item_id: uuid.UUID,
        pricing: Optional[PricingConfig] = None,
    ) -> None:
        pricing = pricing or self.settings.pricing_snapshot()
        self._ensure_active(cart)
        try:
            item = await self._get_line(db, cart, item_id)
            await db.delete(item)
            await self._recalculate(db, cart, pricing)
            await db.commit()
        except OrderflowError:
            await db.rollback()
            raise
        logger.info("cart_item_removed", cart_id=str(cart.id), item_id=str(item_id))

    async def clear_cart(
        self, db: AsyncSession, cart: Cart, pricing: Optional[PricingConfig] = None
    ) -> None:
        pricing = pricing or self.settings.pricing_snapshot()
        self._ensure_active(cart)
        for item in await self.get_items(db, cart):
            await db.delete(item)
        await self._recalculate(db, cart, pricing)
        await db.commit()
        logger.info("cart_cleared", cart_id=str(cart.id))
