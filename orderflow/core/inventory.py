"""
Inventory reservation against per-location stock levels.

Both operations run inside the caller's transaction and never commit.
The fast path is a single conditional UPDATE, so two concurrent
reservations can never both consume the same units. When stock is short,
the remaining units are reserved under a row lock and the shortfall is
reported instead of driving available stock negative.
"""
import uuid
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.database.models import InventoryAdjustment, StockLevel
from orderflow.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ReservationResult:
    """Outcome of a reserve or release call."""

    variant_id: uuid.UUID
    location_id: str
    requested: int
    applied: int

    @property
    def shortfall(self) -> int:
        return self.requested - self.applied

    @property
    def oversold(self) -> bool:
        return self.shortfall > 0

    def as_dict(self) -> dict:
        return {
            "variant_id": str(self.variant_id),
            "location_id": self.location_id,
            "requested": self.requested,
            "applied": self.applied,
            "shortfall": self.shortfall,
        }


class InventoryService:
    """Stock lookups plus reserve/release for paid order lines."""

    def __init__(self, default_location_id: str = "default"):
        self.default_location_id = default_location_id

    async def available_quantity(
        self, db: AsyncSession, variant_id: uuid.UUID, location_id: Optional[str] = None
    ) -> int:
        """Available units at the location reservations draw from."""
        available = await db.scalar(
            select(StockLevel.available_quantity).where(
                StockLevel.variant_id == variant_id,
                StockLevel.location_id == (location_id or self.default_location_id),
            )
        )
        return int(available or 0)

    async def _locked_level(
        self, db: AsyncSession, variant_id: uuid.UUID, location_id: str
    ) -> Optional[StockLevel]:
        stmt = (
            select(StockLevel)
            .where(StockLevel.variant_id == variant_id, StockLevel.location_id == location_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    def _record(
        self,
        db: AsyncSession,
        result: ReservationResult,
        adjustment_type: str,
        reason: str,
        reference_id: Optional[str],
    ) -> None:
        db.add(
            InventoryAdjustment(
                variant_id=result.variant_id,
                location_id=result.location_id,
                adjustment_type=adjustment_type,
                requested_quantity=result.requested,
                applied_quantity=result.applied,
                reason=reason,
                reference_id=reference_id,
            )
        )

    async def reserve(
        self,
        db: AsyncSession,
        variant_id: uuid.UUID,
        location_id: Optional[str],
        quantity: int,
        reference_id: Optional[str] = None,
        reason: str = "order_payment",
    ) -> ReservationResult:
        """
        Move units from available to reserved.

        Args:
            db: Session with an open transaction
            variant_id: Variant to reserve
            location_id: Stock location (defaults to the configured one)
            quantity: Units to reserve
            reference_id: Order id or similar for the adjustment log
            reason: Adjustment reason

        Returns:
            ReservationResult: applied < requested means the line is oversold
        """
        location_id = location_id or self.default_location_id
        stmt = (
            update(StockLevel)
            .where(
                StockLevel.variant_id == variant_id,
                StockLevel.location_id == location_id,
                StockLevel.available_quantity >= quantity,
            )
            .values(
                available_quantity=StockLevel.available_quantity - quantity,
                reserved_quantity=StockLevel.reserved_quantity + quantity,
            )
            .execution_options(synchronize_session=False)
        )
        if (await db.execute(stmt)).rowcount == 1:
            applied = quantity
        else:
            level = await self._locked_level(db, variant_id, location_id)
            applied = max(level.available_quantity, 0) if level is not None else 0
            applied = min(applied, quantity)
            if level is not None and applied:
                level.available_quantity -= applied
                level.reserved_quantity += applied
                await db.flush()

        result = ReservationResult(variant_id, location_id, quantity, applied)
        self._record(db, result, "reserve", reason, reference_id)

        if result.oversold:
            metrics.record_oversell(result.shortfall)
            logger.warning("inventory_oversold", reference_id=reference_id, **result.as_dict())
        else:
            logger.info("inventory_reserved", reference_id=reference_id, **result.as_dict())
        return result

    async def release(
        self,
        db: AsyncSession,
        variant_id: uuid.UUID,
        location_id: Optional[str],
        quantity: int,
        reference_id: Optional[str] = None,
        reason: str = "order_cancelled",
    ) -> ReservationResult:
        """
        Move units from reserved back to available.

        Releases at most what is currently reserved.
        """
        location_id = location_id or self.default_location_id
        stmt = (
            update(StockLevel)
            .where(
                StockLevel.variant_id == variant_id,
                StockLevel.location_id == location_id,
                StockLevel.reserved_quantity >= quantity,
            )
            .values(
                available_quantity=StockLevel.available_quantity + quantity,
                reserved_quantity=StockLevel.reserved_quantity - quantity,
            )
            .execution_options(synchronize_session=False)
        )
        if (await db.execute(stmt)).rowcount == 1:
            applied = quantity
        else:
            level = await self._locked_level(db, variant_id, location_id)
            applied = min(level.reserved_quantity, quantity) if level is not None else 0
            if level is not None and applied:
                level.available_quantity += applied
                level.reserved_quantity -= applied
                await db.flush()
            logger.warning(
                "inventory_release_short",
                variant_id=str(variant_id),
                requested=quantity,
                applied=applied,
            )

        result = ReservationResult(variant_id, location_id, quantity, applied)
        self._record(db, result, "release", reason, reference_id)
        logger.info("inventory_released", reference_id=reference_id, **result.as_dict())
        return result
