"""
Collects recent activity for a payment attempt from the database.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.database.models import (
    Order,
    OrderPaymentStatus,
    Payment,
    PaymentStatus,
    utcnow,
)

from .models import PaymentAttempt, RiskHistory

logger = structlog.get_logger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class HistoryCollector:
    """
    Gathers velocity and history signals keyed by email and IP.

    The current payment and order are excluded from every count.
    """

    def __init__(self, failure_window_days: int = 30):
        self.failure_window = timedelta(days=failure_window_days)

    async def collect(self, db: AsyncSession, attempt: PaymentAttempt) -> RiskHistory:
        now = utcnow()
        hour_ago = now - timedelta(hours=1)
        day_ago = now - timedelta(days=1)
        email = attempt.email.strip().lower()

        payments_for_email = (
            select(func.count(Payment.id))
            .join(Order, Order.id == Payment.order_id)
            .where(func.lower(Order.email) == email, Payment.id != attempt.payment_id)
        )

        attempts_last_hour = await db.scalar(
            payments_for_email.where(Payment.created_at >= hour_ago)
        )
        attempts_last_day = await db.scalar(
            payments_for_email.where(Payment.created_at >= day_ago)
        )
        failed_recent = await db.scalar(
            payments_for_email.where(
                Payment.status == PaymentStatus.FAILED.value,
                Payment.created_at >= now - self.failure_window,
            )
        )

        last_attempt_at = await db.scalar(
            select(func.max(Payment.created_at))
            .join(Order, Order.id == Payment.order_id)
            .where(func.lower(Order.email) == email, Payment.id != attempt.payment_id)
        )
        last_attempt_at = _as_utc(last_attempt_at)
        seconds_since_last = (
            (now - last_attempt_at).total_seconds() if last_attempt_at is not None else None
        )

        average = await db.scalar(
            select(func.avg(Order.total_amount)).where(
                func.lower(Order.email) == email,
                Order.payment_status == OrderPaymentStatus.PAID.value,
                Order.id != attempt.order_id,
            )
        )

        distinct_cards = await db.scalar(
            select(func.count(distinct(Payment.card_last4)))
            .join(Order, Order.id == Payment.order_id)
            .where(
                func.lower(Order.email) == email,
                Payment.card_last4.is_not(None),
                Payment.created_at >= day_ago,
            )
        )

        ip_attempts = 0
        emails_from_ip = 0
        if attempt.ip_address:
            ip_attempts = await db.scalar(
                select(func.count(Order.id)).where(
                    Order.ip_address == attempt.ip_address,
                    Order.created_at >= hour_ago,
                    Order.id != attempt.order_id,
                )
            )
            emails_from_ip = await db.scalar(
                select(func.count(distinct(func.lower(Order.email)))).where(
                    Order.ip_address == attempt.ip_address,
                    Order.created_at >= day_ago,
                )
            )

        history = RiskHistory(
            average_order_amount=int(round(average)) if average is not None else None,
            attempts_last_hour=attempts_last_hour or 0,
            attempts_last_day=attempts_last_day or 0,
            seconds_since_last_attempt=seconds_since_last,
            failed_payments_recent=failed_recent or 0,
            ip_attempts_last_hour=ip_attempts or 0,
            distinct_emails_from_ip=emails_from_ip or 0,
            distinct_cards_last_day=distinct_cards or 0,
        )
        logger.debug("risk_history_collected", payment_id=str(attempt.payment_id), **history.model_dump())
        return history
