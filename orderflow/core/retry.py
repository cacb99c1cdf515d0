"""
Batch retry and reconciliation jobs.

Runs on an interval (see workers.payment_retry_worker) or on demand from
the admin API:
- Re-arm orders whose payment failed with a fresh gateway order
- Sync pending payments whose callback never arrived
- Archive failed attempts that no longer matter

Every order or payment is handled in its own session and transaction,
so one bad row never aborts the rest of the batch.
"""
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from orderflow.config import Settings, get_settings
from orderflow.core.errors import InternalError, NotFound, OrderflowError, ValidationError
from orderflow.core.orders import initial_idempotency_key
from orderflow.core.state_machine import OrderStateMachine, ensure_transition
from orderflow.database.models import (
    SUCCESSFUL_PAYMENT_STATUSES,
    Order,
    OrderPaymentStatus,
    OrderStatus,
    Payment,
    PaymentEvent,
    PaymentStatus,
    utcnow,
)
from orderflow.integrations.gateway import PaymentGateway, pick_settled_payment
from orderflow.monitoring.metrics import metrics
from orderflow.monitoring.security_log import SecurityCategory, SecurityLogger

logger = structlog.get_logger(__name__)


class _Skip(Exception):
    """Order is not retryable; the message is reported in the batch result."""


class PaymentRetryService:
    """
    Retry, sync and cleanup jobs for payments.

    Each public method opens its own sessions from the session factory and
    returns a plain dict summary suitable for the admin API.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        state_machine: OrderStateMachine,
        session_factory: async_sessionmaker[AsyncSession],
        security_logger: SecurityLogger,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.gateway = gateway
        self.state_machine = state_machine
        self.session_factory = session_factory
        self.security_logger = security_logger

    # Retry

    async def retry_failed_payments(
        self,
        max_retries: Optional[int] = None,
        retry_delay_minutes: Optional[int] = None,
        batch_size: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Open a new payment attempt for orders whose last payment failed.

        Args:
            max_retries: Attempts allowed after the first one
            retry_delay_minutes: Cooldown since the order last changed
            batch_size: Max orders handled in this run

        Returns:
            Dict[str, Any]: processed/succeeded/failed/skipped counts, errors
            and the new attempts that were created
        """
        max_retries = self.settings.payment_max_retries if max_retries is None else max_retries
        retry_delay_minutes = (
            self.settings.payment_retry_delay_minutes
            if retry_delay_minutes is None
            else retry_delay_minutes
        )
        batch_size = batch_size or self.settings.reconciliation_batch_size
        start_time = time.perf_counter()
        cutoff = utcnow() - timedelta(minutes=retry_delay_minutes)

        async with self.session_factory() as db:
            stmt = (
                select(Order.id)
                .where(
                    Order.status == OrderStatus.PAYMENT_FAILED.value,
                    Order.payment_status == OrderPaymentStatus.FAILED.value,
                    Order.updated_at < cutoff,
                )
                .order_by(Order.updated_at)
                .limit(batch_size)
            )
            order_ids = list((await db.execute(stmt)).scalars())
            await db.commit()

        results: Dict[str, Any] = {
            "processed": 0,
            "succeeded": 0,
            "failed": 0,
            "skipped": 0,
            "errors": [],
            "retried": [],
        }
        logger.info("payment_retry_batch_started", candidates=len(order_ids), cutoff=cutoff.isoformat())

        for order_id in order_ids:
            results["processed"] += 1
            try:
                retried = await self._retry_order(order_id, max_retries, cutoff)
            except _Skip as e:
                results["skipped"] += 1
                results["errors"].append(str(e))
                metrics.record_retry_result("skipped")
                logger.info("payment_retry_skipped", order_id=str(order_id), reason=str(e))
            except OrderflowError as e:
                results["failed"] += 1
                results["errors"].append(f"Order {order_id}: {e.message}")
                metrics.record_retry_result("failed")
                logger.warning("payment_retry_failed", order_id=str(order_id), error=e.message, code=e.code)
            else:
                results["succeeded"] += 1
                results["retried"].append(retried)
                metrics.record_retry_result("succeeded")

        metrics.record_batch_run("retry", time.perf_counter() - start_time)
        logger.info(
            "payment_retry_batch_completed",
            processed=results["processed"],
            succeeded=results["succeeded"],
            failed=results["failed"],
            skipped=results["skipped"],
        )
        return results

    async def _retry_order(self, order_id: uuid.UUID, max_retries: int, cutoff: datetime) -> Dict[str, Any]:
        async with self.session_factory() as db:
            try:
                order = await db.get(Order, order_id, with_for_update=True, populate_existing=True)
                # Re-check under the lock; a callback may have landed since selection
                eligible = await db.execute(
                    select(Order.id).where(
                        Order.id == order_id,
                        Order.status == OrderStatus.PAYMENT_FAILED.value,
                        Order.payment_status == OrderPaymentStatus.FAILED.value,
                        Order.updated_at < cutoff,
                    )
                )
                if order is None or eligible.first() is None:
                    raise _Skip(f"Order {order_id} is no longer eligible for retry")

                stmt = (
                    select(Payment)
                    .where(Payment.order_id == order_id, Payment.status == PaymentStatus.FAILED.value)
                    .order_by(Payment.retry_count.desc(), Payment.created_at.desc())
                    .limit(1)
                )
                previous = (await db.execute(stmt)).scalar_one_or_none()
                if previous is None:
                    raise _Skip(f"No failed payment found for order {order_id}")
                if previous.retry_count >= max_retries:
                    raise _Skip(f"Max retries exceeded for order {order_id}")
                if await self.state_machine.has_successful_payment(db, order_id):
                    raise _Skip(f"Order {order_id} already has a successful payment")

                attempt = previous.retry_count + 1
                remote = await self.gateway.create_remote_order(
                    amount=order.total_amount,
                    currency=order.currency,
                    receipt=f"{order.order_number}-retry-{attempt}",
                    notes={
                        "order_id": str(order.id),
                        "order_number": order.order_number,
                        "retry_count": str(attempt),
                        "original_payment_id": str(previous.id),
                    },
                )

                ensure_transition(OrderStatus(order.status), OrderStatus.PENDING)
                payment = Payment(
                    order_id=order.id,
                    idempotency_key=initial_idempotency_key(order.id, attempt),
                    amount=order.total_amount,
                    currency=order.currency,
                    status=PaymentStatus.PENDING.value,
                    gateway=self.gateway.name,
                    gateway_order_id=remote.id,
                    gateway_response=remote.model_dump(mode="json"),
                    payment_method=previous.payment_method,
                    retry_count=attempt,
                    original_payment_id=previous.id,
                )
                db.add(payment)
                order.status = OrderStatus.PENDING.value
                order.payment_status = OrderPaymentStatus.PENDING.value
                order.updated_at = utcnow()
                await db.flush()

                db.add(
                    PaymentEvent(
                        payment_id=payment.id,
                        order_id=order.id,
                        event_type="payment.retry_created",
                        event_data={
                            "retry_count": attempt,
                            "original_payment_id": str(previous.id),
                            "gateway_order_id": remote.id,
                        },
                        correlation_id=uuid.uuid4(),
                    )
                )
                retried = {
                    "order_id": str(order.id),
                    "order_number": order.order_number,
                    "payment_id": str(payment.id),
                    "gateway_order_id": remote.id,
                    "retry_count": attempt,
                }
                await db.commit()
            except (_Skip, OrderflowError):
                await db.rollback()
                raise
            except Exception as e:
                await db.rollback()
                logger.error("payment_retry_error", order_id=str(order_id), error=str(e), exc_info=True)
                raise InternalError(f"Retry failed for order {order_id}") from e

        logger.info("payment_retry_created", **retried)
        await self.security_logger.info(
            SecurityCategory.PAYMENT,
            "payment_retry_created",
            f"Retry attempt {retried['retry_count']} opened for order {retried['order_number']}",
            order_id=order_id,
            payment_id=uuid.UUID(retried["payment_id"]),
            details=retried,
        )
        return retried

    # Sync

    async def sync_payment_status(self, payment_id: uuid.UUID) -> Dict[str, Any]:
        """
        Re-fetch a pending payment from the gateway and apply what it reports.

        Returns:
            Dict[str, Any]: success, updated, status and message

        Raises:
            NotFound: Unknown payment
            GatewayUnavailable: Gateway unreachable
            IntegrityMismatch: Gateway values disagree with the payment
        """
        async with self.session_factory() as db:
            payment = await db.get(Payment, payment_id)
            if payment is None:
                raise NotFound("Payment not found", details={"payment_id": str(payment_id)})
            status = payment.status
            gateway_order_id = payment.gateway_order_id
            gateway_payment_id = payment.gateway_payment_id
            await db.commit()

            if status != PaymentStatus.PENDING.value:
                return {
                    "success": True,
                    "updated": False,
                    "status": status,
                    "message": "Payment already settled",
                }
            if not gateway_order_id:
                return {
                    "success": False,
                    "updated": False,
                    "status": status,
                    "message": "Payment has no gateway order",
                }

            if gateway_payment_id:
                gateway_payment = await self.gateway.fetch_payment(gateway_payment_id)
            else:
                gateway_payment = pick_settled_payment(
                    await self.gateway.fetch_order_payments(gateway_order_id)
                )
            if gateway_payment is None:
                return {
                    "success": True,
                    "updated": False,
                    "status": status,
                    "message": "No payment attempt at the gateway yet",
                }

            transition = await self.state_machine.apply_gateway_payment(
                db,
                payment_id,
                gateway_payment,
                failed_order_status=OrderStatus.PAYMENT_FAILED,
                correlation_id=uuid.uuid4(),
            )

        logger.info(
            "payment_status_synced",
            payment_id=str(payment_id),
            gateway_status=gateway_payment.status,
            status=transition.status,
        )
        return {
            "success": True,
            "updated": transition.applied,
            "status": transition.payment_status,
            "message": f"Gateway reports {gateway_payment.status}",
        }

    async def sync_stale_payments(
        self,
        older_than_minutes: Optional[int] = None,
        batch_size: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Sync pending payments with a gateway order that are older than the cutoff."""
        older_than_minutes = older_than_minutes or self.settings.stale_payment_minutes
        batch_size = batch_size or self.settings.reconciliation_batch_size
        start_time = time.perf_counter()
        cutoff = utcnow() - timedelta(minutes=older_than_minutes)

        async with self.session_factory() as db:
            stmt = (
                select(Payment.id)
                .where(
                    Payment.status == PaymentStatus.PENDING.value,
                    Payment.gateway_order_id.is_not(None),
                    Payment.created_at < cutoff,
                )
                .order_by(Payment.created_at)
                .limit(batch_size)
            )
            payment_ids = list((await db.execute(stmt)).scalars())
            await db.commit()

        results: Dict[str, Any] = {"processed": 0, "updated": 0, "unchanged": 0, "failed": 0, "errors": []}
        for payment_id in payment_ids:
            results["processed"] += 1
            try:
                synced = await self.sync_payment_status(payment_id)
            except OrderflowError as e:
                results["failed"] += 1
                results["errors"].append(f"Payment {payment_id}: {e.message}")
                logger.warning("payment_sync_failed", payment_id=str(payment_id), error=e.message, code=e.code)
                continue
            if synced["updated"]:
                results["updated"] += 1
            else:
                results["unchanged"] += 1

        metrics.record_batch_run("sync", time.perf_counter() - start_time)
        logger.info(
            "payment_sync_batch_completed",
            processed=results["processed"],
            updated=results["updated"],
            failed=results["failed"],
        )
        return results

    # Cleanup

    async def cleanup_old_failures(
        self,
        days_old: Optional[int] = None,
        batch_size: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Archive failed payments that were superseded or whose order was cancelled.

        Raises:
            ValidationError: If days_old is below the configured minimum
        """
        days_old = self.settings.cleanup_days_old if days_old is None else days_old
        if days_old < self.settings.cleanup_min_days:
            raise ValidationError(
                f"days_old must be at least {self.settings.cleanup_min_days}",
                details={"days_old": days_old},
            )
        batch_size = batch_size or self.settings.reconciliation_batch_size
        start_time = time.perf_counter()
        cutoff = utcnow() - timedelta(days=days_old)
        ensure_transition(PaymentStatus.FAILED, PaymentStatus.ARCHIVED)

        sibling = aliased(Payment)
        superseded = exists().where(
            and_(
                sibling.order_id == Payment.order_id,
                sibling.id != Payment.id,
                sibling.status.in_(SUCCESSFUL_PAYMENT_STATUSES),
            )
        )
        cancelled = exists().where(
            and_(Order.id == Payment.order_id, Order.status == OrderStatus.CANCELLED.value)
        )

        async with self.session_factory() as db:
            try:
                stmt = (
                    select(Payment.id, Payment.order_id)
                    .where(
                        Payment.status == PaymentStatus.FAILED.value,
                        Payment.created_at < cutoff,
                        or_(superseded, cancelled),
                    )
                    .order_by(Payment.created_at)
                    .limit(batch_size)
                )
                rows = (await db.execute(stmt)).all()
                archived: List[str] = []
                if rows:
                    now = utcnow()
                    await db.execute(
                        update(Payment)
                        .where(
                            Payment.id.in_([row.id for row in rows]),
                            Payment.status == PaymentStatus.FAILED.value,
                        )
                        .values(status=PaymentStatus.ARCHIVED.value, archived_at=now, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    correlation_id = uuid.uuid4()
                    for row in rows:
                        db.add(
                            PaymentEvent(
                                payment_id=row.id,
                                order_id=row.order_id,
                                event_type="payment.archived",
                                event_data={"days_old": days_old},
                                correlation_id=correlation_id,
                            )
                        )
                        archived.append(str(row.id))
                await db.commit()
            except Exception as e:
                await db.rollback()
                logger.error("payment_cleanup_error", error=str(e), exc_info=True)
                raise InternalError("Cleanup of old failures failed") from e

        metrics.record_batch_run("cleanup", time.perf_counter() - start_time)
        logger.info("payment_cleanup_completed", cleaned=len(archived), days_old=days_old)
        return {"cleaned": len(archived), "days_old": days_old, "payment_ids": archived}
