"""
Payment callback verification pipeline.

Orchestrates the complete verify flow:
1. Verify the callback signature
2. Check idempotency
3. Load the payment (short-circuit if already processed)
4. Fetch the authoritative payment from the gateway
5. Compare gateway values with the stored payment
6. Score fraud risk (block or flag)
7. Apply the transition (payment, order, stock in one transaction)
8. Save the result for idempotency
9. Write the audit entry

Nothing the client sends besides the three gateway identifiers and the
local payment id is trusted; amounts and statuses come from the gateway.
"""
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.config import Settings, get_settings
from orderflow.core.errors import (
    FraudBlocked,
    IntegrityMismatch,
    InvalidSignature,
    NotFound,
    OrderflowError,
)
from orderflow.core.idempotency import IdempotencyStore
from orderflow.core.signature import SignatureVerifier
from orderflow.core.state_machine import (
    ALREADY_PROCESSED,
    OrderStateMachine,
    check_integrity,
)
from orderflow.database.models import (
    SUCCESSFUL_PAYMENT_STATUSES,
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
)
from orderflow.fraud import FraudDetector, RiskAssessment
from orderflow.integrations.gateway import PaymentGateway
from orderflow.monitoring.metrics import metrics
from orderflow.monitoring.security_log import SecurityCategory, SecurityLogger

logger = structlog.get_logger(__name__)

_CACHEABLE_STATUSES = (
    PaymentStatus.CAPTURED.value,
    PaymentStatus.AUTHORIZED.value,
    PaymentStatus.FAILED.value,
)


@dataclass(frozen=True)
class VerificationRequest:
    """Identifiers posted by client checkout after payment."""

    gateway_order_id: str
    gateway_payment_id: str
    signature: str
    payment_id: uuid.UUID
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class PaymentVerifier:
    """
    Verifies payment callbacks and drives the resulting transition.

    Safe under network retries and concurrent duplicates: the idempotency
    store replays stored results, and the state machine's row lock plus
    status compare-and-swap lets exactly one caller reserve stock.
    """

    def __init__(
        self,
        signature_verifier: SignatureVerifier,
        idempotency: IdempotencyStore,
        gateway: PaymentGateway,
        fraud_detector: FraudDetector,
        state_machine: OrderStateMachine,
        security_logger: SecurityLogger,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.signature_verifier = signature_verifier
        self.idempotency = idempotency
        self.gateway = gateway
        self.fraud_detector = fraud_detector
        self.state_machine = state_machine
        self.security_logger = security_logger

    async def verify(self, db: AsyncSession, request: VerificationRequest) -> Dict[str, Any]:
        """
        Verify a payment callback.

        Args:
            db: Database session
            request: Gateway identifiers, signature and local payment id

        Returns:
            Dict[str, Any]: success flag, message, status, ids and risk metadata

        Raises:
            InvalidSignature: Signature did not verify (nothing mutated)
            NotFound: Unknown payment
            IntegrityMismatch: Gateway values disagree with the payment (nothing mutated)
            FraudBlocked: Payment failed by fraud policy
            GatewayUnavailable: Gateway unreachable (nothing mutated, safe to retry)
            InternalError: Transition transaction rolled back
        """
        start_time = time.perf_counter()
        outcome = "error"
        try:
            result = await self._verify(db, request)
            outcome = ALREADY_PROCESSED if result.get("already_processed") else result["status"]
            return result
        except OrderflowError as e:
            outcome = e.code
            raise
        finally:
            metrics.record_verification(outcome, time.perf_counter() - start_time)

    async def _verify(self, db: AsyncSession, request: VerificationRequest) -> Dict[str, Any]:
        correlation_id = uuid.uuid4()
        log = logger.bind(
            correlation_id=str(correlation_id),
            payment_id=str(request.payment_id),
            gateway_payment_id=request.gateway_payment_id,
        )
        log.info("payment_verification_started")

        # Step 1: Signature
        try:
            self.signature_verifier.verify_payment_signature(
                request.gateway_order_id, request.gateway_payment_id, request.signature
            )
        except InvalidSignature as e:
            await self.security_logger.warning(
                SecurityCategory.SIGNATURE,
                "invalid_payment_signature",
                e.message,
                ip_address=request.ip_address,
                details={
                    "gateway_order_id": request.gateway_order_id,
                    "gateway_payment_id": request.gateway_payment_id,
                    "payment_id": str(request.payment_id),
                },
            )
            raise

        # Step 2: Idempotency
        key = IdempotencyStore.verify_key(request.gateway_payment_id)
        cached = await self.idempotency.check(key)
        if cached is not None:
            log.info("payment_verification_replayed")
            if cached.get("error") == FraudBlocked.code:
                raise FraudBlocked(cached["message"], details=cached)
            return cached

        # Step 3: Payment lookup
        payment = await db.get(Payment, request.payment_id)
        if payment is None:
            raise NotFound("Payment record not found")
        payment_id = payment.id
        order_id = payment.order_id

        if payment.gateway_order_id != request.gateway_order_id:
            await self._integrity_failure(
                IntegrityMismatch(
                    "Payment order mismatch",
                    details={
                        "payment_id": str(payment_id),
                        "expected": payment.gateway_order_id,
                        "actual": request.gateway_order_id,
                    },
                ),
                order_id,
                payment_id,
                request,
            )

        order = await db.get(Order, order_id)
        if payment.status != PaymentStatus.PENDING.value or await self.state_machine.has_successful_payment(
            db, order_id, exclude_payment_id=payment_id
        ):
            result = await self.idempotency.save(
                key, self._already_processed(order, payment), self.settings.idempotency_success_ttl
            )
            log.info("payment_verification_already_processed", payment_status=payment.status)
            return result

        # Step 4: Gateway fetch
        gateway_payment = await self.gateway.fetch_payment(request.gateway_payment_id)

        # Step 5: Integrity
        try:
            check_integrity(payment, gateway_payment)
        except IntegrityMismatch as e:
            await self._integrity_failure(e, order_id, payment_id, request)

        # Step 6: Fraud
        assessment = await self.fraud_detector.analyze(
            db, order, payment, gateway_payment, ip_address=request.ip_address
        )
        await self.security_logger.info(
            SecurityCategory.FRAUD,
            "fraud_risk_assessed",
            f"Risk score {assessment.score} ({assessment.level.value})",
            order_id=order_id,
            payment_id=payment_id,
            ip_address=request.ip_address,
            details=assessment.summary(),
        )

        if assessment.should_block:
            await self._block(db, key, order, payment, gateway_payment, assessment, request, correlation_id)

        if assessment.should_flag(self.settings.fraud_high_threshold):
            log.warning(
                "high_risk_payment_flagged",
                risk_score=assessment.score,
                factors=assessment.factors,
            )
            await self.security_logger.warning(
                SecurityCategory.FRAUD,
                "high_risk_payment_flagged",
                "High-risk payment allowed and flagged for review",
                order_id=order_id,
                payment_id=payment_id,
                ip_address=request.ip_address,
                details=assessment.summary(),
            )

        order_number = order.order_number

        # Step 7: Transition
        transition = await self.state_machine.apply_gateway_payment(
            db,
            payment_id,
            gateway_payment,
            assessment=assessment,
            failed_order_status=OrderStatus.FAILED,
            correlation_id=correlation_id,
        )

        if transition.status == ALREADY_PROCESSED:
            result = await self.idempotency.save(
                key, self._already_processed(order, payment), self.settings.idempotency_success_ttl
            )
            return result

        succeeded = transition.status in SUCCESSFUL_PAYMENT_STATUSES
        if succeeded:
            message = "Payment verified successfully"
        elif transition.status == PaymentStatus.FAILED.value:
            message = "Payment failed"
        else:
            message = "Payment not yet completed"

        result = {
            "success": succeeded,
            "message": message,
            "status": transition.status,
            "order_id": str(order_id),
            "order_number": order_number,
            "order_status": transition.order_status,
            "payment_id": str(payment_id),
            "gateway_payment_id": gateway_payment.id,
            "payment_method": gateway_payment.method,
            "amount": gateway_payment.amount,
            "currency": gateway_payment.currency,
            "risk_score": assessment.score,
            "risk_level": assessment.level.value,
        }

        # Step 8: Idempotency (after commit)
        if transition.status in _CACHEABLE_STATUSES:
            await self.idempotency.save(
                key, result, self.settings.idempotency_success_ttl, replace=True
            )

        # Step 9: Audit
        await self.security_logger.info(
            SecurityCategory.PAYMENT,
            "payment_verified",
            message,
            order_id=order_id,
            payment_id=payment_id,
            ip_address=request.ip_address,
            details={
                "status": transition.status,
                "amount": gateway_payment.amount,
                "currency": gateway_payment.currency,
                "payment_method": gateway_payment.method,
                "risk_score": assessment.score,
                "risk_level": assessment.level.value,
            },
        )
        log.info("payment_verification_completed", status=transition.status)
        return result

    @staticmethod
    def _already_processed(order: Order, payment: Payment) -> Dict[str, Any]:
        return {
            "success": payment.status in SUCCESSFUL_PAYMENT_STATUSES,
            "already_processed": True,
            "message": "Payment already processed",
            "status": payment.status,
            "order_id": str(order.id),
            "order_number": order.order_number,
            "order_status": order.status,
            "payment_id": str(payment.id),
            "risk_score": payment.fraud_risk_score,
            "risk_level": payment.fraud_risk_level,
        }

    async def _integrity_failure(
        self,
        error: IntegrityMismatch,
        order_id: uuid.UUID,
        payment_id: uuid.UUID,
        request: VerificationRequest,
    ) -> None:
        await self.security_logger.error(
            SecurityCategory.INTEGRITY,
            "payment_integrity_mismatch",
            error.message,
            order_id=order_id,
            payment_id=payment_id,
            ip_address=request.ip_address,
            details=error.details,
        )
        raise error

    async def _block(
        self,
        db: AsyncSession,
        key: str,
        order: Order,
        payment: Payment,
        gateway_payment: Any,
        assessment: RiskAssessment,
        request: VerificationRequest,
        correlation_id: uuid.UUID,
    ) -> None:
        order_id, payment_id = order.id, payment.id
        await self.state_machine.mark_fraud_blocked(
            db, payment_id, assessment, gateway_payment=gateway_payment, correlation_id=correlation_id
        )
        await self.security_logger.critical(
            SecurityCategory.FRAUD,
            "payment_fraud_blocked",
            "Payment blocked due to suspicious activity",
            order_id=order_id,
            payment_id=payment_id,
            ip_address=request.ip_address,
            details=assessment.summary(),
        )
        fraud_result = {
            "success": False,
            "error": FraudBlocked.code,
            "message": "Payment blocked due to suspicious activity",
            "status": PaymentStatus.FAILED.value,
            "order_id": str(order_id),
            "payment_id": str(payment_id),
            "risk_score": assessment.score,
            "risk_level": assessment.level.value,
        }
        await self.idempotency.save(key, fraud_result, self.settings.idempotency_fraud_ttl)
        raise FraudBlocked(fraud_result["message"], details=fraud_result)
