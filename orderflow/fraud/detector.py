"""
Fraud detection service: history collection plus scoring.
"""
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.config import Settings
from orderflow.database.models import Order, Payment
from orderflow.integrations.gateway import GatewayPayment
from orderflow.monitoring.metrics import metrics

from .history import HistoryCollector
from .models import (
    FraudRules,
    PaymentAttempt,
    Recommendation,
    RiskAssessment,
    RiskLevel,
)
from .risk_scorer import RiskScorer, RuleBasedRiskScorer

logger = structlog.get_logger(__name__)


def rules_from_settings(settings: Settings) -> FraudRules:
    return FraudRules(
        high_threshold=settings.fraud_high_threshold,
        medium_threshold=settings.fraud_medium_threshold,
        block_threshold=settings.fraud_block_threshold,
        domestic_country=settings.fraud_domestic_country,
        ip_blocklist=frozenset(settings.get_ip_blocklist()),
    )


def build_attempt(
    order: Order,
    payment: Payment,
    gateway_payment: GatewayPayment,
    ip_address: Optional[str] = None,
) -> PaymentAttempt:
    """Combine the stored order/payment with what the gateway reported."""
    card = gateway_payment.card
    shipping_country = (order.shipping_address or {}).get("country")
    return PaymentAttempt(
        payment_id=payment.id,
        order_id=order.id,
        amount=payment.amount,
        currency=payment.currency,
        email=order.email,
        phone=order.phone,
        ip_address=ip_address or order.ip_address,
        user_agent=order.user_agent,
        shipping_country=shipping_country,
        gateway_email=gateway_payment.email,
        gateway_contact=gateway_payment.contact,
        method=gateway_payment.method,
        card_last4=card.last4 if card else None,
        card_network=card.network if card else None,
        card_country=card.country if card else None,
        card_international=card.international if card else False,
    )


class FraudDetector:
    """
    Main fraud detection service.

    Orchestrates:
    1. History collection (velocity, failures, IP activity)
    2. Risk scoring through a pluggable scorer

    Never mutates orders or payments. If collection or scoring fails it
    fails open to a medium/flag assessment.
    """

    def __init__(
        self,
        scorer: Optional[RiskScorer] = None,
        history_collector: Optional[HistoryCollector] = None,
    ):
        self.scorer = scorer or RuleBasedRiskScorer()
        self.history_collector = history_collector or HistoryCollector()

    async def analyze(
        self,
        db: AsyncSession,
        order: Order,
        payment: Payment,
        gateway_payment: GatewayPayment,
        ip_address: Optional[str] = None,
    ) -> RiskAssessment:
        attempt = build_attempt(order, payment, gateway_payment, ip_address)
        try:
            history = await self.history_collector.collect(db, attempt)
            assessment = self.scorer.assess(attempt, history)
        except Exception as e:
            logger.error(
                "fraud_analysis_failed",
                payment_id=str(payment.id),
                error=str(e),
                exc_info=True,
            )
            assessment = RiskAssessment(
                payment_id=payment.id,
                order_id=order.id,
                score=50,
                level=RiskLevel.MEDIUM,
                factors=["RISK_CHECK_ERROR"],
                recommendation=Recommendation.FLAG,
            )

        metrics.record_fraud_assessment(
            assessment.level.value, assessment.recommendation.value, assessment.score
        )
        return assessment

