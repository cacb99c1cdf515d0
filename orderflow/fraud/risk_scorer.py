"""
Rule-based payment risk scoring.

Each rule group returns (points, factors); the total is capped at 100
and bucketed into a level and a recommendation. Scoring is pure: it only
reads the attempt and the supplied history.
"""
import ipaddress
from typing import List, Protocol, Tuple

import structlog

from .models import (
    FraudRules,
    PaymentAttempt,
    Recommendation,
    RiskAssessment,
    RiskHistory,
    RiskLevel,
)

logger = structlog.get_logger(__name__)

MAX_SCORE = 100


class RiskScorer(Protocol):
    """Anything that can turn an attempt and its history into an assessment."""

    def assess(self, attempt: PaymentAttempt, history: RiskHistory) -> RiskAssessment:
        ...


class RuleBasedRiskScorer:
    """
    Additive rule scorer.
    Each triggered rule contributes points and a factor code.
    """

    def __init__(self, rules: FraudRules | None = None):
        self.rules = rules or FraudRules()

    def assess(self, attempt: PaymentAttempt, history: RiskHistory) -> RiskAssessment:
        """
        Score a payment attempt.

        Returns RiskAssessment with:
        - score (0-100)
        - level (low/medium/high)
        - factors that fired
        - recommendation (allow/flag/block)
        """
        score = 0
        factors: List[str] = []

        for rule in (
            self._score_amount,
            self._score_velocity,
            self._score_identity,
            self._score_card,
            self._score_ip,
            self._score_history,
        ):
            points, fired = rule(attempt, history)
            score += points
            factors.extend(fired)

        score = min(score, MAX_SCORE)
        level = self._level_for(score)
        recommendation = self._recommend(score)

        logger.info(
            "risk_score_calculated",
            payment_id=str(attempt.payment_id),
            score=score,
            level=level.value,
            recommendation=recommendation.value,
            factors=factors,
        )

        return RiskAssessment(
            payment_id=attempt.payment_id,
            order_id=attempt.order_id,
            score=score,
            level=level,
            factors=factors,
            recommendation=recommendation,
        )

    def _level_for(self, score: int) -> RiskLevel:
        if score >= self.rules.high_threshold:
            return RiskLevel.HIGH
        if score >= self.rules.medium_threshold:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def _recommend(self, score: int) -> Recommendation:
        if score >= self.rules.block_threshold:
            return Recommendation.BLOCK
        if score >= self.rules.flag_threshold:
            return Recommendation.FLAG
        return Recommendation.ALLOW

    def _score_amount(
        self, attempt: PaymentAttempt, history: RiskHistory
    ) -> Tuple[int, List[str]]:
        """Amount anomalies against the customer's history and absolute limits."""
        points = 0
        factors = []
        amount = attempt.amount

        average = history.average_order_amount
        if average:
            if amount > average * 10:
                points += 25
                factors.append("AMOUNT_10X_AVERAGE")
            elif amount > average * 5:
                points += 15
                factors.append("AMOUNT_5X_AVERAGE")

        if amount % 100000 == 0 and amount > 500000:
            points += 10
            factors.append("ROUND_AMOUNT")

        if amount > 10_000_000:
            points += 20
            factors.append("VERY_HIGH_AMOUNT")
        elif amount > 5_000_000:
            points += 10
            factors.append("HIGH_AMOUNT")

        if amount < 100:
            points += 15
            factors.append("CARD_TESTING_AMOUNT")

        return points, factors

    def _score_velocity(
        self, attempt: PaymentAttempt, history: RiskHistory
    ) -> Tuple[int, List[str]]:
        """Repeated attempts from the same email or IP."""
        points = 0
        factors = []

        if history.attempts_last_hour > 5:
            points += 30
            factors.append(f"HIGH_VELOCITY_1H:{history.attempts_last_hour}")
        elif history.attempts_last_hour > 2:
            points += 15
            factors.append(f"ELEVATED_VELOCITY_1H:{history.attempts_last_hour}")

        if history.attempts_last_day > 20:
            points += 25
            factors.append(f"HIGH_VELOCITY_24H:{history.attempts_last_day}")
        elif history.attempts_last_day > 10:
            points += 15
            factors.append(f"ELEVATED_VELOCITY_24H:{history.attempts_last_day}")

        gap = history.seconds_since_last_attempt
        if gap is not None and gap < 60:
            points += 20
            factors.append("RAPID_SUCCESSION")

        if history.ip_attempts_last_hour > 10:
            points += 20
            factors.append(f"IP_VELOCITY_1H:{history.ip_attempts_last_hour}")

        return points, factors

    def _score_identity(
        self, attempt: PaymentAttempt, history: RiskHistory
    ) -> Tuple[int, List[str]]:
        """Email and contact mismatches, disposable addresses."""
        points = 0
        factors = []
        email = attempt.email.strip().lower()

        if attempt.gateway_email and attempt.gateway_email.strip().lower() != email:
            points += 15
            factors.append("EMAIL_MISMATCH")

        if attempt.gateway_contact and attempt.phone:
            if _digits(attempt.gateway_contact)[-10:] != _digits(attempt.phone)[-10:]:
                points += 10
                factors.append("CONTACT_MISMATCH")

        local, _, domain = email.partition("@")
        if domain in self.rules.disposable_domains:
            points += 20
            factors.append("DISPOSABLE_EMAIL")
        if "+" in local:
            points += 5
            factors.append("EMAIL_ALIAS")

        if history.distinct_emails_from_ip > 3:
            points += 15
            factors.append(f"MANY_EMAILS_FROM_IP:{history.distinct_emails_from_ip}")

        return points, factors

    def _score_card(
        self, attempt: PaymentAttempt, history: RiskHistory
    ) -> Tuple[int, List[str]]:
        """Card issuing country heuristics and card cycling."""
        points = 0
        factors = []
        domestic = self.rules.domestic_country.upper()

        if attempt.card_international and (attempt.shipping_country or domestic).upper() == domestic:
            points += 15
            factors.append("INTERNATIONAL_CARD")

        if (
            attempt.card_country
            and attempt.shipping_country
            and attempt.card_country.upper() != attempt.shipping_country.upper()
        ):
            points += 10
            factors.append("CARD_COUNTRY_MISMATCH")

        if history.distinct_cards_last_day > 3:
            points += 15
            factors.append(f"MULTIPLE_CARDS:{history.distinct_cards_last_day}")

        return points, factors

    def _score_ip(
        self, attempt: PaymentAttempt, history: RiskHistory
    ) -> Tuple[int, List[str]]:
        """IP reputation."""
        if not attempt.ip_address:
            return 5, ["NO_IP_ADDRESS"]

        if attempt.ip_address in self.rules.ip_blocklist:
            return 50, ["BLOCKLISTED_IP"]

        try:
            ip = ipaddress.ip_address(attempt.ip_address)
        except ValueError:
            return 5, ["INVALID_IP_ADDRESS"]

        if ip.is_private or ip.is_loopback:
            return 5, ["PRIVATE_IP"]
        return 0, []

    def _score_history(
        self, attempt: PaymentAttempt, history: RiskHistory
    ) -> Tuple[int, List[str]]:
        """Recent failed payments for the same customer."""
        failures = history.failed_payments_recent
        if failures > 5:
            return 30, [f"MANY_FAILED_PAYMENTS:{failures}"]
        if failures > 2:
            return 15, [f"FAILED_PAYMENTS:{failures}"]
        return 0, []


def _digits(value: str) -> str:
    return "".join(ch for ch in value if ch.isdigit())
