"""
Unit tests for rule-based payment risk scoring.
"""
import uuid
from typing import Any

import pytest

from orderflow.fraud import (
    FraudRules,
    PaymentAttempt,
    Recommendation,
    RiskAssessment,
    RiskHistory,
    RiskLevel,
    RuleBasedRiskScorer,
)


def make_attempt(**overrides: Any) -> PaymentAttempt:
    fields = {
        "payment_id": uuid.uuid4(),
        "order_id": uuid.uuid4(),
        "amount": 118000,
        "currency": "INR",
        "email": "asha.rao@example.com",
        "phone": "+919876543210",
        "ip_address": "49.36.10.20",
        "shipping_country": "IN",
        "gateway_email": "asha.rao@example.com",
        "gateway_contact": "+919876543210",
        "method": "card",
        "card_last4": "1111",
        "card_network": "Visa",
        "card_country": "IN",
    }
    fields.update(overrides)
    return PaymentAttempt(**fields)


class TestRuleBasedRiskScorer:
    """Test suite for RuleBasedRiskScorer."""

    @pytest.mark.unit
    def test_clean_attempt_is_allowed(self) -> None:
        assessment = RuleBasedRiskScorer().assess(make_attempt(), RiskHistory())

        assert assessment.score == 0
        assert assessment.level == RiskLevel.LOW
        assert assessment.recommendation == Recommendation.ALLOW
        assert not assessment.should_block

    @pytest.mark.unit
    def test_identity_mismatches_add_up(self) -> None:
        attempt = make_attempt(
            gateway_email="someone.else@example.com",
            gateway_contact="+919000000000",
        )

        assessment = RuleBasedRiskScorer().assess(attempt, RiskHistory())

        assert "EMAIL_MISMATCH" in assessment.factors
        assert "CONTACT_MISMATCH" in assessment.factors
        assert assessment.score == 25

    @pytest.mark.unit
    def test_disposable_email_and_alias(self) -> None:
        attempt = make_attempt(email="buyer+1@mailinator.com", gateway_email=None)

        assessment = RuleBasedRiskScorer().assess(attempt, RiskHistory())

        assert {"DISPOSABLE_EMAIL", "EMAIL_ALIAS"} <= set(assessment.factors)

    @pytest.mark.unit
    def test_velocity_and_failures_block(self) -> None:
        history = RiskHistory(
            attempts_last_hour=6,
            attempts_last_day=25,
            seconds_since_last_attempt=10,
            failed_payments_recent=6,
        )

        assessment = RuleBasedRiskScorer().assess(make_attempt(), history)

        assert assessment.score == 100
        assert assessment.level == RiskLevel.HIGH
        assert assessment.recommendation == Recommendation.BLOCK
        assert assessment.should_block

    @pytest.mark.unit
    def test_blocklisted_ip(self) -> None:
        rules = FraudRules(ip_blocklist=frozenset({"198.51.100.7"}))

        assessment = RuleBasedRiskScorer(rules).assess(
            make_attempt(ip_address="198.51.100.7"), RiskHistory()
        )

        assert assessment.factors == ["BLOCKLISTED_IP"]
        assert assessment.score == 50
        assert assessment.level == RiskLevel.MEDIUM
        assert assessment.recommendation == Recommendation.FLAG

    @pytest.mark.unit
    def test_card_testing_amount(self) -> None:
        assessment = RuleBasedRiskScorer().assess(make_attempt(amount=99), RiskHistory())

        assert "CARD_TESTING_AMOUNT" in assessment.factors

    @pytest.mark.unit
    def test_amount_far_above_average(self) -> None:
        history = RiskHistory(average_order_amount=10000)

        assessment = RuleBasedRiskScorer().assess(make_attempt(amount=118000), history)

        assert "AMOUNT_10X_AVERAGE" in assessment.factors

    @pytest.mark.unit
    def test_international_card_on_domestic_order(self) -> None:
        attempt = make_attempt(card_international=True, card_country="US")

        assessment = RuleBasedRiskScorer().assess(attempt, RiskHistory())

        assert {"INTERNATIONAL_CARD", "CARD_COUNTRY_MISMATCH"} <= set(assessment.factors)

    @pytest.mark.unit
    def test_missing_ip_is_mild(self) -> None:
        assessment = RuleBasedRiskScorer().assess(make_attempt(ip_address=None), RiskHistory())

        assert assessment.factors == ["NO_IP_ADDRESS"]
        assert assessment.recommendation == Recommendation.ALLOW

    @pytest.mark.unit
    def test_thresholds_are_configurable(self) -> None:
        rules = FraudRules(high_threshold=20, medium_threshold=10, block_threshold=20)
        attempt = make_attempt(gateway_email="other@example.com", gateway_contact="+910000000000")

        assessment = RuleBasedRiskScorer(rules).assess(attempt, RiskHistory())

        assert assessment.should_block

    @pytest.mark.unit
    def test_block_requires_high_level(self) -> None:
        assessment = RiskAssessment(
            payment_id=uuid.uuid4(),
            order_id=uuid.uuid4(),
            score=85,
            level=RiskLevel.MEDIUM,
            recommendation=Recommendation.BLOCK,
        )

        assert not assessment.should_block
        assert assessment.should_flag(60)

    @pytest.mark.unit
    def test_invalid_threshold_rejected(self) -> None:
        with pytest.raises(ValueError):
            FraudRules(block_threshold=150)
