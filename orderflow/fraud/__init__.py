"""Payment risk scoring."""
from .detector import FraudDetector, rules_from_settings
from .history import HistoryCollector
from .models import (
    FraudRules,
    PaymentAttempt,
    Recommendation,
    RiskAssessment,
    RiskHistory,
    RiskLevel,
)
from .risk_scorer import RiskScorer, RuleBasedRiskScorer

__all__ = [
    "FraudDetector",
    "FraudRules",
    "HistoryCollector",
    "PaymentAttempt",
    "Recommendation",
    "RiskAssessment",
    "RiskHistory",
    "RiskLevel",
    "RiskScorer",
    "RuleBasedRiskScorer",
    "rules_from_settings",
]
