"""
Data models for payment risk assessment.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from orderflow.database.models import utcnow


class RiskLevel(str, Enum):
    """Categorical risk bucket."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Recommendation(str, Enum):
    """What the pipeline should do with the payment."""
    ALLOW = "allow"
    FLAG = "flag"
    BLOCK = "block"


class PaymentAttempt(BaseModel):
    """The payment being verified, with gateway-reported details."""
    payment_id: uuid.UUID
    order_id: uuid.UUID
    amount: int = Field(gt=0, description="Amount in minor units")
    currency: str
    email: str
    phone: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    shipping_country: Optional[str] = None
    gateway_email: Optional[str] = None
    gateway_contact: Optional[str] = None
    method: Optional[str] = None
    card_last4: Optional[str] = None
    card_network: Optional[str] = None
    card_country: Optional[str] = None
    card_international: bool = False


class RiskHistory(BaseModel):
    """Recent activity related to the attempt, gathered from the database."""
    average_order_amount: Optional[int] = None
    attempts_last_hour: int = 0
    attempts_last_day: int = 0
    seconds_since_last_attempt: Optional[float] = None
    failed_payments_recent: int = 0
    ip_attempts_last_hour: int = 0
    distinct_emails_from_ip: int = 0
    distinct_cards_last_day: int = 0


class FraudRules(BaseModel):
    """Thresholds and lists that drive the rule-based scorer."""
    model_config = ConfigDict(frozen=True)

    high_threshold: int = 60
    medium_threshold: int = 30
    block_threshold: int = 80
    flag_threshold: int = 30
    domestic_country: str = "IN"
    ip_blocklist: FrozenSet[str] = frozenset()
    disposable_domains: FrozenSet[str] = frozenset(
        {
            "tempmail.com",
            "throwaway.email",
            "guerrillamail.com",
            "mailinator.com",
            "10minutemail.com",
            "temp-mail.org",
            "fakeinbox.com",
            "trashmail.com",
            "yopmail.com",
        }
    )

    @field_validator("high_threshold", "medium_threshold", "block_threshold", "flag_threshold")
    @classmethod
    def validate_threshold(cls, v: int) -> int:
        if not 0 <= v <= 100:
            raise ValueError("Threshold must be between 0 and 100")
        return v


class RiskAssessment(BaseModel):
    """Result of scoring one payment attempt."""
    payment_id: uuid.UUID
    order_id: uuid.UUID
    score: int = Field(ge=0, le=100, description="Overall risk score 0-100")
    level: RiskLevel
    factors: List[str] = Field(default_factory=list)
    recommendation: Recommendation
    assessed_at: datetime = Field(default_factory=utcnow)

    @property
    def should_block(self) -> bool:
        """Blocked only when the level is high and the scorer recommends it."""
        return self.level == RiskLevel.HIGH and self.recommendation == Recommendation.BLOCK

    def should_flag(self, high_threshold: int = 60) -> bool:
        return self.level == RiskLevel.HIGH or self.score >= high_threshold

    def summary(self) -> dict:
        """JSON-safe form for the audit log."""
        return {
            "score": self.score,
            "level": self.level.value,
            "recommendation": self.recommendation.value,
            "factors": list(self.factors),
        }
