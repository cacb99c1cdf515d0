"""
Error taxonomy shared by every pipeline component.

Gateway and transport failures are converted into these types at the
adapter boundary, so callers never see raw network exceptions.
"""
from typing import Any, Dict, Optional


class OrderflowError(Exception):
    """Base exception for order/payment pipeline errors."""

    code = "orderflow_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize pipeline error.

        Args:
            message: Human readable message
            details: Optional structured context for logs and admin responses
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(OrderflowError):
    """Malformed or unacceptable input."""

    code = "validation_error"


class InvalidTransition(ValidationError):
    """Requested status change is not allowed by the state machine."""

    code = "invalid_transition"


class EmptyCart(ValidationError):
    """Checkout attempted on a cart without items."""

    code = "empty_cart"


class NotFound(OrderflowError):
    """Unknown cart, order, payment or variant."""

    code = "not_found"


class AlreadyProcessed(OrderflowError):
    """Idempotent no-op: the work was already done."""

    code = "already_processed"


class InvalidSignature(OrderflowError):
    """Callback or webhook signature did not verify."""

    code = "invalid_signature"


class IntegrityMismatch(OrderflowError):
    """Gateway-reported values disagree with the stored payment."""

    code = "integrity_mismatch"


class FraudBlocked(OrderflowError):
    """Payment rejected by the fraud policy."""

    code = "fraud_detected"


class GatewayUnavailable(OrderflowError):
    """Transient gateway failure. Safe to retry, nothing was mutated."""

    code = "gateway_unavailable"


class InsufficientInventory(OrderflowError):
    """Requested quantity exceeds available stock."""

    code = "insufficient_inventory"


class InternalError(OrderflowError):
    """Unexpected failure inside a transaction. The transaction was rolled back."""

    code = "internal_error"
