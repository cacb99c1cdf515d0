"""Payment gateway port and typed remote payloads.

Defines the contract every gateway adapter implements, so the pipeline can
run against the Razorpay adapter in production and the in-memory fake in
development and tests. Remote responses are parsed into a tagged union of
the fields the pipeline actually consumes; anything else is dropped.
"""
from abc import ABC, abstractmethod
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from orderflow.core.errors import GatewayUnavailable


class GatewayCard(BaseModel):
    """Card details reported by the gateway."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    last4: Optional[str] = None
    network: Optional[str] = None
    country: Optional[str] = None
    international: bool = False


class GatewayOrder(BaseModel):
    """Remote order created before checkout."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    amount: int = Field(ge=0)
    currency: str
    receipt: Optional[str] = None
    status: Optional[str] = None


class _GatewayPaymentBase(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    order_id: Optional[str] = None
    amount: int = Field(ge=0)
    currency: str
    method: Optional[str] = None
    email: Optional[str] = None
    contact: Optional[str] = None
    card: Optional[GatewayCard] = None


class CapturedPayment(_GatewayPaymentBase):
    status: Literal["captured"]


class AuthorizedPayment(_GatewayPaymentBase):
    status: Literal["authorized"]


class FailedPayment(_GatewayPaymentBase):
    status: Literal["failed"]
    error_code: Optional[str] = None
    error_description: Optional[str] = None
    error_reason: Optional[str] = None


class CreatedPayment(_GatewayPaymentBase):
    status: Literal["created"]


class RefundedPayment(_GatewayPaymentBase):
    status: Literal["refunded"]
    amount_refunded: int = 0


GatewayPayment = Annotated[
    Union[CapturedPayment, AuthorizedPayment, FailedPayment, CreatedPayment, RefundedPayment],
    Field(discriminator="status"),
]

_payment_adapter: TypeAdapter[Any] = TypeAdapter(GatewayPayment)


def parse_gateway_payment(raw: Dict[str, Any]) -> GatewayPayment:
    """
    Validate a raw payment payload.

    Raises:
        GatewayUnavailable: If the payload is malformed or has an unknown status
    """
    try:
        return _payment_adapter.validate_python(raw)
    except PydanticValidationError as e:
        raise GatewayUnavailable(
            "Malformed gateway payment payload",
            details={"errors": e.errors(include_url=False, include_input=False)},
        ) from e


def parse_gateway_order(raw: Dict[str, Any]) -> GatewayOrder:
    try:
        return GatewayOrder.model_validate(raw)
    except PydanticValidationError as e:
        raise GatewayUnavailable(
            "Malformed gateway order payload",
            details={"errors": e.errors(include_url=False, include_input=False)},
        ) from e


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    name: str = "gateway"

    @property
    def circuit_state(self) -> str:
        """closed, open or half_open; adapters without a breaker are always closed."""
        return "closed"

    @property
    @abstractmethod
    def key_id(self) -> str:
        """Public key identifier handed to client-side checkout."""
        ...

    @abstractmethod
    async def create_remote_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> GatewayOrder:
        """Create a remote order the client will pay against."""
        ...

    @abstractmethod
    async def fetch_payment(self, gateway_payment_id: str) -> GatewayPayment:
        """Fetch the authoritative state of a payment."""
        ...

    @abstractmethod
    async def fetch_order_payments(self, gateway_order_id: str) -> List[GatewayPayment]:
        """All payment attempts made against a remote order."""
        ...

    async def close(self) -> None:
        """Release network resources. No-op by default."""
        return None


_SETTLEMENT_PREFERENCE = {"captured": 0, "authorized": 1, "refunded": 2, "failed": 3, "created": 4}


def pick_settled_payment(payments: List[GatewayPayment]) -> Optional[GatewayPayment]:
    """Most decisive attempt for an order: a success beats a failure beats an open attempt."""
    if not payments:
        return None
    return min(payments, key=lambda p: _SETTLEMENT_PREFERENCE.get(p.status, len(_SETTLEMENT_PREFERENCE)))
