"""In-memory payment gateway for development and testing.

Simulates remote orders and payments without network calls. Tests (and
local development without gateway credentials) create orders through the
normal pipeline, then use ``complete_payment`` to play the part of the
customer finishing checkout.
"""
from typing import Any, Dict, List, Optional
from uuid import uuid4

from orderflow.core.errors import GatewayUnavailable, NotFound

from .gateway import GatewayOrder, GatewayPayment, PaymentGateway, parse_gateway_payment


class FakeGateway(PaymentGateway):
    """Configurable fake payment gateway."""

    name = "razorpay"

    def __init__(self, key_id: str = "rzp_test_fake") -> None:
        self._key_id = key_id
        self.orders: Dict[str, GatewayOrder] = {}
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Dict[str, Any]] = []
        self.unavailable = False

    @property
    def key_id(self) -> str:
        return self._key_id

    @property
    def circuit_state(self) -> str:
        return "open" if self.unavailable else "closed"

    def configure(self, unavailable: bool) -> None:
        """Make every call fail with GatewayUnavailable until reconfigured."""
        self.unavailable = unavailable

    def _check_available(self) -> None:
        if self.unavailable:
            raise GatewayUnavailable("Fake gateway configured as unavailable")

    async def create_remote_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> GatewayOrder:
        self.calls.append(
            {
                "method": "create_remote_order",
                "amount": amount,
                "currency": currency,
                "receipt": receipt,
                "notes": notes or {},
            }
        )
        self._check_available()
        order = GatewayOrder(
            id=f"order_{uuid4().hex[:14]}",
            amount=amount,
            currency=currency.upper(),
            receipt=receipt,
            status="created",
        )
        self.orders[order.id] = order
        return order

    def complete_payment(
        self,
        gateway_order_id: str,
        status: str = "captured",
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        **fields: Any,
    ) -> str:
        """
        Record a customer payment against a remote order.

        ``amount``/``currency`` default to the order's; override them to
        simulate a tampered or mismatched payment. Extra fields (email,
        contact, card, method, error_code...) are stored as-is.
        """
        order = self.orders[gateway_order_id]
        payment_id = f"pay_{uuid4().hex[:14]}"
        payload: Dict[str, Any] = {
            "id": payment_id,
            "order_id": gateway_order_id,
            "status": status,
            "amount": order.amount if amount is None else amount,
            "currency": order.currency if currency is None else currency,
            "method": "card",
        }
        payload.update(fields)
        self.payments[payment_id] = payload
        return payment_id

    def set_payment_status(self, gateway_payment_id: str, status: str, **fields: Any) -> None:
        self.payments[gateway_payment_id].update(status=status, **fields)

    async def fetch_payment(self, gateway_payment_id: str) -> GatewayPayment:
        self.calls.append({"method": "fetch_payment", "gateway_payment_id": gateway_payment_id})
        self._check_available()
        raw = self.payments.get(gateway_payment_id)
        if raw is None:
            raise NotFound(f"Unknown gateway payment {gateway_payment_id}")
        return parse_gateway_payment(raw)

    async def fetch_order_payments(self, gateway_order_id: str) -> List[GatewayPayment]:
        self.calls.append({"method": "fetch_order_payments", "gateway_order_id": gateway_order_id})
        self._check_available()
        if gateway_order_id not in self.orders:
            raise NotFound(f"Unknown gateway order {gateway_order_id}")
        return [
            parse_gateway_payment(raw)
            for raw in self.payments.values()
            if raw.get("order_id") == gateway_order_id
        ]
