"""
Razorpay REST client with retry logic and error classification.

Implements:
- Exponential backoff for transient errors
- Circuit breaker pattern
- Conversion of every transport/API error into the pipeline taxonomy
"""
import re
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from orderflow.config import Settings, get_settings
from orderflow.core.errors import GatewayUnavailable, NotFound, ValidationError
from orderflow.monitoring.metrics import metrics

from .gateway import (
    GatewayOrder,
    GatewayPayment,
    PaymentGateway,
    parse_gateway_order,
    parse_gateway_payment,
)

logger = structlog.get_logger(__name__)

_GATEWAY_ID = re.compile(r"^[A-Za-z0-9_]{1,64}$")
_MAX_RECEIPT_LENGTH = 40


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class GatewayCallError(Exception):
    """Classified failure of a single gateway call. Never leaves this module."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code
        self.original_error = original_error


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, GatewayCallError) and error.error_type != GatewayErrorType.PERMANENT


class CircuitBreaker:
    """
    Circuit breaker for gateway API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold. Permanent (4xx) errors do not count
    as failures.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[[], Awaitable[Any]]) -> Any:
        """
        Await func with circuit breaker protection.

        Raises:
            GatewayCallError: If circuit is open
        """
        if self.state == "open":
            if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
                self.state = "half_open"
                self.success_count = 0
                metrics.set_circuit_breaker_state(self.state)
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayCallError("Circuit breaker is open", GatewayErrorType.TRANSIENT)

        try:
            result = await func()
        except GatewayCallError as e:
            if e.error_type == GatewayErrorType.PERMANENT:
                self.on_success()
            else:
                self.on_failure()
            raise
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                metrics.set_circuit_breaker_state(self.state)
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self.state = "open"
            metrics.set_circuit_breaker_state(self.state)
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)


class RazorpayGateway(PaymentGateway):
    """
    Razorpay adapter over the v1 REST API.

    Features:
    - Automatic retry with exponential backoff on transient errors
    - Circuit breaker pattern
    - Typed payload parsing
    """

    name = "razorpay"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize gateway client.

        Args:
            settings: Optional settings override
            http_client: Optional preconfigured httpx client (tests inject a mock transport)
        """
        self.settings = settings or get_settings()
        self.http_client = http_client or httpx.AsyncClient(
            base_url=self.settings.razorpay_api_base,
            auth=(self.settings.razorpay_key_id, self.settings.razorpay_key_secret),
            timeout=self.settings.gateway_timeout_seconds,
        )
        self.circuit_breaker = CircuitBreaker()
        self._retrying = retry(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.settings.gateway_max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.gateway_retry_base_delay,
                min=0,
                max=16,
            ),
            reraise=True,
        )

        logger.info("razorpay_gateway_initialized", test_mode=self.settings.is_test_mode)

    @property
    def circuit_state(self) -> str:
        return self.circuit_breaker.state

    @property
    def key_id(self) -> str:
        return self.settings.razorpay_key_id

    @staticmethod
    def _classify_response(response: httpx.Response) -> GatewayCallError:
        """
        Classify an error response for retry logic.

        Args:
            response: Non-2xx response

        Returns:
            GatewayCallError: Classified error
        """
        try:
            description = response.json().get("error", {}).get("description")
        except ValueError:
            description = None
        message = description or f"Gateway returned HTTP {response.status_code}"

        if response.status_code == 429:
            error_type = GatewayErrorType.RATE_LIMIT
        elif response.status_code >= 500:
            error_type = GatewayErrorType.TRANSIENT
        else:
            error_type = GatewayErrorType.PERMANENT
        return GatewayCallError(message, error_type, status_code=response.status_code)

    async def _request(
        self, operation: str, method: str, path: str, **kwargs: Any
    ) -> Dict[str, Any]:
        """Single HTTP round trip through the circuit breaker."""
        start_time = time.perf_counter()

        async def _send() -> Dict[str, Any]:
            try:
                response = await self.http_client.request(method, path, **kwargs)
            except httpx.HTTPError as e:
                raise GatewayCallError(str(e) or type(e).__name__, GatewayErrorType.TRANSIENT, original_error=e)
            if response.status_code >= 400:
                raise self._classify_response(response)
            try:
                return response.json()
            except ValueError as e:
                raise GatewayCallError(
                    "Gateway returned invalid JSON", GatewayErrorType.TRANSIENT, original_error=e
                )

        try:
            data = await self.circuit_breaker.call(_send)
        except GatewayCallError as e:
            metrics.record_gateway_api_call(operation, "error", time.perf_counter() - start_time)
            metrics.record_gateway_api_error(e.error_type.value)
            logger.error(
                "gateway_api_error",
                operation=operation,
                error_type=e.error_type.value,
                status_code=e.status_code,
                error_message=str(e),
            )
            raise

        metrics.record_gateway_api_call(operation, "success", time.perf_counter() - start_time)
        return data

    async def _call(self, operation: str, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        """Retrying call that surfaces only taxonomy errors."""
        try:
            return await self._retrying(self._request)(operation, method, path, **kwargs)
        except GatewayCallError as e:
            if e.error_type != GatewayErrorType.PERMANENT:
                raise GatewayUnavailable(
                    f"Payment gateway unavailable during {operation}",
                    details={"status_code": e.status_code, "reason": str(e)},
                ) from e
            if e.status_code == 404:
                raise NotFound(f"Gateway resource not found during {operation}") from e
            raise ValidationError(
                f"Gateway rejected {operation}: {e}",
                details={"status_code": e.status_code},
            ) from e

    async def create_remote_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> GatewayOrder:
        """
        Create a gateway order.

        Args:
            amount: Amount in minor units
            currency: 3-letter currency code
            receipt: Merchant reference shown on the gateway dashboard
            notes: Optional string key/values attached to the order

        Returns:
            GatewayOrder: The created remote order

        Raises:
            ValidationError: If the gateway rejects the request
            GatewayUnavailable: If the gateway cannot be reached
        """
        if amount <= 0:
            raise ValidationError("Amount must be positive")

        logger.info("creating_gateway_order", amount=amount, currency=currency, receipt=receipt)
        data = await self._call(
            "create_order",
            "POST",
            "/orders",
            json={
                "amount": amount,
                "currency": currency.upper(),
                "receipt": receipt[:_MAX_RECEIPT_LENGTH],
                "notes": notes or {},
            },
        )
        order = parse_gateway_order(data)
        logger.info("gateway_order_created", gateway_order_id=order.id, amount=order.amount)
        return order

    async def fetch_payment(self, gateway_payment_id: str) -> GatewayPayment:
        """
        Fetch a payment with card details expanded.

        Raises:
            ValidationError: If the id is malformed or rejected
            NotFound: If the gateway does not know the payment
            GatewayUnavailable: If the gateway cannot be reached or returns garbage
        """
        if not isinstance(gateway_payment_id, str) or not _GATEWAY_ID.match(gateway_payment_id):
            raise ValidationError("Malformed gateway payment id")

        logger.info("fetching_gateway_payment", gateway_payment_id=gateway_payment_id)
        data = await self._call(
            "fetch_payment",
            "GET",
            f"/payments/{gateway_payment_id}",
            params={"expand[]": "card"},
        )
        return parse_gateway_payment(data)

    async def fetch_order_payments(self, gateway_order_id: str) -> List[GatewayPayment]:
        """
        List the payments made against a gateway order.

        Raises:
            ValidationError: If the id is malformed
            NotFound: If the gateway does not know the order
            GatewayUnavailable: If the gateway cannot be reached or returns garbage
        """
        if not isinstance(gateway_order_id, str) or not _GATEWAY_ID.match(gateway_order_id):
            raise ValidationError("Malformed gateway order id")

        data = await self._call("fetch_order_payments", "GET", f"/orders/{gateway_order_id}/payments")
        items = data.get("items") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise GatewayUnavailable("Malformed gateway payment collection")
        return [parse_gateway_payment(item) for item in items]

    async def close(self) -> None:
        await self.http_client.aclose()
