"""
Callback and webhook signature verification.

The payment callback signature is HMAC-SHA256 over
``"{gateway_order_id}|{gateway_payment_id}"`` keyed by the gateway secret,
hex encoded. Webhook bodies are signed the same way with the webhook
secret. Verification fails closed: anything that is not a matching,
well-formed signature raises InvalidSignature.
"""
import hashlib
import hmac
import string
from typing import Any

import structlog

from orderflow.core.errors import InvalidSignature

logger = structlog.get_logger(__name__)

_SIGNATURE_LENGTH = hashlib.sha256().digest_size * 2
_HEX_DIGITS = frozenset(string.hexdigits)


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _is_well_formed(signature: Any) -> bool:
    return (
        isinstance(signature, str)
        and len(signature) == _SIGNATURE_LENGTH
        and all(ch in _HEX_DIGITS for ch in signature)
    )


class SignatureVerifier:
    """Verifies that callbacks and webhooks originate from the gateway."""

    def __init__(self, key_secret: str, webhook_secret: str = ""):
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret

    def generate_payment_signature(self, gateway_order_id: str, gateway_payment_id: str) -> str:
        """Signature the gateway attaches to a successful checkout callback."""
        message = f"{gateway_order_id}|{gateway_payment_id}".encode("utf-8")
        return _hmac_hex(self._key_secret, message)

    def generate_webhook_signature(self, body: bytes) -> str:
        return _hmac_hex(self._webhook_secret, body)

    def verify_payment_signature(
        self, gateway_order_id: Any, gateway_payment_id: Any, signature: Any
    ) -> None:
        """
        Verify a checkout callback signature.

        Args:
            gateway_order_id: Gateway order id from the callback
            gateway_payment_id: Gateway payment id from the callback
            signature: Hex HMAC supplied by the caller

        Raises:
            InvalidSignature: On any mismatch or malformed input
        """
        if not self._key_secret:
            raise InvalidSignature("Gateway secret is not configured")
        if not (isinstance(gateway_order_id, str) and gateway_order_id):
            raise InvalidSignature("Missing gateway order id")
        if not (isinstance(gateway_payment_id, str) and gateway_payment_id):
            raise InvalidSignature("Missing gateway payment id")
        if not _is_well_formed(signature):
            raise InvalidSignature("Malformed signature")

        expected = self.generate_payment_signature(gateway_order_id, gateway_payment_id)
        if not hmac.compare_digest(expected, signature):
            logger.warning(
                "payment_signature_mismatch",
                gateway_order_id=gateway_order_id,
                gateway_payment_id=gateway_payment_id,
            )
            raise InvalidSignature("Signature verification failed")

    def verify_webhook_signature(self, body: bytes, signature: Any) -> None:
        """
        Verify a webhook body signature.

        Raises:
            InvalidSignature: On any mismatch, malformed input or missing secret
        """
        if not self._webhook_secret:
            raise InvalidSignature("Webhook secret is not configured")
        if not isinstance(body, (bytes, bytearray)) or not body:
            raise InvalidSignature("Empty webhook body")
        if not _is_well_formed(signature):
            raise InvalidSignature("Malformed webhook signature")

        expected = self.generate_webhook_signature(bytes(body))
        if not hmac.compare_digest(expected, signature):
            logger.warning("webhook_signature_mismatch")
            raise InvalidSignature("Webhook signature verification failed")
