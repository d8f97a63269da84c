"""Stripe webhook signature verification."""

from __future__ import annotations

import logging
from typing import Protocol

import stripe

from ledger_engine.errors import SignatureInvalidError

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


class SignatureVerifier(Protocol):
    def verify(self, payload: bytes, signature_header: str | None) -> None:
        """Raise :class:`SignatureInvalidError` unless *payload* is authentic."""
        ...


class StripeSignatureVerifier:
    """Checks the ``Stripe-Signature`` header against the endpoint secret.

    Parameters
    ----------
    secret:
        The webhook endpoint signing secret (``whsec_...``).
    tolerance_seconds:
        Maximum accepted age of the signed timestamp.
    """

    def __init__(self, secret: str, tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS) -> None:
        if not secret:
            raise ValueError("A webhook signing secret is required")
        self._secret = secret
        self._tolerance = tolerance_seconds

    def verify(self, payload: bytes, signature_header: str | None) -> None:
        if not signature_header:
            raise SignatureInvalidError("Missing signature header")
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SignatureInvalidError("Payload is not valid UTF-8") from exc
        try:
            stripe.WebhookSignature.verify_header(body, signature_header, self._secret, self._tolerance)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Webhook signature verification failed: %s", exc)
            raise SignatureInvalidError("Signature verification failed") from exc
