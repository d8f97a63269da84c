"""Unit tests for Stripe webhook signature verification."""

from __future__ import annotations

import hashlib
import hmac
import time

import pytest

from ledger_engine.errors import SignatureInvalidError
from ledger_engine.webhooks.signature import StripeSignatureVerifier

SECRET = "whsec_test_secret"
PAYLOAD = b'{"id": "evt_1", "type": "invoice.paid"}'


def sign(payload: bytes, secret: str = SECRET, timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def verifier() -> StripeSignatureVerifier:
    return StripeSignatureVerifier(SECRET, tolerance_seconds=300)


class TestStripeSignatureVerifier:
    def test_valid_signature(self, verifier):
        verifier.verify(PAYLOAD, sign(PAYLOAD))

    def test_missing_header(self, verifier):
        with pytest.raises(SignatureInvalidError, match="Missing"):
            verifier.verify(PAYLOAD, None)

    def test_wrong_secret(self, verifier):
        with pytest.raises(SignatureInvalidError):
            verifier.verify(PAYLOAD, sign(PAYLOAD, secret="whsec_other"))

    def test_tampered_body(self, verifier):
        header = sign(PAYLOAD)
        with pytest.raises(SignatureInvalidError):
            verifier.verify(PAYLOAD.replace(b"evt_1", b"evt_2"), header)

    def test_stale_timestamp(self, verifier):
        header = sign(PAYLOAD, timestamp=int(time.time()) - 3600)
        with pytest.raises(SignatureInvalidError):
            verifier.verify(PAYLOAD, header)

    def test_garbage_header(self, verifier):
        with pytest.raises(SignatureInvalidError):
            verifier.verify(PAYLOAD, "not-a-signature")

    def test_non_utf8_body(self, verifier):
        with pytest.raises(SignatureInvalidError, match="UTF-8"):
            verifier.verify(b"\xff\xfe", "t=1,v1=abc")

    def test_secret_required(self):
        with pytest.raises(ValueError):
            StripeSignatureVerifier("")
