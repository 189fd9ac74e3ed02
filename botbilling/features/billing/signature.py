"""Webhook signature verification (HMAC-SHA512 over the raw body)."""
import hashlib
import hmac
from typing import Mapping, Optional

SIGNATURE_HEADERS = ("x-signature", "x-paystack-signature")


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Check a webhook signature against the raw request body.

    Must be called on the exact bytes received, before any JSON parsing.
    Returns False (never raises) for a missing header, a missing secret or a
    mismatch.
    """
    if not signature or not secret:
        return False
    expected = compute_signature(body, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().lower().encode("utf-8"))


def signature_from_headers(headers: Mapping[str, str]) -> Optional[str]:
    """Pick the signature header, accepting the processor's native name as an alias."""
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in SIGNATURE_HEADERS:
        value = lowered.get(name)
        if value:
            return value
    return None
