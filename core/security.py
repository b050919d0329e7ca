"""
Security utilities for stooge webhook server.
Optional signature verification of inbound webhooks.
"""
from __future__ import annotations

import hmac
import hashlib
from typing import Optional, Tuple

SIGNATURE_HEADER = "X-Hub-Signature-256"
SIGNATURE_PREFIX = "sha256="


def compute_signature(payload_body: bytes, secret: str) -> str:
    """Signature in the format GitHub sends it: ``sha256=<hexdigest>``."""
    digest = hmac.new(secret.encode(), payload_body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_webhook_signature(payload_body: bytes, signature: str, secret: str) -> bool:
    """
    Verify a webhook signature using HMAC-SHA256.

    Args:
        payload_body: Raw request body bytes
        signature: X-Hub-Signature-256 header value
        secret: Shared webhook secret (must be non-empty)

    Returns:
        True if signature is valid, False otherwise
    """
    if not secret or not signature:
        return False

    if not signature.startswith(SIGNATURE_PREFIX):
        return False

    return hmac.compare_digest(signature, compute_signature(payload_body, secret))


def validate_webhook_request(
    payload_body: bytes,
    signature: str,
    secret: Optional[str],
) -> Tuple[bool, Optional[str]]:
    """
    Decide whether a webhook may trigger commands.

    Without a configured secret every request is accepted.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not secret:
        return True, None

    if not signature:
        return False, f"Missing {SIGNATURE_HEADER} header"

    if not verify_webhook_signature(payload_body, signature, secret):
        return False, "Invalid webhook signature"

    return True, None
