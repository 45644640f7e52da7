"""
Utility functions for webhook authentication.
"""

import hmac
import hashlib
import logging
from typing import Optional

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def verify_hmac_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Verify the X-Hub-Signature-256 header Meta attaches to webhook events.

    Args:
        body: Raw request body bytes
        signature: Header value, "sha256=<hex digest>"
        secret: WHATSAPP_APP_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature:
        logger.info("Missing webhook signature")
        return False

    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Header values may carry arbitrary bytes; compare as bytes so a
    # non-ASCII signature is simply a mismatch
    is_valid = hmac.compare_digest(
        expected_signature.encode("ascii"),
        signature.encode("utf-8", "replace"),
    )
    logger.info(f"Webhook signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def tokens_match(supplied: Optional[str], configured: Optional[str]) -> bool:
    """Exact, constant-time token comparison. An unset secret never matches."""
    if not configured or supplied is None:
        return False
    return hmac.compare_digest(supplied.encode("utf-8"), configured.encode("utf-8"))
