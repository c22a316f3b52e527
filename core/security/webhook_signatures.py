"""Webhook signature verification.

Shopify and WooCommerce both sign webhook deliveries with an HMAC-SHA256 of
the raw request body, base64 encoded. The signature must be checked against
the exact bytes received, before any JSON parsing.
"""

import base64
import hashlib
import hmac
from typing import Optional, Union


SHOPIFY_SIGNATURE_HEADER = "X-Shopify-Hmac-Sha256"
WOOCOMMERCE_SIGNATURE_HEADER = "X-WC-Webhook-Signature"


def compute_signature(raw_body: bytes, secret: Union[str, bytes]) -> str:
    """Base64-encoded HMAC-SHA256 of the body."""
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    digest = hmac.new(secret, raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Constant-time comparison of a delivered signature.

    Returns False when either the signature or the secret is missing.
    """
    if not signature or not secret:
        return False
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8"))
