"""Security module - credential encryption and webhook signatures."""

from core.security.encryption import (
    CredentialEncryption,
    EncryptedCredentials,
    generate_encryption_key,
    seal_credentials,
    open_credentials,
)
from core.security.webhook_signatures import (
    SHOPIFY_SIGNATURE_HEADER,
    WOOCOMMERCE_SIGNATURE_HEADER,
    compute_signature,
    verify_signature,
)

__all__ = [
    "CredentialEncryption",
    "EncryptedCredentials",
    "generate_encryption_key",
    "seal_credentials",
    "open_credentials",
    "SHOPIFY_SIGNATURE_HEADER",
    "WOOCOMMERCE_SIGNATURE_HEADER",
    "compute_signature",
    "verify_signature",
]
