"""Credential encryption using AES-GCM.

Store and integration credentials (Shopify access tokens, WooCommerce
consumer keys, ledger API keys, webhook secrets) are kept encrypted at rest.
Uses AES-256-GCM for authenticated encryption with the tenant id as
additional authenticated data.
"""

import base64
import json
import os
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


ENVELOPE_MARKER = "aesgcm:v1"


def generate_encryption_key() -> str:
    """Generate a new 256-bit encryption key.

    Returns:
        Base64-encoded 32-byte key suitable for AES-256
    """
    key = secrets.token_bytes(32)
    return base64.b64encode(key).decode('utf-8')


@dataclass
class EncryptedCredentials:
    """Encrypted credential blob with metadata."""
    ciphertext: str  # Base64-encoded encrypted data (GCM tag included)
    nonce: str       # Base64-encoded 96-bit nonce
    created_at: str
    tenant_id: str   # For tenant isolation
    key_version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format": ENVELOPE_MARKER,
            "ciphertext": self.ciphertext,
            "nonce": self.nonce,
            "created_at": self.created_at,
            "tenant_id": self.tenant_id,
            "key_version": self.key_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptedCredentials":
        return cls(
            ciphertext=data["ciphertext"],
            nonce=data["nonce"],
            created_at=data["created_at"],
            tenant_id=data["tenant_id"],
            key_version=data.get("key_version", 1),
        )


class CredentialEncryption:
    """AES-256-GCM encryption for platform credentials.

    Usage:
        enc = CredentialEncryption(generate_encryption_key())
        encrypted = enc.encrypt({"access_token": "shpat_..."}, tenant_id="t-1")
        creds = enc.decrypt(encrypted)
    """

    def __init__(self, encryption_key: str):
        """Initialize with base64-encoded encryption key.

        Args:
            encryption_key: Base64-encoded 32-byte key (from generate_encryption_key())
        """
        try:
            self._key = base64.b64decode(encryption_key)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid encryption key: {e}")
        if len(self._key) != 32:
            raise ValueError("Invalid encryption key: key must be 32 bytes (256 bits)")

        self._aesgcm = AESGCM(self._key)

    def encrypt(
        self,
        credentials: Dict[str, Any],
        tenant_id: str,
        key_version: int = 1,
    ) -> EncryptedCredentials:
        plaintext = json.dumps(credentials).encode('utf-8')
        nonce = os.urandom(12)
        # Tenant id as AAD: a blob copied to another tenant fails to decrypt
        aad = tenant_id.encode('utf-8')
        ciphertext = self._aesgcm.encrypt(nonce, plaintext, aad)

        return EncryptedCredentials(
            ciphertext=base64.b64encode(ciphertext).decode('utf-8'),
            nonce=base64.b64encode(nonce).decode('utf-8'),
            created_at=datetime.utcnow().isoformat(),
            tenant_id=tenant_id,
            key_version=key_version,
        )

    def decrypt(self, encrypted: EncryptedCredentials) -> Dict[str, Any]:
        """Decrypt credentials.

        Raises:
            ValueError: If decryption fails (wrong key, tampered data, wrong tenant)
        """
        try:
            ciphertext = base64.b64decode(encrypted.ciphertext)
            nonce = base64.b64decode(encrypted.nonce)
            aad = encrypted.tenant_id.encode('utf-8')
            plaintext = self._aesgcm.decrypt(nonce, ciphertext, aad)
        except (InvalidTag, ValueError) as e:
            raise ValueError(f"Credential decryption failed: {e!r}")

        return json.loads(plaintext.decode('utf-8'))


# =============================================================================
# Storage helpers
# =============================================================================

def seal_credentials(
    credentials: Dict[str, Any],
    tenant_id: str,
    encryption_key: Optional[str],
) -> str:
    """Serialize credentials for a database column.

    Without a key the credentials are stored as plain JSON.
    """
    if not encryption_key:
        return json.dumps(credentials)
    encrypted = CredentialEncryption(encryption_key).encrypt(credentials, tenant_id)
    return json.dumps(encrypted.to_dict())


def open_credentials(
    raw: Optional[str],
    tenant_id: str,
    encryption_key: Optional[str],
) -> Dict[str, Any]:
    """Inverse of seal_credentials."""
    if not raw:
        return {}
    data = json.loads(raw)
    if isinstance(data, dict) and data.get("format") == ENVELOPE_MARKER:
        if not encryption_key:
            raise ValueError("Credentials are encrypted but CREDENTIALS_KEY is not set")
        return CredentialEncryption(encryption_key).decrypt(EncryptedCredentials.from_dict(data))
    return data
