"""Encryption of execution context diffs at rest.

The cipher is a pluggable capability so the engine can be exercised with a
no-op implementation. The production cipher uses Fernet symmetric
encryption with a key derived from the FLOWENGINE_SECRETS_KEY environment
variable; key management itself belongs to the deployment.
"""

import base64
import hashlib
import os
from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken

from flowengine.errors import SecretsError


class ContextCipher(Protocol):
    """Encrypts and decrypts serialized context diffs."""

    def encrypt(self, data: bytes) -> bytes: ...

    def decrypt(self, data: bytes) -> bytes: ...


def _derive_fernet_key(key_material: str) -> bytes:
    """Derive a valid Fernet key (32 bytes, base64-encoded)."""
    key_hash = hashlib.sha256(key_material.encode()).digest()
    return base64.urlsafe_b64encode(key_hash)


class FernetCipher:
    """Fernet-backed context cipher."""

    def __init__(self, key_material: str):
        self._fernet = Fernet(_derive_fernet_key(key_material))

    @classmethod
    def from_env(cls) -> "FernetCipher":
        """Build the cipher from FLOWENGINE_SECRETS_KEY.

        If not set, uses a deterministic key based on the database path for
        development.
        """
        key_material = os.environ.get("FLOWENGINE_SECRETS_KEY")

        if not key_material:
            # Development fallback: NOT SECURE FOR PRODUCTION
            db_path = os.environ.get("FLOWENGINE_DATABASE_PATH", "./data/flowengine.db")
            key_material = f"dev-flowengine-key-{db_path}"

        return cls(key_material)

    def encrypt(self, data: bytes) -> bytes:
        return self._fernet.encrypt(data)

    def decrypt(self, data: bytes) -> bytes:
        try:
            return self._fernet.decrypt(data)
        except InvalidToken as e:
            raise SecretsError(f"Failed to decrypt context diff: {e}") from e


class NullCipher:
    """Identity cipher for tests and local tooling."""

    def encrypt(self, data: bytes) -> bytes:
        return data

    def decrypt(self, data: bytes) -> bytes:
        return data


def rotate_encryption_key(
    old_encrypted_values: list[bytes],
    old_key_material: str,
    new_key_material: str,
) -> list[bytes]:
    """Re-encrypt stored diffs with a new key.

    Used when rotating FLOWENGINE_SECRETS_KEY.
    """
    old_fernet = Fernet(_derive_fernet_key(old_key_material))
    new_fernet = Fernet(_derive_fernet_key(new_key_material))

    new_encrypted = []
    for encrypted in old_encrypted_values:
        try:
            plaintext = old_fernet.decrypt(encrypted)
        except InvalidToken as e:
            raise SecretsError(f"Failed to decrypt context diff during rotation: {e}") from e
        new_encrypted.append(new_fernet.encrypt(plaintext))

    return new_encrypted
