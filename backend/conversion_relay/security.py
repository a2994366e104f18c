"""Credential vault: symmetric encryption for provider credentials at rest.

WHAT:
    AES-256-GCM wrapper that turns a credential dict into the opaque blob
    stored in `integrations.credentials`, and back.

WHY:
    - Keeps Meta/Google tokens out of plaintext storage
    - The blob layout is a storage format shared with previously written rows:
      nonce (16 bytes) || auth tag (16 bytes) || ciphertext

HOW:
    The key is loaded ONCE at worker/app startup via `CredentialVault.from_env()`
    and passed explicitly to the Integration Directory. A missing key is a
    startup failure, never a per-call error.

    Generate a key with:
        python -c "import secrets; print(secrets.token_hex(32))"
"""

import json
import logging
import os
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from conversion_relay.exceptions import DecryptionError


ENCRYPTION_KEY_ENV = "ENCRYPTION_KEY"
NONCE_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32

logger = logging.getLogger(__name__)


class CredentialVault:
    """Encrypts and decrypts credential objects with a process-wide key.

    Usage:
        ```python
        vault = CredentialVault.from_env()
        blob = vault.encrypt({"pixelId": "123", "accessToken": "EAAB..."})
        creds = vault.decrypt(blob)
        ```
    """

    def __init__(self, key: bytes):
        if len(key) != KEY_LENGTH:
            raise RuntimeError(f"{ENCRYPTION_KEY_ENV} must decode to {KEY_LENGTH} bytes (got {len(key)}).")
        self._aead = AESGCM(key)

    @classmethod
    def from_env(cls, env_var: str = ENCRYPTION_KEY_ENV) -> "CredentialVault":
        """Build the vault from a hex-encoded key in the environment.

        Raises:
            RuntimeError: If the key is missing or not 64 hex characters
        """
        from conversion_relay.utils.env import require_env

        raw_key = require_env(env_var)
        try:
            key = bytes.fromhex(raw_key.strip())
        except ValueError as exc:
            raise RuntimeError(
                f"{env_var} must be a hex-encoded 32-byte key. "
                "Generate with: python -c \"import secrets; print(secrets.token_hex(32))\""
            ) from exc
        return cls(key)

    def encrypt(self, data: Dict[str, Any], *, context: Optional[str] = None) -> bytes:
        """Serialize and encrypt a credential object.

        Args:
            data: JSON-serializable credential dict
            context: Friendly label for logs (e.g. integration id)

        Returns:
            nonce || tag || ciphertext
        """
        plaintext = json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")
        nonce = os.urandom(NONCE_LENGTH)

        # AESGCM appends the tag to the ciphertext; the stored layout puts it first
        sealed = self._aead.encrypt(nonce, plaintext, None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

        logger.debug("[VAULT] Credentials encrypted for %s", context or "unknown")
        return nonce + tag + ciphertext

    def decrypt(self, blob: bytes, *, context: Optional[str] = None) -> Dict[str, Any]:
        """Verify and decrypt a stored credential blob.

        Args:
            blob: Bytes as produced by `encrypt`
            context: Friendly label for logs (e.g. integration id)

        Returns:
            The credential dict

        Raises:
            DecryptionError: If the blob is truncated, tampered with, encrypted
                under another key, or does not hold a JSON object
        """
        blob = bytes(blob or b"")
        if len(blob) < NONCE_LENGTH + TAG_LENGTH:
            logger.error("[VAULT] Credential blob too short for %s", context or "unknown")
            raise DecryptionError("Credential blob is truncated.")

        nonce = blob[:NONCE_LENGTH]
        tag = blob[NONCE_LENGTH:NONCE_LENGTH + TAG_LENGTH]
        ciphertext = blob[NONCE_LENGTH + TAG_LENGTH:]

        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            logger.error("[VAULT] Authentication tag mismatch for %s", context or "unknown")
            raise DecryptionError("Unable to decrypt stored credentials.") from exc

        try:
            data = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.error("[VAULT] Decrypted credentials are not valid JSON for %s", context or "unknown")
            # Do not chain: the decode error message can quote plaintext
            raise DecryptionError("Stored credentials are not a JSON object.") from None

        if not isinstance(data, dict):
            logger.error("[VAULT] Decrypted credentials are not an object for %s", context or "unknown")
            raise DecryptionError("Stored credentials are not a JSON object.")

        return data
