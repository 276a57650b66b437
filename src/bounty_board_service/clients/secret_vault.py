"""Envelope encryption for wallet secrets."""

from __future__ import annotations

import base64
import os
from pathlib import Path
from typing import Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from bounty_board_service.core.exceptions import ExternalServiceError
from bounty_board_service.logging import get_logger
from bounty_board_service.models import WalletEnvelope

_KEY_BYTES = 32
_NONCE_BYTES = 12
_TAG_BYTES = 16


class SecretVault(Protocol):
    """Anything that can seal and open wallet secrets."""

    async def encrypt(self, secret: str) -> WalletEnvelope: ...

    async def decrypt(self, envelope: WalletEnvelope) -> str: ...


def _vault_error(message: str) -> ExternalServiceError:
    return ExternalServiceError("SECRET_VAULT_ERROR", message, retryable=False, status_code=500)


class LocalEnvelopeVault:
    """
    AES-256-GCM envelope encryption with a local master key.

    Each secret gets a fresh 32-byte data key. The secret is sealed with the
    data key; the data key is sealed with the master key and stored as
    base64(nonce || ciphertext). Secret ciphertext, IV and auth tag are hex.
    """

    def __init__(self, master_key: bytes) -> None:
        if len(master_key) != _KEY_BYTES:
            msg = "Vault master key must be 32 bytes"
            raise ValueError(msg)
        self._master = AESGCM(master_key)

    @classmethod
    def from_key_file(cls, key_path: str) -> LocalEnvelopeVault:
        """Load the master key, generating and saving a new one if the file is missing."""
        path = Path(key_path)
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(AESGCM.generate_key(bit_length=256))
            get_logger(__name__).info("Generated vault master key", extra={"path": key_path})
        return cls(path.read_bytes())

    async def encrypt(self, secret: str) -> WalletEnvelope:
        data_key = AESGCM.generate_key(bit_length=256)

        key_nonce = os.urandom(_NONCE_BYTES)
        wrapped_key = key_nonce + self._master.encrypt(key_nonce, data_key, None)

        iv = os.urandom(_NONCE_BYTES)
        sealed = AESGCM(data_key).encrypt(iv, secret.encode("utf-8"), None)

        return WalletEnvelope(
            encrypted_dek=base64.b64encode(wrapped_key).decode(),
            encrypted_secret=sealed[:-_TAG_BYTES].hex(),
            iv=iv.hex(),
            auth_tag=sealed[-_TAG_BYTES:].hex(),
        )

    async def decrypt(self, envelope: WalletEnvelope) -> str:
        """
        Open an envelope.

        Raises:
            ExternalServiceError: SECRET_VAULT_ERROR if the envelope is malformed
                or was not sealed under this master key
        """
        try:
            wrapped_key = base64.b64decode(envelope.encrypted_dek, validate=True)
            ciphertext = bytes.fromhex(envelope.encrypted_secret)
            iv = bytes.fromhex(envelope.iv)
            auth_tag = bytes.fromhex(envelope.auth_tag)
        except ValueError as exc:
            raise _vault_error("Wallet envelope is malformed") from exc

        try:
            data_key = self._master.decrypt(
                wrapped_key[:_NONCE_BYTES], wrapped_key[_NONCE_BYTES:], None
            )
        except (InvalidTag, ValueError) as exc:
            raise _vault_error("Failed to decrypt data key") from exc

        try:
            plaintext = AESGCM(data_key).decrypt(iv, ciphertext + auth_tag, None)
        except (InvalidTag, ValueError) as exc:
            raise _vault_error("Failed to decrypt wallet secret") from exc
        return plaintext.decode("utf-8")
