"""Bearer token verification for acting users."""

from __future__ import annotations

import base64
import json
import time
from pathlib import Path
from typing import Any

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import load_pem_public_key
from joserfc import jws
from joserfc.errors import BadSignatureError
from joserfc.jwk import OKPKey

from bounty_board_service.core.exceptions import AuthenticationError


class TokenValidator:
    """
    Verifies EdDSA-signed JWS bearer tokens issued by the auth service.

    A valid token carries ``iss`` equal to the configured issuer, a numeric
    ``exp`` in the future and a non-empty ``sub``, which is the acting user id.
    """

    def __init__(self, public_key: Ed25519PublicKey, issuer: str) -> None:
        self._issuer = issuer
        raw_public = public_key.public_bytes_raw()
        jwk_dict: dict[str, str | list[str]] = {
            "kty": "OKP",
            "crv": "Ed25519",
            "x": base64.urlsafe_b64encode(raw_public).rstrip(b"=").decode(),
        }
        self._key = OKPKey.import_key(jwk_dict)

    @classmethod
    def from_key_file(cls, public_key_path: str, issuer: str) -> TokenValidator:
        """Load the issuer's Ed25519 public key from a PEM file."""
        public_key = load_pem_public_key(Path(public_key_path).read_bytes())
        if not isinstance(public_key, Ed25519PublicKey):
            msg = "Auth public key must be an Ed25519 public key"
            raise ValueError(msg)
        return cls(public_key, issuer)

    def authenticate(self, token: str) -> str:
        """
        Verify a token and return the acting user id.

        Raises:
            AuthenticationError: bad signature, malformed token, wrong issuer,
                expired or missing subject
        """
        try:
            obj = jws.deserialize_compact(token, self._key, algorithms=["EdDSA"])
        except BadSignatureError as exc:
            raise AuthenticationError("Token signature verification failed") from exc
        except Exception as exc:
            raise AuthenticationError("Token is malformed") from exc

        try:
            payload: Any = json.loads(obj.payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise AuthenticationError("Token payload is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise AuthenticationError("Token payload must be a JSON object")

        if payload.get("iss") != self._issuer:
            raise AuthenticationError("Token issuer is not trusted")

        expires_at = payload.get("exp")
        if not isinstance(expires_at, (int, float)) or isinstance(expires_at, bool):
            raise AuthenticationError("Token is missing an expiry")
        if expires_at <= time.time():
            raise AuthenticationError("Token has expired")

        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise AuthenticationError("Token is missing a subject")
        return subject
