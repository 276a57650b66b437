"""Shared test helpers for JWS authentication and fixtures."""

from __future__ import annotations

import base64
import json
import time
from typing import TYPE_CHECKING, Any

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from joserfc import jws
from joserfc.jwk import OKPKey

if TYPE_CHECKING:
    from pathlib import Path

AUTH_ISSUER = "bounty-auth-test"


def generate_keypair() -> Ed25519PrivateKey:
    """Generate an Ed25519 signing key for the test auth issuer."""
    return Ed25519PrivateKey.generate()


def write_public_key(private_key: Ed25519PrivateKey, path: Path) -> str:
    """Write the PEM public key next to the test config and return its path."""
    pem = private_key.public_key().public_bytes(Encoding.PEM, PublicFormat.SubjectPublicKeyInfo)
    path.write_bytes(pem)
    return str(path)


def make_jws_token(private_key: Ed25519PrivateKey, payload: dict[str, Any]) -> str:
    """Create a real JWS compact token signed by the given key."""
    raw_private = private_key.private_bytes_raw()
    raw_public = private_key.public_key().public_bytes_raw()
    jwk_dict = {
        "kty": "OKP",
        "crv": "Ed25519",
        "d": base64.urlsafe_b64encode(raw_private).rstrip(b"=").decode(),
        "x": base64.urlsafe_b64encode(raw_public).rstrip(b"=").decode(),
    }
    key = OKPKey.import_key(jwk_dict)
    protected = {"alg": "EdDSA"}
    payload_bytes = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
    return jws.serialize_compact(protected, payload_bytes, key, algorithms=["EdDSA"])


def make_auth_token(
    private_key: Ed25519PrivateKey,
    user_id: str,
    *,
    issuer: str = AUTH_ISSUER,
    expires_in: int = 3600,
) -> str:
    """Create a bearer token for ``user_id``."""
    return make_jws_token(
        private_key,
        {"sub": user_id, "iss": issuer, "exp": int(time.time()) + expires_in},
    )


def auth_headers(private_key: Ed25519PrivateKey, user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_auth_token(private_key, user_id)}"}


def tamper_jws(token: str) -> str:
    """Alter the payload of a JWS after signing (creates invalid signature)."""
    parts = token.split(".")
    payload_bytes = base64.urlsafe_b64decode(parts[1] + "==")
    payload = json.loads(payload_bytes)
    payload["sub"] = "someone-else"
    new_payload = base64.urlsafe_b64encode(json.dumps(payload).encode()).rstrip(b"=").decode()
    return f"{parts[0]}.{new_payload}.{parts[2]}"


def issue_payload(issue_id: str = "I_kwDOissue1") -> dict[str, Any]:
    """Issue sub-document as the frontend sends it."""
    return {
        "id": issue_id,
        "url": "https://github.com/acme/widgets/issues/7",
        "title": "Fix the widget",
        "labels": [{"name": "bug"}],
        "repository": {"url": "https://github.com/acme/widgets"},
    }
