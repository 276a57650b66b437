"""Shared request validation helpers for routers."""

from __future__ import annotations

import json
from typing import Any, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from bounty_board_service.core.exceptions import AuthenticationError, ServiceError
from bounty_board_service.core.state import get_app_state

ModelT = TypeVar("ModelT", bound=BaseModel)


def _reject_constant(name: str) -> Any:
    msg = f"Unsupported JSON constant: {name}"
    raise ValueError(msg)


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure. NaN and Infinity are rejected."""
    try:
        data = json.loads(raw_body, parse_constant=_reject_constant)
    except ValueError as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


def parse_model(model: type[ModelT], data: dict[str, Any]) -> ModelT:
    """Validate a parsed body against a request model."""
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise ServiceError(
            "VALIDATION_ERROR",
            f"Invalid field '{location}': {first['msg']}" if location else first["msg"],
            400,
            {"fields": sorted({".".join(str(p) for p in e["loc"]) for e in exc.errors()})},
        ) from exc


def extract_bearer_token(authorization: str | None) -> str:
    """Extract the JWS token from an Authorization header."""
    if authorization is None:
        raise AuthenticationError("Missing Authorization header")

    if not authorization.startswith("Bearer "):
        raise AuthenticationError("Authorization header must use Bearer scheme")

    token = authorization[len("Bearer ") :]
    if not token:
        raise AuthenticationError("Bearer token must not be empty")

    return token


def authenticate(authorization: str | None) -> str:
    """Return the acting user id for a request's Authorization header."""
    token = extract_bearer_token(authorization)
    state = get_app_state()
    if state.token_validator is None:
        msg = "Token validator not initialized"
        raise RuntimeError(msg)
    return state.token_validator.authenticate(token)
