"""
Result types for orchestrator operations.

Hard failures are raised as ``ServiceError`` and rendered by the registered
exception handlers. Everything that reached its financially significant
step returns ``Ok`` or ``PartialOk``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Ok:
    """Every step succeeded."""

    data: Any
    message: str
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PartialOk:
    """The essential steps succeeded; ``warning`` names the best-effort step that did not."""

    data: Any
    message: str
    warning: str
    meta: dict[str, Any] = field(default_factory=dict)


Outcome = Ok | PartialOk


def to_envelope(outcome: Outcome) -> dict[str, Any]:
    """Render an outcome as the JSON success envelope."""
    envelope: dict[str, Any] = {"data": outcome.data, "message": outcome.message}
    if isinstance(outcome, PartialOk):
        envelope["warning"] = outcome.warning
    if outcome.meta:
        envelope["meta"] = outcome.meta
    return envelope
