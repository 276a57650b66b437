"""Pydantic request/response models for the API."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from bounty_board_service.models import TimelineType


class IssueInput(BaseModel):
    """Issue sub-document supplied when creating a task."""

    model_config = ConfigDict(extra="forbid")
    id: str = Field(min_length=1)
    url: str = Field(min_length=1)
    title: str
    labels: list[dict[str, Any]] = Field(default_factory=list)
    repository: dict[str, Any] | None = None


class CreateTaskRequest(BaseModel):
    """Request body for POST /tasks."""

    model_config = ConfigDict(extra="forbid")
    installation_id: str = Field(min_length=1)
    issue: IssueInput
    bounty: Decimal = Field(gt=0, allow_inf_nan=False)
    timeline: float | None = Field(default=None, gt=0, allow_inf_nan=False)
    timeline_type: TimelineType | None = None
    bounty_label_id: str = Field(min_length=1)


class UpdateBountyRequest(BaseModel):
    """Request body for PATCH /tasks/{task_id}/bounty."""

    model_config = ConfigDict(extra="forbid")
    new_bounty: Decimal = Field(gt=0, allow_inf_nan=False)


class UpdateTimelineRequest(BaseModel):
    """Request body for PATCH /tasks/{task_id}/timeline."""

    model_config = ConfigDict(extra="forbid")
    timeline: float = Field(gt=0, allow_inf_nan=False)
    timeline_type: TimelineType


class AttachBountyCommentRequest(BaseModel):
    """Request body for POST /tasks/{task_id}/bounty-comment."""

    model_config = ConfigDict(extra="forbid")
    bounty_label_id: str = Field(min_length=1)


class AddressBookEntryRequest(BaseModel):
    """Request body for PUT /users/me/address-book."""

    model_config = ConfigDict(extra="forbid")
    address: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=100)


class SubmitWorkRequest(BaseModel):
    """Request body for POST /tasks/{task_id}/submissions."""

    model_config = ConfigDict(extra="forbid")
    pull_request: str = Field(min_length=1)
    attachment_url: str | None = Field(default=None, min_length=1)


class CreateUserRequest(BaseModel):
    """Request body for POST /users."""

    model_config = ConfigDict(extra="forbid")
    username: str = Field(min_length=1, max_length=100)
    skip_wallet: bool = False


class CreateInstallationRequest(BaseModel):
    """Request body for POST /installations."""

    model_config = ConfigDict(extra="forbid")
    installation_id: str = Field(min_length=1)


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_tasks: int
    tasks_by_status: dict[str, int]
    circuit_breakers: dict[str, dict[str, Any]]


class ErrorResponse(BaseModel):
    """Standard error response model."""

    model_config = ConfigDict(extra="forbid")
    error: str
    message: str
    details: dict[str, object]
