"""Operation records, patches and broadcast events."""

import math
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from .enums import OperationAction, OperationEventType, OperationStatus


def utcnow() -> datetime:
    return datetime.now(UTC)


def clamp_percent(value: float) -> int:
    """Round and clamp a progress value into [0, 100]."""
    return max(0, min(100, math.floor(value + 0.5)))


class StoreModel(BaseModel):
    """Base model with common homestack settings."""

    def model_dump(self, **kwargs) -> dict[str, Any]:
        """Convert to dict with exclude_none by default."""
        kwargs.setdefault("exclude_none", True)
        return super().model_dump(**kwargs)


class StoreOperation(StoreModel):
    """Persisted record of one lifecycle action."""

    id: str
    app_id: str
    action: OperationAction
    status: OperationStatus = OperationStatus.QUEUED
    progress_percent: int = Field(0, ge=0, le=100)
    current_step: str = "queued"
    error_message: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)


class OperationPatch(StoreModel):
    """Partial update of a StoreOperation.

    Only explicitly set fields are applied, so ``error_message=None`` clears a
    previous message while leaving it unset keeps it.
    """

    status: OperationStatus | None = None
    progress_percent: int | None = None
    current_step: str | None = None
    error_message: str | None = None
    mark_started: bool = False
    mark_finished: bool = False

    @field_validator("progress_percent", mode="before")
    @classmethod
    def _clamp(cls, value: float | None) -> int | None:
        return None if value is None else clamp_percent(value)

    def apply(self, operation: StoreOperation, now: datetime | None = None) -> StoreOperation:
        """Return ``operation`` with this patch applied."""
        now = now or utcnow()
        changes: dict[str, Any] = {"updated_at": now}
        for name in ("status", "progress_percent", "current_step"):
            value = getattr(self, name)
            if value is not None:
                changes[name] = value
        if "error_message" in self.model_fields_set:
            changes["error_message"] = self.error_message
        if self.mark_started and operation.started_at is None:
            changes["started_at"] = now
        if self.mark_finished and operation.finished_at is None:
            changes["finished_at"] = now
        return operation.model_copy(update=changes)


class PullProgressDetail(StoreModel):
    """Byte-level progress reported by the Docker daemon for one layer."""

    current: int = 0
    total: int = 0
    percent: float | None = None


class PullEvent(StoreModel):
    """One decoded message from an image pull stream."""

    status: str = "unknown"
    id: str | None = None
    progress: str | None = None
    progress_detail: PullProgressDetail | None = None
    error: str | None = None


class StoreOperationEvent(StoreModel):
    """Ephemeral broadcast message describing an operation step."""

    type: OperationEventType
    operation_id: str
    app_id: str
    action: OperationAction
    status: OperationStatus
    progress_percent: int = Field(ge=0, le=100)
    step: str
    message: str | None = None
    image: str | None = None
    docker_status: str | None = None
    progress_detail: PullProgressDetail | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class OperationParams(StoreModel):
    """Request to run one lifecycle action for an app."""

    app_id: str = Field(min_length=1)
    action: OperationAction
    display_name: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    web_ui_port: int | None = None
    compose_source: str | None = None
    remove_volumes: bool = False
    reset_to_catalog: bool = False

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, value: dict[str, Any] | None) -> dict[str, str]:
        if not value:
            return {}
        return {str(key): "" if raw is None else str(raw) for key, raw in value.items()}

    @property
    def has_compose_source(self) -> bool:
        return bool(self.compose_source and self.compose_source.strip())
