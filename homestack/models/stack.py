"""Installed stack records and compose-related value objects."""

from datetime import datetime
from pathlib import Path
from typing import Literal

from pydantic import Field

from ..constants import ENV_FILE_NAME
from .enums import InstalledStackStatus
from .operation import StoreModel, utcnow


class InstalledStackConfig(StoreModel):
    """Durable record of a deployed application."""

    app_id: str
    template_name: str
    stack_name: str
    compose_path: str
    status: InstalledStackStatus = InstalledStackStatus.INSTALLED
    web_ui_port: int | None = None
    env: dict[str, str] = Field(default_factory=dict)
    installed_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)
    is_up_to_date: bool = True
    last_update_check: datetime | None = None
    local_digest: str | None = None
    remote_digest: str | None = None

    @property
    def is_installed(self) -> bool:
        return self.status is InstalledStackStatus.INSTALLED

    @property
    def env_path(self) -> str:
        """The .env file written next to the compose file."""
        return str(Path(self.compose_path).parent / ENV_FILE_NAME)


class ComposeTarget(StoreModel):
    """Everything docker compose needs to address one stack."""

    compose_path: str
    env_path: str
    stack_name: str

    @classmethod
    def for_stack(cls, stack: InstalledStackConfig) -> "ComposeTarget":
        return cls(compose_path=stack.compose_path, env_path=stack.env_path, stack_name=stack.stack_name)


class MaterializedStack(StoreModel):
    """Files written for a stack, handed straight to the compose runner."""

    stack_dir: str
    compose_path: str
    env_path: str
    stack_name: str
    web_ui_port: int | None = None

    @property
    def target(self) -> ComposeTarget:
        return ComposeTarget(
            compose_path=self.compose_path, env_path=self.env_path, stack_name=self.stack_name
        )


class RuntimeInfo(StoreModel):
    """Runtime state reported by ``docker compose ps``."""

    status: Literal["running", "stopped", "unknown"]
    containers: list[dict] = Field(default_factory=list)


class UpdateState(StoreModel):
    """Result of comparing local and remote image digests."""

    update_available: bool
    local_digest: str | None = None
    remote_digest: str | None = None
    image: str | None = None


class CleanupReport(StoreModel):
    """What uninstall data cleanup removed and what it could not."""

    removed_directories: list[str] = Field(default_factory=list)
    kept_directories: list[str] = Field(default_factory=list)
    removed_volumes: list[str] = Field(default_factory=list)
    failed_volumes: list[str] = Field(default_factory=list)

    def summary(self) -> str:
        parts = [
            f"removed {len(self.removed_directories)} data directories",
            f"{len(self.removed_volumes)} volumes",
        ]
        text = "Removed app data: " + ", ".join(parts)
        if self.kept_directories:
            text += f" (kept {len(self.kept_directories)} directories shared with other apps)"
        if self.failed_volumes:
            text += f" ({len(self.failed_volumes)} volumes could not be removed)"
        return text
