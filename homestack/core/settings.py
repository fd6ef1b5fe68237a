"""Runtime settings for homestack.

Provides centralized configuration using Pydantic BaseSettings with
environment variable and ``.env`` support for operational tuning.
"""

import os
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DATA_SUBDIRECTORIES = ("Apps", "Documents", "Media", "Download")


def _normalize_root(value: str | Path) -> Path:
    """Resolve a root directory to an absolute path without ``..`` segments."""
    return Path(os.path.abspath(os.path.expanduser(str(value))))


class HomestackSettings(BaseSettings):
    """Filesystem roots, docker access and timeouts for lifecycle operations."""

    data_root: Path = Field(
        Path("DATA"), alias="STORE_DATA_ROOT", description="Root of all managed data"
    )
    stacks_root: Path | None = Field(
        None, alias="STORE_STACKS_ROOT", description="Directory holding one stack dir per app"
    )
    app_data_root: Path | None = Field(
        None, alias="STORE_APP_DATA_ROOT", description="Directory holding bind-mounted app data"
    )

    docker_socket_path: str = Field(
        "/var/run/docker.sock", alias="DOCKER_SOCKET_PATH", description="Docker daemon socket"
    )
    compose_timeout: int = Field(
        600, alias="COMPOSE_TIMEOUT", description="docker compose command timeout in seconds"
    )
    docker_cli_timeout: int = Field(
        60, alias="DOCKER_CLI_TIMEOUT", description="Docker CLI command timeout in seconds"
    )
    pull_timeout: int = Field(
        1800, alias="IMAGE_PULL_TIMEOUT", description="Per-image pull timeout in seconds"
    )
    template_fetch_timeout: int = Field(
        30, alias="TEMPLATE_FETCH_TIMEOUT", description="Stack file download timeout in seconds"
    )
    template_branch: str = Field("main", alias="STORE_TEMPLATE_BRANCH")

    database_path: Path | None = Field(None, alias="STORE_DATABASE_PATH")
    templates_file: Path | None = Field(None, alias="STORE_TEMPLATES_FILE")

    local_digest_ttl: int = Field(30, alias="LOCAL_DIGEST_TTL")
    remote_digest_ttl: int = Field(300, alias="REMOTE_DIGEST_TTL")

    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_dir: Path | None = Field(None, alias="LOG_DIR")
    log_file_size_mb: int = Field(10, alias="LOG_FILE_SIZE_MB", ge=1, le=100)

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    @field_validator("data_root", mode="after")
    @classmethod
    def _absolute_data_root(cls, value: Path) -> Path:
        return _normalize_root(value)

    @model_validator(mode="after")
    def _derive_roots(self) -> "HomestackSettings":
        self.stacks_root = _normalize_root(self.stacks_root or self.data_root / "Stacks")
        self.app_data_root = _normalize_root(self.app_data_root or self.data_root / "Apps")
        if self.database_path is None:
            self.database_path = self.data_root / "homestack.db"
        return self

    def ensure_data_root_directories(self) -> list[Path]:
        """Create the standard data subdirectories and return their paths."""
        created = []
        for name in DATA_SUBDIRECTORIES:
            directory = self.data_root / name
            directory.mkdir(parents=True, exist_ok=True)
            created.append(directory)
        return created


@lru_cache(maxsize=1)
def get_settings() -> HomestackSettings:
    """Process-wide settings loaded from the environment."""
    return HomestackSettings()
