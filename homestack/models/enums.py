"""Enum definitions for homestack lifecycle operations."""

from enum import Enum


class OperationAction(Enum):
    """Lifecycle actions an operation can perform."""

    INSTALL = "install"
    REDEPLOY = "redeploy"
    UNINSTALL = "uninstall"
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    CHECK_UPDATES = "check-updates"

    @property
    def is_deploy(self) -> bool:
        return self in (OperationAction.INSTALL, OperationAction.REDEPLOY)

    @property
    def is_runtime(self) -> bool:
        return self in (OperationAction.START, OperationAction.STOP, OperationAction.RESTART)


class OperationStatus(Enum):
    """Persisted status of an operation."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.SUCCESS, OperationStatus.ERROR)


class OperationEventType(Enum):
    """Broadcast event kinds."""

    STARTED = "operation.started"
    STEP = "operation.step"
    PULL_PROGRESS = "operation.pull.progress"
    COMPLETED = "operation.completed"
    FAILED = "operation.failed"


class InstalledStackStatus(Enum):
    """Status of an installed-stack record."""

    INSTALLED = "installed"
    NOT_INSTALLED = "not_installed"


class StorageMappingStrategy(Enum):
    """How named-volume references become host bind mounts."""

    # <app_data_root>/<volume name>, keeps layouts of stacks deployed before app scoping
    LEGACY_NAMED_SOURCE = "legacy_named_source"
    # <app_data_root>/<app_id>/<container target path>
    APP_TARGET_PATH = "app_target_path"
