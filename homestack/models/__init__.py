"""Pydantic models for homestack."""

from .enums import (
    InstalledStackStatus,
    OperationAction,
    OperationEventType,
    OperationStatus,
    StorageMappingStrategy,
)
from .operation import (
    OperationParams,
    OperationPatch,
    PullEvent,
    PullProgressDetail,
    StoreOperation,
    StoreOperationEvent,
    clamp_percent,
)
from .stack import (
    CleanupReport,
    ComposeTarget,
    InstalledStackConfig,
    MaterializedStack,
    RuntimeInfo,
    UpdateState,
)
from .template import EnvDefinition, StoreTemplate

__all__ = [
    "CleanupReport",
    "ComposeTarget",
    "EnvDefinition",
    "InstalledStackConfig",
    "InstalledStackStatus",
    "MaterializedStack",
    "OperationAction",
    "OperationEventType",
    "OperationParams",
    "OperationPatch",
    "OperationStatus",
    "PullEvent",
    "PullProgressDetail",
    "RuntimeInfo",
    "StorageMappingStrategy",
    "StoreOperation",
    "StoreOperationEvent",
    "StoreTemplate",
    "UpdateState",
    "clamp_percent",
]
