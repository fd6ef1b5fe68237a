"""
homestack services

Operation orchestration, persistence and template lookup.
"""

from .installed_apps import InstalledAppsService  # noqa: F401
from .orchestrator import OperationHandle, OperationOrchestrator  # noqa: F401
from .repository import (  # noqa: F401
    BaseStackRepository,
    InMemoryStackRepository,
    SqliteStackRepository,
)
from .templates import TemplateCatalog, load_template_catalog  # noqa: F401

__all__ = [
    "OperationOrchestrator",
    "OperationHandle",
    "BaseStackRepository",
    "InMemoryStackRepository",
    "SqliteStackRepository",
    "TemplateCatalog",
    "load_template_catalog",
    "InstalledAppsService",
]
