"""Installed-apps listing with a cache that lifecycle operations invalidate."""

import asyncio
from typing import Any

import structlog

from ..core.compose_runner import ComposeRunner
from ..models.stack import ComposeTarget, InstalledStackConfig
from .repository import BaseStackRepository

logger = structlog.get_logger()


class InstalledAppsService:
    """Caches the installed-stack listing until ``invalidate`` is called."""

    def __init__(
        self,
        repository: BaseStackRepository,
        compose_runner: ComposeRunner | None = None,
    ):
        self.repository = repository
        self.compose_runner = compose_runner
        self._cache: list[InstalledStackConfig] | None = None
        self._lock = asyncio.Lock()
        self.invalidations = 0

    def invalidate(self) -> None:
        """Drop the cached listing; the next read goes to the repository."""
        self._cache = None
        self.invalidations += 1
        logger.debug("Installed apps cache invalidated", invalidations=self.invalidations)

    async def list_installed(self) -> list[InstalledStackConfig]:
        async with self._lock:
            if self._cache is None:
                self._cache = [
                    stack
                    for stack in await self.repository.list_installed_stacks()
                    if stack.is_installed
                ]
            return list(self._cache)

    async def describe_installed(self, include_runtime: bool = False) -> list[dict[str, Any]]:
        """Installed stacks as plain dicts, optionally with live compose status."""
        described = []
        for stack in await self.list_installed():
            entry = stack.model_dump(mode="json")
            if include_runtime and self.compose_runner is not None:
                runtime = await self.compose_runner.get_runtime_info(ComposeTarget.for_stack(stack))
                entry["runtime_status"] = runtime.status
            described.append(entry)
        return described
