"""Stack materialization: compose + env files on disk, ready for docker compose."""

import asyncio
import os
import re
import shutil
import time
from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path
from urllib.parse import urlparse

import aiohttp
import structlog

from ..constants import COMPOSE_FILE_NAME, ENV_FILE_NAME, MAX_STACK_NAME_LENGTH
from ..models.enums import StorageMappingStrategy
from ..models.stack import CleanupReport, MaterializedStack
from .exceptions import MaterializationError
from .settings import HomestackSettings
from .storage_mapping import BaseStorageRewriter, LineStorageRewriter, paths_overlap

logger = structlog.get_logger()

PUBLISHED_PORT_LINE = re.compile(
    r"^(\s*-\s*[\"']?)(\d+)(:\d+(?::\d+)?(?:/[a-z]+)?[\"']?\s*)$", re.IGNORECASE
)
UNSAFE_STACK_CHARS = re.compile(r"[^a-z0-9-]+")


def sanitize_stack_name(app_id: str, display_name: str | None = None) -> str:
    """Compose-project-safe stack name from the display name, or the app id."""
    source = display_name if display_name and display_name.strip() else app_id
    sanitized = UNSAFE_STACK_CHARS.sub("-", source.strip().lower()).strip("-")
    if not sanitized:
        return f"app-{int(time.time() * 1000)}"
    return sanitized[:MAX_STACK_NAME_LENGTH]


def build_raw_stack_file_url(repository_url: str, stack_file: str, branch: str = "main") -> str:
    """Raw download URL for a stack file in a GitHub repository."""
    parsed = urlparse(repository_url)
    if parsed.hostname != "github.com":
        raise MaterializationError(f"Unsupported repository URL: {repository_url}")

    segments = [segment for segment in parsed.path.split("/") if segment]
    if len(segments) < 2:
        raise MaterializationError(f"Invalid repository URL: {repository_url}")

    owner, repo = segments[0], segments[1]
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    return f"https://raw.githubusercontent.com/{owner}/{repo}/{branch}/{stack_file.lstrip('/')}"


def serialize_env_file(env: dict[str, str]) -> str:
    return "\n".join(f"{key}={env.get(key) or ''}" for key in sorted(env))


def apply_web_ui_port_override(compose_content: str, web_ui_port: int) -> str:
    """Replace the host side of the first published ``host:container`` port."""
    lines = compose_content.split("\n")
    for index, line in enumerate(lines):
        match = PUBLISHED_PORT_LINE.match(line)
        if match:
            lines[index] = f"{match.group(1)}{web_ui_port}{match.group(3)}"
            return "\n".join(lines)

    raise MaterializationError(
        "Unable to override web UI port: no numeric published port mapping found"
    )


class StackMaterializer:
    """Writes rewritten compose files and env files into per-app stack directories."""

    def __init__(self, settings: HomestackSettings, rewriter: BaseStorageRewriter | None = None):
        self.settings = settings
        self.rewriter = rewriter or LineStorageRewriter(settings.app_data_root)
        self.logger = logger.bind(component="materializer")

    @property
    def stacks_root(self) -> Path:
        return Path(self.settings.stacks_root)

    async def fetch_stack_file(self, repository_url: str, stack_file: str) -> str:
        """Download a template's stack file from its repository."""
        raw_url = build_raw_stack_file_url(
            repository_url, stack_file, branch=self.settings.template_branch
        )
        timeout = aiohttp.ClientTimeout(total=self.settings.template_fetch_timeout)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(raw_url, headers={"Cache-Control": "no-store"}) as response:
                    if response.status < 200 or response.status >= 300:
                        raise MaterializationError(
                            f"Failed to fetch stack file ({response.status}) from {raw_url}"
                        )
                    return await response.text()
        except aiohttp.ClientError as e:
            raise MaterializationError(f"Failed to fetch stack file from {raw_url}: {e}") from e

    async def materialize_from_repository(
        self,
        app_id: str,
        stack_name: str,
        repository_url: str,
        stack_file: str,
        env: dict[str, str],
        web_ui_port: int | None = None,
        strategy: StorageMappingStrategy = StorageMappingStrategy.LEGACY_NAMED_SOURCE,
    ) -> MaterializedStack:
        compose_content = await self.fetch_stack_file(repository_url, stack_file)
        return await self._write_stack(
            app_id, stack_name, compose_content, env, web_ui_port, strategy
        )

    async def materialize_inline(
        self,
        app_id: str,
        stack_name: str,
        compose_content: str,
        env: dict[str, str],
        web_ui_port: int | None = None,
        strategy: StorageMappingStrategy = StorageMappingStrategy.LEGACY_NAMED_SOURCE,
    ) -> MaterializedStack:
        return await self._write_stack(
            app_id, stack_name, compose_content, env, web_ui_port, strategy
        )

    async def materialize(
        self,
        app_id: str,
        stack_name: str,
        *,
        env: dict[str, str],
        web_ui_port: int | None = None,
        strategy: StorageMappingStrategy = StorageMappingStrategy.LEGACY_NAMED_SOURCE,
        compose_source: str | None = None,
        repository_url: str | None = None,
        stack_file: str | None = None,
    ) -> MaterializedStack:
        """Materialize from an inline compose source, or else from a repository stack file."""
        if compose_source is not None:
            return await self.materialize_inline(
                app_id, stack_name, compose_source, env, web_ui_port, strategy
            )
        if not repository_url or not stack_file:
            raise MaterializationError(
                f"No compose source or repository stack file available for {app_id}"
            )
        return await self.materialize_from_repository(
            app_id, stack_name, repository_url, stack_file, env, web_ui_port, strategy
        )

    async def _write_stack(
        self,
        app_id: str,
        stack_name: str,
        compose_content: str,
        env: dict[str, str],
        web_ui_port: int | None,
        strategy: StorageMappingStrategy,
    ) -> MaterializedStack:
        if web_ui_port is not None:
            compose_content = apply_web_ui_port_override(compose_content, web_ui_port)

        await asyncio.to_thread(self.settings.ensure_data_root_directories)
        rewritten = self.rewriter.rewrite(compose_content, app_id, strategy)

        stack_dir = self.stacks_root / app_id
        compose_path = stack_dir / COMPOSE_FILE_NAME
        env_path = stack_dir / ENV_FILE_NAME

        def write_files() -> None:
            stack_dir.mkdir(parents=True, exist_ok=True)
            for directory in sorted(rewritten.bind_mount_directories):
                Path(directory).mkdir(parents=True, exist_ok=True)
            compose_path.write_text(rewritten.compose_content, encoding="utf-8")
            env_path.write_text(serialize_env_file(env), encoding="utf-8")

        try:
            await asyncio.to_thread(write_files)
        except OSError as e:
            raise MaterializationError(f"Failed to write stack files for {app_id}: {e}") from e

        self.logger.info(
            "Materialized stack files",
            app_id=app_id,
            stack_name=stack_name,
            compose_path=str(compose_path),
            strategy=strategy.value,
            bind_mounts=sorted(rewritten.bind_mount_directories),
        )

        return MaterializedStack(
            stack_dir=str(stack_dir),
            compose_path=str(compose_path),
            env_path=str(env_path),
            stack_name=stack_name,
            web_ui_port=web_ui_port,
        )

    async def referenced_directories(self, compose_paths: Iterable[str]) -> set[str]:
        """Managed bind directories that the given compose files mount."""
        directories: set[str] = set()
        for compose_path in compose_paths:
            try:
                compose_content = await asyncio.to_thread(
                    Path(compose_path).read_text, encoding="utf-8"
                )
            except OSError as e:
                self.logger.warning(
                    "Unable to read compose file for shared data check",
                    compose_path=compose_path,
                    error=str(e),
                )
                continue
            directories |= self.rewriter.collect_references(compose_content).bind_mount_directories
        return directories

    async def cleanup_data(
        self,
        compose_path: str,
        remove_volume: Callable[[str], Awaitable[None]],
        shared_directories: Iterable[str] = (),
    ) -> CleanupReport:
        """Remove bind-mounted app data and named volumes an uninstalled stack used.

        Directories that overlap ``shared_directories`` (mounts of other installed
        stacks) are kept. Named volume removal is best effort; failures are logged
        and reported.
        """
        report = CleanupReport()
        try:
            compose_content = await asyncio.to_thread(
                Path(compose_path).read_text, encoding="utf-8"
            )
        except FileNotFoundError:
            self.logger.info("No compose file to clean up", compose_path=compose_path)
            return report

        references = self.rewriter.collect_references(compose_content)
        shared = sorted(set(shared_directories))

        for directory in sorted(references.bind_mount_directories):
            if not os.path.isdir(directory):
                continue
            if any(paths_overlap(directory, other) for other in shared):
                self.logger.info(
                    "Keeping data directory mounted by another stack", directory=directory
                )
                report.kept_directories.append(directory)
                continue
            await asyncio.to_thread(shutil.rmtree, directory)
            report.removed_directories.append(directory)

        for volume_name in sorted(references.named_volume_sources):
            try:
                await remove_volume(volume_name)
                report.removed_volumes.append(volume_name)
            except Exception as e:
                self.logger.warning(
                    "Failed to remove named volume", volume=volume_name, error=str(e)
                )
                report.failed_volumes.append(volume_name)

        self.logger.info(
            "Cleaned up stack data",
            compose_path=compose_path,
            removed_directories=len(report.removed_directories),
            kept_directories=len(report.kept_directories),
            removed_volumes=len(report.removed_volumes),
            failed_volumes=len(report.failed_volumes),
        )
        return report
