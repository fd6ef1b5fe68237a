"""docker compose subprocess driver."""

import asyncio
import json
import os
from typing import Any

import structlog

from ..models.stack import ComposeTarget, RuntimeInfo
from .exceptions import ComposeCommandError
from .settings import HomestackSettings
from .subprocess_manager import SubprocessManager, get_subprocess_manager

logger = structlog.get_logger()


def parse_compose_ps_output(stdout: str) -> list[dict[str, Any]]:
    """Decode ``docker compose ps --format json``.

    Newer compose releases print one JSON array, older ones one object per line.
    """
    text = stdout.strip()
    if not text:
        return []

    if text.startswith("["):
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError:
            decoded = []
        return [item for item in decoded if isinstance(item, dict)]

    containers = []
    for line in text.splitlines():
        try:
            decoded = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(decoded, dict):
            containers.append(decoded)
    return containers


class ComposeRunner:
    """Runs ``docker compose`` against one stack's compose and env files."""

    def __init__(
        self,
        settings: HomestackSettings,
        subprocess_manager: SubprocessManager | None = None,
    ):
        self.settings = settings
        self.subprocess_manager = subprocess_manager or get_subprocess_manager()
        self.logger = logger.bind(component="compose_runner")

    def build_command(self, target: ComposeTarget, args: list[str]) -> list[str]:
        return [
            "docker",
            "compose",
            "-f",
            target.compose_path,
            "--env-file",
            target.env_path,
            "-p",
            target.stack_name,
            *args,
        ]

    async def run(self, target: ComposeTarget, args: list[str]) -> str:
        """Run a compose subcommand and return its stdout.

        Raises:
            ComposeCommandError: If the command exits non-zero or times out
        """
        cmd = self.build_command(target, args)
        try:
            result = await self.subprocess_manager.run_command(
                cmd,
                timeout=self.settings.compose_timeout,
                check=False,
                cwd=os.path.dirname(target.compose_path) or None,
            )
        except asyncio.TimeoutError as e:
            self.logger.error("Compose command timed out", stack_name=target.stack_name, args=args)
            raise ComposeCommandError(str(e)) from e
        except OSError as e:
            raise ComposeCommandError(f"Failed to run docker compose: {e}") from e

        if not result.success:
            self.logger.error(
                "Compose command failed",
                stack_name=target.stack_name,
                args=args,
                returncode=result.returncode,
                stderr=result.error_message(),
            )
            result.check_returncode()

        self.logger.info("Compose command completed", stack_name=target.stack_name, args=args)
        return result.stdout

    async def up(self, target: ComposeTarget) -> None:
        await self.run(target, ["up", "-d"])

    async def down(self, target: ComposeTarget, remove_volumes: bool = False) -> None:
        args = ["down"]
        if remove_volumes:
            args.append("-v")
        await self.run(target, args)

    async def start(self, target: ComposeTarget) -> None:
        await self.run(target, ["start"])

    async def stop(self, target: ComposeTarget) -> None:
        await self.run(target, ["stop"])

    async def restart(self, target: ComposeTarget) -> None:
        await self.run(target, ["restart"])

    async def extract_images(self, target: ComposeTarget) -> list[str]:
        """Images referenced by the stack, deduplicated in first-seen order."""
        stdout = await self.run(target, ["config", "--images"])
        images = [line.strip() for line in stdout.splitlines() if line.strip()]
        return list(dict.fromkeys(images))

    async def get_runtime_info(self, target: ComposeTarget) -> RuntimeInfo:
        """Running if any container runs, stopped if none, unknown if ps fails."""
        try:
            stdout = await self.run(target, ["ps", "--format", "json"])
        except ComposeCommandError as e:
            self.logger.warning(
                "Failed to read stack runtime status", stack_name=target.stack_name, error=str(e)
            )
            return RuntimeInfo(status="unknown")

        containers = parse_compose_ps_output(stdout)
        if any(container.get("State") == "running" for container in containers):
            return RuntimeInfo(status="running", containers=containers)
        return RuntimeInfo(status="stopped", containers=containers)

    async def remove_volume(self, volume_name: str) -> None:
        """``docker volume rm``; raises ComposeCommandError on failure."""
        try:
            await self.subprocess_manager.run_command(
                ["docker", "volume", "rm", volume_name],
                timeout=self.settings.docker_cli_timeout,
                check=True,
            )
        except asyncio.TimeoutError as e:
            raise ComposeCommandError(str(e)) from e
