"""Centralized subprocess management with proper resource handling."""

import asyncio
import os
from contextlib import asynccontextmanager
from typing import Any, Optional

import structlog

from homestack.core.exceptions import ComposeCommandError

logger = structlog.get_logger()

DEFAULT_TIMEOUT = 30  # Default timeout in seconds
KILL_TIMEOUT = 5  # Time to wait after SIGTERM before SIGKILL


class SubprocessResult:
    """Result of a subprocess execution."""

    def __init__(
        self,
        returncode: int,
        stdout: str | bytes,
        stderr: str | bytes,
        cmd: list[str],
    ):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.cmd = cmd

    @property
    def success(self) -> bool:
        """Check if the command succeeded."""
        return self.returncode == 0

    def error_message(self) -> str:
        """Best available description of a failure."""
        message = (
            self.stderr.strip() if self.stderr
            else self.stdout.strip() if self.stdout
            else "Command failed"
        )
        if isinstance(message, bytes):
            message = message.decode(errors="replace")
        return message

    def check_returncode(self) -> None:
        """Raise an exception if the command failed."""
        if self.returncode != 0:
            raise ComposeCommandError(
                f"Command failed with exit code {self.returncode}: {self.error_message()}"
            )


class SubprocessManager:
    """Manages subprocess execution with proper resource cleanup."""

    def __init__(self):
        self._active_processes: set[asyncio.subprocess.Process] = set()
        self._cleanup_lock = asyncio.Lock()

    async def run_command(
        self,
        cmd: list[str],
        *,
        timeout: Optional[float] = None,
        check: bool = True,
        text: bool = True,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        stdin: Optional[str] = None,
    ) -> SubprocessResult:
        """Run a command asynchronously, killing it if it outlives ``timeout``.

        Args:
            cmd: Command and arguments as a list
            timeout: Timeout in seconds (default: DEFAULT_TIMEOUT)
            check: Raise ComposeCommandError if the command exits non-zero
            text: Decode output as text instead of returning bytes
            cwd: Working directory for the command
            env: Environment variables (defaults to the current environment)
            stdin: Input to provide to the command

        Returns:
            SubprocessResult with returncode, stdout, and stderr

        Raises:
            ComposeCommandError: If check=True and command fails
            asyncio.TimeoutError: If command times out
        """
        if timeout is None:
            timeout = DEFAULT_TIMEOUT

        logger.debug("Executing command", command=" ".join(cmd), timeout=timeout, cwd=cwd)

        kwargs: dict[str, Any] = {
            "cwd": cwd,
            "env": env or os.environ.copy(),
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
        }
        if stdin is not None:
            kwargs["stdin"] = asyncio.subprocess.PIPE

        process = None
        try:
            process = await asyncio.create_subprocess_exec(*cmd, **kwargs)

            async with self._cleanup_lock:
                self._active_processes.add(process)

            try:
                stdout_bytes, stderr_bytes = await asyncio.wait_for(
                    process.communicate(input=stdin.encode() if stdin is not None else None),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Command timed out, terminating process",
                    command=" ".join(cmd),
                    timeout=timeout,
                    pid=process.pid,
                )
                await self._terminate(process)
                raise asyncio.TimeoutError(
                    f"Command timed out after {timeout} seconds: {' '.join(cmd)}"
                )

            if text:
                stdout = stdout_bytes.decode() if stdout_bytes else ""
                stderr = stderr_bytes.decode() if stderr_bytes else ""
            else:
                stdout = stdout_bytes or b""
                stderr = stderr_bytes or b""

            result = SubprocessResult(
                returncode=process.returncode or 0,
                stdout=stdout,
                stderr=stderr,
                cmd=cmd,
            )
            if check:
                result.check_returncode()
            return result

        finally:
            if process is not None:
                async with self._cleanup_lock:
                    self._active_processes.discard(process)
                if process.returncode is None:
                    await self._terminate(process)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM, then SIGKILL if the process lingers."""
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=KILL_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Process did not terminate gracefully, sending SIGKILL", pid=process.pid)
            process.kill()
            await process.wait()
        except ProcessLookupError:
            pass

    async def cleanup_all(self) -> None:
        """Terminate every process still tracked by this manager."""
        async with self._cleanup_lock:
            processes = list(self._active_processes)
            self._active_processes.clear()

        if not processes:
            return

        logger.info("Cleaning up active processes", count=len(processes))
        await asyncio.gather(
            *(self._terminate(process) for process in processes if process.returncode is None)
        )


_subprocess_manager = SubprocessManager()


def get_subprocess_manager() -> SubprocessManager:
    """Process-wide subprocess manager."""
    return _subprocess_manager


async def run_command(*args, **kwargs) -> SubprocessResult:
    """Convenience function to run a command using the global subprocess manager."""
    return await _subprocess_manager.run_command(*args, **kwargs)


@asynccontextmanager
async def managed_subprocess():
    """Context manager for subprocess management with automatic cleanup."""
    manager = SubprocessManager()
    try:
        yield manager
    finally:
        await manager.cleanup_all()
