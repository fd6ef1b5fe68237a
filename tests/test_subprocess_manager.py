"""Tests for subprocess resource management."""

import asyncio
import os
import tempfile

import pytest

from homestack.core.exceptions import ComposeCommandError
from homestack.core.subprocess_manager import (
    SubprocessManager,
    SubprocessResult,
    managed_subprocess,
    run_command,
)


@pytest.fixture
async def subprocess_manager():
    """Create a subprocess manager for testing."""
    manager = SubprocessManager()
    yield manager
    await manager.cleanup_all()


class TestSubprocessManager:
    """Test subprocess manager functionality."""

    async def test_run_simple_command(self, subprocess_manager):
        result = await subprocess_manager.run_command(["echo", "hello"])
        assert result.success
        assert result.stdout.strip() == "hello"
        assert result.stderr == ""
        assert result.returncode == 0

    async def test_run_command_with_error(self, subprocess_manager):
        with pytest.raises(ComposeCommandError) as exc_info:
            await subprocess_manager.run_command(["sh", "-c", "echo nope >&2; exit 1"], check=True)
        assert "exit code 1: nope" in str(exc_info.value)

    async def test_run_command_no_check(self, subprocess_manager):
        result = await subprocess_manager.run_command(["sh", "-c", "exit 3"], check=False)
        assert not result.success
        assert result.returncode == 3

    async def test_command_timeout(self, subprocess_manager):
        with pytest.raises(asyncio.TimeoutError) as exc_info:
            await subprocess_manager.run_command(["sleep", "10"], timeout=0.1)
        assert "timed out after 0.1 seconds" in str(exc_info.value)
        assert len(subprocess_manager._active_processes) == 0

    async def test_command_with_stdin(self, subprocess_manager):
        result = await subprocess_manager.run_command(["cat"], stdin="services: {}", timeout=1)
        assert result.stdout == "services: {}"

    async def test_command_with_environment(self, subprocess_manager):
        result = await subprocess_manager.run_command(
            ["sh", "-c", "echo $COMPOSE_PROJECT_NAME"],
            env={"COMPOSE_PROJECT_NAME": "immich", "PATH": os.environ.get("PATH", "")},
        )
        assert result.stdout.strip() == "immich"

    async def test_command_with_cwd(self, subprocess_manager):
        with tempfile.TemporaryDirectory() as tmpdir:
            result = await subprocess_manager.run_command(["pwd", "-P"], cwd=tmpdir)
            assert result.stdout.strip() == os.path.realpath(tmpdir)

    async def test_binary_output(self, subprocess_manager):
        result = await subprocess_manager.run_command(["echo", "test"], text=False)
        assert result.stdout == b"test\n"

    async def test_concurrent_commands(self, subprocess_manager):
        results = await asyncio.gather(
            *(subprocess_manager.run_command(["echo", f"task{i}"]) for i in range(5))
        )
        assert [result.stdout.strip() for result in results] == [f"task{i}" for i in range(5)]

    async def test_cleanup_all_processes(self, subprocess_manager):
        task = asyncio.create_task(subprocess_manager.run_command(["sleep", "10"]))
        await asyncio.sleep(0.1)
        assert len(subprocess_manager._active_processes) == 1

        await subprocess_manager.cleanup_all()
        assert len(subprocess_manager._active_processes) == 0

        # SIGTERM ends the process with a negative exit code
        with pytest.raises(ComposeCommandError):
            await task


class TestSubprocessResult:
    def test_error_message_prefers_stderr(self):
        assert SubprocessResult(1, "out", " err \n", []).error_message() == "err"
        assert SubprocessResult(1, "out", "", []).error_message() == "out"
        assert SubprocessResult(1, "", "", []).error_message() == "Command failed"
        assert SubprocessResult(1, b"", b"bytes err", []).error_message() == "bytes err"

    def test_check_returncode(self):
        SubprocessResult(0, "", "", []).check_returncode()
        with pytest.raises(ComposeCommandError, match="exit code 2"):
            SubprocessResult(2, "", "", []).check_returncode()


class TestContextManager:
    async def test_managed_subprocess_context(self):
        async with managed_subprocess() as manager:
            result = await manager.run_command(["echo", "test"])
            assert result.success

            task = asyncio.create_task(manager.run_command(["sleep", "10"]))
            await asyncio.sleep(0.1)
            assert len(manager._active_processes) > 0

        assert len(manager._active_processes) == 0
        with pytest.raises(ComposeCommandError):
            await task


class TestGlobalFunctions:
    async def test_global_run_command(self):
        result = await run_command(["echo", "global test"])
        assert result.success
        assert "global test" in result.stdout
