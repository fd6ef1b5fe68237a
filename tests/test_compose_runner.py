"""Tests for the docker compose driver."""

import asyncio
import json

import pytest

from homestack.core.compose_runner import ComposeRunner, parse_compose_ps_output
from homestack.core.exceptions import ComposeCommandError
from homestack.core.subprocess_manager import SubprocessResult
from homestack.models import ComposeTarget


class RecordingSubprocessManager:
    """Returns canned results keyed by the compose subcommand."""

    def __init__(self):
        self.commands: list[list[str]] = []
        self.kwargs: list[dict] = []
        self.results: dict[str, SubprocessResult | Exception] = {}

    async def run_command(self, cmd, **kwargs):
        self.commands.append(cmd)
        self.kwargs.append(kwargs)
        key = cmd[8] if cmd[:2] == ["docker", "compose"] else " ".join(cmd[:3])
        result = self.results.get(key, SubprocessResult(0, "", "", cmd))
        if isinstance(result, Exception):
            raise result
        if kwargs.get("check"):
            result.check_returncode()
        return result


@pytest.fixture
def manager():
    return RecordingSubprocessManager()


@pytest.fixture
def runner(settings, manager):
    return ComposeRunner(settings, manager)


@pytest.fixture
def target(settings):
    stack_dir = settings.stacks_root / "homepage"
    return ComposeTarget(
        compose_path=str(stack_dir / "docker-compose.yml"),
        env_path=str(stack_dir / ".env"),
        stack_name="homepage",
    )


class TestComposeCommands:
    async def test_build_command(self, runner, target):
        assert runner.build_command(target, ["up", "-d"]) == [
            "docker",
            "compose",
            "-f",
            target.compose_path,
            "--env-file",
            target.env_path,
            "-p",
            "homepage",
            "up",
            "-d",
        ]

    async def test_up_runs_in_stack_directory(self, runner, manager, target, settings):
        await runner.up(target)

        assert manager.commands[0][-2:] == ["up", "-d"]
        assert manager.kwargs[0]["cwd"] == str(settings.stacks_root / "homepage")
        assert manager.kwargs[0]["timeout"] == settings.compose_timeout
        assert manager.kwargs[0]["check"] is False

    @pytest.mark.parametrize("remove_volumes,expected", [(False, ["down"]), (True, ["down", "-v"])])
    async def test_down(self, runner, manager, target, remove_volumes, expected):
        await runner.down(target, remove_volumes=remove_volumes)
        assert manager.commands[0][8:] == expected

    @pytest.mark.parametrize("action", ["start", "stop", "restart"])
    async def test_runtime_actions(self, runner, manager, target, action):
        await getattr(runner, action)(target)
        assert manager.commands[0][8:] == [action]

    async def test_failure_raises(self, runner, manager, target):
        manager.results["up"] = SubprocessResult(1, "", "no such image", [])

        with pytest.raises(ComposeCommandError, match="exit code 1: no such image"):
            await runner.up(target)

    async def test_timeout_becomes_compose_error(self, runner, manager, target):
        manager.results["up"] = asyncio.TimeoutError("Command timed out after 600 seconds")

        with pytest.raises(ComposeCommandError, match="timed out"):
            await runner.up(target)

    async def test_missing_docker_binary(self, runner, manager, target):
        manager.results["up"] = FileNotFoundError("docker")

        with pytest.raises(ComposeCommandError, match="Failed to run docker compose"):
            await runner.up(target)


class TestImagesAndRuntime:
    async def test_extract_images_deduplicates(self, runner, manager, target):
        manager.results["config"] = SubprocessResult(
            0, "nginx:alpine\n\npostgres:16\nnginx:alpine\n", "", []
        )
        assert await runner.extract_images(target) == ["nginx:alpine", "postgres:16"]
        assert manager.commands[0][8:] == ["config", "--images"]

    async def test_running_when_any_container_runs(self, runner, manager, target):
        manager.results["ps"] = SubprocessResult(
            0,
            json.dumps([{"Name": "a", "State": "exited"}, {"Name": "b", "State": "running"}]),
            "",
            [],
        )
        info = await runner.get_runtime_info(target)
        assert info.status == "running"
        assert len(info.containers) == 2

    async def test_stopped_when_nothing_runs(self, runner, manager, target):
        manager.results["ps"] = SubprocessResult(0, "", "", [])
        assert (await runner.get_runtime_info(target)).status == "stopped"

    async def test_unknown_when_ps_fails(self, runner, manager, target):
        manager.results["ps"] = SubprocessResult(1, "", "daemon unreachable", [])
        assert (await runner.get_runtime_info(target)).status == "unknown"

    async def test_remove_volume(self, runner, manager):
        await runner.remove_volume("immich_pgdata")
        assert manager.commands == [["docker", "volume", "rm", "immich_pgdata"]]
        assert manager.kwargs[0]["check"] is True

    async def test_remove_volume_failure(self, runner, manager):
        manager.results["docker volume rm"] = SubprocessResult(1, "", "volume is in use", [])
        with pytest.raises(ComposeCommandError, match="volume is in use"):
            await runner.remove_volume("immich_pgdata")


class TestPsOutput:
    def test_json_lines(self):
        output = '{"Name": "a", "State": "running"}\nnot json\n{"Name": "b", "State": "exited"}\n'
        assert [c["Name"] for c in parse_compose_ps_output(output)] == ["a", "b"]

    def test_json_array(self):
        assert parse_compose_ps_output('[{"Name": "a"}, 3]') == [{"Name": "a"}]

    def test_empty(self):
        assert parse_compose_ps_output("  \n") == []
