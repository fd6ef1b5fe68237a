"""Tests for the cached installed-apps listing."""

from homestack.models import InstalledStackStatus
from homestack.services.installed_apps import InstalledAppsService

from .conftest import FakeComposeRunner


class TestInstalledAppsService:
    async def test_lists_only_installed_stacks(self, repository, installed_stack, installed_apps):
        repository.stacks["homepage"] = installed_stack("homepage", 3000)
        repository.stacks["old"] = installed_stack(
            "old", status=InstalledStackStatus.NOT_INSTALLED
        )

        stacks = await installed_apps.list_installed()
        assert [stack.app_id for stack in stacks] == ["homepage"]

    async def test_cached_until_invalidated(self, repository, installed_stack, installed_apps):
        await installed_apps.list_installed()
        repository.stacks["homepage"] = installed_stack("homepage", 3000)

        assert await installed_apps.list_installed() == []

        installed_apps.invalidate()
        assert len(await installed_apps.list_installed()) == 1
        assert installed_apps.invalidations == 1

    async def test_describe_with_runtime(self, repository, installed_stack):
        runner = FakeComposeRunner()
        runner.runtime_status = "stopped"
        service = InstalledAppsService(repository, runner)
        repository.stacks["homepage"] = installed_stack("homepage", 3000, env={"TZ": "UTC"})

        [entry] = await service.describe_installed(include_runtime=True)

        assert entry["app_id"] == "homepage"
        assert entry["status"] == "installed"
        assert entry["web_ui_port"] == 3000
        assert entry["env"] == {"TZ": "UTC"}
        assert entry["runtime_status"] == "stopped"
        assert runner.calls == [("ps", "homepage")]

    async def test_describe_without_runtime(self, repository, installed_stack, installed_apps):
        repository.stacks["homepage"] = installed_stack("homepage")

        [entry] = await installed_apps.describe_installed()
        assert "runtime_status" not in entry
        assert "web_ui_port" not in entry
