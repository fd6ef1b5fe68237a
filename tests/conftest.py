"""Shared pytest fixtures for homestack tests."""

import inspect
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import pytest

from homestack.core.exceptions import ComposeCommandError, ImagePullError
from homestack.core.settings import HomestackSettings
from homestack.middleware import ErrorHandlingMiddleware, LoggingMiddleware
from homestack.models import (
    CleanupReport,
    ComposeTarget,
    EnvDefinition,
    InstalledStackConfig,
    MaterializedStack,
    OperationParams,
    PullEvent,
    PullProgressDetail,
    RuntimeInfo,
    StoreTemplate,
    UpdateState,
)
from homestack.services.installed_apps import InstalledAppsService
from homestack.services.orchestrator import OperationOrchestrator
from homestack.services.repository import InMemoryStackRepository
from homestack.services.templates import TemplateCatalog

ADGUARD_IMAGE = "adguard/adguardhome:latest"
HOMEPAGE_IMAGE = "ghcr.io/gethomepage/homepage:latest"
IMMICH_IMAGE = "ghcr.io/immich-app/immich-server:release"

IMMICH_COMPOSE = """services:
  immich-server:
    image: ghcr.io/immich-app/immich-server:release
    ports:
      - "2283:2283"
    environment:
      DB_PASSWORD: postgres
      UPLOAD_LOCATION: /data
    volumes:
      - upload:/usr/src/app/upload
volumes:
  upload:
"""


# ====================
# TEST DOUBLES
# ====================


class FakeComposeRunner:
    """Records compose invocations instead of running docker."""

    def __init__(self, images: dict[str, list[str]] | None = None):
        self.images = images or {}
        self.calls: list[tuple[str, str]] = []
        self.down_calls: list[bool] = []
        self.removed_volumes: list[str] = []
        self.fail_on: dict[str, str] = {}
        self.runtime_status = "running"

    def _record(self, name: str, target: ComposeTarget) -> None:
        self.calls.append((name, target.stack_name))
        if name in self.fail_on:
            raise ComposeCommandError(self.fail_on[name])

    @property
    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    async def up(self, target: ComposeTarget) -> None:
        self._record("up", target)

    async def down(self, target: ComposeTarget, remove_volumes: bool = False) -> None:
        self.down_calls.append(remove_volumes)
        self._record("down", target)

    async def start(self, target: ComposeTarget) -> None:
        self._record("start", target)

    async def stop(self, target: ComposeTarget) -> None:
        self._record("stop", target)

    async def restart(self, target: ComposeTarget) -> None:
        self._record("restart", target)

    async def extract_images(self, target: ComposeTarget) -> list[str]:
        self._record("config", target)
        return list(self.images.get(target.stack_name, []))

    async def get_runtime_info(self, target: ComposeTarget) -> RuntimeInfo:
        self.calls.append(("ps", target.stack_name))
        return RuntimeInfo(status=self.runtime_status)

    async def remove_volume(self, volume_name: str) -> None:
        self.removed_volumes.append(volume_name)


class FakeMaterializer:
    """Returns stack paths under the stacks root and remembers how it was called."""

    def __init__(self, settings: HomestackSettings):
        self.settings = settings
        self.calls: list[dict[str, Any]] = []
        self.cleanups: list[str] = []
        self.referenced: list[list[str]] = []
        self.shared_directories: list[set[str]] = []
        self.cleanup_report = CleanupReport(
            removed_directories=["/srv/DATA/Apps/immich/usr/src/app/upload"]
        )

    def _materialized(self, app_id: str, stack_name: str, web_ui_port: int | None):
        stack_dir = self.settings.stacks_root / app_id
        return MaterializedStack(
            stack_dir=str(stack_dir),
            compose_path=str(stack_dir / "docker-compose.yml"),
            env_path=str(stack_dir / ".env"),
            stack_name=stack_name,
            web_ui_port=web_ui_port,
        )

    async def materialize_inline(
        self, app_id, stack_name, compose_content, env, web_ui_port=None, strategy=None
    ) -> MaterializedStack:
        self.calls.append(
            {
                "method": "inline",
                "app_id": app_id,
                "stack_name": stack_name,
                "compose_content": compose_content,
                "env": dict(env),
                "web_ui_port": web_ui_port,
                "strategy": strategy,
            }
        )
        return self._materialized(app_id, stack_name, web_ui_port)

    async def materialize_from_repository(
        self,
        app_id,
        stack_name,
        repository_url,
        stack_file,
        env,
        web_ui_port=None,
        strategy=None,
    ) -> MaterializedStack:
        self.calls.append(
            {
                "method": "repository",
                "app_id": app_id,
                "stack_name": stack_name,
                "repository_url": repository_url,
                "stack_file": stack_file,
                "env": dict(env),
                "web_ui_port": web_ui_port,
                "strategy": strategy,
            }
        )
        return self._materialized(app_id, stack_name, web_ui_port)

    async def referenced_directories(self, compose_paths) -> set[str]:
        paths = list(compose_paths)
        self.referenced.append(paths)
        return {f"{path}:mounts" for path in paths}

    async def cleanup_data(self, compose_path, remove_volume, shared_directories=()) -> CleanupReport:
        self.cleanups.append(compose_path)
        self.shared_directories.append(set(shared_directories))
        return self.cleanup_report


class FakePullClient:
    """Replays scripted pull events per image."""

    def __init__(self):
        self.events: dict[str, list[PullEvent]] = {}
        self.failures: dict[str, str] = {}
        self.pulled: list[str] = []

    async def pull(self, image: str, on_event=None) -> None:
        self.pulled.append(image)
        for event in self.events.get(image, []):
            if on_event is not None:
                result = on_event(event)
                if inspect.isawaitable(result):
                    await result
        if image in self.failures:
            raise ImagePullError(self.failures[image])


class FakeUpdateResolver:
    def __init__(self, state: UpdateState | None = None):
        self.state = state or UpdateState(update_available=False)
        self.calls: list[tuple[str, str]] = []

    async def resolve_update_state(self, compose_path: str, stack_name: str) -> UpdateState:
        self.calls.append((compose_path, stack_name))
        return self.state


class MockCall:
    """Mock call_next function for middleware testing."""

    def __init__(self, return_value=None, exception=None):
        self.return_value = return_value or {"status": "success"}
        self.exception = exception
        self.call_count = 0

    async def __call__(self, context):
        self.call_count += 1
        if self.exception:
            raise self.exception
        return self.return_value


# ====================
# CORE FIXTURES
# ====================


@pytest.fixture
def settings(tmp_path) -> HomestackSettings:
    """Settings rooted in a temporary DATA directory."""
    return HomestackSettings(data_root=tmp_path / "DATA")


@pytest.fixture
def templates() -> TemplateCatalog:
    return TemplateCatalog(
        catalog=[
            StoreTemplate(
                app_id="adguard-home",
                template_name="adguard-home",
                name="AdGuard Home",
                repository_url="https://github.com/homestack/app-templates",
                stack_file="apps/adguard-home/docker-compose.yml",
                env=[EnvDefinition(name="TZ", default="UTC")],
            ),
            StoreTemplate(
                app_id="homepage",
                template_name="homepage",
                name="Homepage",
                repository_url="https://github.com/homestack/app-templates",
                stack_file="apps/homepage/docker-compose.yml",
            ),
        ],
        custom=[
            StoreTemplate(
                app_id="immich",
                template_name="immich",
                name="Immich",
                compose_content=IMMICH_COMPOSE,
                env=[
                    EnvDefinition(name="DB_PASSWORD", default="postgres"),
                    EnvDefinition(name="UPLOAD_LOCATION"),
                ],
            )
        ],
    )


@pytest.fixture
def repository() -> InMemoryStackRepository:
    return InMemoryStackRepository()


@pytest.fixture
def compose_runner(settings) -> FakeComposeRunner:
    return FakeComposeRunner(
        images={
            "adguard-home": [ADGUARD_IMAGE],
            "homepage": [HOMEPAGE_IMAGE],
            "immich": [IMMICH_IMAGE],
        }
    )


@pytest.fixture
def materializer(settings) -> FakeMaterializer:
    return FakeMaterializer(settings)


@pytest.fixture
def pull_client() -> FakePullClient:
    client = FakePullClient()
    client.events[ADGUARD_IMAGE] = [
        PullEvent(status="Pulling fs layer", id="a1"),
        PullEvent(
            status="Downloading",
            id="a1",
            progress_detail=PullProgressDetail(current=50, total=100, percent=50.0),
        ),
        PullEvent(status="Download complete", id="a1"),
    ]
    return client


@pytest.fixture
def update_resolver() -> FakeUpdateResolver:
    return FakeUpdateResolver()


@pytest.fixture
def installed_apps(repository) -> InstalledAppsService:
    return InstalledAppsService(repository)


@pytest.fixture
def orchestrator(
    repository,
    templates,
    compose_runner,
    materializer,
    pull_client,
    update_resolver,
    installed_apps,
    settings,
) -> OperationOrchestrator:
    return OperationOrchestrator(
        repository,
        templates,
        compose_runner,
        materializer,
        pull_client,
        update_resolver,
        on_terminal=installed_apps.invalidate,
        settings=settings,
    )


@pytest.fixture
def installed_stack(settings):
    """Factory for installed stack records under the temporary stacks root."""

    def factory(app_id: str, web_ui_port: int | None = None, **overrides) -> InstalledStackConfig:
        fields: dict[str, Any] = {
            "app_id": app_id,
            "template_name": app_id,
            "stack_name": app_id,
            "compose_path": str(settings.stacks_root / app_id / "docker-compose.yml"),
            "web_ui_port": web_ui_port,
        }
        fields.update(overrides)
        return InstalledStackConfig(**fields)

    return factory


@pytest.fixture
def run_operation(orchestrator):
    """Run one operation to completion; returns the final record and every event."""

    async def runner(**params):
        handle = await orchestrator.start_operation(OperationParams(**params))
        events = []
        orchestrator.subscribe(handle.operation_id, events.append)
        await handle.wait()
        operation = await orchestrator.get_operation(handle.operation_id)
        return operation, events

    return runner


# ====================
# MIDDLEWARE TESTING FIXTURES
# ====================


@pytest.fixture
def logging_middleware():
    return LoggingMiddleware(include_payloads=True, max_payload_length=100)


@pytest.fixture
def error_handling_middleware():
    return ErrorHandlingMiddleware(include_traceback=True, track_error_stats=True)


@pytest.fixture
def mock_context():
    """Create mock MiddlewareContext for unit tests."""
    context = MagicMock()
    context.method = "tools/call"
    context.source = "client"
    context.type = "request"
    context.message = SimpleNamespace(
        name="store_app",
        arguments={"app_id": "immich", "env": {"DB_PASSWORD": "hunter2"}},
    )
    return context
