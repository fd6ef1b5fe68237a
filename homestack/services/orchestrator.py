"""Operation orchestrator: runs app lifecycle actions as tracked background tasks."""

import asyncio
import inspect
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from ..constants import (
    MAX_WEB_UI_PORT,
    MIN_WEB_UI_PORT,
    PROGRESS_COMPLETE,
    PROGRESS_COMPOSE_ACTION,
    PROGRESS_COMPOSE_DOWN,
    PROGRESS_COMPOSE_UP,
    PROGRESS_FINALIZE,
    PROGRESS_INSPECT_IMAGES,
    PROGRESS_NOOP,
    PROGRESS_PULL_START,
    PROGRESS_REMOVE_DATA,
    PROGRESS_REMOVE_RECORD,
    PROGRESS_RENDER,
    PROGRESS_STARTED,
    PROGRESS_STATUS_REFRESH,
    PROGRESS_UPDATES_RESOLVED,
    STEP_CLEANUP,
    STEP_COMPLETED,
    STEP_COMPOSE_ACTION,
    STEP_COMPOSE_DOWN,
    STEP_COMPOSE_UP,
    STEP_FAILED,
    STEP_HEALTH_CHECK,
    STEP_INSPECT_IMAGES,
    STEP_NOOP,
    STEP_PULL_IMAGES,
    STEP_QUEUED,
    STEP_RENDER,
    STEP_START,
    STEP_STATUS_REFRESH,
    STEP_UPDATES_RESOLVED,
)
from ..core.compose_parser import (
    ParsedComposeService,
    extract_primary_service,
    parse_compose_file,
    parse_first_published_port,
)
from ..core.event_bus import OperationEventBus, OperationEventHandler
from ..core.exceptions import OperationValidationError
from ..core.locks import AppOperationLocks
from ..core.logging_config import get_operations_logger
from ..core.materializer import sanitize_stack_name
from ..core.pull_progress import ImagePullProgressTracker
from ..core.settings import HomestackSettings
from ..models.enums import (
    InstalledStackStatus,
    OperationAction,
    OperationEventType,
    OperationStatus,
    StorageMappingStrategy,
)
from ..models.operation import (
    OperationParams,
    OperationPatch,
    PullEvent,
    PullProgressDetail,
    StoreOperation,
    StoreOperationEvent,
    clamp_percent,
)
from ..models.stack import ComposeTarget, InstalledStackConfig, MaterializedStack
from ..models.template import StoreTemplate

logger = get_operations_logger()

_UNSET: Any = object()


@dataclass
class OperationHandle:
    """Returned by ``start_operation`` before any step has run."""

    operation_id: str
    task: asyncio.Task

    async def wait(self) -> None:
        """Wait for the operation to reach a terminal state."""
        await self.task


@dataclass(frozen=True)
class _OperationContext:
    operation_id: str
    app_id: str
    action: OperationAction


def assert_valid_web_ui_port(port: Any) -> int:
    if isinstance(port, bool) or not isinstance(port, int):
        raise OperationValidationError("webUiPort must be an integer")
    if port < MIN_WEB_UI_PORT or port > MAX_WEB_UI_PORT:
        raise OperationValidationError(
            f"webUiPort must be between {MIN_WEB_UI_PORT} and {MAX_WEB_UI_PORT}"
        )
    return port


def merge_whitelisted_env(
    allowed_keys: list[str],
    defaults: dict[str, str],
    existing: dict[str, str],
    overrides: dict[str, str],
) -> dict[str, str]:
    """Template defaults, then existing values, then overrides; only declared keys."""
    allowed = set(allowed_keys)
    unknown = [key for key in overrides if key not in allowed]
    if unknown:
        raise OperationValidationError(
            f"Unsupported env key(s): {', '.join(unknown)}. "
            "Only template-defined env keys are allowed."
        )

    merged = {**defaults, **existing}
    merged.update({key: str(value) for key, value in overrides.items()})
    return merged


class OperationOrchestrator:
    """Runs install, redeploy, uninstall, runtime and update-check operations.

    ``start_operation`` persists a queued record and returns at once; the steps
    run in an asyncio task that patches the record and publishes an event on the
    bus for every step. Failures never propagate to the caller of
    ``start_operation``; they end the operation with ``status=error``.
    """

    def __init__(
        self,
        repository,
        templates,
        compose_runner,
        materializer,
        pull_client,
        update_resolver,
        *,
        event_bus: OperationEventBus | None = None,
        locks: AppOperationLocks | None = None,
        on_terminal: Callable[[], Any] | None = None,
        settings: HomestackSettings | None = None,
    ):
        self.repository = repository
        self.templates = templates
        self.compose_runner = compose_runner
        self.materializer = materializer
        self.pull_client = pull_client
        self.update_resolver = update_resolver
        self.event_bus = event_bus or OperationEventBus()
        self.locks = locks or AppOperationLocks()
        self.on_terminal = on_terminal
        self.settings = settings
        self._tasks: set[asyncio.Task] = set()
        self._progress: dict[str, int] = {}

    # Produced interface

    async def start_operation(self, params: OperationParams) -> OperationHandle:
        """Queue an operation and schedule its execution.

        Raises:
            PersistenceError: If the queued record cannot be created
        """
        operation_id = str(uuid.uuid4())
        await self.repository.create_operation(
            StoreOperation(
                id=operation_id,
                app_id=params.app_id,
                action=params.action,
                status=OperationStatus.QUEUED,
                progress_percent=0,
                current_step=STEP_QUEUED,
            )
        )
        logger.info(
            "Queued store operation",
            operation_id=operation_id,
            app_id=params.app_id,
            action=params.action.value,
        )

        task = asyncio.create_task(
            self._execute(operation_id, params), name=f"store-operation-{operation_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return OperationHandle(operation_id=operation_id, task=task)

    async def get_operation(self, operation_id: str) -> StoreOperation | None:
        return await self.repository.find_operation(operation_id)

    def subscribe(self, operation_id: str, handler: OperationEventHandler) -> Callable[[], None]:
        return self.event_bus.subscribe(operation_id, handler)

    def get_latest_event(self, operation_id: str) -> StoreOperationEvent | None:
        return self.event_bus.get_latest(operation_id)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight operation to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # State machine

    async def _execute(self, operation_id: str, params: OperationParams) -> None:
        ctx = _OperationContext(operation_id, params.app_id, params.action)

        async with self.locks.hold(params.app_id):
            await self._patch(
                ctx,
                OperationStatus.RUNNING,
                OperationEventType.STARTED,
                PROGRESS_STARTED,
                STEP_START,
                message="Operation started",
                mark_started=True,
            )

            try:
                existing = await self.repository.find_installed_stack(params.app_id)

                if params.action.is_deploy:
                    await self._run_deploy(ctx, params, existing)
                elif params.action is OperationAction.UNINSTALL:
                    await self._run_uninstall(ctx, params, existing)
                elif params.action is OperationAction.CHECK_UPDATES:
                    await self._run_check_updates(ctx, existing)
                else:
                    await self._run_runtime_action(ctx, existing)

                if params.action.is_deploy:
                    await self.repository.update_stack_update_status(
                        params.app_id, is_up_to_date=True, local_digest=None, remote_digest=None
                    )
            except Exception as e:
                message = str(e) or "Operation failed"
                await self._patch(
                    ctx,
                    OperationStatus.ERROR,
                    OperationEventType.FAILED,
                    PROGRESS_COMPLETE,
                    STEP_FAILED,
                    message=message,
                    error_message=message,
                    mark_finished=True,
                )
            else:
                await self._patch(
                    ctx,
                    OperationStatus.SUCCESS,
                    OperationEventType.COMPLETED,
                    PROGRESS_COMPLETE,
                    STEP_COMPLETED,
                    message="Operation completed",
                    error_message=None,
                    mark_finished=True,
                )
            finally:
                self._progress.pop(operation_id, None)
                await self._signal_terminal(ctx)

    async def _signal_terminal(self, ctx: _OperationContext) -> None:
        if self.on_terminal is None:
            return
        try:
            result = self.on_terminal()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(
                "Terminal operation signal failed",
                operation_id=ctx.operation_id,
                app_id=ctx.app_id,
                error=str(e),
            )

    async def _patch(
        self,
        ctx: _OperationContext,
        status: OperationStatus,
        event_type: OperationEventType,
        progress_percent: float,
        step: str,
        *,
        message: str | None = None,
        image: str | None = None,
        docker_status: str | None = None,
        progress_detail: PullProgressDetail | None = None,
        error_message: str | None = _UNSET,
        mark_started: bool = False,
        mark_finished: bool = False,
    ) -> None:
        """Persist, log and broadcast one step of an operation."""
        percent = clamp_percent(progress_percent)
        if not status.is_terminal:
            # progress never moves backwards and stays below 100 until terminal
            percent = min(max(percent, self._progress.get(ctx.operation_id, 0)), PROGRESS_COMPLETE - 1)
            self._progress[ctx.operation_id] = percent

        patch_fields: dict[str, Any] = {
            "status": status,
            "progress_percent": percent,
            "current_step": step,
            "mark_started": mark_started,
            "mark_finished": mark_finished,
        }
        if error_message is not _UNSET:
            patch_fields["error_message"] = error_message

        try:
            await self.repository.update_operation(ctx.operation_id, OperationPatch(**patch_fields))
        except Exception as e:
            logger.warning(
                "Failed to persist operation update",
                operation_id=ctx.operation_id,
                app_id=ctx.app_id,
                step=step,
                error=str(e),
            )

        if event_type is not OperationEventType.PULL_PROGRESS or status is OperationStatus.ERROR:
            log = logger.error if status is OperationStatus.ERROR else logger.info
            log(
                message or step,
                operation_id=ctx.operation_id,
                app_id=ctx.app_id,
                action=ctx.action.value,
                event_type=event_type.value,
                step=step,
                progress_percent=percent,
            )

        self.event_bus.publish(
            StoreOperationEvent(
                type=event_type,
                operation_id=ctx.operation_id,
                app_id=ctx.app_id,
                action=ctx.action,
                status=status,
                progress_percent=percent,
                step=step,
                message=message,
                image=image,
                docker_status=docker_status,
                progress_detail=progress_detail,
            )
        )

    async def _step(
        self, ctx: _OperationContext, progress_percent: float, step: str, message: str
    ) -> None:
        await self._patch(
            ctx,
            OperationStatus.RUNNING,
            OperationEventType.STEP,
            progress_percent,
            step,
            message=message,
        )

    # Install / redeploy

    async def _find_template(self, app_id: str) -> StoreTemplate:
        template = await self.templates.find_template(app_id)
        if template is None:
            raise OperationValidationError(f'Template not found for appId "{app_id}"')
        return template

    async def _read_existing_compose(self, stack: InstalledStackConfig) -> str | None:
        try:
            return await asyncio.to_thread(Path(stack.compose_path).read_text, encoding="utf-8")
        except OSError as e:
            logger.warning(
                "Installed compose file unavailable, using template source",
                app_id=stack.app_id,
                compose_path=stack.compose_path,
                error=str(e),
            )
            return None

    async def _resolve_web_ui_port(
        self,
        params: OperationParams,
        existing: InstalledStackConfig | None,
        primary: ParsedComposeService | None,
    ) -> int | None:
        """Explicit port, else the existing one, else the compose source's first published port."""
        if params.web_ui_port is not None:
            port = params.web_ui_port
        elif existing is not None and existing.web_ui_port is not None:
            port = existing.web_ui_port
        elif primary is not None:
            port = parse_first_published_port(primary.ports)
        else:
            port = None

        if port is None:
            return None

        assert_valid_web_ui_port(port)
        occupied = await self.repository.find_stack_by_web_ui_port(
            port, exclude_app_id=params.app_id
        )
        if occupied is not None:
            raise OperationValidationError(
                f'webUiPort {port} is already used by "{occupied.app_id}"'
            )
        return port

    async def _run_deploy(
        self,
        ctx: _OperationContext,
        params: OperationParams,
        existing: InstalledStackConfig | None,
    ) -> None:
        template = await self._find_template(params.app_id)

        if params.action is OperationAction.REDEPLOY and (
            existing is None or not existing.is_installed
        ):
            raise OperationValidationError(
                f'Cannot redeploy "{params.app_id}" because it is not installed'
            )

        compose_source = params.compose_source if params.has_compose_source else None
        if (
            compose_source is None
            and params.action is OperationAction.INSTALL
            and existing is not None
            and not params.reset_to_catalog
        ):
            compose_source = await self._read_existing_compose(existing)
            if compose_source is not None and not compose_source.strip():
                compose_source = None

        existing_env = dict(existing.env) if existing else {}
        primary = None
        if compose_source is not None:
            parsed = parse_compose_file(compose_source)
            primary = extract_primary_service(parsed, params.app_id) if parsed else None
            if primary is None:
                raise OperationValidationError("Invalid compose source")
            effective_env = {**existing_env, **primary.environment, **params.env}
        else:
            effective_env = merge_whitelisted_env(
                template.allowed_env_keys, template.env_defaults, existing_env, params.env
            )

        web_ui_port = await self._resolve_web_ui_port(params, existing, primary)

        stack_name = (
            existing.stack_name
            if existing is not None
            else sanitize_stack_name(params.app_id, params.display_name or template.name)
        )
        strategy = (
            StorageMappingStrategy.APP_TARGET_PATH
            if params.action is OperationAction.INSTALL and existing is None
            else StorageMappingStrategy.LEGACY_NAMED_SOURCE
        )

        await self._step(ctx, PROGRESS_RENDER, STEP_RENDER, "Materializing compose files")
        materialized = await self._materialize(
            params.app_id, stack_name, template, compose_source, effective_env, web_ui_port, strategy
        )

        await self._step(ctx, PROGRESS_PULL_START, STEP_PULL_IMAGES, "Resolving compose images")
        await self._pull_images(ctx, materialized.target)

        await self._step(ctx, PROGRESS_COMPOSE_UP, STEP_COMPOSE_UP, "Applying docker compose up -d")
        await self.compose_runner.up(materialized.target)

        await self._step(ctx, PROGRESS_FINALIZE, STEP_HEALTH_CHECK, "Finalizing deployment")
        await self.repository.upsert_installed_stack(
            InstalledStackConfig(
                app_id=params.app_id,
                template_name=template.template_name,
                stack_name=materialized.stack_name,
                compose_path=materialized.compose_path,
                status=InstalledStackStatus.INSTALLED,
                web_ui_port=materialized.web_ui_port,
                env=effective_env,
            ),
            mark_installed_at=True,
        )

    async def _materialize(
        self,
        app_id: str,
        stack_name: str,
        template: StoreTemplate,
        compose_source: str | None,
        env: dict[str, str],
        web_ui_port: int | None,
        strategy: StorageMappingStrategy,
    ) -> MaterializedStack:
        if compose_source is not None:
            return await self.materializer.materialize_inline(
                app_id, stack_name, compose_source, env, web_ui_port, strategy
            )
        if template.is_custom:
            return await self.materializer.materialize_inline(
                app_id, stack_name, template.compose_content, env, web_ui_port, strategy
            )
        if not template.repository_url or not template.stack_file:
            raise OperationValidationError(
                f'Template "{template.template_name}" has no repository stack file'
            )
        return await self.materializer.materialize_from_repository(
            app_id,
            stack_name,
            template.repository_url,
            template.stack_file,
            env,
            web_ui_port,
            strategy,
        )

    async def _pull_images(self, ctx: _OperationContext, target: ComposeTarget) -> None:
        images = await self.compose_runner.extract_images(target)
        tracker = ImagePullProgressTracker(images)

        for image in images:

            async def on_event(event: PullEvent, image: str = image) -> None:
                percent = tracker.record(image, event)
                await self._patch(
                    ctx,
                    OperationStatus.RUNNING,
                    OperationEventType.PULL_PROGRESS,
                    percent,
                    STEP_PULL_IMAGES,
                    image=image,
                    docker_status=event.status,
                    progress_detail=event.progress_detail,
                )

            await self.pull_client.pull(image, on_event)
            tracker.complete(image)

    # Uninstall

    async def _run_uninstall(
        self,
        ctx: _OperationContext,
        params: OperationParams,
        existing: InstalledStackConfig | None,
    ) -> None:
        if existing is None or not existing.is_installed:
            await self._step(ctx, PROGRESS_NOOP, STEP_NOOP, "Application already uninstalled")
            await self.repository.delete_installed_stack(params.app_id)
            return

        target = ComposeTarget.for_stack(existing)
        await self._step(ctx, PROGRESS_COMPOSE_DOWN, STEP_COMPOSE_DOWN, "Running docker compose down")
        await self.compose_runner.down(target, remove_volumes=params.remove_volumes)

        if params.remove_volumes:
            await self._step(ctx, PROGRESS_REMOVE_DATA, STEP_CLEANUP, "Removing app data")
            other_stacks = [
                stack
                for stack in await self.repository.list_installed_stacks()
                if stack.is_installed and stack.app_id != params.app_id
            ]
            shared_directories = await self.materializer.referenced_directories(
                stack.compose_path for stack in other_stacks
            )
            report = await self.materializer.cleanup_data(
                existing.compose_path, self.compose_runner.remove_volume, shared_directories
            )
            record_message = f"{report.summary()}; removing installed stack record"
        else:
            await self._step(
                ctx, PROGRESS_REMOVE_RECORD, STEP_CLEANUP, "Removing installed stack record"
            )
            record_message = "Removing installed stack record"

        await self._step(ctx, PROGRESS_FINALIZE, STEP_CLEANUP, record_message)
        await self.repository.delete_installed_stack(params.app_id)

    # Runtime actions

    def _require_installed(
        self, existing: InstalledStackConfig | None, app_id: str, verb: str
    ) -> InstalledStackConfig:
        if existing is None or not existing.is_installed:
            raise OperationValidationError(f'Cannot {verb} "{app_id}" because it is not installed')
        return existing

    async def _run_runtime_action(
        self, ctx: _OperationContext, existing: InstalledStackConfig | None
    ) -> None:
        stack = self._require_installed(existing, ctx.app_id, ctx.action.value)
        target = ComposeTarget.for_stack(stack)

        await self._step(
            ctx, PROGRESS_COMPOSE_ACTION, STEP_COMPOSE_ACTION, f"Running compose {ctx.action.value}"
        )
        if ctx.action is OperationAction.START:
            await self.compose_runner.start(target)
        elif ctx.action is OperationAction.STOP:
            await self.compose_runner.stop(target)
        else:
            await self.compose_runner.restart(target)

        await self._step(ctx, PROGRESS_STATUS_REFRESH, STEP_STATUS_REFRESH, "Refreshing runtime status")
        runtime = await self.compose_runner.get_runtime_info(target)
        logger.info(
            "Stack runtime status refreshed",
            operation_id=ctx.operation_id,
            app_id=ctx.app_id,
            runtime_status=runtime.status,
        )

    # Update check

    async def _run_check_updates(
        self, ctx: _OperationContext, existing: InstalledStackConfig | None
    ) -> None:
        stack = self._require_installed(existing, ctx.app_id, "check updates for")

        await self._step(
            ctx, PROGRESS_INSPECT_IMAGES, STEP_INSPECT_IMAGES, "Checking Docker image updates"
        )
        state = await self.update_resolver.resolve_update_state(
            stack.compose_path, stack.stack_name
        )
        await self.repository.update_stack_update_status(
            ctx.app_id,
            is_up_to_date=not state.update_available,
            local_digest=state.local_digest,
            remote_digest=state.remote_digest,
        )

        await self._step(
            ctx,
            PROGRESS_UPDATES_RESOLVED,
            STEP_UPDATES_RESOLVED,
            "Updates available" if state.update_available else "Already up to date",
        )
