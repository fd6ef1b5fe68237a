"""
homestack MCP server

Exposes app lifecycle operations (install, redeploy, uninstall, start, stop,
restart, check-updates) over FastMCP. Operations run in the background; callers
poll ``store_operation`` for progress.
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Annotated, Any

from dotenv import load_dotenv
from fastmcp import FastMCP
from pydantic import Field, ValidationError

from .core.compose_runner import ComposeRunner
from .core.docker_client import DockerImagePuller
from .core.exceptions import ConfigurationError, HomestackError
from .core.logging_config import get_server_logger, setup_logging
from .core.materializer import StackMaterializer
from .core.settings import HomestackSettings, get_settings
from .core.subprocess_manager import get_subprocess_manager
from .core.update_check import ImageUpdateResolver
from .middleware import ErrorHandlingMiddleware, LoggingMiddleware
from .models.enums import OperationAction
from .models.operation import OperationParams
from .services.installed_apps import InstalledAppsService
from .services.orchestrator import OperationOrchestrator
from .services.repository import (
    BaseStackRepository,
    InMemoryStackRepository,
    SqliteStackRepository,
)
from .services.templates import TemplateCatalog, load_template_catalog


class HomestackServer:
    """Wires the orchestrator and its collaborators behind FastMCP tools."""

    def __init__(
        self,
        settings: HomestackSettings,
        templates: TemplateCatalog,
        repository: BaseStackRepository | None = None,
    ):
        self.settings = settings
        self.templates = templates
        self.logger = get_server_logger()

        self.repository = repository or SqliteStackRepository(settings.database_path)
        self.compose_runner = ComposeRunner(settings, get_subprocess_manager())
        self.materializer = StackMaterializer(settings)
        self.installed_apps = InstalledAppsService(self.repository, self.compose_runner)
        self.orchestrator = OperationOrchestrator(
            self.repository,
            templates,
            self.compose_runner,
            self.materializer,
            DockerImagePuller(settings),
            ImageUpdateResolver(self.compose_runner, get_subprocess_manager(), settings),
            on_terminal=self.installed_apps.invalidate,
            settings=settings,
        )

        self._ready = False
        self._ready_lock = asyncio.Lock()
        self.app: FastMCP | None = None

        self.logger.info(
            "homestack server initialized",
            data_root=str(settings.data_root),
            stacks_root=str(settings.stacks_root),
            app_data_root=str(settings.app_data_root),
            templates=len(templates),
            repository=type(self.repository).__name__,
        )

    async def ensure_ready(self) -> None:
        """Create the database schema on first use."""
        async with self._ready_lock:
            if not self._ready:
                await self.repository.initialize()
                self._ready = True

    def _initialize_app(self) -> None:
        self.app = FastMCP("homestack")

        # First added runs first: errors are classified before logging sees them
        self.app.add_middleware(
            ErrorHandlingMiddleware(
                include_traceback=self.settings.log_level.upper() == "DEBUG",
                track_error_stats=True,
            )
        )
        self.app.add_middleware(LoggingMiddleware(include_payloads=True))

        self.app.tool(
            self.store_app,
            annotations={
                "title": "App Lifecycle Operations",
                "readOnlyHint": False,
                "destructiveHint": True,  # uninstall can remove app data
                "idempotentHint": False,
                "openWorldHint": True,  # pulls images and fetches stack files
            },
        )
        self.app.tool(
            self.store_operation,
            annotations={"title": "Operation Status", "readOnlyHint": True},
        )
        self.app.tool(
            self.list_installed_apps,
            annotations={"title": "Installed Apps", "readOnlyHint": True},
        )

    # Tools

    async def store_app(
        self,
        action: Annotated[
            str,
            Field(
                description="install | redeploy | uninstall | start | stop | restart | check-updates"
            ),
        ],
        app_id: Annotated[str, Field(description="App identifier from the template catalog")],
        display_name: Annotated[
            str, Field(default="", description="Display name used to derive the stack name")
        ] = "",
        env: Annotated[
            dict[str, str] | None, Field(default=None, description="Environment overrides")
        ] = None,
        web_ui_port: Annotated[
            int | None, Field(default=None, description="Host port for the app's web UI")
        ] = None,
        compose_source: Annotated[
            str, Field(default="", description="Inline docker-compose YAML to deploy instead")
        ] = "",
        remove_volumes: Annotated[
            bool, Field(default=False, description="Uninstall: also delete app data")
        ] = False,
        reset_to_catalog: Annotated[
            bool, Field(default=False, description="Install: ignore the installed compose file")
        ] = False,
    ) -> dict[str, Any]:
        """Start an app lifecycle operation.

        Returns immediately with an operation_id; poll store_operation for progress.

        Actions:
        • install: Deploy from the catalog, a custom template or compose_source
          - Optional: env, web_ui_port, display_name, compose_source, reset_to_catalog
        • redeploy: Re-render and restart an installed app
          - Optional: env, web_ui_port, compose_source
        • uninstall: docker compose down and forget the app
          - Optional: remove_volumes
        • start / stop / restart: Runtime control of an installed app
        • check-updates: Compare local and registry image digests
        """
        try:
            params = OperationParams(
                app_id=app_id,
                action=OperationAction(action),
                display_name=display_name or None,
                env=env or {},
                web_ui_port=web_ui_port,
                compose_source=compose_source or None,
                remove_volumes=remove_volumes,
                reset_to_catalog=reset_to_catalog,
            )
        except (ValueError, ValidationError) as e:
            return {
                "success": False,
                "error": f"Parameter validation failed: {e}",
                "action": action,
            }

        await self.ensure_ready()
        handle = await self.orchestrator.start_operation(params)
        return {
            "success": True,
            "operation_id": handle.operation_id,
            "action": params.action.value,
            "app_id": params.app_id,
        }

    async def store_operation(
        self,
        operation_id: Annotated[str, Field(description="Operation id returned by store_app")],
    ) -> dict[str, Any]:
        """Persisted operation record plus the latest broadcast event."""
        await self.ensure_ready()
        operation = await self.orchestrator.get_operation(operation_id)
        if operation is None:
            return {"success": False, "error": f"Operation {operation_id} not found"}

        latest = self.orchestrator.get_latest_event(operation_id)
        return {
            "success": True,
            "operation": operation.model_dump(mode="json"),
            "latest_event": latest.model_dump(mode="json") if latest else None,
        }

    async def list_installed_apps(
        self,
        include_runtime: Annotated[
            bool, Field(default=False, description="Query docker compose for live status")
        ] = False,
    ) -> dict[str, Any]:
        """Installed apps with their ports, env and update status."""
        await self.ensure_ready()
        apps = await self.installed_apps.describe_installed(include_runtime=include_runtime)
        return {"success": True, "apps": apps, "count": len(apps)}

    def run(self, host: str, port: int) -> None:
        """Run the FastMCP server."""
        self._initialize_app()
        self.logger.info("Starting homestack server", host=host, port=port)
        if self.app is None:
            raise RuntimeError("FastMCP app not initialized")
        self.app.run(transport="http", host=host, port=port)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    load_dotenv()

    parser = argparse.ArgumentParser(description="homestack app lifecycle server")
    parser.add_argument("--host", default=os.getenv("FASTMCP_HOST", "127.0.0.1"), help="Server host")
    parser.add_argument(
        "--port", type=int, default=int(os.getenv("FASTMCP_PORT", "8000")), help="Server port"
    )
    parser.add_argument(
        "--templates",
        default=os.getenv("STORE_TEMPLATES_FILE"),
        help="YAML file with catalog and custom app templates",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    parser.add_argument(
        "--memory", action="store_true", help="Keep operations and stacks in memory only"
    )
    parser.add_argument(
        "--validate-config", action="store_true", help="Validate configuration and exit"
    )
    return parser.parse_args(argv)


def _resolve_log_dir(settings: HomestackSettings) -> Path:
    return Path(settings.log_dir) if settings.log_dir else Path(settings.data_root) / "logs"


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(
        log_dir=_resolve_log_dir(settings),
        log_level=args.log_level,
        max_file_size_mb=settings.log_file_size_mb,
    )
    logger = get_server_logger()

    try:
        templates = asyncio.run(load_template_catalog(args.templates or settings.templates_file))
    except ConfigurationError as e:
        logger.error("Template catalog invalid", error=str(e))
        sys.exit(1)

    if args.validate_config:
        logger.info(
            "Configuration validation successful",
            data_root=str(settings.data_root),
            templates=len(templates),
        )
        return

    repository = InMemoryStackRepository() if args.memory else None
    server = HomestackServer(settings, templates, repository=repository)

    try:
        server.run(args.host, args.port)
    except KeyboardInterrupt:
        logger.info("Server shutdown requested")
    except HomestackError as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
