"""Persistence for operation records and installed stacks."""

import json
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

import aiosqlite
import structlog

from ..core.exceptions import PersistenceError
from ..models.enums import InstalledStackStatus, OperationAction, OperationStatus
from ..models.operation import OperationPatch, StoreOperation, utcnow
from ..models.stack import InstalledStackConfig

logger = structlog.get_logger()


class BaseStackRepository(ABC):
    """Storage for StoreOperation and InstalledStackConfig records."""

    async def initialize(self) -> None:
        """Prepare the backing store; a no-op unless the store needs a schema."""

    @abstractmethod
    async def create_operation(self, operation: StoreOperation) -> None:
        """Persist a new operation record."""

    @abstractmethod
    async def update_operation(
        self, operation_id: str, patch: OperationPatch
    ) -> StoreOperation | None:
        """Apply ``patch`` and return the updated record, None if it does not exist."""

    @abstractmethod
    async def find_operation(self, operation_id: str) -> StoreOperation | None:
        """Look up an operation by id."""

    @abstractmethod
    async def find_installed_stack(self, app_id: str) -> InstalledStackConfig | None:
        """Look up the stack record for an app."""

    @abstractmethod
    async def find_stack_by_web_ui_port(
        self, port: int, exclude_app_id: str | None = None
    ) -> InstalledStackConfig | None:
        """Installed stack (other than ``exclude_app_id``) publishing ``port``."""

    @abstractmethod
    async def list_installed_stacks(self) -> list[InstalledStackConfig]:
        """All stack records ordered by app id."""

    @abstractmethod
    async def upsert_installed_stack(
        self, stack: InstalledStackConfig, mark_installed_at: bool = True
    ) -> InstalledStackConfig:
        """Insert or replace a stack record, keeping an existing ``installed_at``."""

    @abstractmethod
    async def delete_installed_stack(self, app_id: str) -> None:
        """Remove a stack record; missing records are ignored."""

    @abstractmethod
    async def update_stack_update_status(
        self,
        app_id: str,
        is_up_to_date: bool,
        local_digest: str | None = None,
        remote_digest: str | None = None,
    ) -> None:
        """Record the result of an update check."""


def _merge_upsert(
    existing: InstalledStackConfig | None,
    stack: InstalledStackConfig,
    mark_installed_at: bool,
    now: datetime,
) -> InstalledStackConfig:
    installed_at = existing.installed_at if existing else None
    if installed_at is None and mark_installed_at:
        installed_at = now

    changes = {"installed_at": installed_at, "updated_at": now}
    if existing is not None:
        changes.update(
            is_up_to_date=existing.is_up_to_date,
            last_update_check=existing.last_update_check,
            local_digest=existing.local_digest,
            remote_digest=existing.remote_digest,
        )
    return stack.model_copy(update=changes)


class InMemoryStackRepository(BaseStackRepository):
    """Process-local repository, used by tests and ``--memory`` runs."""

    def __init__(self):
        self.operations: dict[str, StoreOperation] = {}
        self.stacks: dict[str, InstalledStackConfig] = {}

    async def create_operation(self, operation: StoreOperation) -> None:
        if operation.id in self.operations:
            raise PersistenceError(f"Operation {operation.id} already exists")
        self.operations[operation.id] = operation.model_copy()

    async def update_operation(
        self, operation_id: str, patch: OperationPatch
    ) -> StoreOperation | None:
        operation = self.operations.get(operation_id)
        if operation is None:
            return None
        updated = patch.apply(operation)
        self.operations[operation_id] = updated
        return updated.model_copy()

    async def find_operation(self, operation_id: str) -> StoreOperation | None:
        operation = self.operations.get(operation_id)
        return operation.model_copy() if operation else None

    async def find_installed_stack(self, app_id: str) -> InstalledStackConfig | None:
        stack = self.stacks.get(app_id)
        return stack.model_copy(deep=True) if stack else None

    async def find_stack_by_web_ui_port(
        self, port: int, exclude_app_id: str | None = None
    ) -> InstalledStackConfig | None:
        for stack in self.stacks.values():
            if (
                stack.web_ui_port == port
                and stack.status is not InstalledStackStatus.NOT_INSTALLED
                and stack.app_id != exclude_app_id
            ):
                return stack.model_copy(deep=True)
        return None

    async def list_installed_stacks(self) -> list[InstalledStackConfig]:
        return [self.stacks[app_id].model_copy(deep=True) for app_id in sorted(self.stacks)]

    async def upsert_installed_stack(
        self, stack: InstalledStackConfig, mark_installed_at: bool = True
    ) -> InstalledStackConfig:
        merged = _merge_upsert(self.stacks.get(stack.app_id), stack, mark_installed_at, utcnow())
        self.stacks[stack.app_id] = merged
        return merged.model_copy(deep=True)

    async def delete_installed_stack(self, app_id: str) -> None:
        self.stacks.pop(app_id, None)

    async def update_stack_update_status(
        self,
        app_id: str,
        is_up_to_date: bool,
        local_digest: str | None = None,
        remote_digest: str | None = None,
    ) -> None:
        stack = self.stacks.get(app_id)
        if stack is None:
            return
        now = utcnow()
        self.stacks[app_id] = stack.model_copy(
            update={
                "is_up_to_date": is_up_to_date,
                "local_digest": local_digest,
                "remote_digest": remote_digest,
                "last_update_check": now,
                "updated_at": now,
            }
        )


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SqliteStackRepository(BaseStackRepository):
    """SQLite-backed repository; each call opens its own connection."""

    OPERATION_COLUMNS = (
        "id, app_id, action, status, progress_percent, current_step, error_message, "
        "started_at, finished_at, updated_at"
    )
    STACK_COLUMNS = (
        "app_id, template_name, stack_name, compose_path, status, web_ui_port, env_json, "
        "installed_at, updated_at, is_up_to_date, last_update_check, local_digest, remote_digest"
    )

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)

    @asynccontextmanager
    async def _connect(self):
        try:
            async with aiosqlite.connect(self.db_path) as db:
                yield db
        except aiosqlite.Error as e:
            logger.error("Stack repository query failed", db_path=str(self.db_path), error=str(e))
            raise PersistenceError(f"Database error: {e}") from e

    async def initialize(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connect() as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS app_operations (
                    id TEXT PRIMARY KEY,
                    app_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    status TEXT NOT NULL,
                    progress_percent INTEGER NOT NULL DEFAULT 0,
                    current_step TEXT NOT NULL,
                    error_message TEXT,
                    started_at TEXT,
                    finished_at TEXT,
                    updated_at TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS app_stacks (
                    app_id TEXT PRIMARY KEY,
                    template_name TEXT NOT NULL,
                    stack_name TEXT NOT NULL,
                    compose_path TEXT NOT NULL,
                    status TEXT NOT NULL,
                    web_ui_port INTEGER,
                    env_json TEXT NOT NULL DEFAULT '{}',
                    installed_at TEXT,
                    updated_at TEXT NOT NULL,
                    is_up_to_date INTEGER NOT NULL DEFAULT 1,
                    last_update_check TEXT,
                    local_digest TEXT,
                    remote_digest TEXT
                )
            """)
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_app_operations_app ON app_operations(app_id)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_app_stacks_port ON app_stacks(web_ui_port)"
            )
            await db.commit()

        logger.info("Stack repository initialized", db_path=str(self.db_path))

    @staticmethod
    def _operation_from_row(row) -> StoreOperation:
        return StoreOperation(
            id=row[0],
            app_id=row[1],
            action=OperationAction(row[2]),
            status=OperationStatus(row[3]),
            progress_percent=row[4],
            current_step=row[5],
            error_message=row[6],
            started_at=_from_iso(row[7]),
            finished_at=_from_iso(row[8]),
            updated_at=_from_iso(row[9]),
        )

    @staticmethod
    def _operation_values(operation: StoreOperation) -> tuple:
        return (
            operation.id,
            operation.app_id,
            operation.action.value,
            operation.status.value,
            operation.progress_percent,
            operation.current_step,
            operation.error_message,
            _to_iso(operation.started_at),
            _to_iso(operation.finished_at),
            _to_iso(operation.updated_at),
        )

    @staticmethod
    def _stack_from_row(row) -> InstalledStackConfig:
        return InstalledStackConfig(
            app_id=row[0],
            template_name=row[1],
            stack_name=row[2],
            compose_path=row[3],
            status=InstalledStackStatus(row[4]),
            web_ui_port=row[5],
            env=json.loads(row[6] or "{}"),
            installed_at=_from_iso(row[7]),
            updated_at=_from_iso(row[8]),
            is_up_to_date=bool(row[9]),
            last_update_check=_from_iso(row[10]),
            local_digest=row[11],
            remote_digest=row[12],
        )

    @staticmethod
    def _stack_values(stack: InstalledStackConfig) -> tuple:
        return (
            stack.app_id,
            stack.template_name,
            stack.stack_name,
            stack.compose_path,
            stack.status.value,
            stack.web_ui_port,
            json.dumps(stack.env, sort_keys=True),
            _to_iso(stack.installed_at),
            _to_iso(stack.updated_at),
            int(stack.is_up_to_date),
            _to_iso(stack.last_update_check),
            stack.local_digest,
            stack.remote_digest,
        )

    async def create_operation(self, operation: StoreOperation) -> None:
        async with self._connect() as db:
            await db.execute(
                f"INSERT INTO app_operations ({self.OPERATION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._operation_values(operation),
            )
            await db.commit()

    async def _select_operation(self, db, operation_id: str) -> StoreOperation | None:
        cursor = await db.execute(
            f"SELECT {self.OPERATION_COLUMNS} FROM app_operations WHERE id = ?", (operation_id,)
        )
        row = await cursor.fetchone()
        return self._operation_from_row(row) if row else None

    async def update_operation(
        self, operation_id: str, patch: OperationPatch
    ) -> StoreOperation | None:
        async with self._connect() as db:
            operation = await self._select_operation(db, operation_id)
            if operation is None:
                return None
            updated = patch.apply(operation)
            values = self._operation_values(updated)
            await db.execute(
                "UPDATE app_operations SET status = ?, progress_percent = ?, current_step = ?, "
                "error_message = ?, started_at = ?, finished_at = ?, updated_at = ? WHERE id = ?",
                (*values[3:], operation_id),
            )
            await db.commit()
        return updated

    async def find_operation(self, operation_id: str) -> StoreOperation | None:
        async with self._connect() as db:
            return await self._select_operation(db, operation_id)

    async def find_installed_stack(self, app_id: str) -> InstalledStackConfig | None:
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT {self.STACK_COLUMNS} FROM app_stacks WHERE app_id = ?", (app_id,)
            )
            row = await cursor.fetchone()
        return self._stack_from_row(row) if row else None

    async def find_stack_by_web_ui_port(
        self, port: int, exclude_app_id: str | None = None
    ) -> InstalledStackConfig | None:
        query = (
            f"SELECT {self.STACK_COLUMNS} FROM app_stacks "
            "WHERE web_ui_port = ? AND status != ?"
        )
        params: list = [port, InstalledStackStatus.NOT_INSTALLED.value]
        if exclude_app_id:
            query += " AND app_id != ?"
            params.append(exclude_app_id)

        async with self._connect() as db:
            cursor = await db.execute(query + " LIMIT 1", params)
            row = await cursor.fetchone()
        return self._stack_from_row(row) if row else None

    async def list_installed_stacks(self) -> list[InstalledStackConfig]:
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT {self.STACK_COLUMNS} FROM app_stacks ORDER BY app_id ASC"
            )
            rows = await cursor.fetchall()
        return [self._stack_from_row(row) for row in rows]

    async def upsert_installed_stack(
        self, stack: InstalledStackConfig, mark_installed_at: bool = True
    ) -> InstalledStackConfig:
        existing = await self.find_installed_stack(stack.app_id)
        merged = _merge_upsert(existing, stack, mark_installed_at, utcnow())

        async with self._connect() as db:
            await db.execute(
                f"INSERT OR REPLACE INTO app_stacks ({self.STACK_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._stack_values(merged),
            )
            await db.commit()
        return merged

    async def delete_installed_stack(self, app_id: str) -> None:
        async with self._connect() as db:
            await db.execute("DELETE FROM app_stacks WHERE app_id = ?", (app_id,))
            await db.commit()

    async def update_stack_update_status(
        self,
        app_id: str,
        is_up_to_date: bool,
        local_digest: str | None = None,
        remote_digest: str | None = None,
    ) -> None:
        now = _to_iso(utcnow())
        async with self._connect() as db:
            await db.execute(
                "UPDATE app_stacks SET is_up_to_date = ?, local_digest = ?, remote_digest = ?, "
                "last_update_check = ?, updated_at = ? WHERE app_id = ?",
                (int(is_up_to_date), local_digest, remote_digest, now, now, app_id),
            )
            await db.commit()
