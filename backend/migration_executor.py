# migration_executor.py — Apply and roll back stored SQL migrations
"""
Migrations move pending -> running -> completed | failed, and
completed -> rolled_back. ``execute_all_pending`` walks pending rows in
(execution_order, created_at) order and stops at the first failure.
"""

import re
import time
import logging
import traceback
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

import errors
from artifact_codec import slug
from models import MigrationStatus, SchemaMigration, iso, utcnow

logger = logging.getLogger("exprsn.migrations")

UPDATABLE_FIELDS = {"description", "migration_sql", "rollback_sql", "depends_on", "execution_order"}
MIGRATION_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,200}$")
DOLLAR_TAG_PATTERN = re.compile(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")


def _in_identifier(sql: str, i: int) -> bool:
    # "$" may appear inside identifiers such as col$1
    return i > 0 and (sql[i - 1].isalnum() or sql[i - 1] == "_")


def split_statements(sql: str) -> List[str]:
    """Split a script on semicolons that sit outside quotes and comments.

    Understands PostgreSQL dollar quoting (``$$ ... $$`` and
    ``$tag$ ... $tag$``) so function and trigger bodies stay whole.
    Comments are dropped.
    """
    statements, current = [], []
    quote = None
    i = 0
    while i < len(sql):
        ch = sql[i]
        if quote:
            if len(quote) > 1:
                # Dollar-quoted body runs to the matching tag
                end = sql.find(quote, i)
                end = len(sql) if end == -1 else end + len(quote)
                current.append(sql[i:end])
                quote = None
                i = end
                continue
            current.append(ch)
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
            current.append(ch)
        elif ch == "$" and DOLLAR_TAG_PATTERN.match(sql, i) and not _in_identifier(sql, i):
            quote = DOLLAR_TAG_PATTERN.match(sql, i).group(0)
            current.append(quote)
            i += len(quote)
            continue
        elif ch == "-" and sql[i:i + 2] == "--":
            end = sql.find("\n", i)
            i = len(sql) if end == -1 else end
            continue
        elif ch == "/" and sql[i:i + 2] == "/*":
            end = sql.find("*/", i + 2)
            current.append(" ")
            i = len(sql) if end == -1 else end + 2
            continue
        elif ch == ";":
            statements.append("".join(current))
            current = []
        else:
            current.append(ch)
        i += 1
    statements.append("".join(current))
    return [s.strip() for s in statements if s.strip()]


def migration_to_dict(m: SchemaMigration) -> Dict[str, Any]:
    return {
        "id": m.id,
        "migrationName": m.migration_name,
        "description": m.description,
        "migrationSql": m.migration_sql,
        "rollbackSql": m.rollback_sql,
        "dependsOn": m.depends_on or [],
        "executionOrder": m.execution_order,
        "status": m.status.value,
        "appliedAt": iso(m.applied_at),
        "appliedBy": m.applied_by,
        "rolledBackAt": iso(m.rolled_back_at),
        "rolledBackBy": m.rolled_back_by,
        "executionTimeMs": m.execution_time_ms,
        "errorMessage": m.error_message,
        "createdBy": m.created_by,
        "createdAt": iso(m.created_at),
        "updatedAt": iso(m.updated_at),
    }


def generate_migration_name(description: str) -> str:
    return f"{utcnow().strftime('%Y%m%d%H%M%S')}_{slug(description).replace('-', '_') or 'migration'}"


class MigrationExecutor:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_migration(self, migration_id: str) -> SchemaMigration:
        migration = await self.db.get(SchemaMigration, migration_id)
        if migration is None:
            raise errors.NotFoundError(f"Migration not found: {migration_id}")
        return migration

    async def list_migrations(self, status: Optional[MigrationStatus] = None) -> List[SchemaMigration]:
        stmt = select(SchemaMigration)
        if status:
            stmt = stmt.where(SchemaMigration.status == MigrationStatus(status))
        result = await self.db.execute(stmt.order_by(SchemaMigration.execution_order, SchemaMigration.created_at))
        return list(result.scalars().all())

    async def _dependency_floor(self, depends_on: List[str]) -> int:
        """Lowest execution_order that still runs after every dependency"""
        if not depends_on:
            return 0
        result = await self.db.execute(
            select(SchemaMigration.migration_name, SchemaMigration.execution_order)
            .where(SchemaMigration.migration_name.in_(depends_on))
        )
        found = dict(result.all())
        missing = sorted(set(depends_on) - set(found))
        if missing:
            raise errors.ValidationError(f"Unknown migration dependencies: {missing}")
        return max(found.values()) + 1

    async def create_migration(
        self,
        migration_sql: str,
        user_id: Optional[str],
        migration_name: Optional[str] = None,
        description: Optional[str] = None,
        rollback_sql: Optional[str] = None,
        depends_on: Optional[List[str]] = None,
        execution_order: Optional[int] = None,
    ) -> SchemaMigration:
        if not migration_sql or not migration_sql.strip():
            raise errors.ValidationError("migrationSql is required")
        name = migration_name or generate_migration_name(description or "migration")
        if not MIGRATION_NAME_PATTERN.match(name):
            raise errors.ValidationError(f"Invalid migration name: {name!r}")

        existing = await self.db.execute(select(SchemaMigration.id).where(SchemaMigration.migration_name == name))
        if existing.first():
            raise errors.ConflictError(f"Migration '{name}' already exists")

        depends_on = list(dict.fromkeys(depends_on or []))
        floor = await self._dependency_floor(depends_on)
        if execution_order is None:
            current_max = (await self.db.execute(select(func.max(SchemaMigration.execution_order)))).scalar()
            execution_order = max(floor, (current_max or 0) + 1)
        elif execution_order < floor:
            raise errors.ValidationError(f"executionOrder must be at least {floor} to run after its dependencies")

        migration = SchemaMigration(
            migration_name=name,
            description=description,
            migration_sql=migration_sql,
            rollback_sql=rollback_sql,
            depends_on=depends_on,
            execution_order=execution_order,
            status=MigrationStatus.PENDING,
            created_by=user_id,
        )
        self.db.add(migration)
        await self.db.commit()
        logger.info(f"Created migration {name} (order {execution_order})")
        return migration

    async def update_migration(self, migration_id: str, updates: Dict[str, Any]) -> SchemaMigration:
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise errors.ValidationError(f"Fields cannot be updated: {sorted(unknown)}")
        migration = await self.get_migration(migration_id)
        if migration.status == MigrationStatus.RUNNING:
            raise errors.ConflictError("Migration is running")

        if "depends_on" in updates or "execution_order" in updates:
            depends_on = updates.get("depends_on", migration.depends_on) or []
            if migration.migration_name in depends_on:
                raise errors.ValidationError("A migration cannot depend on itself")
            floor = await self._dependency_floor(depends_on)
            order = updates.get("execution_order", migration.execution_order)
            if order < floor:
                raise errors.ValidationError(f"executionOrder must be at least {floor} to run after its dependencies")

        # Assigning migration_sql on a completed migration raises IntegrityError
        for field, value in updates.items():
            setattr(migration, field, value)
        await self.db.commit()
        return migration

    async def _run_script(self, sql: str) -> None:
        connection = await self.db.connection()
        for statement in split_statements(sql):
            await connection.exec_driver_sql(statement)

    async def execute(self, migration_id: str, user_id: Optional[str]) -> SchemaMigration:
        migration = await self.get_migration(migration_id)
        if migration.status not in (MigrationStatus.PENDING, MigrationStatus.FAILED):
            raise errors.ConflictError(
                f"Migration '{migration.migration_name}' cannot be executed from status {migration.status.value}"
            )

        migration.status = MigrationStatus.RUNNING
        await self.db.commit()

        started = time.monotonic()
        try:
            await self._run_script(migration.migration_sql)
        except SQLAlchemyError as e:
            stack = traceback.format_exc()
            message = str(getattr(e, "orig", None) or e)
            await self.db.rollback()
            await self.db.refresh(migration)
            migration.status = MigrationStatus.FAILED
            migration.error_message = message
            migration.error_stack = stack
            migration.execution_time_ms = int((time.monotonic() - started) * 1000)
            await self.db.commit()
            logger.error(f"Migration {migration.migration_name} failed: {message}")
            raise errors.StorageError(f"Migration '{migration.migration_name}' failed: {message}") from e

        migration.status = MigrationStatus.COMPLETED
        migration.applied_at = utcnow()
        migration.applied_by = user_id
        migration.execution_time_ms = int((time.monotonic() - started) * 1000)
        migration.error_message = None
        migration.error_stack = None
        await self.db.commit()
        logger.info(f"Migration {migration.migration_name} completed in {migration.execution_time_ms}ms")
        return migration

    async def rollback(self, migration_id: str, user_id: Optional[str]) -> SchemaMigration:
        migration = await self.get_migration(migration_id)
        if migration.status != MigrationStatus.COMPLETED:
            raise errors.ConflictError(f"Only completed migrations can be rolled back (status: {migration.status.value})")
        if not migration.rollback_sql:
            raise errors.ValidationError(f"Migration '{migration.migration_name}' has no rollbackSql")

        try:
            await self._run_script(migration.rollback_sql)
        except SQLAlchemyError as e:
            message = str(getattr(e, "orig", None) or e)
            await self.db.rollback()
            await self.db.refresh(migration)
            migration.error_message = message
            migration.error_stack = traceback.format_exc()
            await self.db.commit()
            raise errors.StorageError(f"Rollback of '{migration.migration_name}' failed: {message}") from e

        migration.status = MigrationStatus.ROLLED_BACK
        migration.rolled_back_at = utcnow()
        migration.rolled_back_by = user_id
        await self.db.commit()
        logger.info(f"Migration {migration.migration_name} rolled back")
        return migration

    async def reset_status(self, migration_id: str) -> SchemaMigration:
        migration = await self.get_migration(migration_id)
        if migration.status == MigrationStatus.COMPLETED:
            raise errors.IntegrityError("A completed migration cannot be reset; roll it back first")
        migration.status = MigrationStatus.PENDING
        migration.error_message = None
        migration.error_stack = None
        migration.execution_time_ms = None
        await self.db.commit()
        return migration

    async def execute_all_pending(self, user_id: Optional[str]) -> Dict[str, Any]:
        pending = await self.list_migrations(MigrationStatus.PENDING)
        pending_ids = [(m.id, m.migration_name) for m in pending]
        results = []
        executed = failed = 0

        for migration_id, name in pending_ids:
            try:
                await self.execute(migration_id, user_id)
            except errors.PlatformError as e:
                failed += 1
                results.append({"name": name, "success": False, "error": e.message})
                break
            executed += 1
            results.append({"name": name, "success": True})

        logger.info(f"Executed {executed}/{len(pending_ids)} pending migrations ({failed} failed)")
        return {
            "success": failed == 0,
            "executed": executed,
            "failed": failed,
            "total": len(pending_ids),
            "results": results,
        }
