# routers/migrations.py — Stored SQL migrations: author, apply, roll back
from typing import Optional, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_permission, CurrentUser
from database import get_db_session
from migration_executor import MigrationExecutor, migration_to_dict
from models import MigrationStatus

router = APIRouter(prefix="/api/v1/migrations", tags=["Migrations"])


class MigrationCreate(BaseModel):
    migration_sql: str = Field(..., min_length=1)
    migration_name: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = None
    rollback_sql: Optional[str] = None
    depends_on: List[str] = []
    execution_order: Optional[int] = Field(None, ge=0)


class MigrationUpdate(BaseModel):
    description: Optional[str] = None
    migration_sql: Optional[str] = None
    rollback_sql: Optional[str] = None
    depends_on: Optional[List[str]] = None
    execution_order: Optional[int] = Field(None, ge=0)


@router.post("", status_code=201)
async def create_migration(
    req: MigrationCreate,
    user: CurrentUser = Depends(require_permission("migrations:write")),
    db: AsyncSession = Depends(get_db_session),
):
    migration = await MigrationExecutor(db).create_migration(
        req.migration_sql, user.id,
        migration_name=req.migration_name,
        description=req.description,
        rollback_sql=req.rollback_sql,
        depends_on=req.depends_on,
        execution_order=req.execution_order,
    )
    return {"success": True, "data": migration_to_dict(migration)}


@router.get("")
async def list_migrations(
    status: Optional[MigrationStatus] = None,
    user: CurrentUser = Depends(require_permission("migrations:read")),
    db: AsyncSession = Depends(get_db_session),
):
    migrations = await MigrationExecutor(db).list_migrations(status)
    return {"success": True, "data": [migration_to_dict(m) for m in migrations]}


@router.post("/execute-all")
async def execute_all_pending(
    user: CurrentUser = Depends(require_permission("migrations:execute")),
    db: AsyncSession = Depends(get_db_session),
):
    return await MigrationExecutor(db).execute_all_pending(user.id)


@router.get("/{migration_id}")
async def get_migration(
    migration_id: str,
    user: CurrentUser = Depends(require_permission("migrations:read")),
    db: AsyncSession = Depends(get_db_session),
):
    migration = await MigrationExecutor(db).get_migration(migration_id)
    return {"success": True, "data": migration_to_dict(migration)}


@router.patch("/{migration_id}")
async def update_migration(
    migration_id: str,
    req: MigrationUpdate,
    user: CurrentUser = Depends(require_permission("migrations:write")),
    db: AsyncSession = Depends(get_db_session),
):
    migration = await MigrationExecutor(db).update_migration(migration_id, req.model_dump(exclude_unset=True))
    return {"success": True, "data": migration_to_dict(migration)}


@router.post("/{migration_id}/execute")
async def execute_migration(
    migration_id: str,
    user: CurrentUser = Depends(require_permission("migrations:execute")),
    db: AsyncSession = Depends(get_db_session),
):
    migration = await MigrationExecutor(db).execute(migration_id, user.id)
    return {"success": True, "data": migration_to_dict(migration)}


@router.post("/{migration_id}/rollback")
async def rollback_migration(
    migration_id: str,
    user: CurrentUser = Depends(require_permission("migrations:execute")),
    db: AsyncSession = Depends(get_db_session),
):
    migration = await MigrationExecutor(db).rollback(migration_id, user.id)
    return {"success": True, "data": migration_to_dict(migration)}


@router.post("/{migration_id}/reset")
async def reset_migration(
    migration_id: str,
    user: CurrentUser = Depends(require_permission("migrations:execute")),
    db: AsyncSession = Depends(get_db_session),
):
    migration = await MigrationExecutor(db).reset_status(migration_id)
    return {"success": True, "data": migration_to_dict(migration)}
