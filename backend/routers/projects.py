# routers/projects.py — Project tasks, dependencies and Gantt/critical-path views
from datetime import date, datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_permission, CurrentUser
from database import get_db_session
from gantt import GanttService, task_timeline
from models import DependencyType, Project, ProjectTask, ProjectTaskStatus, TaskDependency, iso

router = APIRouter(prefix="/api/v1/projects", tags=["Projects"])


# ── Schemas ──────────────────────────────────────────────────

class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = None

class TaskCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    status: ProjectTaskStatus = ProjectTaskStatus.PENDING
    priority: str = "medium"
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    estimated_hours: Optional[int] = Field(None, ge=0)
    parent_id: Optional[str] = None

class TaskUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[ProjectTaskStatus] = None
    priority: Optional[str] = None
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    estimated_hours: Optional[int] = Field(None, ge=0)
    parent_id: Optional[str] = None

class DependencyCreate(BaseModel):
    depends_on_task_id: str
    dependency_type: DependencyType = DependencyType.FINISH_TO_START
    lag_days: int = 0

class AssignmentCreate(BaseModel):
    user_id: str
    allocation_percentage: int = Field(100, ge=1, le=100)
    role: str = "assignee"
    is_primary: bool = False


def _project_out(p: Project) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "ownerId": p.owner_id,
        "createdAt": iso(p.created_at),
    }


def _dependency_out(d: TaskDependency) -> dict:
    return {
        "id": d.id,
        "taskId": d.task_id,
        "dependsOnTaskId": d.depends_on_task_id,
        "type": d.dependency_type.value,
        "lagDays": d.lag_days,
        "isCriticalPath": bool(d.is_critical_path),
    }


def _task_out(t: ProjectTask) -> dict:
    tl = task_timeline(t)
    return {
        "id": t.id,
        "projectId": t.project_id,
        "parentId": t.parent_id,
        "title": t.title,
        "description": t.description,
        "status": t.status.value,
        "priority": t.priority,
        "startDate": iso(t.start_date),
        "dueDate": iso(t.due_date),
        "completedAt": iso(t.completed_at),
        "estimatedHours": t.estimated_hours,
        "duration": tl["duration"],
        "isOverdue": tl["isOverdue"],
        "dependencies": [_dependency_out(d) for d in t.dependencies],
        "assignees": [
            {"userId": a.user_id, "role": a.role, "allocationPercentage": a.allocation_percentage}
            for a in t.assignments
        ],
    }


# ── Projects ─────────────────────────────────────────────────

@router.post("", status_code=201)
async def create_project(
    req: ProjectCreate,
    user: CurrentUser = Depends(require_permission("projects:write")),
    db: AsyncSession = Depends(get_db_session),
):
    project = await GanttService(db).create_project(req.name, user.id, req.description)
    return {"success": True, "data": _project_out(project)}


@router.get("")
async def list_projects(
    mine: bool = False,
    user: CurrentUser = Depends(require_permission("projects:read")),
    db: AsyncSession = Depends(get_db_session),
):
    projects = await GanttService(db).list_projects(user.id if mine else None)
    return {"success": True, "data": [_project_out(p) for p in projects]}


@router.get("/resources/allocation")
async def resource_allocation(
    start_date: date = Query(...),
    end_date: date = Query(...),
    project_id: Optional[str] = None,
    user_ids: Optional[List[str]] = Query(None),
    user: CurrentUser = Depends(require_permission("projects:read")),
    db: AsyncSession = Depends(get_db_session),
):
    allocation = await GanttService(db).get_resource_allocation(start_date, end_date, project_id, user_ids)
    return {"success": True, "data": allocation}


@router.get("/{project_id}")
async def get_project(
    project_id: str,
    user: CurrentUser = Depends(require_permission("projects:read")),
    db: AsyncSession = Depends(get_db_session),
):
    project = await GanttService(db).get_project(project_id)
    return {"success": True, "data": _project_out(project)}


@router.get("/{project_id}/gantt")
async def gantt_data(
    project_id: str,
    parent_task_id: Optional[str] = None,
    task_ids: Optional[List[str]] = Query(None),
    include_completed: bool = False,
    calculate_critical_path: bool = True,
    user: CurrentUser = Depends(require_permission("projects:read")),
    db: AsyncSession = Depends(get_db_session),
):
    data = await GanttService(db).get_gantt_data(
        project_id,
        parent_task_id=parent_task_id,
        task_ids=task_ids,
        include_completed=include_completed,
        calculate_critical_path=calculate_critical_path,
    )
    return {"success": True, "data": data}


@router.get("/{project_id}/schedule-suggestions")
async def schedule_suggestions(
    project_id: str,
    user: CurrentUser = Depends(require_permission("projects:read")),
    db: AsyncSession = Depends(get_db_session),
):
    return {"success": True, "data": await GanttService(db).suggest_schedule(project_id)}


# ── Tasks ────────────────────────────────────────────────────

@router.post("/{project_id}/tasks", status_code=201)
async def create_task(
    project_id: str,
    req: TaskCreate,
    user: CurrentUser = Depends(require_permission("projects:write")),
    db: AsyncSession = Depends(get_db_session),
):
    task = await GanttService(db).create_task(project_id, user.id, req.model_dump(exclude_none=True))
    return {"success": True, "data": _task_out(task)}


@router.get("/{project_id}/tasks")
async def list_tasks(
    project_id: str,
    user: CurrentUser = Depends(require_permission("projects:read")),
    db: AsyncSession = Depends(get_db_session),
):
    service = GanttService(db)
    await service.get_project(project_id)
    tasks = await service.list_tasks(project_id)
    return {"success": True, "data": [_task_out(t) for t in tasks]}


@router.patch("/tasks/{task_id}")
async def update_task(
    task_id: str,
    req: TaskUpdate,
    user: CurrentUser = Depends(require_permission("projects:write")),
    db: AsyncSession = Depends(get_db_session),
):
    task = await GanttService(db).update_task(task_id, req.model_dump(exclude_unset=True))
    return {"success": True, "data": _task_out(task)}


@router.delete("/tasks/{task_id}")
async def delete_task(
    task_id: str,
    user: CurrentUser = Depends(require_permission("projects:write")),
    db: AsyncSession = Depends(get_db_session),
):
    await GanttService(db).delete_task(task_id)
    return {"success": True, "message": "Task deleted"}


# ── Dependencies & assignments ───────────────────────────────

@router.post("/tasks/{task_id}/dependencies", status_code=201)
async def add_dependency(
    task_id: str,
    req: DependencyCreate,
    user: CurrentUser = Depends(require_permission("projects:write")),
    db: AsyncSession = Depends(get_db_session),
):
    dependency = await GanttService(db).add_dependency(
        task_id, req.depends_on_task_id, req.dependency_type, req.lag_days,
    )
    return {"success": True, "data": _dependency_out(dependency)}


@router.delete("/dependencies/{dependency_id}")
async def remove_dependency(
    dependency_id: str,
    user: CurrentUser = Depends(require_permission("projects:write")),
    db: AsyncSession = Depends(get_db_session),
):
    await GanttService(db).remove_dependency(dependency_id)
    return {"success": True, "message": "Dependency removed"}


@router.post("/tasks/{task_id}/assignments", status_code=201)
async def assign_task(
    task_id: str,
    req: AssignmentCreate,
    user: CurrentUser = Depends(require_permission("projects:write")),
    db: AsyncSession = Depends(get_db_session),
):
    assignment = await GanttService(db).assign_task(
        task_id, req.user_id, req.allocation_percentage, role=req.role, is_primary=req.is_primary,
    )
    return {"success": True, "data": {
        "id": assignment.id,
        "taskId": assignment.task_id,
        "userId": assignment.user_id,
        "role": assignment.role,
        "allocationPercentage": assignment.allocation_percentage,
        "isPrimary": bool(assignment.is_primary),
    }}
