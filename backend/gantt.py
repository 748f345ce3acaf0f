# gantt.py — Projects, tasks, dependencies and Gantt/CPM views
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import selectinload
from sqlalchemy.ext.asyncio import AsyncSession

import critical_path as cpm
import errors
from models import (
    DependencyType, Project, ProjectTask, ProjectTaskStatus, TaskAssignment, TaskDependency,
    as_utc, utcnow,
)

logger = logging.getLogger("exprsn.projects")

DEFAULT_TASK_DAYS = 7
MAX_TIME_BASED_PROGRESS = 90
TASK_FIELDS = {"title", "description", "status", "priority", "start_date", "due_date", "estimated_hours", "parent_id"}


# ============================================================
# TIMELINE & PROGRESS
# ============================================================

def task_timeline(task: ProjectTask, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Resolved start/end dates (inclusive), duration in days and the overdue flag"""
    now = as_utc(now) or utcnow()
    start = as_utc(task.start_date)
    end = as_utc(task.due_date)
    if start is None and end is not None:
        start = end - timedelta(days=DEFAULT_TASK_DAYS)
    if start is None:
        start = now
    if end is None:
        end = start + timedelta(days=DEFAULT_TASK_DAYS)

    start_day, end_day = start.date(), end.date()
    if end_day < start_day:
        end_day = start_day
    return {
        "start": start_day,
        "end": end_day,
        "duration": (end_day - start_day).days + 1,
        "isOverdue": task.status != ProjectTaskStatus.COMPLETED and end_day < now.date(),
    }


def task_progress(task: ProjectTask, subtasks: List[ProjectTask], now: Optional[datetime] = None) -> int:
    if task.status == ProjectTaskStatus.COMPLETED:
        return 100
    if task.status == ProjectTaskStatus.CANCELLED:
        return 0
    if subtasks:
        done = sum(1 for s in subtasks if s.status == ProjectTaskStatus.COMPLETED)
        return round(done / len(subtasks) * 100)

    start, due = as_utc(task.start_date), as_utc(task.due_date)
    if start and due and due > start:
        now = as_utc(now) or utcnow()
        elapsed = (now - start).total_seconds() / (due - start).total_seconds() * 100
        return int(max(0, min(elapsed, MAX_TIME_BASED_PROGRESS)))
    return 50 if task.status == ProjectTaskStatus.IN_PROGRESS else 0


def _as_datetime(value: date) -> datetime:
    return as_utc(datetime(value.year, value.month, value.day))


def _parse_day(value) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value).date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise errors.ValidationError(f"Invalid date: {value!r}")


# ============================================================
# SERVICE
# ============================================================

class GanttService:
    def __init__(self, db: AsyncSession):
        self.db = db

    # --------------------------------------------------------
    # Projects & tasks
    # --------------------------------------------------------

    async def create_project(self, name: str, owner_id: str, description: Optional[str] = None) -> Project:
        if not name or not name.strip():
            raise errors.ValidationError("Project name is required")
        project = Project(name=name.strip(), description=description, owner_id=owner_id)
        self.db.add(project)
        await self.db.commit()
        return project

    async def get_project(self, project_id: str) -> Project:
        project = await self.db.get(Project, project_id)
        if project is None or project.deleted_at is not None:
            raise errors.NotFoundError(f"Project not found: {project_id}")
        return project

    async def list_projects(self, owner_id: Optional[str] = None) -> List[Project]:
        stmt = select(Project).where(Project.deleted_at.is_(None))
        if owner_id:
            stmt = stmt.where(Project.owner_id == owner_id)
        result = await self.db.execute(stmt.order_by(Project.created_at.desc()))
        return list(result.scalars().all())

    async def get_task(self, task_id: str) -> ProjectTask:
        result = await self.db.execute(
            select(ProjectTask)
            .options(selectinload(ProjectTask.dependencies), selectinload(ProjectTask.assignments))
            .execution_options(populate_existing=True)
            .where(ProjectTask.id == task_id, ProjectTask.deleted_at.is_(None))
        )
        task = result.scalar_one_or_none()
        if task is None:
            raise errors.NotFoundError(f"Task not found: {task_id}")
        return task

    async def list_tasks(self, project_id: str) -> List[ProjectTask]:
        result = await self.db.execute(
            select(ProjectTask)
            .options(selectinload(ProjectTask.dependencies), selectinload(ProjectTask.assignments))
            .execution_options(populate_existing=True)
            .where(ProjectTask.project_id == project_id, ProjectTask.deleted_at.is_(None))
            .order_by(ProjectTask.start_date, ProjectTask.created_at)
        )
        return list(result.scalars().all())

    async def _check_parent(self, project_id: str, parent_id: Optional[str], task_id: Optional[str] = None) -> None:
        if not parent_id:
            return
        if parent_id == task_id:
            raise errors.ValidationError("A task cannot be its own parent")
        parent = await self.db.get(ProjectTask, parent_id)
        if parent is None or parent.deleted_at is not None or parent.project_id != project_id:
            raise errors.ValidationError(f"Parent task not found in project: {parent_id}")

    async def create_task(self, project_id: str, user_id: str, fields: Dict[str, Any]) -> ProjectTask:
        await self.get_project(project_id)
        unknown = set(fields) - TASK_FIELDS
        if unknown:
            raise errors.ValidationError(f"Unknown task fields: {sorted(unknown)}")
        if not (fields.get("title") or "").strip():
            raise errors.ValidationError("Task title is required")
        await self._check_parent(project_id, fields.get("parent_id"))

        task = ProjectTask(project_id=project_id, created_by=user_id, dependencies=[], assignments=[], **fields)
        task.status = ProjectTaskStatus(fields.get("status") or ProjectTaskStatus.PENDING)
        self._check_dates(task)
        if task.status == ProjectTaskStatus.COMPLETED:
            task.completed_at = utcnow()
        self.db.add(task)
        await self.db.commit()
        return await self.get_task(task.id)

    def _check_dates(self, task: ProjectTask) -> None:
        start, due = as_utc(task.start_date), as_utc(task.due_date)
        if start and due and due < start:
            raise errors.ValidationError("dueDate must not be before startDate")

    async def update_task(self, task_id: str, updates: Dict[str, Any]) -> ProjectTask:
        unknown = set(updates) - TASK_FIELDS
        if unknown:
            raise errors.ValidationError(f"Unknown task fields: {sorted(unknown)}")
        task = await self.get_task(task_id)
        if "parent_id" in updates:
            await self._check_parent(task.project_id, updates["parent_id"], task.id)

        previous = task.status
        for field, value in updates.items():
            setattr(task, field, value)
        task.status = ProjectTaskStatus(task.status)
        self._check_dates(task)
        if task.status == ProjectTaskStatus.COMPLETED and previous != ProjectTaskStatus.COMPLETED:
            task.completed_at = utcnow()
        elif task.status != ProjectTaskStatus.COMPLETED:
            task.completed_at = None
        await self.db.commit()
        return task

    async def delete_task(self, task_id: str) -> None:
        task = await self.get_task(task_id)
        task.deleted_at = utcnow()
        await self.db.commit()

    # --------------------------------------------------------
    # Dependencies & assignments
    # --------------------------------------------------------

    async def add_dependency(self, task_id: str, depends_on_task_id: str,
                             dependency_type: DependencyType = DependencyType.FINISH_TO_START,
                             lag_days: int = 0) -> TaskDependency:
        if task_id == depends_on_task_id:
            raise errors.ValidationError("A task cannot depend on itself")
        task = await self.get_task(task_id)
        predecessor = await self.get_task(depends_on_task_id)
        if task.project_id != predecessor.project_id:
            raise errors.ValidationError("Dependencies must stay within one project")
        if any(d.depends_on_task_id == depends_on_task_id for d in task.dependencies):
            raise errors.ConflictError("Dependency already exists")

        dependency = TaskDependency(
            task_id=task_id,
            depends_on_task_id=depends_on_task_id,
            dependency_type=DependencyType(dependency_type),
            lag_days=lag_days or 0,
        )

        # Reject edges that would close a cycle
        tasks = await self.list_tasks(task.project_id)
        edges = [self._edge(d) for t in tasks for d in t.dependencies] + [self._edge(dependency)]
        cpm.topological_order([cpm.CPMTask(id=t.id, duration=1) for t in tasks], edges)

        task.dependencies.append(dependency)
        await self.db.commit()
        return dependency

    async def remove_dependency(self, dependency_id: str) -> None:
        dependency = await self.db.get(TaskDependency, dependency_id)
        if dependency is None:
            raise errors.NotFoundError(f"Dependency not found: {dependency_id}")
        await self.db.delete(dependency)
        await self.db.commit()

    async def assign_task(self, task_id: str, user_id: str, allocation_percentage: int = 100,
                          role: str = "assignee", is_primary: bool = False) -> TaskAssignment:
        if not 0 < allocation_percentage <= 100:
            raise errors.ValidationError("allocationPercentage must be between 1 and 100")
        task = await self.get_task(task_id)
        if any(a.user_id == user_id for a in task.assignments):
            raise errors.ConflictError("User is already assigned to this task")
        assignment = TaskAssignment(
            task_id=task_id, user_id=user_id, allocation_percentage=allocation_percentage,
            role=role, is_primary=is_primary,
        )
        task.assignments.append(assignment)
        await self.db.commit()
        return assignment

    @staticmethod
    def _edge(dependency: TaskDependency) -> cpm.CPMDependency:
        return cpm.CPMDependency(
            task_id=dependency.task_id,
            depends_on_task_id=dependency.depends_on_task_id,
            dependency_type=DependencyType(dependency.dependency_type),
            lag_days=dependency.lag_days or 0,
        )

    # --------------------------------------------------------
    # Gantt
    # --------------------------------------------------------

    async def get_gantt_data(
        self,
        project_id: str,
        now: Optional[datetime] = None,
        parent_task_id: Optional[str] = None,
        task_ids: Optional[List[str]] = None,
        include_completed: bool = False,
        calculate_critical_path: bool = True,
    ) -> Dict[str, Any]:
        """Timeline, CPM figures and statistics for a project's tasks.

        Completed tasks are left out unless ``include_completed``; dependencies
        on tasks outside the selection are ignored by the critical path.
        """
        project = await self.get_project(project_id)
        all_tasks = await self.list_tasks(project_id)
        now = as_utc(now) or utcnow()

        children: Dict[str, List[ProjectTask]] = {}
        for t in all_tasks:
            if t.parent_id:
                children.setdefault(t.parent_id, []).append(t)

        tasks = all_tasks
        if parent_task_id:
            tasks = [t for t in tasks if t.parent_id == parent_task_id]
        if task_ids:
            wanted = set(task_ids)
            tasks = [t for t in tasks if t.id in wanted]
        if not include_completed:
            tasks = [t for t in tasks if t.status != ProjectTaskStatus.COMPLETED]

        timelines = {t.id: task_timeline(t, now) for t in tasks}
        origin = min((tl["start"] for tl in timelines.values()), default=now.date())
        dependencies = [d for t in tasks for d in t.dependencies]

        result = None
        if calculate_critical_path:
            cpm_tasks = [
                cpm.CPMTask(id=t.id, duration=timelines[t.id]["duration"],
                            start=(timelines[t.id]["start"] - origin).days)
                for t in tasks
            ]
            result = cpm.compute(cpm_tasks, [self._edge(d) for d in dependencies])
            for dependency in dependencies:
                dependency.is_critical_path = result.is_critical_dependency(self._edge(dependency))
            await self.db.commit()
            project_duration = result.project_end
        else:
            last = max((tl["end"] for tl in timelines.values()), default=origin - timedelta(days=1))
            project_duration = (last - origin).days + 1

        gantt_tasks = []
        for t in tasks:
            tl = timelines[t.id]
            node = result.nodes[t.id] if result else None
            gantt_tasks.append({
                "id": t.id,
                "title": t.title,
                "status": t.status.value,
                "priority": t.priority,
                "parentId": t.parent_id,
                "startDate": tl["start"].isoformat(),
                "endDate": tl["end"].isoformat(),
                "duration": tl["duration"],
                "isOverdue": tl["isOverdue"],
                "progress": task_progress(t, children.get(t.id, []), now),
                "earliestStart": node.earliest_start if node else None,
                "earliestFinish": node.earliest_finish if node else None,
                "latestStart": node.latest_start if node else None,
                "latestFinish": node.latest_finish if node else None,
                "slack": node.slack if node else None,
                "isCritical": node.is_critical if node else False,
                "dependencies": [
                    {
                        "id": d.id,
                        "dependsOnTaskId": d.depends_on_task_id,
                        "type": d.dependency_type.value,
                        "lagDays": d.lag_days,
                        "isCriticalPath": d.is_critical_path,
                    }
                    for d in t.dependencies
                ],
                "assignees": [
                    {"userId": a.user_id, "role": a.role, "allocationPercentage": a.allocation_percentage}
                    for a in t.assignments
                ],
            })

        return {
            "project": {"id": project.id, "name": project.name},
            "projectStart": origin.isoformat(),
            "projectEnd": (origin + timedelta(days=project_duration)).isoformat(),
            "tasks": gantt_tasks,
            "criticalPath": result.critical_path if result else [],
            "statistics": self._statistics(gantt_tasks, project_duration),
        }

    @staticmethod
    def _statistics(gantt_tasks: List[Dict[str, Any]], project_duration: int) -> Dict[str, Any]:
        total = len(gantt_tasks)
        by_status = {s.value: 0 for s in ProjectTaskStatus}
        for t in gantt_tasks:
            by_status[t["status"]] += 1
        completed = by_status[ProjectTaskStatus.COMPLETED.value]
        return {
            "totalTasks": total,
            "byStatus": by_status,
            "overdueTasks": sum(1 for t in gantt_tasks if t["isOverdue"]),
            "blockedTasks": by_status[ProjectTaskStatus.BLOCKED.value],
            "criticalTasks": sum(1 for t in gantt_tasks if t["isCritical"]),
            "averageProgress": round(sum(t["progress"] for t in gantt_tasks) / total) if total else 0,
            "completionPercentage": round(completed / total * 100) if total else 0,
            "projectDuration": project_duration,
        }

    # --------------------------------------------------------
    # Resources & suggestions
    # --------------------------------------------------------

    async def get_resource_allocation(
        self,
        start_date,
        end_date,
        project_id: Optional[str] = None,
        user_ids: Optional[List[str]] = None,
    ) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """userId -> dateKey -> {tasks, allocationPercentage} over an inclusive window.

        Every assigned task counts for each day of its range, whatever its status.
        """
        window_start, window_end = _parse_day(start_date), _parse_day(end_date)
        if window_start is None or window_end is None or window_end < window_start:
            raise errors.ValidationError("A valid startDate/endDate window is required")

        stmt = (
            select(TaskAssignment, ProjectTask)
            .join(ProjectTask, TaskAssignment.task_id == ProjectTask.id)
            .where(ProjectTask.deleted_at.is_(None))
        )
        if project_id:
            stmt = stmt.where(ProjectTask.project_id == project_id)
        if user_ids:
            stmt = stmt.where(TaskAssignment.user_id.in_(user_ids))
        rows = (await self.db.execute(stmt)).all()

        allocation: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for assignment, task in rows:
            tl = task_timeline(task)
            day = max(tl["start"], window_start)
            last = min(tl["end"], window_end)
            while day <= last:
                slot = allocation.setdefault(assignment.user_id, {}).setdefault(
                    day.isoformat(), {"tasks": [], "allocationPercentage": 0}
                )
                slot["tasks"].append(task.id)
                slot["allocationPercentage"] += assignment.allocation_percentage or 0
                day += timedelta(days=1)
        return allocation

    async def suggest_schedule(self, project_id: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        await self.get_project(project_id)
        tasks = await self.list_tasks(project_id)
        by_id = {t.id: t for t in tasks}
        timelines = {t.id: task_timeline(t, now) for t in tasks}

        suggestions = []
        for task in tasks:
            if task.status in (ProjectTaskStatus.COMPLETED, ProjectTaskStatus.CANCELLED) or not task.dependencies:
                continue
            latest_end, blocker = None, None
            for dep in task.dependencies:
                if dep.depends_on_task_id not in by_id:
                    continue
                candidate = timelines[dep.depends_on_task_id]["end"] + timedelta(days=dep.lag_days or 0)
                if latest_end is None or candidate > latest_end:
                    latest_end, blocker = candidate, by_id[dep.depends_on_task_id]
            if latest_end is None:
                continue

            suggested = latest_end + timedelta(days=timelines[task.id]["duration"])
            current = as_utc(task.due_date).date() if task.due_date else None
            if current is None or suggested > current:
                suggestions.append({
                    "taskId": task.id,
                    "title": task.title,
                    "currentDueDate": current.isoformat() if current else None,
                    "suggestedDueDate": _as_datetime(suggested).isoformat(),
                    "reason": f"Depends on '{blocker.title}' which ends {latest_end.isoformat()}",
                })
        return suggestions
