# tests/test_projects.py — Critical path, Gantt data, dependencies and resource allocation
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient

import critical_path as cpm
import errors
from gantt import GanttService, task_progress, task_timeline
from models import DependencyType, ProjectTask, ProjectTaskStatus
from tests.conftest import get_auth_headers

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _day(d: int) -> datetime:
    return datetime(2024, 1, d, tzinfo=timezone.utc)


def _fs(task_id, predecessor, lag=0, kind=DependencyType.FINISH_TO_START):
    return cpm.CPMDependency(task_id=task_id, depends_on_task_id=predecessor, dependency_type=kind, lag_days=lag)


class TestCriticalPath:
    def test_diamond(self):
        tasks = [cpm.CPMTask("A", 3), cpm.CPMTask("B", 2), cpm.CPMTask("C", 4), cpm.CPMTask("D", 1)]
        deps = [_fs("B", "A"), _fs("C", "A"), _fs("D", "B"), _fs("D", "C")]
        result = cpm.compute(tasks, deps)

        assert {k: n.earliest_finish for k, n in result.nodes.items()} == {"A": 3, "B": 5, "C": 7, "D": 8}
        assert result.project_end == 8
        assert result.critical_path == ["A", "C", "D"]
        assert result.nodes["B"].slack == 2
        assert result.nodes["B"].latest_start == 5
        assert not result.nodes["B"].is_critical

    def test_lag_and_dependency_types(self):
        tasks = [cpm.CPMTask("A", 4), cpm.CPMTask("B", 2)]
        assert cpm.compute(tasks, [_fs("B", "A", lag=2)]).nodes["B"].earliest_start == 6
        assert cpm.compute(tasks, [_fs("B", "A", lag=1, kind=DependencyType.START_TO_START)]) \
            .nodes["B"].earliest_start == 1
        assert cpm.compute(tasks, [_fs("B", "A", kind=DependencyType.FINISH_TO_FINISH)]) \
            .nodes["B"].earliest_finish == 4

    def test_task_start_offsets_are_respected(self):
        tasks = [cpm.CPMTask("A", 2), cpm.CPMTask("B", 1, start=10)]
        result = cpm.compute(tasks, [_fs("B", "A")])
        assert result.nodes["B"].earliest_start == 10
        assert result.nodes["A"].slack == 8

    def test_cycle_is_rejected(self):
        tasks = [cpm.CPMTask("A", 1), cpm.CPMTask("B", 1), cpm.CPMTask("C", 1)]
        with pytest.raises(errors.ValidationError) as exc:
            cpm.compute(tasks, [_fs("B", "A"), _fs("C", "B"), _fs("A", "C")])
        assert exc.value.details["taskIds"] == ["A", "B", "C"]

    def test_foreign_and_self_edges_are_ignored(self):
        tasks = [cpm.CPMTask("A", 1)]
        result = cpm.compute(tasks, [_fs("A", "A"), _fs("A", "elsewhere")])
        assert result.order == ["A"]

    def test_empty_graph(self):
        result = cpm.compute([], [])
        assert result.project_end == 0
        assert result.critical_path == []


class TestTimelineAndProgress:
    def _task(self, **fields):
        defaults = dict(title="t", status=ProjectTaskStatus.PENDING, start_date=None, due_date=None)
        defaults.update(fields)
        return ProjectTask(**defaults)

    def test_inclusive_duration(self):
        tl = task_timeline(self._task(start_date=_day(1), due_date=_day(3)), NOW)
        assert tl["duration"] == 3
        assert tl["isOverdue"] is False

    def test_missing_dates_default_to_a_week(self):
        assert task_timeline(self._task(due_date=_day(8)), NOW)["start"].isoformat() == "2024-01-01"
        assert task_timeline(self._task(), NOW)["end"].isoformat() == "2024-01-08"

    def test_overdue_unless_completed(self):
        later = datetime(2024, 2, 1, tzinfo=timezone.utc)
        assert task_timeline(self._task(start_date=_day(1), due_date=_day(3)), later)["isOverdue"]
        done = self._task(start_date=_day(1), due_date=_day(3), status=ProjectTaskStatus.COMPLETED)
        assert not task_timeline(done, later)["isOverdue"]

    def test_progress(self):
        assert task_progress(self._task(status=ProjectTaskStatus.COMPLETED), []) == 100
        assert task_progress(self._task(status=ProjectTaskStatus.CANCELLED), []) == 0
        subtasks = [self._task(status=ProjectTaskStatus.COMPLETED), self._task()]
        assert task_progress(self._task(), subtasks) == 50
        # Time-based progress is capped below completion
        assert task_progress(self._task(start_date=_day(1), due_date=_day(2)), [], _day(20)) == 90
        assert task_progress(self._task(status=ProjectTaskStatus.IN_PROGRESS), []) == 50


@pytest_asyncio.fixture
async def diamond(db_session, test_user):
    """A(3d) -> B(2d), C(4d) -> D(1d)"""
    service = GanttService(db_session)
    project = await service.create_project("Launch", test_user.id)
    spans = {"A": (1, 3), "B": (4, 5), "C": (4, 7), "D": (8, 8)}
    tasks = {}
    for name, (start, end) in spans.items():
        tasks[name] = await service.create_task(project.id, test_user.id, {
            "title": name, "start_date": _day(start), "due_date": _day(end),
        })
    for task, predecessor in (("B", "A"), ("C", "A"), ("D", "B"), ("D", "C")):
        await service.add_dependency(tasks[task].id, tasks[predecessor].id)
    return project, tasks


class TestGanttService:
    @pytest.mark.asyncio
    async def test_gantt_data(self, db_session, diamond):
        project, tasks = diamond
        data = await GanttService(db_session).get_gantt_data(project.id, now=NOW)

        by_title = {t["title"]: t for t in data["tasks"]}
        assert by_title["A"]["earliestFinish"] == 3
        assert by_title["D"]["earliestFinish"] == 8
        assert by_title["B"]["slack"] == 2
        assert data["criticalPath"] == [tasks["A"].id, tasks["C"].id, tasks["D"].id]
        assert data["projectStart"] == "2024-01-01"
        assert data["projectEnd"] == "2024-01-09"
        assert data["statistics"]["totalTasks"] == 4
        assert data["statistics"]["criticalTasks"] == 3
        assert data["statistics"]["projectDuration"] == 8

        b_deps = by_title["B"]["dependencies"]
        assert b_deps[0]["isCriticalPath"] is False
        assert by_title["C"]["dependencies"][0]["isCriticalPath"] is True

    @pytest.mark.asyncio
    async def test_dependency_guards(self, db_session, test_user, diamond):
        project, tasks = diamond
        service = GanttService(db_session)
        with pytest.raises(errors.ValidationError):
            await service.add_dependency(tasks["A"].id, tasks["A"].id)
        with pytest.raises(errors.ConflictError):
            await service.add_dependency(tasks["B"].id, tasks["A"].id)
        with pytest.raises(errors.ValidationError):
            await service.add_dependency(tasks["A"].id, tasks["D"].id)

        other = await service.create_project("Other", test_user.id)
        stranger = await service.create_task(other.id, test_user.id, {"title": "X"})
        with pytest.raises(errors.ValidationError):
            await service.add_dependency(tasks["A"].id, stranger.id)

        # The rejected cycle left nothing behind
        task_a = await service.get_task(tasks["A"].id)
        assert task_a.dependencies == []

    @pytest.mark.asyncio
    async def test_remove_dependency(self, db_session, diamond):
        _, tasks = diamond
        service = GanttService(db_session)
        task_b = await service.get_task(tasks["B"].id)
        await service.remove_dependency(task_b.dependencies[0].id)
        assert (await service.get_task(tasks["B"].id)).dependencies == []
        with pytest.raises(errors.NotFoundError):
            await service.remove_dependency("missing")

    @pytest.mark.asyncio
    async def test_task_validation(self, db_session, test_user, diamond):
        project, tasks = diamond
        service = GanttService(db_session)
        with pytest.raises(errors.ValidationError):
            await service.create_task(project.id, test_user.id, {"title": "Bad", "start_date": _day(5),
                                                                 "due_date": _day(2)})
        with pytest.raises(errors.ValidationError):
            await service.create_task(project.id, test_user.id, {"title": "Bad", "owner": "x"})
        with pytest.raises(errors.ValidationError):
            await service.update_task(tasks["A"].id, {"parent_id": tasks["A"].id})

    @pytest.mark.asyncio
    async def test_completion_timestamp(self, db_session, diamond):
        _, tasks = diamond
        service = GanttService(db_session)
        task = await service.update_task(tasks["A"].id, {"status": "completed"})
        assert task.status == ProjectTaskStatus.COMPLETED
        assert task.completed_at is not None
        task = await service.update_task(tasks["A"].id, {"status": "in_progress"})
        assert task.completed_at is None

    @pytest.mark.asyncio
    async def test_resource_allocation(self, db_session, test_user, diamond):
        _, tasks = diamond
        service = GanttService(db_session)
        await service.assign_task(tasks["B"].id, test_user.id, 100)
        await service.assign_task(tasks["C"].id, test_user.id, 50)
        with pytest.raises(errors.ConflictError):
            await service.assign_task(tasks["C"].id, test_user.id, 50)
        with pytest.raises(errors.ValidationError):
            await service.assign_task(tasks["A"].id, test_user.id, 0)

        allocation = await service.get_resource_allocation("2024-01-05", "2024-01-06")
        days = allocation[test_user.id]
        assert set(days) == {"2024-01-05", "2024-01-06"}
        assert days["2024-01-05"]["allocationPercentage"] == 150
        assert sorted(days["2024-01-05"]["tasks"]) == sorted([tasks["B"].id, tasks["C"].id])
        assert days["2024-01-06"]["allocationPercentage"] == 50

        with pytest.raises(errors.ValidationError):
            await service.get_resource_allocation("2024-01-06", "2024-01-05")

    @pytest.mark.asyncio
    async def test_resource_allocation_counts_finished_tasks(self, db_session, test_user, diamond):
        _, tasks = diamond
        service = GanttService(db_session)
        await service.assign_task(tasks["B"].id, test_user.id, 100)
        await service.update_task(tasks["B"].id, {"status": "completed"})

        allocation = await service.get_resource_allocation("2024-01-04", "2024-01-05")
        assert allocation[test_user.id]["2024-01-04"] == {"tasks": [tasks["B"].id], "allocationPercentage": 100}
        assert allocation[test_user.id]["2024-01-05"]["allocationPercentage"] == 100

    @pytest.mark.asyncio
    async def test_gantt_leaves_out_completed_tasks_by_default(self, db_session, diamond):
        project, tasks = diamond
        service = GanttService(db_session)
        await service.update_task(tasks["A"].id, {"status": "completed"})

        data = await service.get_gantt_data(project.id, now=NOW)
        assert [t["title"] for t in data["tasks"]] == ["B", "C", "D"]
        # A's edges fall outside the selection
        assert data["criticalPath"] == [tasks["C"].id, tasks["D"].id]
        assert data["projectStart"] == "2024-01-04"

        data = await service.get_gantt_data(project.id, now=NOW, include_completed=True)
        assert len(data["tasks"]) == 4
        assert data["statistics"]["completionPercentage"] == 25

    @pytest.mark.asyncio
    async def test_gantt_filters_and_skipped_critical_path(self, db_session, test_user, diamond):
        project, tasks = diamond
        service = GanttService(db_session)

        data = await service.get_gantt_data(project.id, now=NOW, task_ids=[tasks["B"].id, tasks["C"].id],
                                            calculate_critical_path=False)
        assert sorted(t["title"] for t in data["tasks"]) == ["B", "C"]
        assert data["criticalPath"] == []
        assert all(t["isCritical"] is False and t["slack"] is None for t in data["tasks"])
        assert data["projectStart"] == "2024-01-04"
        assert data["projectEnd"] == "2024-01-08"
        assert data["statistics"]["projectDuration"] == 4

        child = await service.create_task(project.id, test_user.id, {
            "title": "A.1", "parent_id": tasks["A"].id, "start_date": _day(1), "due_date": _day(2),
        })
        data = await service.get_gantt_data(project.id, now=NOW, parent_task_id=tasks["A"].id)
        assert [t["id"] for t in data["tasks"]] == [child.id]

    @pytest.mark.asyncio
    async def test_suggest_schedule(self, db_session, test_user, diamond):
        project, tasks = diamond
        service = GanttService(db_session)
        late = await service.create_task(project.id, test_user.id, {
            "title": "Docs", "start_date": _day(4), "due_date": _day(5),
        })
        await service.add_dependency(late.id, tasks["C"].id, lag_days=1)

        suggestions = await service.suggest_schedule(project.id, now=NOW)
        assert len(suggestions) == 1
        assert suggestions[0]["taskId"] == late.id
        assert suggestions[0]["currentDueDate"] == "2024-01-05"
        assert suggestions[0]["suggestedDueDate"].startswith("2024-01-10")
        assert "'C'" in suggestions[0]["reason"]


class TestProjectRoutes:
    @pytest.mark.asyncio
    async def test_project_lifecycle(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        res = await client.post("/api/v1/projects", json={"name": "Website"}, headers=headers)
        assert res.status_code == 201
        project_id = res.json()["data"]["id"]

        ids = []
        for title, start, due in (("Design", "2024-01-01", "2024-01-02"), ("Build", "2024-01-03", "2024-01-05")):
            res = await client.post(f"/api/v1/projects/{project_id}/tasks", json={
                "title": title, "start_date": f"{start}T00:00:00Z", "due_date": f"{due}T00:00:00Z",
            }, headers=headers)
            assert res.status_code == 201
            ids.append(res.json()["data"]["id"])

        res = await client.post(f"/api/v1/projects/tasks/{ids[1]}/dependencies",
                                json={"depends_on_task_id": ids[0]}, headers=headers)
        assert res.status_code == 201
        assert res.json()["data"]["type"] == "finish_to_start"

        res = await client.post(f"/api/v1/projects/tasks/{ids[0]}/dependencies",
                                json={"depends_on_task_id": ids[1]}, headers=headers)
        assert res.status_code == 400

        res = await client.get(f"/api/v1/projects/{project_id}/gantt", headers=headers)
        assert res.status_code == 200
        assert res.json()["data"]["criticalPath"] == ids

        res = await client.get(f"/api/v1/projects/{project_id}/tasks", headers=headers)
        assert [t["duration"] for t in res.json()["data"]] == [2, 3]

    @pytest.mark.asyncio
    async def test_resource_allocation_route(self, client: AsyncClient, test_user):
        res = await client.get("/api/v1/projects/resources/allocation",
                               params={"start_date": "2024-01-01", "end_date": "2024-01-07"},
                               headers=get_auth_headers(test_user))
        assert res.status_code == 200
        assert res.json()["data"] == {}

    @pytest.mark.asyncio
    async def test_auditor_is_read_only(self, client: AsyncClient, auditor_user):
        headers = get_auth_headers(auditor_user)
        assert (await client.get("/api/v1/projects", headers=headers)).status_code == 200
        res = await client.post("/api/v1/projects", json={"name": "Nope"}, headers=headers)
        assert res.status_code == 403

    @pytest.mark.asyncio
    async def test_missing_project(self, client: AsyncClient, test_user):
        res = await client.get("/api/v1/projects/missing/gantt", headers=get_auth_headers(test_user))
        assert res.status_code == 404
