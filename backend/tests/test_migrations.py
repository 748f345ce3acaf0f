# tests/test_migrations.py — Stored SQL migrations: ordering, execution, rollback and guards
import pytest
from httpx import AsyncClient
from sqlalchemy import text

import errors
from migration_executor import MigrationExecutor, generate_migration_name, split_statements
from models import MigrationStatus
from tests.conftest import get_auth_headers


async def _table_exists(db_session, name: str) -> bool:
    result = await db_session.execute(
        text("SELECT count(*) FROM sqlite_master WHERE type = 'table' AND name = :name"), {"name": name}
    )
    return result.scalar() == 1


class TestSplitStatements:
    def test_semicolons_in_quotes_and_comments(self):
        sql = """
            CREATE TABLE a (v TEXT); -- trailing; comment
            INSERT INTO a VALUES ('x;y');
            INSERT INTO a VALUES ("q;");
        """
        assert split_statements(sql) == [
            "CREATE TABLE a (v TEXT)",
            "INSERT INTO a VALUES ('x;y')",
            'INSERT INTO a VALUES ("q;")',
        ]

    def test_dollar_quoted_function_body_stays_whole(self):
        sql = (
            "CREATE FUNCTION touch() RETURNS trigger AS $$ BEGIN NEW.updated_at := now(); "
            "RETURN NEW; END; $$ LANGUAGE plpgsql;\n"
            "CREATE TRIGGER t BEFORE UPDATE ON a FOR EACH ROW EXECUTE FUNCTION touch();"
        )
        assert split_statements(sql) == [
            "CREATE FUNCTION touch() RETURNS trigger AS $$ BEGIN NEW.updated_at := now(); "
            "RETURN NEW; END; $$ LANGUAGE plpgsql",
            "CREATE TRIGGER t BEFORE UPDATE ON a FOR EACH ROW EXECUTE FUNCTION touch()",
        ]

    def test_tagged_dollar_quote_ignores_inner_plain_quotes(self):
        sql = "DO $body$ BEGIN RAISE NOTICE 'a;$$;b'; END $body$; SELECT 1;"
        assert split_statements(sql) == [
            "DO $body$ BEGIN RAISE NOTICE 'a;$$;b'; END $body$",
            "SELECT 1",
        ]

    def test_block_comments_are_dropped(self):
        sql = "/* setup; part 1 */ CREATE TABLE a (v INT); /* done; */ DROP TABLE b;"
        assert split_statements(sql) == ["CREATE TABLE a (v INT)", "DROP TABLE b"]

    def test_dollar_inside_identifier_is_not_a_quote(self):
        assert split_statements("SELECT col$a$ FROM t; SELECT 2") == ["SELECT col$a$ FROM t", "SELECT 2"]

    def test_blank_statements_dropped(self):
        assert split_statements(";;  ;") == []

    def test_generated_name(self):
        name = generate_migration_name("Add Widgets Table")
        assert name.endswith("_add_widgets_table")
        assert name[:14].isdigit()


class TestMigrationAuthoring:
    @pytest.mark.asyncio
    async def test_execution_order_defaults_to_next(self, db_session, admin_user):
        executor = MigrationExecutor(db_session)
        first = await executor.create_migration("SELECT 1", admin_user.id, migration_name="m1")
        second = await executor.create_migration("SELECT 1", admin_user.id, migration_name="m2")
        assert first.status == MigrationStatus.PENDING
        assert (first.execution_order, second.execution_order) == (1, 2)

    @pytest.mark.asyncio
    async def test_duplicate_name(self, db_session, admin_user):
        executor = MigrationExecutor(db_session)
        await executor.create_migration("SELECT 1", admin_user.id, migration_name="m1")
        with pytest.raises(errors.ConflictError):
            await executor.create_migration("SELECT 2", admin_user.id, migration_name="m1")

    @pytest.mark.asyncio
    async def test_validation(self, db_session, admin_user):
        executor = MigrationExecutor(db_session)
        with pytest.raises(errors.ValidationError):
            await executor.create_migration("   ", admin_user.id, migration_name="empty")
        with pytest.raises(errors.ValidationError):
            await executor.create_migration("SELECT 1", admin_user.id, migration_name="has spaces")

    @pytest.mark.asyncio
    async def test_dependencies_raise_the_order_floor(self, db_session, admin_user):
        executor = MigrationExecutor(db_session)
        await executor.create_migration("SELECT 1", admin_user.id, migration_name="base", execution_order=10)
        with pytest.raises(errors.ValidationError):
            await executor.create_migration("SELECT 1", admin_user.id, migration_name="child",
                                            depends_on=["base"], execution_order=5)
        with pytest.raises(errors.ValidationError):
            await executor.create_migration("SELECT 1", admin_user.id, migration_name="orphan", depends_on=["nope"])

        child = await executor.create_migration("SELECT 1", admin_user.id, migration_name="child",
                                                depends_on=["base", "base"])
        assert child.execution_order == 11
        assert child.depends_on == ["base"]

    @pytest.mark.asyncio
    async def test_unknown_update_fields(self, db_session, admin_user):
        executor = MigrationExecutor(db_session)
        m = await executor.create_migration("SELECT 1", admin_user.id, migration_name="m1")
        with pytest.raises(errors.ValidationError):
            await executor.update_migration(m.id, {"status": "completed"})
        with pytest.raises(errors.ValidationError):
            await executor.update_migration(m.id, {"depends_on": ["m1"]})


class TestMigrationExecution:
    @pytest.mark.asyncio
    async def test_execute_and_roll_back(self, db_session, admin_user):
        executor = MigrationExecutor(db_session)
        m = await executor.create_migration(
            "CREATE TABLE widgets (id INTEGER PRIMARY KEY, name TEXT); INSERT INTO widgets (name) VALUES ('a;b');",
            admin_user.id, migration_name="widgets", rollback_sql="DROP TABLE widgets",
        )
        m = await executor.execute(m.id, admin_user.id)
        assert m.status == MigrationStatus.COMPLETED
        assert m.applied_by == admin_user.id
        assert m.applied_at is not None
        assert m.execution_time_ms is not None
        assert await _table_exists(db_session, "widgets")

        with pytest.raises(errors.ConflictError):
            await executor.execute(m.id, admin_user.id)

        m = await executor.rollback(m.id, admin_user.id)
        assert m.status == MigrationStatus.ROLLED_BACK
        assert m.rolled_back_by == admin_user.id
        assert not await _table_exists(db_session, "widgets")

    @pytest.mark.asyncio
    async def test_completed_sql_is_immutable(self, db_session, admin_user):
        executor = MigrationExecutor(db_session)
        m = await executor.create_migration("SELECT 1", admin_user.id, migration_name="m1")
        await executor.update_migration(m.id, {"migration_sql": "SELECT 2"})
        await executor.execute(m.id, admin_user.id)

        with pytest.raises(errors.IntegrityError):
            await executor.update_migration(m.id, {"migration_sql": "SELECT 3"})
        # Other fields stay editable
        m = await executor.update_migration(m.id, {"description": "noop"})
        assert m.migration_sql == "SELECT 2"

    @pytest.mark.asyncio
    async def test_failure_records_error_and_allows_retry(self, db_session, admin_user):
        executor = MigrationExecutor(db_session)
        m = await executor.create_migration("SELECT * FROM missing_table", admin_user.id, migration_name="bad")
        with pytest.raises(errors.StorageError):
            await executor.execute(m.id, admin_user.id)

        m = await executor.get_migration(m.id)
        assert m.status == MigrationStatus.FAILED
        assert "missing_table" in m.error_message
        assert m.error_stack

        await executor.update_migration(m.id, {"migration_sql": "SELECT 1"})
        m = await executor.execute(m.id, admin_user.id)
        assert m.status == MigrationStatus.COMPLETED
        assert m.error_message is None

    @pytest.mark.asyncio
    async def test_rollback_guards(self, db_session, admin_user):
        executor = MigrationExecutor(db_session)
        pending = await executor.create_migration("SELECT 1", admin_user.id, migration_name="pending")
        with pytest.raises(errors.ConflictError):
            await executor.rollback(pending.id, admin_user.id)

        applied = await executor.create_migration("SELECT 1", admin_user.id, migration_name="applied")
        await executor.execute(applied.id, admin_user.id)
        with pytest.raises(errors.ValidationError):
            await executor.rollback(applied.id, admin_user.id)

    @pytest.mark.asyncio
    async def test_reset_status(self, db_session, admin_user):
        executor = MigrationExecutor(db_session)
        m = await executor.create_migration("SELECT nope FROM nowhere", admin_user.id, migration_name="bad")
        with pytest.raises(errors.StorageError):
            await executor.execute(m.id, admin_user.id)

        m = await executor.reset_status(m.id)
        assert m.status == MigrationStatus.PENDING
        assert m.error_message is None

        await executor.update_migration(m.id, {"migration_sql": "SELECT 1"})
        await executor.execute(m.id, admin_user.id)
        with pytest.raises(errors.IntegrityError):
            await executor.reset_status(m.id)

    @pytest.mark.asyncio
    async def test_execute_all_pending_stops_at_first_failure(self, db_session, admin_user):
        executor = MigrationExecutor(db_session)
        m1 = await executor.create_migration("CREATE TABLE gadgets (id INTEGER)", admin_user.id, migration_name="m1")
        m2 = await executor.create_migration("INSERT INTO nowhere VALUES (1)", admin_user.id, migration_name="m2")
        m3 = await executor.create_migration("CREATE TABLE later (id INTEGER)", admin_user.id, migration_name="m3")

        summary = await executor.execute_all_pending(admin_user.id)
        assert summary["success"] is False
        assert (summary["executed"], summary["failed"], summary["total"]) == (1, 1, 3)
        assert [r["name"] for r in summary["results"]] == ["m1", "m2"]
        assert summary["results"][1]["success"] is False

        statuses = {m.migration_name: m.status for m in await executor.list_migrations()}
        assert statuses == {
            "m1": MigrationStatus.COMPLETED,
            "m2": MigrationStatus.FAILED,
            "m3": MigrationStatus.PENDING,
        }
        assert not await _table_exists(db_session, "later")

    @pytest.mark.asyncio
    async def test_execute_all_pending_honours_order(self, db_session, admin_user):
        executor = MigrationExecutor(db_session)
        await executor.create_migration("CREATE INDEX ix_parts ON parts (id)", admin_user.id,
                                        migration_name="index", execution_order=5)
        await executor.create_migration("CREATE TABLE parts (id INTEGER)", admin_user.id,
                                        migration_name="table", execution_order=1)

        summary = await executor.execute_all_pending(admin_user.id)
        assert summary == {
            "success": True, "executed": 2, "failed": 0, "total": 2,
            "results": [{"name": "table", "success": True}, {"name": "index", "success": True}],
        }


class TestMigrationRoutes:
    @pytest.mark.asyncio
    async def test_admin_lifecycle(self, client: AsyncClient, admin_user):
        headers = get_auth_headers(admin_user)
        res = await client.post("/api/v1/migrations", json={
            "migration_name": "add_notes", "description": "Notes table",
            "migration_sql": "CREATE TABLE notes (id INTEGER)", "rollback_sql": "DROP TABLE notes",
        }, headers=headers)
        assert res.status_code == 201
        migration = res.json()["data"]
        assert migration["status"] == "pending"
        assert migration["executionOrder"] == 1

        res = await client.post(f"/api/v1/migrations/{migration['id']}/execute", headers=headers)
        assert res.status_code == 200
        assert res.json()["data"]["status"] == "completed"

        res = await client.patch(f"/api/v1/migrations/{migration['id']}", json={"migration_sql": "SELECT 1"},
                                 headers=headers)
        assert res.status_code == 409
        assert res.json()["error"] == "INTEGRITY_ERROR"

        res = await client.post(f"/api/v1/migrations/{migration['id']}/rollback", headers=headers)
        assert res.json()["data"]["status"] == "rolled_back"

        res = await client.get("/api/v1/migrations", params={"status": "rolled_back"}, headers=headers)
        assert len(res.json()["data"]) == 1

    @pytest.mark.asyncio
    async def test_execute_all_route(self, client: AsyncClient, admin_user):
        headers = get_auth_headers(admin_user)
        for name, sql in (("ok", "SELECT 1"), ("broken", "SELECT * FROM nowhere"), ("after", "SELECT 1")):
            await client.post("/api/v1/migrations", json={"migration_name": name, "migration_sql": sql},
                              headers=headers)
        res = await client.post("/api/v1/migrations/execute-all", headers=headers)
        assert res.status_code == 200
        body = res.json()
        assert (body["executed"], body["failed"], body["total"]) == (1, 1, 3)

    @pytest.mark.asyncio
    async def test_regular_users_cannot_touch_migrations(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        res = await client.get("/api/v1/migrations", headers=headers)
        assert res.status_code == 403
        res = await client.post("/api/v1/migrations", json={"migration_sql": "SELECT 1"}, headers=headers)
        assert res.status_code == 403

    @pytest.mark.asyncio
    async def test_auditor_reads_but_cannot_execute(self, client: AsyncClient, auditor_user):
        headers = get_auth_headers(auditor_user)
        assert (await client.get("/api/v1/migrations", headers=headers)).status_code == 200
        assert (await client.post("/api/v1/migrations/execute-all", headers=headers)).status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_migration(self, client: AsyncClient, admin_user):
        res = await client.get("/api/v1/migrations/missing", headers=get_auth_headers(admin_user))
        assert res.status_code == 404
