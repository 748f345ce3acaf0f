# tests/test_artifact_sync.py — Export/import of low-code applications through Git workspaces
import json
import uuid
from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy import select

import errors
import artifact_codec as codec
from artifact_sync import ArtifactSyncService
from models import Application, DataSource, Entity, Form, GitRepository, as_utc
from tests.conftest import get_auth_headers


@pytest_asyncio.fixture
async def application(db_session, test_user):
    app = Application(id=str(uuid.uuid4()), name="shop", display_name="Shop", version="1.0.0",
                      created_by=test_user.id)
    db_session.add(app)
    await db_session.commit()
    return app


@pytest_asyncio.fixture
async def repository(db_session, test_user):
    repo = GitRepository(id=str(uuid.uuid4()), name="shop-repo", owner_id=test_user.id, default_branch="main")
    db_session.add(repo)
    await db_session.commit()
    return repo


@pytest_asyncio.fixture
async def entity(db_session, application):
    record = Entity(
        id=str(uuid.uuid4()), application_id=application.id, name="Customer Orders",
        table_name="customer_orders", version="1.0.0",
        schema={"fields": [{"name": "total", "type": "decimal"}]},
    )
    db_session.add(record)
    await db_session.commit()
    return record


def _file(workspace, repository, relative_path):
    return json.loads((workspace.repo_path(repository) / relative_path).read_text(encoding="utf-8"))


def _rewrite(workspace, repository, relative_path, **changes):
    payload = _file(workspace, repository, relative_path)
    payload.update(changes)
    workspace.write_artifact_file(repository, relative_path, payload)
    return payload


class TestExport:
    @pytest.mark.asyncio
    async def test_export_artifact_writes_canonical_file(self, db_session, workspace, repository, entity):
        result = await ArtifactSyncService(db_session, workspace).export_artifact("entity", entity.id, repository.id)
        assert result["success"] is True
        assert result["relativePath"] == "entities/customer-orders.json"

        payload = _file(workspace, repository, "entities/customer-orders.json")
        assert payload["id"] == entity.id
        assert payload["type"] == "entity"
        assert payload["tableName"] == "customer_orders"

    @pytest.mark.asyncio
    async def test_export_unknown_repository(self, db_session, workspace, entity):
        with pytest.raises(errors.NotFoundError):
            await ArtifactSyncService(db_session, workspace).export_artifact("entity", entity.id, "missing")

    @pytest.mark.asyncio
    async def test_export_unknown_kind(self, db_session, workspace, repository):
        with pytest.raises(errors.UnknownArtifactKindError):
            await ArtifactSyncService(db_session, workspace).export_artifact("widget", "x", repository.id)

    @pytest.mark.asyncio
    async def test_export_application_collects_files(self, db_session, workspace, repository, application, entity):
        db_session.add(Form(application_id=application.id, name="Order Form", controls=[]))
        await db_session.commit()

        result = await ArtifactSyncService(db_session, workspace).export_application(application.id, repository.id)
        assert result["success"] is True
        assert result["errors"] == []
        paths = [f["relativePath"] for f in result["exportedFiles"]]
        assert paths == ["application.json", "entities/customer-orders.json", "forms/order-form.json"]

    @pytest.mark.asyncio
    async def test_export_missing_application_reports_error(self, db_session, workspace, repository):
        result = await ArtifactSyncService(db_session, workspace).export_application("nope", repository.id)
        assert result["success"] is False
        assert result["errors"][0]["artifactType"] == "application"

    @pytest.mark.asyncio
    async def test_soft_deleted_artifacts_are_skipped(self, db_session, workspace, repository, application, entity):
        entity.deleted_at = as_utc(entity.created_at)
        await db_session.commit()
        result = await ArtifactSyncService(db_session, workspace).export_application(application.id, repository.id)
        assert [f["relativePath"] for f in result["exportedFiles"]] == ["application.json"]


class TestImport:
    @pytest.mark.asyncio
    async def test_round_trip_into_new_application(self, db_session, workspace, repository, application, entity):
        db_session.add(DataSource(
            application_id=application.id, name="Warehouse", source_type="postgresql",
            connection_config={"host": "db", "password": "hunter2"},
        ))
        db_session.add(Form(application_id=application.id, name="Order Form", status="published", controls=[]))
        await db_session.commit()

        service = ArtifactSyncService(db_session, workspace)
        exported = await service.export_application(application.id, repository.id)
        assert len(exported["exportedFiles"]) == 4

        result = await service.import_application(repository.id)
        assert result["success"] is True
        assert result["conflicts"] == []
        assert result["errors"] == []
        assert result["applicationId"] != application.id
        assert len(result["importedArtifacts"]) == 3
        assert all(a["created"] for a in result["importedArtifacts"])

        new_app = await db_session.get(Application, result["applicationId"])
        assert new_app.name == "shop"

        rows = (await db_session.execute(
            select(Entity).where(Entity.application_id == new_app.id)
        )).scalars().all()
        assert len(rows) == 1
        copy = rows[0]
        # The original id is taken, so the copy gets a fresh one
        assert copy.id != entity.id
        assert copy.name == entity.name
        assert copy.table_name == "customer_orders"
        assert copy.schema == entity.schema

        ds = (await db_session.execute(
            select(DataSource).where(DataSource.application_id == new_app.id)
        )).scalars().one()
        # Secrets never travel through the repository
        assert ds.connection_config == {"host": "db"}
        assert ds.source_type == "postgresql"

    @pytest.mark.asyncio
    async def test_reimport_keeps_stored_secrets(self, db_session, workspace, repository, application):
        datasource = DataSource(
            application_id=application.id, name="Warehouse", source_type="postgresql",
            connection_config={"host": "db", "password": "s3cret"},
        )
        db_session.add(datasource)
        await db_session.commit()

        service = ArtifactSyncService(db_session, workspace)
        await service.export_artifact("datasource", datasource.id, repository.id)
        assert _file(workspace, repository, "datasources/warehouse.json")["connectionConfig"]["password"] == codec.REDACTED

        result = await service.import_artifact(repository.id, "datasources/warehouse.json")
        assert result["success"] is True
        assert result["updated"] is True
        await db_session.refresh(datasource)
        assert datasource.connection_config == {"host": "db", "password": "s3cret"}

        _rewrite(workspace, repository, "datasources/warehouse.json",
                 connectionConfig={"host": "db2", "password": codec.REDACTED})
        result = await service.import_artifact(repository.id, "datasources/warehouse.json", overwrite=True)
        assert result["updated"] is True

        await db_session.refresh(datasource)
        assert datasource.connection_config == {"host": "db2", "password": "s3cret"}

    @pytest.mark.asyncio
    async def test_reimport_accepts_new_secret(self, db_session, workspace, repository, application):
        datasource = DataSource(
            application_id=application.id, name="Warehouse", source_type="postgresql",
            connection_config={"host": "db", "password": "s3cret"},
        )
        db_session.add(datasource)
        await db_session.commit()

        service = ArtifactSyncService(db_session, workspace)
        await service.export_artifact("datasource", datasource.id, repository.id)
        _rewrite(workspace, repository, "datasources/warehouse.json",
                 connectionConfig={"host": "db", "password": "rotated"})
        await service.import_artifact(repository.id, "datasources/warehouse.json", overwrite=True)

        await db_session.refresh(datasource)
        assert datasource.connection_config["password"] == "rotated"

    @pytest.mark.asyncio
    async def test_unchanged_file_updates_in_place(self, db_session, workspace, repository, application, entity):
        service = ArtifactSyncService(db_session, workspace)
        await service.export_artifact("entity", entity.id, repository.id)
        result = await service.import_artifact(repository.id, "entities/customer-orders.json")
        assert result["success"] is True
        assert result["updated"] is True
        assert result["artifact"]["id"] == entity.id

    @pytest.mark.asyncio
    async def test_version_mismatch_conflict(self, db_session, workspace, repository, application, entity):
        service = ArtifactSyncService(db_session, workspace)
        await service.export_artifact("entity", entity.id, repository.id)
        _rewrite(workspace, repository, "entities/customer-orders.json", version="1.1.0", tableName="orders_v2")

        result = await service.import_artifact(repository.id, "entities/customer-orders.json")
        assert result["success"] is False
        assert result["conflict"] is True
        assert result["conflictDetails"]["type"] == "version_mismatch"
        assert result["conflictDetails"]["existingVersion"] == "1.0.0"
        assert result["conflictDetails"]["fileVersion"] == "1.1.0"
        assert result["artifact"]["tableName"] == "customer_orders"

        # Nothing was written
        await db_session.refresh(entity)
        assert entity.version == "1.0.0"
        assert entity.table_name == "customer_orders"

    @pytest.mark.asyncio
    async def test_overwrite_resolves_conflict(self, db_session, workspace, repository, application, entity):
        service = ArtifactSyncService(db_session, workspace)
        await service.export_artifact("entity", entity.id, repository.id)
        _rewrite(workspace, repository, "entities/customer-orders.json", version="1.1.0", tableName="orders_v2")

        result = await service.import_artifact(repository.id, "entities/customer-orders.json", overwrite=True)
        assert result["success"] is True
        assert result["updated"] is True
        await db_session.refresh(entity)
        assert entity.version == "1.1.0"
        assert entity.table_name == "orders_v2"

    @pytest.mark.asyncio
    async def test_database_newer_conflict(self, db_session, workspace, repository, application, entity):
        service = ArtifactSyncService(db_session, workspace)
        await service.export_artifact("entity", entity.id, repository.id)

        entity.description = "edited after export"
        entity.updated_at = as_utc(entity.updated_at) + timedelta(hours=1)
        await db_session.commit()

        result = await service.import_artifact(repository.id, "entities/customer-orders.json")
        assert result["conflict"] is True
        assert result["conflictDetails"]["type"] == "database_newer"
        await db_session.refresh(entity)
        assert entity.description == "edited after export"

    @pytest.mark.asyncio
    async def test_create_new_with_taken_name_conflicts(self, db_session, workspace, repository, application, entity):
        service = ArtifactSyncService(db_session, workspace)
        await service.export_artifact("entity", entity.id, repository.id)
        with pytest.raises(errors.ConflictError):
            await service.import_artifact(
                repository.id, "entities/customer-orders.json", create_new=True, application_id=application.id,
            )

    @pytest.mark.asyncio
    async def test_import_into_other_application_creates_copy(self, db_session, workspace, repository,
                                                               application, entity):
        other = Application(name="other")
        db_session.add(other)
        await db_session.commit()

        service = ArtifactSyncService(db_session, workspace)
        await service.export_artifact("entity", entity.id, repository.id)
        result = await service.import_artifact(
            repository.id, "entities/customer-orders.json", application_id=other.id,
        )
        assert result["created"] is True
        assert result["artifact"]["applicationId"] == other.id
        assert result["artifact"]["id"] != entity.id

    @pytest.mark.asyncio
    async def test_invalid_payload_is_rejected(self, db_session, workspace, repository, application):
        workspace.write_artifact_file(repository, "queries/top.json", {
            "name": "Top", "type": "query", "queryType": "sql", "applicationId": application.id,
        })
        with pytest.raises(errors.ValidationError):
            await ArtifactSyncService(db_session, workspace).import_artifact(repository.id, "queries/top.json")

    @pytest.mark.asyncio
    async def test_malformed_file(self, db_session, workspace, repository):
        workspace.write_text(repository, "forms/broken.json", "{oops")
        with pytest.raises(errors.FileFormatError):
            await ArtifactSyncService(db_session, workspace).import_artifact(repository.id, "forms/broken.json")

    @pytest.mark.asyncio
    async def test_missing_file(self, db_session, workspace, repository):
        with pytest.raises(errors.NotFoundError):
            await ArtifactSyncService(db_session, workspace).import_artifact(repository.id, "forms/none.json")

    @pytest.mark.asyncio
    async def test_import_application_reports_bad_files(self, db_session, workspace, repository, application, entity):
        service = ArtifactSyncService(db_session, workspace)
        await service.export_application(application.id, repository.id)
        workspace.write_text(repository, "forms/broken.json", "[]")

        result = await service.import_application(repository.id, application_id=application.id)
        assert result["applicationId"] == application.id
        assert len(result["importedArtifacts"]) == 1
        assert result["success"] is False
        assert result["errors"][0]["relativePath"] == "forms/broken.json"


class TestInspection:
    @pytest.mark.asyncio
    async def test_changed_files_statuses(self, db_session, workspace, repository, application, entity):
        service = ArtifactSyncService(db_session, workspace)
        changed = await service.get_changed_files(repository.id, application.id)
        assert changed[0]["status"] == "added"

        await service.export_artifact("entity", entity.id, repository.id)
        assert await service.get_changed_files(repository.id, application.id) == []

        entity.updated_at = as_utc(entity.updated_at) + timedelta(minutes=5)
        await db_session.commit()
        changed = await service.get_changed_files(repository.id, application.id)
        assert changed[0]["status"] == "modified"

        entity.updated_at = as_utc(entity.updated_at) - timedelta(hours=1)
        await db_session.commit()
        changed = await service.get_changed_files(repository.id, application.id)
        assert changed[0]["status"] == "outdated"

    @pytest.mark.asyncio
    async def test_path_traversal_is_refused(self, db_session, workspace, repository):
        with pytest.raises(errors.ValidationError):
            await ArtifactSyncService(db_session, workspace).get_file_content(repository.id, "../../etc/passwd")

    @pytest.mark.asyncio
    async def test_preamble_writes_gitignore_and_readme(self, db_session, workspace, repository, application):
        written = await ArtifactSyncService(db_session, workspace).generate_preamble(repository.id, application.id)
        assert len(written) == 2
        readme = (workspace.repo_path(repository) / "README.md").read_text(encoding="utf-8")
        assert readme.startswith("# Shop")
        assert (workspace.repo_path(repository) / ".gitignore").exists()


class TestArtifactRoutes:
    @pytest.mark.asyncio
    async def test_export_and_conflicting_import(self, client: AsyncClient, test_user, repository, entity, workspace):
        headers = get_auth_headers(test_user)
        res = await client.post("/lowcode/api/artifacts/export", json={
            "artifactType": "entity", "artifactId": entity.id, "repositoryId": repository.id,
        }, headers=headers)
        assert res.status_code == 200
        assert res.json()["data"]["relativePath"] == "entities/customer-orders.json"

        _rewrite(workspace, repository, "entities/customer-orders.json", version="2.0.0")
        res = await client.post("/lowcode/api/artifacts/import", json={
            "repositoryId": repository.id, "relativePath": "entities/customer-orders.json",
        }, headers=headers)
        assert res.status_code == 409
        body = res.json()
        assert body["success"] is False
        assert body["conflictDetails"]["type"] == "version_mismatch"

    @pytest.mark.asyncio
    async def test_unknown_kind_is_bad_request(self, client: AsyncClient, test_user, repository):
        res = await client.post("/lowcode/api/artifacts/export", json={
            "artifactType": "widget", "artifactId": "x", "repositoryId": repository.id,
        }, headers=get_auth_headers(test_user))
        assert res.status_code == 400
        assert res.json()["error"] == "UNKNOWN_ARTIFACT_KIND"

    @pytest.mark.asyncio
    async def test_file_content_route(self, client: AsyncClient, test_user, repository, entity, workspace):
        headers = get_auth_headers(test_user)
        await client.post("/lowcode/api/artifacts/export", json={
            "artifactType": "entity", "artifactId": entity.id, "repositoryId": repository.id,
        }, headers=headers)
        res = await client.get("/lowcode/api/artifacts/file-content", params={
            "repositoryId": repository.id, "relativePath": "entities/customer-orders.json",
        }, headers=headers)
        assert res.status_code == 200
        assert res.json()["data"]["type"] == "entity"

    @pytest.mark.asyncio
    async def test_requires_auth(self, client: AsyncClient):
        res = await client.post("/lowcode/api/artifacts/export", json={
            "artifactType": "entity", "artifactId": "x", "repositoryId": "y",
        })
        assert res.status_code in (401, 403)

    @pytest.mark.asyncio
    async def test_auditor_cannot_import(self, client: AsyncClient, auditor_user, repository):
        res = await client.post("/lowcode/api/artifacts/import-application", json={
            "repositoryId": repository.id,
        }, headers=get_auth_headers(auditor_user))
        assert res.status_code == 403
