# tests/test_artifact_codec.py — Canonical artifact file form, validation and conflict detection
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

import errors
import artifact_codec as codec
from conflicts import detect_conflict, DATABASE_NEWER, VERSION_MISMATCH
from models import DataSource, Entity, Form


T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _entity(**overrides):
    fields = dict(
        id="ent-1", name="Customer Orders", display_name="Customer Orders", description=None,
        version="1.0.0", application_id="app-1", artifact_metadata={}, created_by="u1", updated_by="u1",
        created_at=T0, updated_at=T0, table_name="customer_orders",
        schema={"fields": [{"name": "total", "type": "decimal"}]}, relationships=[], indexes=[],
        source_type="custom",
    )
    fields.update(overrides)
    return Entity(**fields)


class TestSlugAndPaths:
    def test_slug_collapses_non_alphanumerics(self):
        assert codec.slug("Customer Orders") == "customer-orders"
        assert codec.slug("  --Hello, World!!-- ") == "hello-world"
        assert codec.slug("***") == ""

    def test_path_for_uses_kind_folder(self):
        assert codec.path_for("entity", _entity()) == "entities/customer-orders.json"
        assert codec.path_for("datasource", "Main DB") == "datasources/main-db.json"
        assert codec.path_for("application", "anything") == "application.json"

    def test_path_for_rejects_empty_slug(self):
        with pytest.raises(errors.ValidationError):
            codec.path_for("form", "!!!")

    def test_unknown_kind_falls_back_to_artifacts_folder(self):
        assert codec.folder_for("widget") == "artifacts"

    def test_model_for_unknown_kind(self):
        with pytest.raises(errors.UnknownArtifactKindError):
            codec.model_for("widget")


class TestToFile:
    def test_entity_payload_shape(self):
        payload = codec.to_file("entity", _entity())
        assert payload["id"] == "ent-1"
        assert payload["type"] == "entity"
        assert payload["tableName"] == "customer_orders"
        assert payload["applicationId"] == "app-1"
        assert payload["createdAt"] == T0.isoformat()
        assert payload["schema"]["fields"][0]["name"] == "total"

    def test_datasource_secrets_are_redacted(self):
        ds = DataSource(
            id="ds-1", name="Warehouse", version="1.0.0", created_at=T0, updated_at=T0,
            source_type="postgresql",
            connection_config={"host": "db.internal", "password": "hunter2", "apiKey": "k", "port": 5432},
        )
        payload = codec.to_file("datasource", ds)
        assert payload["type"] == "datasource"
        assert payload["dataSourceType"] == "postgresql"
        assert payload["connectionConfig"]["password"] == codec.REDACTED
        assert payload["connectionConfig"]["apiKey"] == codec.REDACTED
        assert payload["connectionConfig"]["host"] == "db.internal"
        # The record itself is untouched
        assert ds.connection_config["password"] == "hunter2"

    def test_redaction_applies_to_present_keys_only(self):
        assert codec.redact_connection_config({"token": None}) == {"token": codec.REDACTED}
        assert codec.redact_connection_config({}) == {}
        assert codec.redact_connection_config(None) is None

    def test_restore_puts_stored_secrets_back(self):
        incoming = {"host": "db2", "password": codec.REDACTED, "token": codec.REDACTED, "apiKey": "fresh"}
        stored = {"host": "db", "password": "hunter2", "apiKey": "old"}
        assert codec.restore_connection_config(incoming, stored) == {
            "host": "db2", "password": "hunter2", "apiKey": "fresh",
        }
        assert codec.restore_connection_config({"secret": codec.REDACTED}) == {}
        assert codec.restore_connection_config(None, stored) is None


class TestFromFile:
    def test_system_fields_are_not_copied(self):
        data = codec.from_file("form", {
            "id": "ignored", "type": "form", "createdAt": "2020-01-01T00:00:00Z",
            "name": "Signup", "version": "1.2.0", "status": "published", "controls": [],
            "updatedAt": "2024-03-01T12:00:00Z",
        })
        assert "id" not in data
        assert "created_at" not in data
        assert data["status"] == "published"
        assert data["updated_at"] == T0

    def test_application_id_injected_when_missing(self):
        data = codec.from_file("grid", {"name": "Orders", "version": "1.0.0"}, application_id="app-9")
        assert data["application_id"] == "app-9"

    def test_payload_application_id_wins(self):
        data = codec.from_file("grid", {"name": "Orders", "applicationId": "app-1"}, application_id="app-9")
        assert data["application_id"] == "app-1"

    def test_round_trip_preserves_kind_fields(self):
        form = Form(
            id="f-1", name="Signup", version="2.0.0", created_at=T0, updated_at=T0,
            controls=[{"type": "text"}], status="draft", variables={"a": 1},
        )
        data = codec.from_file("form", codec.to_file("form", form))
        assert data["controls"] == [{"type": "text"}]
        assert data["variables"] == {"a": 1}
        assert data["version"] == "2.0.0"


class TestValidation:
    def test_sql_query_requires_raw_sql(self):
        with pytest.raises(errors.ValidationError) as exc:
            codec.validate_payload("query", {"name": "Top", "queryType": "sql"})
        assert "rawSql" in exc.value.message

    def test_visual_query_requires_definition(self):
        with pytest.raises(errors.ValidationError):
            codec.validate_payload("query", {"name": "Top", "queryType": "visual"})
        codec.validate_payload("query", {"name": "Top", "queryType": "visual", "queryDefinition": {}})

    @pytest.mark.parametrize("handler,key", [
        ("external_api", "url"),
        ("workflow", "workflowId"),
        ("entity_query", "entityId"),
        ("custom_code", "code"),
        ("jsonlex", "expression"),
    ])
    def test_api_handler_requirements(self, handler, key):
        payload = {"name": "Orders", "path": "/orders", "handlerType": handler, "handlerConfig": {}}
        with pytest.raises(errors.ValidationError):
            codec.validate_payload("api", payload)
        payload["handlerConfig"] = {key: "x"}
        codec.validate_payload("api", payload)

    def test_api_path_must_be_absolute(self):
        with pytest.raises(errors.ValidationError):
            codec.validate_payload("api", {
                "name": "Orders", "path": "orders", "handlerType": "jsonlex",
                "handlerConfig": {"expression": "1"},
            })

    def test_version_must_be_semver(self):
        with pytest.raises(errors.ValidationError):
            codec.validate_payload("entity", {"name": "Orders", "version": "v1"})

    def test_grid_type_is_checked(self):
        with pytest.raises(errors.ValidationError):
            codec.validate_payload("grid", {"name": "Orders", "gridType": "spreadsheet"})


class TestParsing:
    def test_malformed_json(self):
        with pytest.raises(errors.FileFormatError):
            codec.parse_payload("{not json", "forms/x.json")

    def test_non_object_json(self):
        with pytest.raises(errors.FileFormatError):
            codec.parse_payload("[1, 2]")

    def test_bad_timestamp(self):
        with pytest.raises(errors.FileFormatError):
            codec.parse_timestamp("yesterday")

    def test_detect_kind_prefers_payload_type(self):
        assert codec.detect_kind("forms/x.json", {"type": "grid"}) == "grid"

    def test_detect_kind_from_folder(self):
        assert codec.detect_kind("datasources/main.json", {}) == "datasource"
        assert codec.detect_kind("application.json", {}) == "application"

    def test_detect_kind_unknown(self):
        with pytest.raises(errors.UnknownArtifactKindError):
            codec.detect_kind("misc/x.json", {})
        with pytest.raises(errors.UnknownArtifactKindError):
            codec.detect_kind("forms/x.json", {"type": "widget"})


class TestConflictDetection:
    def _record(self, version="1.0.0", updated_at=T0):
        return SimpleNamespace(version=version, updated_at=updated_at)

    def test_version_mismatch(self):
        decision = detect_conflict(self._record("1.0.0"), {"version": "1.1.0", "updatedAt": T0.isoformat()})
        assert decision.has_conflict
        assert decision.type == VERSION_MISMATCH
        assert decision.to_dict()["existingVersion"] == "1.0.0"
        assert decision.to_dict()["fileVersion"] == "1.1.0"

    def test_database_newer(self):
        older = (T0 - timedelta(hours=1)).isoformat()
        decision = detect_conflict(self._record(), {"version": "1.0.0", "updatedAt": older})
        assert decision.has_conflict
        assert decision.type == DATABASE_NEWER

    def test_missing_file_timestamp_is_database_newer(self):
        decision = detect_conflict(self._record(), {"version": "1.0.0"})
        assert decision.type == DATABASE_NEWER

    def test_same_or_newer_file_is_clean(self):
        assert not detect_conflict(self._record(), {"version": "1.0.0", "updatedAt": T0.isoformat()}).has_conflict
        newer = (T0 + timedelta(minutes=5)).isoformat()
        decision = detect_conflict(self._record(), {"version": "1.0.0", "updatedAt": newer})
        assert not decision.has_conflict
        assert decision.type is None

    def test_naive_record_timestamp_is_treated_as_utc(self):
        naive = T0.replace(tzinfo=None)
        decision = detect_conflict(self._record(updated_at=naive), {"version": "1.0.0", "updatedAt": "2024-03-01T12:00:00Z"})
        assert not decision.has_conflict
