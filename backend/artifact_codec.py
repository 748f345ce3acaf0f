# artifact_codec.py — Database record <-> canonical file form for low-code artifacts
"""
Every artifact kind has a canonical JSON shape on disk:

    {id, name, type, version, createdAt, updatedAt, createdBy, updatedBy, ...kind body}

The codec is pure: it never touches the database or the filesystem.
Incoming payloads are validated against one pydantic model per kind, so
kind-specific rules (query types, API handler requirements, grid types)
are checked before anything is written.
"""

import json
import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

import errors
from models import (
    Application, Entity, Form, Grid, Dashboard, Query, Api, Process, DataSource,
    as_utc, iso,
)

# ============================================================
# KIND TABLES
# ============================================================

APPLICATION_KIND = "application"
APPLICATION_FILE = "application.json"

FOLDERS = {
    "entity": "entities",
    "form": "forms",
    "grid": "grids",
    "dashboard": "dashboards",
    "query": "queries",
    "api": "apis",
    "process": "processes",
    "datasource": "datasources",
}
DEFAULT_FOLDER = "artifacts"
KINDS_BY_FOLDER = {folder: kind for kind, folder in FOLDERS.items()}

# Export/import walk kinds in this order
ARTIFACT_KINDS = tuple(FOLDERS)

ARTIFACT_MODELS = {
    "entity": Entity,
    "form": Form,
    "grid": Grid,
    "dashboard": Dashboard,
    "query": Query,
    "api": Api,
    "process": Process,
    "datasource": DataSource,
}

REDACTED = "***REDACTED***"
SENSITIVE_KEYS = ("password", "apiKey", "secret", "token", "credentials")

# (model attribute, file key)
COMMON_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("name", "name"),
    ("display_name", "displayName"),
    ("description", "description"),
    ("version", "version"),
    ("application_id", "applicationId"),
    ("artifact_metadata", "metadata"),
    ("created_by", "createdBy"),
    ("updated_by", "updatedBy"),
)

KIND_FIELDS: Dict[str, Tuple[Tuple[str, str], ...]] = {
    "entity": (
        ("table_name", "tableName"),
        ("schema", "schema"),
        ("relationships", "relationships"),
        ("indexes", "indexes"),
        ("source_type", "sourceType"),
    ),
    "form": (
        ("entity_id", "entityId"),
        ("controls", "controls"),
        ("data_sources", "dataSources"),
        ("collections", "collections"),
        ("variables", "variables"),
        ("events", "events"),
        ("validation_rules", "validationRules"),
        ("status", "status"),
    ),
    "grid": (
        ("entity_id", "entityId"),
        ("columns", "columns"),
        ("filters", "filters"),
        ("sorting", "sorting"),
        ("pagination", "pagination"),
        ("actions", "actions"),
        ("grid_type", "gridType"),
    ),
    "dashboard": (
        ("layout", "layout"),
        ("widgets", "widgets"),
        ("filters", "filters"),
        ("refresh_interval", "refreshInterval"),
    ),
    "query": (
        ("query_type", "queryType"),
        ("query_definition", "queryDefinition"),
        ("raw_sql", "rawSql"),
        ("parameters", "parameters"),
        ("data_source_id", "dataSourceId"),
        ("cache_enabled", "cacheEnabled"),
        ("cache_ttl", "cacheTtl"),
        ("timeout", "timeout"),
    ),
    "api": (
        ("path", "path"),
        ("method", "method"),
        ("handler_type", "handlerType"),
        ("handler_config", "handlerConfig"),
        ("request_schema", "requestSchema"),
        ("response_schema", "responseSchema"),
        ("auth_required", "authRequired"),
        ("rate_limit", "rateLimit"),
        ("enabled", "enabled"),
    ),
    "process": (
        ("process_type", "processType"),
        ("definition", "definition"),
        ("triggers", "triggers"),
        ("enabled", "enabled"),
    ),
    # The datasource's own connector type lives under dataSourceType so that
    # "type" always names the artifact kind.
    "datasource": (
        ("source_type", "dataSourceType"),
        ("connection_config", "connectionConfig"),
        ("options", "options"),
    ),
}

APPLICATION_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("name", "name"),
    ("display_name", "displayName"),
    ("description", "description"),
    ("version", "version"),
    ("status", "status"),
    ("settings", "settings"),
    ("dependencies", "dependencies"),
    ("created_by", "createdBy"),
    ("updated_by", "updatedBy"),
)


# ============================================================
# TYPED PAYLOAD VARIANTS
# ============================================================

SEMVER_PATTERN = r"^\d+\.\d+\.\d+$"
API_PATH_PATTERN = r"^/[A-Za-z0-9/_-]*$"

HANDLER_REQUIREMENTS = {
    "external_api": "url",
    "workflow": "workflowId",
    "entity_query": "entityId",
    "custom_code": "code",
    "jsonlex": "expression",
}


class ArtifactFile(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=255)
    version: str = Field(default="1.0.0", pattern=SEMVER_PATTERN)
    applicationId: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("name")
    @classmethod
    def name_must_slug(cls, v: str) -> str:
        if not slug(v):
            raise ValueError("name must contain at least one letter or digit")
        return v


class EntityFile(ArtifactFile):
    schema_: Optional[Dict[str, Any]] = Field(default=None, alias="schema")
    sourceType: Literal["custom", "forge", "external"] = "custom"

    @field_validator("schema_")
    @classmethod
    def schema_has_fields(cls, v):
        if v is not None and not isinstance(v.get("fields", []), list):
            raise ValueError("schema.fields must be a list")
        return v


class FormFile(ArtifactFile):
    status: Literal["draft", "published", "archived"] = "draft"
    controls: Optional[List[Any]] = None


class GridFile(ArtifactFile):
    gridType: Literal["editable", "readonly", "master-detail"] = "readonly"
    pagination: Optional[Dict[str, Any]] = None

    @field_validator("pagination")
    @classmethod
    def page_size_positive(cls, v):
        if v is not None and "pageSize" in v:
            if not isinstance(v["pageSize"], int) or v["pageSize"] < 1:
                raise ValueError("pagination.pageSize must be a positive integer")
        return v


class DashboardFile(ArtifactFile):
    refreshInterval: Optional[int] = Field(default=None, ge=0)


class QueryFile(ArtifactFile):
    queryType: Literal["visual", "sql", "function", "rest"] = "visual"
    rawSql: Optional[str] = None
    queryDefinition: Optional[Dict[str, Any]] = None
    cacheEnabled: bool = False
    cacheTtl: Optional[int] = Field(default=None, ge=0)
    timeout: int = Field(default=30000, ge=1)

    @model_validator(mode="after")
    def check_query_body(self):
        if self.queryType == "sql" and not self.rawSql:
            raise ValueError("rawSql is required for sql queries")
        if self.queryType == "visual" and self.queryDefinition is None:
            raise ValueError("queryDefinition is required for visual queries")
        return self


class ApiFile(ArtifactFile):
    path: str = Field(..., pattern=API_PATH_PATTERN)
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "GET"
    handlerType: Literal["jsonlex", "external_api", "workflow", "custom_code", "entity_query"]
    handlerConfig: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_handler_config(self):
        required = HANDLER_REQUIREMENTS[self.handlerType]
        if not self.handlerConfig.get(required):
            raise ValueError(f"handlerConfig.{required} is required for {self.handlerType} handlers")
        return self


class ProcessFile(ArtifactFile):
    processType: Optional[str] = None
    enabled: bool = True


class DataSourceFile(ArtifactFile):
    dataSourceType: Optional[str] = None
    connectionConfig: Optional[Dict[str, Any]] = None


class ApplicationFile(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = Field(..., min_length=1)
    version: str = Field(default="1.0.0", pattern=SEMVER_PATTERN)
    settings: Optional[Dict[str, Any]] = None
    dependencies: Optional[List[Any]] = None


PAYLOAD_MODELS = {
    "entity": EntityFile,
    "form": FormFile,
    "grid": GridFile,
    "dashboard": DashboardFile,
    "query": QueryFile,
    "api": ApiFile,
    "process": ProcessFile,
    "datasource": DataSourceFile,
    APPLICATION_KIND: ApplicationFile,
}


# ============================================================
# HELPERS
# ============================================================

def slug(name: str) -> str:
    """Lowercase, collapse every run of non [a-z0-9] into '-', trim dashes"""
    return re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")


def folder_for(kind: str) -> str:
    return FOLDERS.get(kind, DEFAULT_FOLDER)


def _check_kind(kind: str) -> None:
    if kind not in KIND_FIELDS and kind != APPLICATION_KIND:
        raise errors.UnknownArtifactKindError(f"Unknown artifact type: {kind}")


def model_for(kind: str):
    _check_kind(kind)
    if kind == APPLICATION_KIND:
        return Application
    return ARTIFACT_MODELS[kind]


def redact_connection_config(config: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not config:
        return config
    sanitized = dict(config)
    for key in SENSITIVE_KEYS:
        if key in sanitized:
            sanitized[key] = REDACTED
    return sanitized


def restore_connection_config(incoming: Optional[Dict[str, Any]],
                              existing: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    """Undo export redaction on the way back in.

    Redacted keys take the stored value from ``existing``; with nothing
    stored (a new record) they are dropped.
    """
    if not incoming:
        return incoming
    merged = dict(incoming)
    stored = existing or {}
    for key in SENSITIVE_KEYS:
        if merged.get(key) != REDACTED:
            continue
        if key in stored:
            merged[key] = stored[key]
        else:
            del merged[key]
    return merged


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        raise errors.FileFormatError(f"Invalid timestamp: {value!r}")


def parse_payload(raw: str, source: str = "payload") -> Dict[str, Any]:
    """Decode artifact JSON text into a mapping"""
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise errors.FileFormatError(f"Malformed JSON in {source}: {e.msg} (line {e.lineno})")
    if not isinstance(payload, dict):
        raise errors.FileFormatError(f"{source} must contain a JSON object")
    return payload


def validate_payload(kind: str, payload: Dict[str, Any]) -> None:
    _check_kind(kind)
    try:
        PAYLOAD_MODELS[kind].model_validate(payload)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or kind}: {err['msg']}" for err in e.errors()
        )
        raise errors.ValidationError(f"Invalid {kind} payload: {problems}")


# ============================================================
# CODEC OPERATIONS
# ============================================================

def to_file(kind: str, record) -> Dict[str, Any]:
    """Canonical file payload for a database record"""
    _check_kind(kind)
    payload: Dict[str, Any] = {
        "id": record.id,
        "name": record.name,
        "type": kind,
        "version": record.version or "1.0.0",
        "createdAt": iso(record.created_at),
        "updatedAt": iso(record.updated_at),
        "createdBy": record.created_by,
        "updatedBy": record.updated_by,
    }

    fields = APPLICATION_FIELDS if kind == APPLICATION_KIND else COMMON_FIELDS + KIND_FIELDS[kind]
    for attr, key in fields:
        if key not in payload:
            payload[key] = getattr(record, attr)

    if kind == "datasource":
        payload["connectionConfig"] = redact_connection_config(payload.get("connectionConfig"))
    return payload


def from_file(kind: str, payload: Dict[str, Any], application_id: Optional[str] = None) -> Dict[str, Any]:
    """Model attributes for a file payload.

    id, createdAt and type are system-managed and never copied. When the
    payload names no application and the caller supplies one, it is injected.
    """
    validate_payload(kind, payload)

    fields = APPLICATION_FIELDS if kind == APPLICATION_KIND else COMMON_FIELDS + KIND_FIELDS[kind]
    data: Dict[str, Any] = {}
    for attr, key in fields:
        if key in payload:
            data[attr] = payload[key]

    if "updatedAt" in payload:
        updated_at = parse_timestamp(payload["updatedAt"])
        if updated_at is not None:
            data["updated_at"] = updated_at

    if kind != APPLICATION_KIND and not data.get("application_id") and application_id:
        data["application_id"] = application_id
    return data


def path_for(kind: str, record) -> str:
    if kind == APPLICATION_KIND:
        return APPLICATION_FILE
    name = record if isinstance(record, str) else record.name
    file_slug = slug(name)
    if not file_slug:
        raise errors.ValidationError(f"Artifact name {name!r} produces an empty file name")
    return f"{folder_for(kind)}/{file_slug}.json"


def detect_kind(relative_path: str, payload: Dict[str, Any]) -> str:
    """Prefer payload.type, else the first path segment through the folder table"""
    kind = payload.get("type")
    if not kind:
        if relative_path.replace("\\", "/").strip("/") == APPLICATION_FILE:
            kind = APPLICATION_KIND
        else:
            folder = relative_path.replace("\\", "/").lstrip("/").split("/")[0]
            kind = KINDS_BY_FOLDER.get(folder)
    if not kind:
        raise errors.UnknownArtifactKindError(f"Cannot determine artifact type for {relative_path}")
    _check_kind(kind)
    return kind
