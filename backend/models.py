# models.py — Database models for the Exprsn platform core
# - UUID string primary keys everywhere
# - Soft deletes on authored artifacts (deleted_at)
# - Low-code artifacts, Git collaboration, credentials
# - Report scheduling, schema migrations, project scheduling, documents

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, BigInteger, Integer,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint, event, text,
)
from sqlalchemy.orm import declarative_base, declared_attr, relationship
from sqlalchemy.orm.base import NO_VALUE, NEVER_SET

import errors

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise a datetime to an aware UTC value (SQLite returns naive datetimes)"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


# ============================================================
# ENUMS
# ============================================================

class UserRole(str, PyEnum):
    SUPER_ADMIN = "super_admin"
    ORG_ADMIN = "org_admin"
    AUDITOR = "auditor"
    POWER_USER = "power_user"
    USER = "user"


class PRState(str, PyEnum):
    DRAFT = "draft"
    OPEN = "open"
    MERGED = "merged"
    CLOSED = "closed"


class ReviewStatus(str, PyEnum):
    NONE = "none"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"


class CIStatus(str, PyEnum):
    NONE = "none"
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


class SSHKeyType(str, PyEnum):
    RSA = "rsa"
    ED25519 = "ed25519"
    ECDSA = "ecdsa"


class ScheduleFrequency(str, PyEnum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    CUSTOM = "custom"


class ExecutionStatus(str, PyEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class DeliveryMethod(str, PyEnum):
    EMAIL = "email"
    STORAGE = "storage"
    WEBHOOK = "webhook"
    DOWNLOAD = "download"


class DeliveryStatus(str, PyEnum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class MigrationStatus(str, PyEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class ProjectTaskStatus(str, PyEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DependencyType(str, PyEnum):
    FINISH_TO_START = "finish_to_start"
    START_TO_START = "start_to_start"
    FINISH_TO_FINISH = "finish_to_finish"
    START_TO_FINISH = "start_to_finish"


class DocumentChangeType(str, PyEnum):
    CONTENT_UPDATED = "content_updated"
    METADATA_UPDATED = "metadata_updated"
    RENAMED = "renamed"
    MOVED = "moved"
    CREATED = "created"
    RESTORED = "restored"


# ============================================================
# USERS & AUDIT
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=False, default="")
    role = Column(SQLEnum(UserRole), default=UserRole.USER, nullable=False, index=True)
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class AuditLog(Base):
    """Append-only record of credential and repository mutations"""
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    action = Column(String, nullable=False, index=True)  # "ssh_key_added", "pat_revoked", ...
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=True)
    repository_id = Column(String, nullable=True, index=True)
    audit_metadata = Column("metadata", JSON, default=dict)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)

    __table_args__ = (
        Index("idx_audit_user_timestamp", "user_id", "timestamp"),
    )


# ============================================================
# LOW-CODE ARTIFACTS
# ============================================================

class Application(Base):
    __tablename__ = "applications"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False, index=True)
    display_name = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    version = Column(String, nullable=False, default="1.0.0")
    status = Column(String, default="draft")
    settings = Column(JSON, default=dict)
    dependencies = Column(JSON, default=list)
    git_repository = Column(String, nullable=True)
    git_branch = Column(String, nullable=True)
    created_by = Column(String, nullable=True)
    updated_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class ArtifactMixin:
    """Columns shared by every authored artifact kind"""

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    display_name = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    version = Column(String, nullable=False, default="1.0.0")
    artifact_metadata = Column("metadata", JSON, default=dict)
    created_by = Column(String, nullable=True)
    updated_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    @declared_attr
    def application_id(cls):
        return Column(String, ForeignKey("applications.id", ondelete="CASCADE"), nullable=False, index=True)

    @declared_attr
    def __table_args__(cls):
        return (
            Index(
                f"uq_{cls.__tablename__}_app_name", "application_id", "name",
                unique=True,
                postgresql_where=text("deleted_at IS NULL"),
                sqlite_where=text("deleted_at IS NULL"),
            ),
        )


class Entity(ArtifactMixin, Base):
    __tablename__ = "lowcode_entities"

    table_name = Column(String, nullable=True)
    schema = Column(JSON, default=lambda: {"fields": []})
    relationships = Column(JSON, default=list)
    indexes = Column(JSON, default=list)
    source_type = Column(String, default="custom")  # custom | forge | external


class Form(ArtifactMixin, Base):
    __tablename__ = "lowcode_forms"

    entity_id = Column(String, nullable=True)
    controls = Column(JSON, default=list)
    data_sources = Column(JSON, default=list)
    collections = Column(JSON, default=list)
    variables = Column(JSON, default=dict)
    events = Column(JSON, default=dict)
    validation_rules = Column(JSON, default=list)
    status = Column(String, default="draft")  # draft | published | archived


class Grid(ArtifactMixin, Base):
    __tablename__ = "lowcode_grids"

    entity_id = Column(String, nullable=True)
    columns = Column(JSON, default=list)
    filters = Column(JSON, default=list)
    sorting = Column(JSON, default=list)
    pagination = Column(JSON, default=lambda: {"enabled": True, "pageSize": 25})
    actions = Column(JSON, default=list)
    grid_type = Column(String, default="readonly")  # editable | readonly | master-detail


class Dashboard(ArtifactMixin, Base):
    __tablename__ = "lowcode_dashboards"

    layout = Column(JSON, default=dict)
    widgets = Column(JSON, default=list)
    filters = Column(JSON, default=list)
    refresh_interval = Column(Integer, nullable=True)


class Query(ArtifactMixin, Base):
    __tablename__ = "lowcode_queries"

    query_type = Column(String, default="visual")  # visual | sql | function | rest
    query_definition = Column(JSON, nullable=True)
    raw_sql = Column(Text, nullable=True)
    parameters = Column(JSON, default=list)
    data_source_id = Column(String, nullable=True)
    cache_enabled = Column(Boolean, default=False)
    cache_ttl = Column(Integer, default=300)
    timeout = Column(Integer, default=30000)


class Api(ArtifactMixin, Base):
    __tablename__ = "lowcode_apis"

    path = Column(String, nullable=False)
    method = Column(String, nullable=False, default="GET")
    handler_type = Column(String, nullable=False, default="jsonlex")
    handler_config = Column(JSON, default=dict)
    request_schema = Column(JSON, nullable=True)
    response_schema = Column(JSON, nullable=True)
    auth_required = Column(Boolean, default=True)
    rate_limit = Column(JSON, nullable=True)
    enabled = Column(Boolean, default=True)

    @declared_attr
    def __table_args__(cls):
        live = text("deleted_at IS NULL")
        return (
            Index("uq_lowcode_apis_app_name", "application_id", "name",
                  unique=True, postgresql_where=live, sqlite_where=live),
            Index("uq_lowcode_apis_app_path_method", "application_id", "path", "method",
                  unique=True, postgresql_where=live, sqlite_where=live),
        )


class Process(ArtifactMixin, Base):
    __tablename__ = "lowcode_processes"

    process_type = Column(String, default="workflow")
    definition = Column(JSON, default=dict)
    triggers = Column(JSON, default=list)
    enabled = Column(Boolean, default=True)


class DataSource(ArtifactMixin, Base):
    __tablename__ = "lowcode_data_sources"

    source_type = Column(String, nullable=False, default="postgresql")
    connection_config = Column(JSON, default=dict)
    options = Column(JSON, default=dict)


# ============================================================
# GIT COLLABORATION
# ============================================================

class GitRepository(Base):
    __tablename__ = "git_repositories"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, unique=True, nullable=False)  # directory under the workspace root
    description = Column(Text, nullable=True)
    remote_url = Column(String, nullable=True)
    default_branch = Column(String, default="main")
    owner_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    application_id = Column(String, ForeignKey("applications.id", ondelete="SET NULL"), nullable=True)
    open_prs_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class GitBranch(Base):
    __tablename__ = "git_branches"

    id = Column(String, primary_key=True, default=new_uuid)
    repository_id = Column(String, ForeignKey("git_repositories.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    commit_sha = Column(String(40), nullable=True)
    is_default = Column(Boolean, default=False)
    protected = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("repository_id", "name", name="uq_branch_repo_name"),
    )


class GitCommit(Base):
    __tablename__ = "git_commits"

    id = Column(String, primary_key=True, default=new_uuid)
    repository_id = Column(String, ForeignKey("git_repositories.id", ondelete="CASCADE"), nullable=False, index=True)
    sha = Column(String(40), nullable=False)
    branch_name = Column(String, nullable=True)
    message = Column(Text, nullable=False, default="")
    author_name = Column(String, nullable=True)
    author_email = Column(String, nullable=True)
    parent_shas = Column(JSON, default=list)
    tree_sha = Column(String(40), nullable=True)
    additions = Column(Integer, default=0)
    deletions = Column(Integer, default=0)
    files_changed = Column(Integer, default=0)
    committed_at = Column(DateTime(timezone=True), default=utcnow)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("repository_id", "sha", name="uq_commit_repo_sha"),
    )


class GitPullRequest(Base):
    __tablename__ = "git_pull_requests"

    id = Column(String, primary_key=True, default=new_uuid)
    repository_id = Column(String, ForeignKey("git_repositories.id", ondelete="CASCADE"), nullable=False, index=True)
    number = Column(Integer, nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    source_branch = Column(String, nullable=False)
    target_branch = Column(String, nullable=False)
    source_sha = Column(String(40), nullable=True)
    target_sha = Column(String(40), nullable=True)
    state = Column(SQLEnum(PRState), default=PRState.OPEN, nullable=False, index=True)
    author_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    reviewers = Column(JSON, default=list)
    labels = Column(JSON, default=list)
    mergeable = Column(Boolean, nullable=True)
    conflicts = Column(JSON, default=list)
    review_status = Column(SQLEnum(ReviewStatus), default=ReviewStatus.NONE, nullable=False)
    ci_status = Column(SQLEnum(CIStatus), default=CIStatus.NONE, nullable=False)
    ci_pipeline_id = Column(String, nullable=True)
    merge_commit_sha = Column(String(40), nullable=True)
    merged_by = Column(String, nullable=True)
    merged_at = Column(DateTime(timezone=True), nullable=True)
    closed_by = Column(String, nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("repository_id", "number", name="uq_pr_repo_number"),
        Index("idx_pr_repo_state", "repository_id", "state"),
    )


class GitPipeline(Base):
    __tablename__ = "git_pipelines"

    id = Column(String, primary_key=True, default=new_uuid)
    repository_id = Column(String, ForeignKey("git_repositories.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    trigger_on = Column(JSON, default=lambda: ["push"])  # subset of {push, pull_request}
    branches = Column(JSON, default=lambda: ["*"])
    stages = Column(JSON, default=list)
    active = Column(Boolean, default=True)
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# CREDENTIALS (plaintext secrets never stored)
# ============================================================

class SSHKey(Base):
    __tablename__ = "git_ssh_keys"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    public_key = Column(Text, nullable=False)
    fingerprint = Column(String, unique=True, nullable=False)
    key_type = Column(SQLEnum(SSHKeyType), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class PersonalAccessToken(Base):
    __tablename__ = "git_personal_access_tokens"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    token_hash = Column(String, nullable=False)
    token_prefix = Column(String, nullable=False, index=True)
    scopes = Column(JSON, default=list)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    revoked = Column(Boolean, default=False, nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class OAuthApplication(Base):
    __tablename__ = "git_oauth_applications"

    id = Column(String, primary_key=True, default=new_uuid)
    owner_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    homepage_url = Column(String, nullable=True)
    callback_url = Column(String, nullable=True)
    client_id = Column(String, unique=True, nullable=False)
    client_secret_hash = Column(String, nullable=False)
    scopes = Column(JSON, default=list)
    active = Column(Boolean, default=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# REPORTS & SCHEDULES
# ============================================================

class Report(Base):
    __tablename__ = "reports"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    owner_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    report_type = Column(String, nullable=False, default="table")
    config = Column(JSON, default=dict)  # source, columns, filters, sorting, limit
    visualization = Column(JSON, default=dict)
    custom_query = Column(Text, nullable=True)  # admin-gated SQL
    parameters = Column(JSON, default=dict)
    timeout_seconds = Column(Integer, default=60, nullable=False)
    cache_duration_minutes = Column(Integer, default=15, nullable=False)
    execution_count = Column(Integer, default=0, nullable=False)
    last_executed_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class ReportSchedule(Base):
    __tablename__ = "report_schedules"

    id = Column(String, primary_key=True, default=new_uuid)
    report_id = Column(String, ForeignKey("reports.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    frequency = Column(SQLEnum(ScheduleFrequency), nullable=False)
    cron_expression = Column(String, nullable=True)
    run_at = Column(String, default="09:00:00")  # HH:MM[:SS] in the schedule timezone
    day_of_week = Column(Integer, nullable=True)  # 0 (Sunday) .. 6
    day_of_month = Column(Integer, nullable=True)  # 1 .. 31
    timezone = Column(String, default="UTC", nullable=False)
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    parameters = Column(JSON, default=dict)
    export_format = Column(String, default="csv", nullable=False)
    delivery_method = Column(SQLEnum(DeliveryMethod), default=DeliveryMethod.DOWNLOAD, nullable=False)
    delivery_config = Column(JSON, default=dict)  # recipients, webhookUrl, headers
    is_active = Column(Boolean, default=True, index=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    execution_count = Column(Integer, default=0, nullable=False)
    failure_count = Column(Integer, default=0, nullable=False)
    last_run_at = Column(DateTime(timezone=True), nullable=True)
    next_run_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class ReportExecution(Base):
    __tablename__ = "report_executions"

    id = Column(String, primary_key=True, default=new_uuid)
    report_id = Column(String, ForeignKey("reports.id", ondelete="CASCADE"), nullable=False, index=True)
    schedule_id = Column(String, ForeignKey("report_schedules.id", ondelete="SET NULL"), nullable=True, index=True)
    executed_by = Column(String, nullable=True)
    status = Column(SQLEnum(ExecutionStatus), default=ExecutionStatus.RUNNING, nullable=False, index=True)
    parameters = Column(JSON, default=dict)
    started_at = Column(DateTime(timezone=True), default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    row_count = Column(Integer, nullable=True)
    result_size = Column(BigInteger, nullable=True)
    error_message = Column(Text, nullable=True)
    cache_key = Column(String, nullable=True)
    cache_hit = Column(Boolean, default=False)
    export_format = Column(String, nullable=True)
    export_path = Column(String, nullable=True)
    export_url = Column(String, nullable=True)
    export_expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    delivery_method = Column(SQLEnum(DeliveryMethod), nullable=True)
    delivery_status = Column(SQLEnum(DeliveryStatus), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    delivery_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# ============================================================
# SCHEMA MIGRATIONS (completed rows are immutable)
# ============================================================

class SchemaMigration(Base):
    __tablename__ = "schema_migrations"

    id = Column(String, primary_key=True, default=new_uuid)
    migration_name = Column(String, unique=True, nullable=False)
    description = Column(Text, nullable=True)
    migration_sql = Column(Text, nullable=False)
    rollback_sql = Column(Text, nullable=True)
    depends_on = Column(JSON, default=list)  # migration names
    execution_order = Column(Integer, nullable=False, default=0, index=True)
    status = Column(SQLEnum(MigrationStatus), default=MigrationStatus.PENDING, nullable=False, index=True)
    applied_at = Column(DateTime(timezone=True), nullable=True)
    applied_by = Column(String, nullable=True)
    rolled_back_at = Column(DateTime(timezone=True), nullable=True)
    rolled_back_by = Column(String, nullable=True)
    execution_time_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    error_stack = Column(Text, nullable=True)
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


@event.listens_for(SchemaMigration.migration_sql, "set", active_history=True)
def _guard_completed_migration_sql(target, value, oldvalue, initiator):
    if oldvalue in (NO_VALUE, NEVER_SET) or value == oldvalue:
        return
    if target.status == MigrationStatus.COMPLETED:
        raise errors.IntegrityError(
            f"Migration '{target.migration_name}' is completed; its SQL cannot be modified"
        )


# ============================================================
# PROJECT SCHEDULING
# ============================================================

class Project(Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    owner_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class ProjectTask(Base):
    __tablename__ = "project_tasks"

    id = Column(String, primary_key=True, default=new_uuid)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=True, index=True)
    parent_id = Column(String, ForeignKey("project_tasks.id", ondelete="SET NULL"), nullable=True, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(SQLEnum(ProjectTaskStatus), default=ProjectTaskStatus.PENDING, nullable=False, index=True)
    priority = Column(String, default="medium")
    start_date = Column(DateTime(timezone=True), nullable=True)
    due_date = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    estimated_hours = Column(Integer, nullable=True)
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    dependencies = relationship(
        "TaskDependency", foreign_keys="TaskDependency.task_id",
        back_populates="task", cascade="all, delete-orphan",
    )
    assignments = relationship("TaskAssignment", back_populates="task", cascade="all, delete-orphan")


class TaskDependency(Base):
    __tablename__ = "task_dependencies"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("project_tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    depends_on_task_id = Column(String, ForeignKey("project_tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    dependency_type = Column(SQLEnum(DependencyType), default=DependencyType.FINISH_TO_START, nullable=False)
    lag_days = Column(Integer, default=0, nullable=False)
    is_critical_path = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    task = relationship("ProjectTask", foreign_keys=[task_id], back_populates="dependencies")

    __table_args__ = (
        UniqueConstraint("task_id", "depends_on_task_id", name="uq_dependency_pair"),
    )


class TaskAssignment(Base):
    __tablename__ = "task_assignments"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("project_tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    role = Column(String, default="assignee")
    is_primary = Column(Boolean, default=False)
    allocation_percentage = Column(Integer, default=100, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    task = relationship("ProjectTask", back_populates="assignments")


# ============================================================
# DOCUMENTS (versions, annotations, folders)
# ============================================================

class Folder(Base):
    __tablename__ = "folders"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    parent_id = Column(String, ForeignKey("folders.id", ondelete="CASCADE"), nullable=True, index=True)
    owner_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Document(Base):
    __tablename__ = "documents"

    id = Column(String, primary_key=True, default=new_uuid)
    folder_id = Column(String, ForeignKey("folders.id", ondelete="SET NULL"), nullable=True, index=True)
    owner_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    filename = Column(String, nullable=False)
    content = Column(Text, nullable=True)
    mime_type = Column(String, default="text/plain")
    size = Column(BigInteger, default=0)
    version = Column(Integer, default=1, nullable=False)
    doc_metadata = Column("metadata", JSON, default=dict)
    tags = Column(JSON, default=list)
    last_modified_at = Column(DateTime(timezone=True), default=utcnow)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class DocumentVersion(Base):
    __tablename__ = "document_versions"

    id = Column(String, primary_key=True, default=new_uuid)
    document_id = Column(String, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    version_number = Column(Integer, nullable=False)
    filename = Column(String, nullable=False)
    title = Column(String, nullable=False)
    content = Column(Text, nullable=True)
    mime_type = Column(String, nullable=True)
    size = Column(BigInteger, default=0)
    checksum = Column(String(64), nullable=False)
    change_type = Column(SQLEnum(DocumentChangeType), nullable=False)
    change_description = Column(Text, nullable=True)
    changed_by = Column(String, nullable=True)
    changed_at = Column(DateTime(timezone=True), default=utcnow)
    version_metadata = Column("metadata", JSON, default=dict)
    is_current_version = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint("document_id", "version_number", name="uq_document_version_number"),
    )


class DocumentAnnotation(Base):
    __tablename__ = "document_annotations"

    id = Column(String, primary_key=True, default=new_uuid)
    document_id = Column(String, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    annotation_type = Column(String, default="comment", nullable=False)  # comment, highlight, note
    content = Column(Text, nullable=False)
    position = Column(JSON, default=dict)  # e.g. {"line": 3, "start": 0, "end": 12}
    color = Column(String(7), nullable=True)  # "#RRGGBB" highlight colour
    resolved = Column(Boolean, default=False, nullable=False)
    resolved_by = Column(String, nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
