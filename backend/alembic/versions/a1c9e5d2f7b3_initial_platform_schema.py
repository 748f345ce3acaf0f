"""Initial platform schema

Revision ID: a1c9e5d2f7b3
Revises:
Create Date: 2026-10-01 00:00:00.000000

Creates:
- users, audit_logs
- applications + the eight lowcode_* artifact tables
- git repositories, branches, commits, pull requests, pipelines
- git credentials (SSH keys, personal access tokens, OAuth applications)
- reports, report_schedules, report_executions
- schema_migrations
- projects, project_tasks, task_dependencies, task_assignments
- folders, documents, document_versions, document_annotations
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision: str = 'a1c9e5d2f7b3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _enum(name: str, *values: str) -> postgresql.ENUM:
    return postgresql.ENUM(*values, name=name, create_type=False)


USER_ROLE = _enum('userrole', 'SUPER_ADMIN', 'ORG_ADMIN', 'AUDITOR', 'POWER_USER', 'USER')
PR_STATE = _enum('prstate', 'DRAFT', 'OPEN', 'MERGED', 'CLOSED')
REVIEW_STATUS = _enum('reviewstatus', 'NONE', 'APPROVED', 'CHANGES_REQUESTED')
CI_STATUS = _enum('cistatus', 'NONE', 'PENDING', 'SUCCESS', 'FAILURE')
SSH_KEY_TYPE = _enum('sshkeytype', 'RSA', 'ED25519', 'ECDSA')
SCHEDULE_FREQUENCY = _enum('schedulefrequency', 'ONCE', 'DAILY', 'WEEKLY', 'MONTHLY', 'QUARTERLY', 'YEARLY', 'CUSTOM')
EXECUTION_STATUS = _enum('executionstatus', 'RUNNING', 'COMPLETED', 'FAILED', 'CANCELLED', 'TIMEOUT')
DELIVERY_METHOD = _enum('deliverymethod', 'EMAIL', 'STORAGE', 'WEBHOOK', 'DOWNLOAD')
DELIVERY_STATUS = _enum('deliverystatus', 'PENDING', 'SENT', 'FAILED')
MIGRATION_STATUS = _enum('migrationstatus', 'PENDING', 'RUNNING', 'COMPLETED', 'FAILED', 'ROLLED_BACK')
TASK_STATUS = _enum('projecttaskstatus', 'PENDING', 'IN_PROGRESS', 'REVIEW', 'BLOCKED', 'COMPLETED', 'CANCELLED')
DEPENDENCY_TYPE = _enum('dependencytype', 'FINISH_TO_START', 'START_TO_START', 'FINISH_TO_FINISH', 'START_TO_FINISH')
CHANGE_TYPE = _enum('documentchangetype', 'CONTENT_UPDATED', 'METADATA_UPDATED', 'RENAMED', 'MOVED', 'CREATED', 'RESTORED')

ENUMS = (
    USER_ROLE, PR_STATE, REVIEW_STATUS, CI_STATUS, SSH_KEY_TYPE, SCHEDULE_FREQUENCY, EXECUTION_STATUS,
    DELIVERY_METHOD, DELIVERY_STATUS, MIGRATION_STATUS, TASK_STATUS, DEPENDENCY_TYPE, CHANGE_TYPE,
)

ARTIFACT_TABLES = (
    'lowcode_entities', 'lowcode_forms', 'lowcode_grids', 'lowcode_dashboards',
    'lowcode_queries', 'lowcode_apis', 'lowcode_processes', 'lowcode_data_sources',
)


def _artifact_columns() -> list:
    return [
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('application_id', sa.String(), sa.ForeignKey('applications.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('display_name', sa.String(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('version', sa.String(), nullable=False, server_default='1.0.0'),
        sa.Column('metadata', sa.JSON()),
        sa.Column('created_by', sa.String(), nullable=True),
        sa.Column('updated_by', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    ]


def _live_unique_index(name: str, table: str, columns: list) -> None:
    live = sa.text('deleted_at IS NULL')
    op.create_index(name, table, columns, unique=True, postgresql_where=live, sqlite_where=live)


def upgrade() -> None:
    bind = op.get_bind()
    for enum in ENUMS:
        enum.create(bind, checkfirst=True)

    # ---- users / audit ----
    op.create_table(
        'users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('display_name', sa.String(), nullable=False, server_default=''),
        sa.Column('role', USER_ROLE, nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_role', 'users', ['role'])
    op.create_index('ix_users_is_active', 'users', ['is_active'])
    op.create_index('ix_users_created_at', 'users', ['created_at'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True)),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('entity_type', sa.String(), nullable=False),
        sa.Column('entity_id', sa.String(), nullable=True),
        sa.Column('repository_id', sa.String(), nullable=True),
        sa.Column('metadata', sa.JSON()),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.Column('user_agent', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])
    op.create_index('ix_audit_logs_user_id', 'audit_logs', ['user_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_repository_id', 'audit_logs', ['repository_id'])
    op.create_index('idx_audit_user_timestamp', 'audit_logs', ['user_id', 'timestamp'])

    # ---- applications ----
    op.create_table(
        'applications',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('display_name', sa.String(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('version', sa.String(), nullable=False, server_default='1.0.0'),
        sa.Column('status', sa.String(), server_default='draft'),
        sa.Column('settings', sa.JSON()),
        sa.Column('dependencies', sa.JSON()),
        sa.Column('git_repository', sa.String(), nullable=True),
        sa.Column('git_branch', sa.String(), nullable=True),
        sa.Column('created_by', sa.String(), nullable=True),
        sa.Column('updated_by', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_applications_name', 'applications', ['name'])

    # ---- low-code artifacts ----
    op.create_table(
        'lowcode_entities', *_artifact_columns(),
        sa.Column('table_name', sa.String(), nullable=True),
        sa.Column('schema', sa.JSON()),
        sa.Column('relationships', sa.JSON()),
        sa.Column('indexes', sa.JSON()),
        sa.Column('source_type', sa.String(), server_default='custom'),
    )
    op.create_table(
        'lowcode_forms', *_artifact_columns(),
        sa.Column('entity_id', sa.String(), nullable=True),
        sa.Column('controls', sa.JSON()),
        sa.Column('data_sources', sa.JSON()),
        sa.Column('collections', sa.JSON()),
        sa.Column('variables', sa.JSON()),
        sa.Column('events', sa.JSON()),
        sa.Column('validation_rules', sa.JSON()),
        sa.Column('status', sa.String(), server_default='draft'),
    )
    op.create_table(
        'lowcode_grids', *_artifact_columns(),
        sa.Column('entity_id', sa.String(), nullable=True),
        sa.Column('columns', sa.JSON()),
        sa.Column('filters', sa.JSON()),
        sa.Column('sorting', sa.JSON()),
        sa.Column('pagination', sa.JSON()),
        sa.Column('actions', sa.JSON()),
        sa.Column('grid_type', sa.String(), server_default='readonly'),
    )
    op.create_table(
        'lowcode_dashboards', *_artifact_columns(),
        sa.Column('layout', sa.JSON()),
        sa.Column('widgets', sa.JSON()),
        sa.Column('filters', sa.JSON()),
        sa.Column('refresh_interval', sa.Integer(), nullable=True),
    )
    op.create_table(
        'lowcode_queries', *_artifact_columns(),
        sa.Column('query_type', sa.String(), server_default='visual'),
        sa.Column('query_definition', sa.JSON(), nullable=True),
        sa.Column('raw_sql', sa.Text(), nullable=True),
        sa.Column('parameters', sa.JSON()),
        sa.Column('data_source_id', sa.String(), nullable=True),
        sa.Column('cache_enabled', sa.Boolean(), server_default=sa.false()),
        sa.Column('cache_ttl', sa.Integer(), server_default='300'),
        sa.Column('timeout', sa.Integer(), server_default='30000'),
    )
    op.create_table(
        'lowcode_apis', *_artifact_columns(),
        sa.Column('path', sa.String(), nullable=False),
        sa.Column('method', sa.String(), nullable=False, server_default='GET'),
        sa.Column('handler_type', sa.String(), nullable=False, server_default='jsonlex'),
        sa.Column('handler_config', sa.JSON()),
        sa.Column('request_schema', sa.JSON(), nullable=True),
        sa.Column('response_schema', sa.JSON(), nullable=True),
        sa.Column('auth_required', sa.Boolean(), server_default=sa.true()),
        sa.Column('rate_limit', sa.JSON(), nullable=True),
        sa.Column('enabled', sa.Boolean(), server_default=sa.true()),
    )
    op.create_table(
        'lowcode_processes', *_artifact_columns(),
        sa.Column('process_type', sa.String(), server_default='workflow'),
        sa.Column('definition', sa.JSON()),
        sa.Column('triggers', sa.JSON()),
        sa.Column('enabled', sa.Boolean(), server_default=sa.true()),
    )
    op.create_table(
        'lowcode_data_sources', *_artifact_columns(),
        sa.Column('source_type', sa.String(), nullable=False, server_default='postgresql'),
        sa.Column('connection_config', sa.JSON()),
        sa.Column('options', sa.JSON()),
    )
    for table in ARTIFACT_TABLES:
        op.create_index(f'ix_{table}_application_id', table, ['application_id'])
        _live_unique_index(f'uq_{table}_app_name', table, ['application_id', 'name'])
    _live_unique_index('uq_lowcode_apis_app_path_method', 'lowcode_apis', ['application_id', 'path', 'method'])

    # ---- git collaboration ----
    op.create_table(
        'git_repositories',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('remote_url', sa.String(), nullable=True),
        sa.Column('default_branch', sa.String(), server_default='main'),
        sa.Column('owner_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('application_id', sa.String(), sa.ForeignKey('applications.id', ondelete='SET NULL'), nullable=True),
        sa.Column('open_prs_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
    )
    op.create_index('ix_git_repositories_owner_id', 'git_repositories', ['owner_id'])

    op.create_table(
        'git_branches',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('repository_id', sa.String(), sa.ForeignKey('git_repositories.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('commit_sha', sa.String(40), nullable=True),
        sa.Column('is_default', sa.Boolean(), server_default=sa.false()),
        sa.Column('protected', sa.Boolean(), server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('repository_id', 'name', name='uq_branch_repo_name'),
    )
    op.create_index('ix_git_branches_repository_id', 'git_branches', ['repository_id'])

    op.create_table(
        'git_commits',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('repository_id', sa.String(), sa.ForeignKey('git_repositories.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sha', sa.String(40), nullable=False),
        sa.Column('branch_name', sa.String(), nullable=True),
        sa.Column('message', sa.Text(), nullable=False, server_default=''),
        sa.Column('author_name', sa.String(), nullable=True),
        sa.Column('author_email', sa.String(), nullable=True),
        sa.Column('parent_shas', sa.JSON()),
        sa.Column('tree_sha', sa.String(40), nullable=True),
        sa.Column('additions', sa.Integer(), server_default='0'),
        sa.Column('deletions', sa.Integer(), server_default='0'),
        sa.Column('files_changed', sa.Integer(), server_default='0'),
        sa.Column('committed_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('repository_id', 'sha', name='uq_commit_repo_sha'),
    )
    op.create_index('ix_git_commits_repository_id', 'git_commits', ['repository_id'])

    op.create_table(
        'git_pull_requests',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('repository_id', sa.String(), sa.ForeignKey('git_repositories.id', ondelete='CASCADE'), nullable=False),
        sa.Column('number', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('source_branch', sa.String(), nullable=False),
        sa.Column('target_branch', sa.String(), nullable=False),
        sa.Column('source_sha', sa.String(40), nullable=True),
        sa.Column('target_sha', sa.String(40), nullable=True),
        sa.Column('state', PR_STATE, nullable=False),
        sa.Column('author_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('reviewers', sa.JSON()),
        sa.Column('labels', sa.JSON()),
        sa.Column('mergeable', sa.Boolean(), nullable=True),
        sa.Column('conflicts', sa.JSON()),
        sa.Column('review_status', REVIEW_STATUS, nullable=False),
        sa.Column('ci_status', CI_STATUS, nullable=False),
        sa.Column('ci_pipeline_id', sa.String(), nullable=True),
        sa.Column('merge_commit_sha', sa.String(40), nullable=True),
        sa.Column('merged_by', sa.String(), nullable=True),
        sa.Column('merged_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('closed_by', sa.String(), nullable=True),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('repository_id', 'number', name='uq_pr_repo_number'),
    )
    op.create_index('ix_git_pull_requests_repository_id', 'git_pull_requests', ['repository_id'])
    op.create_index('ix_git_pull_requests_state', 'git_pull_requests', ['state'])
    op.create_index('ix_git_pull_requests_author_id', 'git_pull_requests', ['author_id'])
    op.create_index('idx_pr_repo_state', 'git_pull_requests', ['repository_id', 'state'])

    op.create_table(
        'git_pipelines',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('repository_id', sa.String(), sa.ForeignKey('git_repositories.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('trigger_on', sa.JSON()),
        sa.Column('branches', sa.JSON()),
        sa.Column('stages', sa.JSON()),
        sa.Column('active', sa.Boolean(), server_default=sa.true()),
        sa.Column('created_by', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_git_pipelines_repository_id', 'git_pipelines', ['repository_id'])

    # ---- credentials ----
    op.create_table(
        'git_ssh_keys',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('public_key', sa.Text(), nullable=False),
        sa.Column('fingerprint', sa.String(), nullable=False),
        sa.Column('key_type', SSH_KEY_TYPE, nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('fingerprint'),
    )
    op.create_index('ix_git_ssh_keys_user_id', 'git_ssh_keys', ['user_id'])

    op.create_table(
        'git_personal_access_tokens',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('token_hash', sa.String(), nullable=False),
        sa.Column('token_prefix', sa.String(), nullable=False),
        sa.Column('scopes', sa.JSON()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_git_personal_access_tokens_user_id', 'git_personal_access_tokens', ['user_id'])
    op.create_index('ix_git_personal_access_tokens_token_prefix', 'git_personal_access_tokens', ['token_prefix'])

    op.create_table(
        'git_oauth_applications',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('owner_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('homepage_url', sa.String(), nullable=True),
        sa.Column('callback_url', sa.String(), nullable=True),
        sa.Column('client_id', sa.String(), nullable=False),
        sa.Column('client_secret_hash', sa.String(), nullable=False),
        sa.Column('scopes', sa.JSON()),
        sa.Column('active', sa.Boolean(), server_default=sa.true()),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('client_id'),
    )
    op.create_index('ix_git_oauth_applications_owner_id', 'git_oauth_applications', ['owner_id'])

    # ---- reports ----
    op.create_table(
        'reports',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('owner_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('report_type', sa.String(), nullable=False, server_default='table'),
        sa.Column('config', sa.JSON()),
        sa.Column('visualization', sa.JSON()),
        sa.Column('custom_query', sa.Text(), nullable=True),
        sa.Column('parameters', sa.JSON()),
        sa.Column('timeout_seconds', sa.Integer(), nullable=False, server_default='60'),
        sa.Column('cache_duration_minutes', sa.Integer(), nullable=False, server_default='15'),
        sa.Column('execution_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_executed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_reports_owner_id', 'reports', ['owner_id'])

    op.create_table(
        'report_schedules',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('report_id', sa.String(), sa.ForeignKey('reports.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('frequency', SCHEDULE_FREQUENCY, nullable=False),
        sa.Column('cron_expression', sa.String(), nullable=True),
        sa.Column('run_at', sa.String(), server_default='09:00:00'),
        sa.Column('day_of_week', sa.Integer(), nullable=True),
        sa.Column('day_of_month', sa.Integer(), nullable=True),
        sa.Column('timezone', sa.String(), nullable=False, server_default='UTC'),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('parameters', sa.JSON()),
        sa.Column('export_format', sa.String(), nullable=False, server_default='csv'),
        sa.Column('delivery_method', DELIVERY_METHOD, nullable=False),
        sa.Column('delivery_config', sa.JSON()),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true()),
        sa.Column('created_by', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('execution_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failure_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_report_schedules_report_id', 'report_schedules', ['report_id'])
    op.create_index('ix_report_schedules_is_active', 'report_schedules', ['is_active'])
    op.create_index('ix_report_schedules_created_by', 'report_schedules', ['created_by'])

    op.create_table(
        'report_executions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('report_id', sa.String(), sa.ForeignKey('reports.id', ondelete='CASCADE'), nullable=False),
        sa.Column('schedule_id', sa.String(), sa.ForeignKey('report_schedules.id', ondelete='SET NULL'), nullable=True),
        sa.Column('executed_by', sa.String(), nullable=True),
        sa.Column('status', EXECUTION_STATUS, nullable=False),
        sa.Column('parameters', sa.JSON()),
        sa.Column('started_at', sa.DateTime(timezone=True)),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('row_count', sa.Integer(), nullable=True),
        sa.Column('result_size', sa.BigInteger(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('cache_key', sa.String(), nullable=True),
        sa.Column('cache_hit', sa.Boolean(), server_default=sa.false()),
        sa.Column('export_format', sa.String(), nullable=True),
        sa.Column('export_path', sa.String(), nullable=True),
        sa.Column('export_url', sa.String(), nullable=True),
        sa.Column('export_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivery_method', DELIVERY_METHOD, nullable=True),
        sa.Column('delivery_status', DELIVERY_STATUS, nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivery_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_report_executions_report_id', 'report_executions', ['report_id'])
    op.create_index('ix_report_executions_schedule_id', 'report_executions', ['schedule_id'])
    op.create_index('ix_report_executions_status', 'report_executions', ['status'])
    op.create_index('ix_report_executions_export_expires_at', 'report_executions', ['export_expires_at'])

    # ---- schema_migrations ----
    op.create_table(
        'schema_migrations',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('migration_name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('migration_sql', sa.Text(), nullable=False),
        sa.Column('rollback_sql', sa.Text(), nullable=True),
        sa.Column('depends_on', sa.JSON()),
        sa.Column('execution_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', MIGRATION_STATUS, nullable=False),
        sa.Column('applied_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('applied_by', sa.String(), nullable=True),
        sa.Column('rolled_back_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rolled_back_by', sa.String(), nullable=True),
        sa.Column('execution_time_ms', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_stack', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('migration_name'),
    )
    op.create_index('ix_schema_migrations_execution_order', 'schema_migrations', ['execution_order'])
    op.create_index('ix_schema_migrations_status', 'schema_migrations', ['status'])

    # ---- project scheduling ----
    op.create_table(
        'projects',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('owner_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_projects_owner_id', 'projects', ['owner_id'])

    op.create_table(
        'project_tasks',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('project_id', sa.String(), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=True),
        sa.Column('parent_id', sa.String(), sa.ForeignKey('project_tasks.id', ondelete='SET NULL'), nullable=True),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', TASK_STATUS, nullable=False),
        sa.Column('priority', sa.String(), server_default='medium'),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('estimated_hours', sa.Integer(), nullable=True),
        sa.Column('created_by', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_project_tasks_project_id', 'project_tasks', ['project_id'])
    op.create_index('ix_project_tasks_parent_id', 'project_tasks', ['parent_id'])
    op.create_index('ix_project_tasks_status', 'project_tasks', ['status'])

    op.create_table(
        'task_dependencies',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('task_id', sa.String(), sa.ForeignKey('project_tasks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('depends_on_task_id', sa.String(), sa.ForeignKey('project_tasks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('dependency_type', DEPENDENCY_TYPE, nullable=False),
        sa.Column('lag_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_critical_path', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('task_id', 'depends_on_task_id', name='uq_dependency_pair'),
    )
    op.create_index('ix_task_dependencies_task_id', 'task_dependencies', ['task_id'])
    op.create_index('ix_task_dependencies_depends_on_task_id', 'task_dependencies', ['depends_on_task_id'])

    op.create_table(
        'task_assignments',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('task_id', sa.String(), sa.ForeignKey('project_tasks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('role', sa.String(), server_default='assignee'),
        sa.Column('is_primary', sa.Boolean(), server_default=sa.false()),
        sa.Column('allocation_percentage', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_task_assignments_task_id', 'task_assignments', ['task_id'])
    op.create_index('ix_task_assignments_user_id', 'task_assignments', ['user_id'])

    # ---- documents ----
    op.create_table(
        'folders',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('parent_id', sa.String(), sa.ForeignKey('folders.id', ondelete='CASCADE'), nullable=True),
        sa.Column('owner_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_folders_parent_id', 'folders', ['parent_id'])
    op.create_index('ix_folders_owner_id', 'folders', ['owner_id'])

    op.create_table(
        'documents',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('folder_id', sa.String(), sa.ForeignKey('folders.id', ondelete='SET NULL'), nullable=True),
        sa.Column('owner_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('filename', sa.String(), nullable=False),
        sa.Column('content', sa.Text(), nullable=True),
        sa.Column('mime_type', sa.String(), server_default='text/plain'),
        sa.Column('size', sa.BigInteger(), server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('metadata', sa.JSON()),
        sa.Column('tags', sa.JSON()),
        sa.Column('last_modified_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_documents_folder_id', 'documents', ['folder_id'])
    op.create_index('ix_documents_owner_id', 'documents', ['owner_id'])

    op.create_table(
        'document_versions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('document_id', sa.String(), sa.ForeignKey('documents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('version_number', sa.Integer(), nullable=False),
        sa.Column('filename', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('content', sa.Text(), nullable=True),
        sa.Column('mime_type', sa.String(), nullable=True),
        sa.Column('size', sa.BigInteger(), server_default='0'),
        sa.Column('checksum', sa.String(64), nullable=False),
        sa.Column('change_type', CHANGE_TYPE, nullable=False),
        sa.Column('change_description', sa.Text(), nullable=True),
        sa.Column('changed_by', sa.String(), nullable=True),
        sa.Column('changed_at', sa.DateTime(timezone=True)),
        sa.Column('metadata', sa.JSON()),
        sa.Column('is_current_version', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('document_id', 'version_number', name='uq_document_version_number'),
    )
    op.create_index('ix_document_versions_document_id', 'document_versions', ['document_id'])

    op.create_table(
        'document_annotations',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('document_id', sa.String(), sa.ForeignKey('documents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('annotation_type', sa.String(), nullable=False, server_default='comment'),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('position', sa.JSON()),
        sa.Column('resolved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('resolved_by', sa.String(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_document_annotations_document_id', 'document_annotations', ['document_id'])
    op.create_index('ix_document_annotations_user_id', 'document_annotations', ['user_id'])


def downgrade() -> None:
    op.drop_table('document_annotations')
    op.drop_table('document_versions')
    op.drop_table('documents')
    op.drop_table('folders')
    op.drop_table('task_assignments')
    op.drop_table('task_dependencies')
    op.drop_table('project_tasks')
    op.drop_table('projects')
    op.drop_table('schema_migrations')
    op.drop_table('report_executions')
    op.drop_table('report_schedules')
    op.drop_table('reports')
    op.drop_table('git_oauth_applications')
    op.drop_table('git_personal_access_tokens')
    op.drop_table('git_ssh_keys')
    op.drop_table('git_pipelines')
    op.drop_table('git_pull_requests')
    op.drop_table('git_commits')
    op.drop_table('git_branches')
    op.drop_table('git_repositories')
    for table in reversed(ARTIFACT_TABLES):
        op.drop_table(table)
    op.drop_table('applications')
    op.drop_table('audit_logs')
    op.drop_table('users')

    bind = op.get_bind()
    for enum in reversed(ENUMS):
        enum.drop(bind, checkfirst=True)
