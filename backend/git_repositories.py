# git_repositories.py — Repository, branch, commit and pipeline bookkeeping
"""
Keeps the database rows for artifact repositories in step with the
working trees under the workspace root. Every repository row maps to
<GIT_WORKSPACE_ROOT>/<name>, initialised with ``git init`` on creation.
"""

import re
import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import errors
import git_ops
from git_workspace import GitWorkspace
from models import (
    Application, AuditLog, GitBranch, GitCommit, GitPipeline, GitRepository, as_utc, utcnow,
)

logger = logging.getLogger("exprsn.git")

REPO_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,99}$")
BRANCH_NAME_PATTERN = re.compile(r"^(?!/)(?!.*\.\.)(?!.*//)[A-Za-z0-9._/-]{1,200}(?<!/)(?<!\.lock)$")
PIPELINE_TRIGGERS = {"push", "pull_request"}

# Git work on one working tree runs one operation at a time, off the event loop
_tree_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)


def tree_lock(repo_path: str) -> asyncio.Lock:
    return _tree_locks[repo_path]


def _checkout_and_commit(repo_path: str, branch: str, message: str, author_name: Optional[str],
                         author_email: Optional[str]) -> Optional[str]:
    if git_ops.current_branch(repo_path) != branch:
        git_ops.checkout(repo_path, branch)
    return git_ops.commit_all(repo_path, message, author_name, author_email)


class RepositoryService:
    def __init__(self, db: AsyncSession, workspace: Optional[GitWorkspace] = None):
        self.db = db
        self.workspace = workspace or GitWorkspace()

    def path(self, repository: GitRepository) -> str:
        return str(self.workspace.repo_path(repository))

    # --------------------------------------------------------
    # Repositories
    # --------------------------------------------------------

    async def create_repository(
        self,
        name: str,
        user_id: Optional[str],
        description: Optional[str] = None,
        remote_url: Optional[str] = None,
        default_branch: str = "main",
        application_id: Optional[str] = None,
    ) -> GitRepository:
        if not REPO_NAME_PATTERN.match(name or ""):
            raise errors.ValidationError(f"Invalid repository name: {name!r}")
        if not BRANCH_NAME_PATTERN.match(default_branch or ""):
            raise errors.ValidationError(f"Invalid branch name: {default_branch!r}")

        existing = await self.db.execute(select(GitRepository.id).where(GitRepository.name == name))
        if existing.first():
            raise errors.ConflictError(f"Repository '{name}' already exists")

        application = None
        if application_id:
            application = await self.db.get(Application, application_id)
            if application is None or application.deleted_at is not None:
                raise errors.NotFoundError(f"Application not found: {application_id}")

        repository = GitRepository(
            name=name,
            description=description,
            remote_url=remote_url,
            default_branch=default_branch,
            owner_id=user_id,
            application_id=application_id,
        )

        repo_path = self.path(repository)
        async with tree_lock(repo_path):
            await asyncio.to_thread(git_ops.init_repository, repo_path, default_branch)
            self.workspace.generate_repository_preamble(repository, application)
            sha = await asyncio.to_thread(git_ops.commit_all, repo_path, "Initial commit", allow_empty=True)
            details = await asyncio.to_thread(git_ops.commit_details, repo_path, sha)

        self.db.add(repository)
        await self.db.flush()
        self.db.add(GitBranch(repository_id=repository.id, name=default_branch, commit_sha=sha, is_default=True))
        self._add_commit_row(repository.id, default_branch, details)
        self.db.add(AuditLog(
            user_id=user_id,
            action="repository_created",
            entity_type="repository",
            entity_id=repository.id,
            repository_id=repository.id,
            audit_metadata={"name": name, "defaultBranch": default_branch},
        ))
        await self.db.commit()
        logger.info(f"Created repository {name} at {repo_path}")
        return repository

    async def list_repositories(self, limit: int = 50, offset: int = 0) -> List[GitRepository]:
        result = await self.db.execute(
            select(GitRepository)
            .where(GitRepository.deleted_at.is_(None))
            .order_by(GitRepository.name)
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_repository(self, repository_id: str) -> GitRepository:
        repository = await self.db.get(GitRepository, repository_id)
        if repository is None or repository.deleted_at is not None:
            raise errors.NotFoundError(f"Repository not found: {repository_id}")
        return repository

    # --------------------------------------------------------
    # Branches
    # --------------------------------------------------------

    async def get_branch(self, repository_id: str, name: str) -> GitBranch:
        result = await self.db.execute(
            select(GitBranch).where(GitBranch.repository_id == repository_id, GitBranch.name == name)
        )
        branch = result.scalar_one_or_none()
        if branch is None:
            raise errors.NotFoundError(f"Branch not found: {name}")
        return branch

    async def list_branches(self, repository_id: str) -> List[GitBranch]:
        await self.get_repository(repository_id)
        result = await self.db.execute(
            select(GitBranch).where(GitBranch.repository_id == repository_id).order_by(GitBranch.name)
        )
        return list(result.scalars().all())

    async def create_branch(self, repository_id: str, name: str, from_branch: Optional[str] = None,
                            user_id: Optional[str] = None) -> GitBranch:
        repository = await self.get_repository(repository_id)
        if not BRANCH_NAME_PATTERN.match(name or ""):
            raise errors.ValidationError(f"Invalid branch name: {name!r}")

        existing = await self.db.execute(
            select(GitBranch.id).where(GitBranch.repository_id == repository_id, GitBranch.name == name)
        )
        if existing.first():
            raise errors.ConflictError(f"Branch '{name}' already exists")

        base = await self.get_branch(repository_id, from_branch or repository.default_branch)
        repo_path = self.path(repository)
        async with tree_lock(repo_path):
            sha = await asyncio.to_thread(git_ops.create_branch, repo_path, name, base.name)

        branch = GitBranch(repository_id=repository_id, name=name, commit_sha=sha)
        self.db.add(branch)
        self.db.add(AuditLog(
            user_id=user_id,
            action="branch_created",
            entity_type="branch",
            entity_id=name,
            repository_id=repository_id,
            audit_metadata={"from": base.name, "sha": sha},
        ))
        await self.db.commit()
        return branch

    # --------------------------------------------------------
    # Commits
    # --------------------------------------------------------

    def _add_commit_row(self, repository_id: str, branch_name: str, details: dict) -> GitCommit:
        committed_at = details.get("committed_at")
        row = GitCommit(
            repository_id=repository_id,
            sha=details["sha"],
            branch_name=branch_name,
            message=details.get("message") or "",
            author_name=details.get("author_name"),
            author_email=details.get("author_email"),
            parent_shas=details.get("parent_shas") or [],
            tree_sha=details.get("tree_sha"),
            additions=details.get("additions", 0),
            deletions=details.get("deletions", 0),
            files_changed=details.get("files_changed", 0),
            committed_at=as_utc(datetime.fromisoformat(committed_at)) if committed_at else utcnow(),
        )
        self.db.add(row)
        return row

    async def commit_workspace(
        self,
        repository_id: str,
        message: str,
        branch: Optional[str] = None,
        author_name: Optional[str] = None,
        author_email: Optional[str] = None,
    ) -> Optional[GitCommit]:
        """Commit the whole working tree on a branch; None when nothing changed"""
        if not message or not message.strip():
            raise errors.ValidationError("Commit message is required")

        repository = await self.get_repository(repository_id)
        branch_row = await self.get_branch(repository_id, branch or repository.default_branch)
        repo_path = self.path(repository)

        async with tree_lock(repo_path):
            sha = await asyncio.to_thread(
                _checkout_and_commit, repo_path, branch_row.name, message, author_name, author_email,
            )
            if sha is None:
                return None
            details = await asyncio.to_thread(git_ops.commit_details, repo_path, sha)

        row = self._add_commit_row(repository_id, branch_row.name, details)
        branch_row.commit_sha = sha
        await self.db.commit()
        logger.info(f"Committed {sha[:8]} on {repository.name}/{branch_row.name}")
        return row

    async def list_commits(self, repository_id: str, branch: Optional[str] = None, limit: int = 50) -> List[GitCommit]:
        await self.get_repository(repository_id)
        stmt = select(GitCommit).where(GitCommit.repository_id == repository_id)
        if branch:
            stmt = stmt.where(GitCommit.branch_name == branch)
        result = await self.db.execute(stmt.order_by(GitCommit.committed_at.desc()).limit(limit))
        return list(result.scalars().all())

    # --------------------------------------------------------
    # Pipelines
    # --------------------------------------------------------

    async def create_pipeline(self, repository_id: str, name: str, user_id: Optional[str],
                              trigger_on: Optional[List[str]] = None, branches: Optional[List[str]] = None,
                              stages: Optional[list] = None) -> GitPipeline:
        await self.get_repository(repository_id)
        trigger_on = trigger_on or ["push"]
        unknown = set(trigger_on) - PIPELINE_TRIGGERS
        if unknown:
            raise errors.ValidationError(f"Unknown pipeline triggers: {sorted(unknown)}")

        pipeline = GitPipeline(
            repository_id=repository_id,
            name=name,
            trigger_on=trigger_on,
            branches=branches or ["*"],
            stages=stages or [],
            created_by=user_id,
        )
        self.db.add(pipeline)
        await self.db.commit()
        return pipeline

    async def list_pipelines(self, repository_id: str) -> List[GitPipeline]:
        await self.get_repository(repository_id)
        result = await self.db.execute(
            select(GitPipeline).where(GitPipeline.repository_id == repository_id).order_by(GitPipeline.created_at)
        )
        return list(result.scalars().all())

    async def find_pull_request_pipeline(self, repository_id: str) -> Optional[GitPipeline]:
        result = await self.db.execute(
            select(GitPipeline)
            .where(GitPipeline.repository_id == repository_id, GitPipeline.active.is_(True))
            .order_by(GitPipeline.created_at, GitPipeline.id)
        )
        for pipeline in result.scalars().all():
            if "pull_request" in (pipeline.trigger_on or []):
                return pipeline
        return None
