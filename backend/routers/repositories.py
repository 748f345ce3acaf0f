# routers/repositories.py — Artifact repositories, branches, commits, pull requests and pipelines
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_permission, CurrentUser
from database import get_db_session
from git_repositories import RepositoryService
from git_workspace import GitWorkspace, get_workspace
from models import (
    GitBranch, GitCommit, GitPipeline, GitRepository, CIStatus, PRState, ReviewStatus, iso,
)
from pull_requests import PullRequestEngine, pr_to_dict
from service_notifier import ServiceNotifier, get_notifier

router = APIRouter(prefix="/lowcode/api/git/repositories", tags=["Git Repositories"])


# ============================================================
# SCHEMAS
# ============================================================

class RepoCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    remote_url: Optional[str] = None
    default_branch: str = "main"
    application_id: Optional[str] = None


class BranchCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    from_branch: Optional[str] = None


class CommitCreate(BaseModel):
    message: str = Field(..., min_length=1)
    branch: Optional[str] = None
    author_name: Optional[str] = None
    author_email: Optional[str] = None


class PipelineCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    trigger_on: List[str] = ["push"]
    branches: List[str] = ["*"]
    stages: list = []


class PullRequestCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    source_branch: str
    target_branch: str
    description: Optional[str] = None
    draft: bool = False
    reviewers: List[str] = []
    labels: List[str] = []


class PullRequestUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    labels: Optional[List[str]] = None
    reviewers: Optional[List[str]] = None
    state: Optional[PRState] = None
    review_status: Optional[ReviewStatus] = None


class ReviewRequest(BaseModel):
    reviewers: List[str] = Field(..., min_length=1)


class MergeRequest(BaseModel):
    message: Optional[str] = None


class CIStatusUpdate(BaseModel):
    status: CIStatus
    pipeline_id: Optional[str] = None


def _repo_to_out(r: GitRepository) -> dict:
    return {
        "id": r.id,
        "name": r.name,
        "description": r.description,
        "remoteUrl": r.remote_url,
        "defaultBranch": r.default_branch,
        "ownerId": r.owner_id,
        "applicationId": r.application_id,
        "openPrsCount": r.open_prs_count,
        "createdAt": iso(r.created_at),
        "updatedAt": iso(r.updated_at),
    }


def _branch_to_out(b: GitBranch) -> dict:
    return {
        "id": b.id,
        "name": b.name,
        "commitSha": b.commit_sha,
        "isDefault": bool(b.is_default),
        "protected": bool(b.protected),
    }


def _commit_to_out(c: GitCommit) -> dict:
    return {
        "id": c.id,
        "sha": c.sha,
        "branch": c.branch_name,
        "message": c.message,
        "authorName": c.author_name,
        "authorEmail": c.author_email,
        "parentShas": c.parent_shas or [],
        "treeSha": c.tree_sha,
        "additions": c.additions,
        "deletions": c.deletions,
        "filesChanged": c.files_changed,
        "committedAt": iso(c.committed_at),
    }


def _pipeline_to_out(p: GitPipeline) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "triggerOn": p.trigger_on or [],
        "branches": p.branches or [],
        "stages": p.stages or [],
        "active": bool(p.active),
        "createdAt": iso(p.created_at),
    }


def _prs(db: AsyncSession, workspace: GitWorkspace, notifier: ServiceNotifier) -> PullRequestEngine:
    return PullRequestEngine(db, workspace, notifier)


# ============================================================
# REPOSITORIES
# ============================================================

@router.post("", status_code=201)
async def create_repository(
    req: RepoCreate,
    user: CurrentUser = Depends(require_permission("repos:write")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
):
    repo = await RepositoryService(db, workspace).create_repository(
        req.name, user.id,
        description=req.description,
        remote_url=req.remote_url,
        default_branch=req.default_branch,
        application_id=req.application_id,
    )
    return {"success": True, "data": _repo_to_out(repo)}


@router.get("")
async def list_repositories(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(require_permission("repos:read")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
):
    repos = await RepositoryService(db, workspace).list_repositories(limit=limit, offset=offset)
    return {"success": True, "data": [_repo_to_out(r) for r in repos]}


@router.get("/{repo_id}")
async def get_repository(
    repo_id: str,
    user: CurrentUser = Depends(require_permission("repos:read")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
):
    repo = await RepositoryService(db, workspace).get_repository(repo_id)
    return {"success": True, "data": _repo_to_out(repo)}


# ============================================================
# BRANCHES & COMMITS
# ============================================================

@router.get("/{repo_id}/branches")
async def list_branches(
    repo_id: str,
    user: CurrentUser = Depends(require_permission("repos:read")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
):
    branches = await RepositoryService(db, workspace).list_branches(repo_id)
    return {"success": True, "data": [_branch_to_out(b) for b in branches]}


@router.post("/{repo_id}/branches", status_code=201)
async def create_branch(
    repo_id: str,
    req: BranchCreate,
    user: CurrentUser = Depends(require_permission("repos:write")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
):
    branch = await RepositoryService(db, workspace).create_branch(repo_id, req.name, req.from_branch, user.id)
    return {"success": True, "data": _branch_to_out(branch)}


@router.get("/{repo_id}/commits")
async def list_commits(
    repo_id: str,
    branch: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    user: CurrentUser = Depends(require_permission("repos:read")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
):
    commits = await RepositoryService(db, workspace).list_commits(repo_id, branch=branch, limit=limit)
    return {"success": True, "data": [_commit_to_out(c) for c in commits]}


@router.post("/{repo_id}/commits")
async def commit_workspace(
    repo_id: str,
    req: CommitCreate,
    user: CurrentUser = Depends(require_permission("repos:write")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
):
    commit = await RepositoryService(db, workspace).commit_workspace(
        repo_id, req.message, branch=req.branch,
        author_name=req.author_name or user.display_name or None,
        author_email=req.author_email or user.email,
    )
    if commit is None:
        return {"success": True, "data": None, "message": "Nothing to commit"}
    return {"success": True, "data": _commit_to_out(commit)}


# ============================================================
# PIPELINES
# ============================================================

@router.post("/{repo_id}/pipelines", status_code=201)
async def create_pipeline(
    repo_id: str,
    req: PipelineCreate,
    user: CurrentUser = Depends(require_permission("repos:admin")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
):
    pipeline = await RepositoryService(db, workspace).create_pipeline(
        repo_id, req.name, user.id, trigger_on=req.trigger_on, branches=req.branches, stages=req.stages,
    )
    return {"success": True, "data": _pipeline_to_out(pipeline)}


@router.get("/{repo_id}/pipelines")
async def list_pipelines(
    repo_id: str,
    user: CurrentUser = Depends(require_permission("repos:read")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
):
    pipelines = await RepositoryService(db, workspace).list_pipelines(repo_id)
    return {"success": True, "data": [_pipeline_to_out(p) for p in pipelines]}


# ============================================================
# PULL REQUESTS
# ============================================================

@router.post("/{repo_id}/pull-requests", status_code=201)
async def create_pull_request(
    repo_id: str,
    req: PullRequestCreate,
    user: CurrentUser = Depends(require_permission("repos:write")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
    notifier: ServiceNotifier = Depends(get_notifier),
):
    pr = await _prs(db, workspace, notifier).create(
        repo_id, user.id, req.title, req.source_branch, req.target_branch,
        description=req.description, draft=req.draft, reviewers=req.reviewers, labels=req.labels,
    )
    return {"success": True, "data": pr_to_dict(pr)}


@router.get("/{repo_id}/pull-requests")
async def list_pull_requests(
    repo_id: str,
    state: Optional[PRState] = None,
    author_id: Optional[str] = None,
    review_status: Optional[ReviewStatus] = None,
    ci_status: Optional[CIStatus] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(require_permission("repos:read")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
    notifier: ServiceNotifier = Depends(get_notifier),
):
    prs = await _prs(db, workspace, notifier).list_pull_requests(
        repo_id, state=state, author_id=author_id, review_status=review_status,
        ci_status=ci_status, limit=limit, offset=offset,
    )
    return {"success": True, "data": [pr_to_dict(pr) for pr in prs]}


@router.get("/{repo_id}/pull-requests/stats")
async def pull_request_stats(
    repo_id: str,
    user: CurrentUser = Depends(require_permission("repos:read")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
    notifier: ServiceNotifier = Depends(get_notifier),
):
    return {"success": True, "data": await _prs(db, workspace, notifier).stats(repo_id)}


@router.get("/pull-requests/{pr_id}")
async def get_pull_request(
    pr_id: str,
    user: CurrentUser = Depends(require_permission("repos:read")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
    notifier: ServiceNotifier = Depends(get_notifier),
):
    pr = await _prs(db, workspace, notifier).get(pr_id)
    return {"success": True, "data": pr_to_dict(pr)}


@router.patch("/pull-requests/{pr_id}")
async def update_pull_request(
    pr_id: str,
    req: PullRequestUpdate,
    user: CurrentUser = Depends(require_permission("repos:write")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
    notifier: ServiceNotifier = Depends(get_notifier),
):
    updates = req.model_dump(exclude_unset=True)
    pr = await _prs(db, workspace, notifier).update(pr_id, user.id, updates)
    return {"success": True, "data": pr_to_dict(pr)}


@router.post("/pull-requests/{pr_id}/ready")
async def mark_ready(
    pr_id: str,
    user: CurrentUser = Depends(require_permission("repos:write")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
    notifier: ServiceNotifier = Depends(get_notifier),
):
    pr = await _prs(db, workspace, notifier).mark_ready(pr_id, user.id)
    return {"success": True, "data": pr_to_dict(pr)}


@router.post("/pull-requests/{pr_id}/reviewers")
async def request_review(
    pr_id: str,
    req: ReviewRequest,
    user: CurrentUser = Depends(require_permission("repos:write")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
    notifier: ServiceNotifier = Depends(get_notifier),
):
    pr = await _prs(db, workspace, notifier).request_review(pr_id, req.reviewers, user.id)
    return {"success": True, "data": pr_to_dict(pr)}


@router.post("/pull-requests/{pr_id}/merge")
async def merge_pull_request(
    pr_id: str,
    req: MergeRequest,
    user: CurrentUser = Depends(require_permission("repos:write")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
    notifier: ServiceNotifier = Depends(get_notifier),
):
    pr = await _prs(db, workspace, notifier).merge(pr_id, user.id, req.message)
    return {"success": True, "data": pr_to_dict(pr)}


@router.post("/pull-requests/{pr_id}/close")
async def close_pull_request(
    pr_id: str,
    user: CurrentUser = Depends(require_permission("repos:write")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
    notifier: ServiceNotifier = Depends(get_notifier),
):
    pr = await _prs(db, workspace, notifier).close(pr_id, user.id)
    return {"success": True, "data": pr_to_dict(pr)}


@router.post("/pull-requests/{pr_id}/ci-status")
async def update_ci_status(
    pr_id: str,
    req: CIStatusUpdate,
    user: CurrentUser = Depends(require_permission("repos:write")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
    notifier: ServiceNotifier = Depends(get_notifier),
):
    pr = await _prs(db, workspace, notifier).update_ci_status(pr_id, req.status, req.pipeline_id)
    return {"success": True, "data": pr_to_dict(pr)}
