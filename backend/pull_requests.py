# pull_requests.py — Pull-request state machine over artifact repositories
"""
States: draft -> open -> merged, and any non-merged state -> closed.

``GitRepository.open_prs_count`` mirrors the number of PRs in state open;
every transition that enters or leaves ``open`` adjusts it in the same
transaction. Numbers are allocated as max(number) + 1 under a
per-repository lock.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

import errors
import git_ops
from git_repositories import RepositoryService, tree_lock
from git_workspace import GitWorkspace
from models import CIStatus, GitPullRequest, GitRepository, PRState, ReviewStatus, iso, utcnow
from service_notifier import ServiceNotifier

logger = logging.getLogger("exprsn.pull_requests")

_number_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

UPDATABLE_FIELDS = {"title", "description", "labels", "reviewers", "state", "review_status"}


def pr_to_dict(pr: GitPullRequest) -> Dict[str, Any]:
    return {
        "id": pr.id,
        "repositoryId": pr.repository_id,
        "number": pr.number,
        "title": pr.title,
        "description": pr.description,
        "sourceBranch": pr.source_branch,
        "targetBranch": pr.target_branch,
        "sourceSha": pr.source_sha,
        "targetSha": pr.target_sha,
        "state": pr.state.value,
        "authorId": pr.author_id,
        "reviewers": pr.reviewers or [],
        "labels": pr.labels or [],
        "mergeable": pr.mergeable,
        "conflicts": pr.conflicts or [],
        "reviewStatus": pr.review_status.value,
        "ciStatus": pr.ci_status.value,
        "ciPipelineId": pr.ci_pipeline_id,
        "mergeCommitSha": pr.merge_commit_sha,
        "mergedBy": pr.merged_by,
        "mergedAt": iso(pr.merged_at),
        "closedBy": pr.closed_by,
        "closedAt": iso(pr.closed_at),
        "createdAt": iso(pr.created_at),
        "updatedAt": iso(pr.updated_at),
    }


class PullRequestEngine:
    def __init__(self, db: AsyncSession, workspace: Optional[GitWorkspace] = None,
                 notifier: Optional[ServiceNotifier] = None):
        self.db = db
        self.repos = RepositoryService(db, workspace)
        self.notifier = notifier or ServiceNotifier()

    async def get(self, pr_id: str) -> GitPullRequest:
        pr = await self.db.get(GitPullRequest, pr_id)
        if pr is None:
            raise errors.NotFoundError(f"Pull request not found: {pr_id}")
        return pr

    def _adjust_open_count(self, repository: GitRepository, before: PRState, after: PRState) -> None:
        if before != PRState.OPEN and after == PRState.OPEN:
            repository.open_prs_count = (repository.open_prs_count or 0) + 1
        elif before == PRState.OPEN and after != PRState.OPEN:
            repository.open_prs_count = max(0, (repository.open_prs_count or 0) - 1)

    async def _check_mergeability(self, repository: GitRepository, pr: GitPullRequest) -> None:
        repo_path = self.repos.path(repository)
        async with tree_lock(repo_path):
            mergeable, conflicts = await asyncio.to_thread(
                git_ops.dry_run_merge, repo_path, pr.source_branch, pr.target_branch,
            )
            pr.source_sha = await asyncio.to_thread(git_ops.rev_parse, repo_path, pr.source_branch)
            pr.target_sha = await asyncio.to_thread(git_ops.rev_parse, repo_path, pr.target_branch)
        pr.mergeable = mergeable
        pr.conflicts = conflicts

    # --------------------------------------------------------
    # Create
    # --------------------------------------------------------

    async def create(
        self,
        repository_id: str,
        author_id: str,
        title: str,
        source_branch: str,
        target_branch: str,
        description: Optional[str] = None,
        draft: bool = False,
        reviewers: Optional[List[str]] = None,
        labels: Optional[List[str]] = None,
    ) -> GitPullRequest:
        if not title or not title.strip():
            raise errors.ValidationError("Pull request title is required")
        if source_branch == target_branch:
            raise errors.ValidationError("Source and target branches must differ")

        repository = await self.repos.get_repository(repository_id)
        await self.repos.get_branch(repository_id, source_branch)
        await self.repos.get_branch(repository_id, target_branch)

        async with _number_locks[repository_id]:
            current = await self.db.execute(
                select(func.max(GitPullRequest.number)).where(GitPullRequest.repository_id == repository_id)
            )
            number = (current.scalar() or 0) + 1

            state = PRState.DRAFT if draft else PRState.OPEN
            pr = GitPullRequest(
                repository_id=repository_id,
                number=number,
                title=title.strip(),
                description=description,
                source_branch=source_branch,
                target_branch=target_branch,
                state=state,
                author_id=author_id,
                reviewers=list(dict.fromkeys(reviewers or [])),
                labels=labels or [],
                review_status=ReviewStatus.NONE,
                ci_status=CIStatus.NONE,
            )
            await self._check_mergeability(repository, pr)
            self.db.add(pr)
            self._adjust_open_count(repository, PRState.DRAFT, state)
            await self.db.commit()

        logger.info(f"Created PR #{number} in {repository.name}: {source_branch} -> {target_branch}")

        await self._trigger_ci(repository_id, pr)
        await self.notifier.notify_many(
            pr.reviewers or [], "pull_request_created",
            f"PR #{pr.number}: {pr.title}",
            f"You were added as a reviewer on {repository.name} #{pr.number}",
            {"pullRequestId": pr.id, "repositoryId": repository_id},
        )
        return pr

    async def _trigger_ci(self, repository_id: str, pr: GitPullRequest) -> None:
        pipeline = await self.repos.find_pull_request_pipeline(repository_id)
        if pipeline is None:
            return
        response = await self.notifier.trigger_pipeline(pipeline.id, {
            "trigger": "pull_request",
            "branch": pr.source_branch,
            "commitSha": pr.source_sha,
            "prId": pr.id,
            "prNumber": pr.number,
        })
        if response is None:
            return
        pr.ci_pipeline_id = str(response.get("executionId") or pipeline.id)
        pr.ci_status = CIStatus.PENDING
        await self.db.commit()

    # --------------------------------------------------------
    # Transitions
    # --------------------------------------------------------

    async def mark_ready(self, pr_id: str, user_id: str) -> GitPullRequest:
        pr = await self.get(pr_id)
        if pr.state != PRState.DRAFT:
            raise errors.ConflictError(f"Only draft pull requests can be marked ready (state: {pr.state.value})")
        repository = await self.repos.get_repository(pr.repository_id)
        pr.state = PRState.OPEN
        self._adjust_open_count(repository, PRState.DRAFT, PRState.OPEN)
        await self.db.commit()
        await self.notifier.notify_many(
            pr.reviewers or [], "pull_request_updated",
            f"PR #{pr.number} is ready for review", pr.title,
            {"pullRequestId": pr.id, "updatedBy": user_id},
        )
        return pr

    async def request_review(self, pr_id: str, reviewers: List[str], user_id: str) -> GitPullRequest:
        pr = await self.get(pr_id)
        if pr.state not in (PRState.DRAFT, PRState.OPEN):
            raise errors.ConflictError(f"Cannot request review on a {pr.state.value} pull request")
        current = list(pr.reviewers or [])
        added = [r for r in dict.fromkeys(reviewers) if r and r not in current]
        pr.reviewers = current + added
        await self.db.commit()

        for reviewer in added:
            await self.notifier.notify(
                reviewer, "pull_request_review_requested",
                f"Review requested: PR #{pr.number}", pr.title,
                {"pullRequestId": pr.id, "requestedBy": user_id},
            )
            await self.notifier.send_message(
                reviewer, f"You have been asked to review PR #{pr.number}: {pr.title}",
                {"pullRequestId": pr.id},
            )
        return pr

    async def update_ci_status(self, pr_id: str, status: CIStatus, pipeline_id: Optional[str] = None) -> GitPullRequest:
        pr = await self.get(pr_id)
        pr.ci_status = CIStatus(status)
        if pipeline_id:
            pr.ci_pipeline_id = pipeline_id
        await self.db.commit()

        if pr.ci_status == CIStatus.FAILURE:
            await self.notifier.notify(
                pr.author_id, "pull_request_ci_failed",
                f"CI failed for PR #{pr.number}", pr.title,
                {"pullRequestId": pr.id, "pipelineId": pr.ci_pipeline_id},
                priority="high",
            )
        return pr

    async def merge(self, pr_id: str, user_id: str, message: Optional[str] = None) -> GitPullRequest:
        pr = await self.get(pr_id)
        if pr.state != PRState.OPEN:
            raise errors.ConflictError(f"Only open pull requests can be merged (state: {pr.state.value})")
        if pr.review_status == ReviewStatus.CHANGES_REQUESTED:
            raise errors.ConflictError("Changes were requested on this pull request")

        repository = await self.repos.get_repository(pr.repository_id)
        await self._check_mergeability(repository, pr)
        if not pr.mergeable:
            await self.db.commit()
            raise errors.ConflictError("Pull request is not mergeable", {"conflicts": pr.conflicts or []})

        repo_path = self.repos.path(repository)
        async with tree_lock(repo_path):
            sha = await asyncio.to_thread(
                git_ops.merge, repo_path, pr.source_branch, pr.target_branch,
                message or f"Merge pull request #{pr.number} from {pr.source_branch}",
            )
            details = await asyncio.to_thread(git_ops.commit_details, repo_path, sha)
        target = await self.repos.get_branch(repository.id, pr.target_branch)
        target.commit_sha = sha
        self.repos._add_commit_row(repository.id, pr.target_branch, details)

        pr.state = PRState.MERGED
        pr.merge_commit_sha = sha
        pr.merged_by = user_id
        pr.merged_at = utcnow()
        self._adjust_open_count(repository, PRState.OPEN, PRState.MERGED)
        await self.db.commit()
        logger.info(f"Merged PR #{pr.number} in {repository.name} as {sha[:8]}")

        await self.notifier.notify(
            pr.author_id, "pull_request_merged",
            f"PR #{pr.number} merged", pr.title,
            {"pullRequestId": pr.id, "mergedBy": user_id, "mergeCommitSha": sha},
        )
        return pr

    async def close(self, pr_id: str, user_id: str) -> GitPullRequest:
        pr = await self.get(pr_id)
        if pr.state == PRState.MERGED:
            raise errors.ConflictError("A merged pull request cannot be closed")
        repository = await self.repos.get_repository(pr.repository_id)
        previous = pr.state
        pr.state = PRState.CLOSED
        pr.closed_by = user_id
        pr.closed_at = utcnow()
        self._adjust_open_count(repository, previous, PRState.CLOSED)
        await self.db.commit()

        await self.notifier.notify(
            pr.author_id, "pull_request_closed",
            f"PR #{pr.number} closed", pr.title,
            {"pullRequestId": pr.id, "closedBy": user_id},
        )
        return pr

    async def update(self, pr_id: str, user_id: str, updates: Dict[str, Any]) -> GitPullRequest:
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise errors.ValidationError(f"Fields cannot be updated: {sorted(unknown)}")

        pr = await self.get(pr_id)
        if pr.state == PRState.MERGED:
            raise errors.ConflictError("A merged pull request cannot be updated")

        if "state" in updates:
            new_state = PRState(updates["state"])
            if new_state == PRState.MERGED:
                raise errors.ValidationError("Use the merge operation to merge a pull request")
            repository = await self.repos.get_repository(pr.repository_id)
            self._adjust_open_count(repository, pr.state, new_state)
            pr.state = new_state
            if new_state == PRState.CLOSED:
                pr.closed_by = user_id
                pr.closed_at = utcnow()
        if "review_status" in updates:
            pr.review_status = ReviewStatus(updates["review_status"])
        for field in ("title", "description", "labels", "reviewers"):
            if field in updates:
                setattr(pr, field, updates[field])
        await self.db.commit()

        await self.notifier.notify(
            pr.author_id, "pull_request_updated",
            f"PR #{pr.number} updated", pr.title,
            {"pullRequestId": pr.id, "updatedBy": user_id, "fields": sorted(updates)},
        )
        return pr

    # --------------------------------------------------------
    # Queries
    # --------------------------------------------------------

    async def list_pull_requests(
        self,
        repository_id: str,
        state: Optional[PRState] = None,
        author_id: Optional[str] = None,
        review_status: Optional[ReviewStatus] = None,
        ci_status: Optional[CIStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[GitPullRequest]:
        await self.repos.get_repository(repository_id)
        stmt = select(GitPullRequest).where(GitPullRequest.repository_id == repository_id)
        if state:
            stmt = stmt.where(GitPullRequest.state == PRState(state))
        if author_id:
            stmt = stmt.where(GitPullRequest.author_id == author_id)
        if review_status:
            stmt = stmt.where(GitPullRequest.review_status == ReviewStatus(review_status))
        if ci_status:
            stmt = stmt.where(GitPullRequest.ci_status == CIStatus(ci_status))
        result = await self.db.execute(stmt.order_by(GitPullRequest.number.desc()).offset(offset).limit(limit))
        return list(result.scalars().all())

    async def stats(self, repository_id: str) -> Dict[str, Any]:
        repository = await self.repos.get_repository(repository_id)
        by_state = {s.value: 0 for s in PRState}
        by_ci = {s.value: 0 for s in CIStatus}

        rows = await self.db.execute(
            select(GitPullRequest.state, func.count()).where(GitPullRequest.repository_id == repository_id)
            .group_by(GitPullRequest.state)
        )
        for state, count in rows.all():
            by_state[state.value] = count
        rows = await self.db.execute(
            select(GitPullRequest.ci_status, func.count()).where(GitPullRequest.repository_id == repository_id)
            .group_by(GitPullRequest.ci_status)
        )
        for ci_status, count in rows.all():
            by_ci[ci_status.value] = count

        return {
            "repositoryId": repository_id,
            "total": sum(by_state.values()),
            "openPrsCount": repository.open_prs_count or 0,
            "byState": by_state,
            "byCiStatus": by_ci,
        }
