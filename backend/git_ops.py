# git_ops.py — Thin wrapper around the git binary for workspace repositories
import os
import re
import logging
import subprocess
from typing import Dict, List, Optional, Tuple

import errors

logger = logging.getLogger("exprsn.git")

GIT_COMMAND_TIMEOUT = int(os.getenv("GIT_COMMAND_TIMEOUT", "30"))
GIT_AUTHOR_NAME = os.getenv("GIT_AUTHOR_NAME", "Exprsn Platform")
GIT_AUTHOR_EMAIL = os.getenv("GIT_AUTHOR_EMAIL", "system@exprsn.io")

SHA_PATTERN = re.compile(r"^[a-f0-9]{40}$")


def _identity_env(author_name: Optional[str] = None, author_email: Optional[str] = None) -> Dict[str, str]:
    name = author_name or GIT_AUTHOR_NAME
    email = author_email or GIT_AUTHOR_EMAIL
    return {
        **os.environ,
        "GIT_AUTHOR_NAME": name,
        "GIT_AUTHOR_EMAIL": email,
        "GIT_COMMITTER_NAME": name,
        "GIT_COMMITTER_EMAIL": email,
    }


def run_git(repo_path: str, *args, check: bool = True, env: Optional[Dict[str, str]] = None) -> subprocess.CompletedProcess:
    """Run a git command in the given repo path"""
    cmd = ["git", "-C", repo_path, "-c", "commit.gpgsign=false"] + list(args)
    try:
        return subprocess.run(
            cmd, capture_output=True, text=True, timeout=GIT_COMMAND_TIMEOUT, check=check, env=env,
        )
    except subprocess.TimeoutExpired:
        raise errors.GitCommandError(f"git {args[0]} timed out after {GIT_COMMAND_TIMEOUT}s")
    except subprocess.CalledProcessError as e:
        raise errors.GitCommandError(f"git {args[0]} failed: {(e.stderr or e.stdout or '').strip()[:500]}")
    except FileNotFoundError:
        raise errors.GitCommandError("git executable not found")


def git_version() -> Optional[str]:
    """'git version x.y.z' of the installed binary, None when git is unusable"""
    try:
        result = subprocess.run(["git", "--version"], capture_output=True, text=True, timeout=GIT_COMMAND_TIMEOUT)
    except (OSError, subprocess.TimeoutExpired):
        return None
    return result.stdout.strip() if result.returncode == 0 else None


def init_repository(repo_path: str, default_branch: str = "main") -> None:
    os.makedirs(repo_path, exist_ok=True)
    if os.path.isdir(os.path.join(repo_path, ".git")):
        return
    run_git(repo_path, "init", "-b", default_branch)
    logger.info(f"Initialised git repository at {repo_path}")


def rev_parse(repo_path: str, ref: str) -> Optional[str]:
    result = run_git(repo_path, "rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", check=False)
    sha = result.stdout.strip()
    return sha if result.returncode == 0 and SHA_PATTERN.match(sha) else None


def current_branch(repo_path: str) -> str:
    return run_git(repo_path, "symbolic-ref", "--short", "HEAD").stdout.strip()


def create_branch(repo_path: str, name: str, start_point: str) -> str:
    run_git(repo_path, "branch", name, start_point)
    return rev_parse(repo_path, name)


def checkout(repo_path: str, branch: str) -> None:
    run_git(repo_path, "checkout", "--quiet", branch)


def commit_all(repo_path: str, message: str, author_name: Optional[str] = None,
               author_email: Optional[str] = None, allow_empty: bool = False) -> Optional[str]:
    """Stage the whole tree and commit. Returns the new sha, or None when nothing changed."""
    run_git(repo_path, "add", "--all")
    status = run_git(repo_path, "status", "--porcelain").stdout.strip()
    if not status and not allow_empty:
        return None
    args = ["commit", "--quiet", "-m", message]
    if allow_empty:
        args.append("--allow-empty")
    run_git(repo_path, *args, env=_identity_env(author_name, author_email))
    return rev_parse(repo_path, "HEAD")


def commit_details(repo_path: str, sha: str) -> Dict:
    """Parents, tree and line counters for one commit"""
    fmt = "%H%n%T%n%P%n%an%n%ae%n%aI%n%s"
    lines = run_git(repo_path, "show", "-s", f"--format={fmt}", sha).stdout.splitlines()
    numstat = run_git(repo_path, "show", "--numstat", "--format=", sha).stdout.splitlines()

    additions = deletions = files_changed = 0
    for line in numstat:
        parts = line.split("\t")
        if len(parts) < 3:
            continue
        files_changed += 1
        # Binary files report "-" for both counters
        additions += int(parts[0]) if parts[0].isdigit() else 0
        deletions += int(parts[1]) if parts[1].isdigit() else 0

    return {
        "sha": lines[0],
        "tree_sha": lines[1],
        "parent_shas": lines[2].split() if len(lines) > 2 and lines[2] else [],
        "author_name": lines[3] if len(lines) > 3 else None,
        "author_email": lines[4] if len(lines) > 4 else None,
        "committed_at": lines[5] if len(lines) > 5 else None,
        "message": lines[6] if len(lines) > 6 else "",
        "additions": additions,
        "deletions": deletions,
        "files_changed": files_changed,
    }


def dry_run_merge(repo_path: str, source: str, target: str) -> Tuple[bool, List[str]]:
    """Check whether source merges cleanly into target without touching the work tree.

    Returns (mergeable, conflicting paths).
    """
    if rev_parse(repo_path, source) is None or rev_parse(repo_path, target) is None:
        return False, []

    ancestor = run_git(repo_path, "merge-base", "--is-ancestor", target, source, check=False)
    if ancestor.returncode == 0:
        return True, []

    result = run_git(
        repo_path, "merge-tree", "--write-tree", "--name-only", "--no-messages", target, source,
        check=False,
    )
    if result.returncode == 0:
        return True, []
    if result.returncode == 1:
        # First line is the tree id, conflicted paths follow
        paths = [line for line in result.stdout.splitlines()[1:] if line.strip()]
        return False, sorted(set(paths))

    logger.warning(f"Merge check failed for {source} -> {target}: {result.stderr.strip()[:200]}")
    return False, []


def merge(repo_path: str, source: str, target: str, message: str,
          author_name: Optional[str] = None, author_email: Optional[str] = None) -> str:
    """Merge source into target with a merge commit; returns the merge commit sha"""
    original = current_branch(repo_path)
    checkout(repo_path, target)
    result = run_git(
        repo_path, "merge", "--no-ff", "-m", message, source,
        check=False, env=_identity_env(author_name, author_email),
    )
    if result.returncode != 0:
        run_git(repo_path, "merge", "--abort", check=False)
        if original != target:
            checkout(repo_path, original)
        raise errors.ConflictError(f"Merge of {source} into {target} failed: {result.stdout.strip()[:300]}")
    sha = rev_parse(repo_path, "HEAD")
    if original != target:
        checkout(repo_path, original)
    return sha
