# git_workspace.py — On-disk artifact tree per repository
import os
import json
import logging
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import artifact_codec as codec
import errors
from models import as_utc, iso

logger = logging.getLogger("exprsn.workspace")

GIT_WORKSPACE_ROOT = os.getenv("GIT_WORKSPACE_ROOT", "/data/git-repositories")

GITIGNORE_CONTENT = """# Exprsn Low-Code Platform
# Generated automatically

# Node modules (if NPM enabled)
node_modules/
package-lock.json

# Environment files
.env
.env.local
.env.*.local

# Logs
logs/
*.log

# Temporary files
.tmp/
temp/
*.tmp

# IDE
.vscode/
.idea/
*.swp
*.swo

# OS
.DS_Store
Thumbs.db

# Build outputs (if applicable)
dist/
build/
.cache/
"""


class GitWorkspace:
    """Filesystem primitives scoped to <root>/<repository.name>"""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or GIT_WORKSPACE_ROOT)

    def repo_path(self, repository) -> Path:
        name = repository if isinstance(repository, str) else repository.name
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise errors.ValidationError(f"Invalid repository directory name: {name!r}")
        return self.root / name

    def _resolve(self, repository, relative_path: str) -> Path:
        base = self.repo_path(repository).resolve()
        target = (base / relative_path).resolve()
        if target != base and base not in target.parents:
            raise errors.ValidationError(f"Path escapes repository: {relative_path}")
        return target

    # --------------------------------------------------------
    # Files
    # --------------------------------------------------------

    def read_text(self, repository, relative_path: str) -> str:
        path = self._resolve(repository, relative_path)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise errors.NotFoundError(f"File not found: {relative_path}")
        except IsADirectoryError:
            raise errors.ValidationError(f"Not a file: {relative_path}")
        except OSError as e:
            raise errors.StorageError(f"Cannot read {relative_path}: {e}")

    def read_artifact_file(self, repository, relative_path: str) -> Dict[str, Any]:
        return codec.parse_payload(self.read_text(repository, relative_path), relative_path)

    def write_text(self, repository, relative_path: str, content: str) -> Path:
        path = self._resolve(repository, relative_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Write to a sibling temp file, then rename over the target
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=path.suffix)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
            os.replace(tmp_name, path)
        except OSError as e:
            raise errors.StorageError(f"Cannot write {relative_path}: {e}")
        return path

    def write_artifact_file(self, repository, relative_path: str, payload: Dict[str, Any]) -> Path:
        content = json.dumps(payload, indent=2, ensure_ascii=False, default=str) + "\n"
        return self.write_text(repository, relative_path, content)

    def list_json_files(self, repository, folder: str) -> List[str]:
        """Sorted *.json names in a folder; FileNotFoundError when it does not exist"""
        path = self._resolve(repository, folder)
        return sorted(entry.name for entry in path.iterdir() if entry.is_file() and entry.name.endswith(".json"))

    # --------------------------------------------------------
    # Preamble
    # --------------------------------------------------------

    def generate_repository_preamble(self, repository, application=None) -> List[str]:
        written = [str(self.write_text(repository, ".gitignore", GITIGNORE_CONTENT))]
        if application is not None:
            written.append(str(self.write_text(repository, "README.md", render_readme(application))))
        logger.info(f"Generated preamble for {self.repo_path(repository)} ({len(written)} files)")
        return written

    # --------------------------------------------------------
    # Change detection
    # --------------------------------------------------------

    def list_changed_files(self, repository, artifacts: Iterable[Tuple[str, Any]]) -> List[Dict[str, Any]]:
        """Compare each (kind, record) against its file by updatedAt"""
        changed = []
        for kind, record in artifacts:
            relative_path = codec.path_for(kind, record)
            db_updated = as_utc(record.updated_at)
            try:
                payload = self.read_artifact_file(repository, relative_path)
            except errors.NotFoundError:
                changed.append({
                    "path": relative_path,
                    "type": kind,
                    "artifactId": record.id,
                    "status": "added",
                    "dbUpdatedAt": iso(db_updated),
                    "fileUpdatedAt": None,
                })
                continue

            file_updated = codec.parse_timestamp(payload.get("updatedAt"))
            if file_updated == db_updated:
                continue
            if file_updated is None or (db_updated is not None and file_updated < db_updated):
                status = "modified"
            else:
                status = "outdated"
            changed.append({
                "path": relative_path,
                "type": kind,
                "artifactId": record.id,
                "status": status,
                "dbUpdatedAt": iso(db_updated),
                "fileUpdatedAt": iso(file_updated),
            })
        return changed


def render_readme(application) -> str:
    created = iso(application.created_at) or "unknown"
    updated = iso(application.updated_at) or "unknown"
    rows = "\n".join(f"| `{folder}/` | {kind} |" for kind, folder in codec.FOLDERS.items())
    return (
        f"# {application.display_name or application.name}\n\n"
        f"{application.description or 'Low-code application managed by the Exprsn platform.'}\n\n"
        f"- **Version:** {application.version or '1.0.0'}\n"
        f"- **Created:** {created}\n"
        f"- **Last updated:** {updated}\n\n"
        "## Repository layout\n\n"
        "| Folder | Artifact type |\n"
        "|--------|---------------|\n"
        f"{rows}\n\n"
        "`application.json` holds the application metadata. Every artifact is stored as\n"
        "pretty-printed JSON named after its slugified name.\n"
    )


def get_workspace() -> GitWorkspace:
    """Dependency for the repository workspace (FastAPI Depends)"""
    return GitWorkspace()
