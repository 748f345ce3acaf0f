# documents_collab.py — Document versions, annotations, editor presence and folders
"""
Every saved state of a document is a DocumentVersion snapshot; exactly one
snapshot per document has ``is_current_version`` set and
``Document.version`` equals its ``version_number``.
"""

import difflib
import hashlib
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

import errors
from models import (
    Document, DocumentAnnotation, DocumentChangeType, DocumentVersion, Folder, iso, utcnow,
)

logger = logging.getLogger("exprsn.documents")

DOCUMENT_FIELDS = {"title", "filename", "content", "mime_type", "folder_id", "tags", "doc_metadata"}
COMPARED_FIELDS = ("title", "filename", "mime_type", "size", "checksum")
DEFAULT_KEEP_VERSIONS = 10
PRESENCE_TTL = timedelta(minutes=5)

# document_id -> user_id -> {userName, cursorPosition, lastActivity}
_active_editors: Dict[str, Dict[str, Dict[str, Any]]] = {}


def checksum(content: Optional[str]) -> str:
    return hashlib.sha256((content or "").encode("utf-8")).hexdigest()


def version_to_dict(v: DocumentVersion, include_content: bool = False) -> Dict[str, Any]:
    data = {
        "id": v.id,
        "documentId": v.document_id,
        "versionNumber": v.version_number,
        "title": v.title,
        "filename": v.filename,
        "mimeType": v.mime_type,
        "size": v.size,
        "checksum": v.checksum,
        "changeType": v.change_type.value,
        "changeDescription": v.change_description,
        "changedBy": v.changed_by,
        "changedAt": iso(v.changed_at),
        "metadata": v.version_metadata or {},
        "isCurrentVersion": v.is_current_version,
    }
    if include_content:
        data["content"] = v.content
    return data


# ============================================================
# PRESENCE
# ============================================================

def _evict_stale(document_id: str, now: datetime) -> Dict[str, Dict[str, Any]]:
    editors = _active_editors.get(document_id, {})
    for user_id in [u for u, entry in editors.items() if now - entry["lastActivity"] > PRESENCE_TTL]:
        del editors[user_id]
    if not editors:
        _active_editors.pop(document_id, None)
    return editors


def touch_editor(document_id: str, user_id: str, now: Optional[datetime] = None,
                 user_name: Optional[str] = None,
                 cursor_position: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    """Join or heartbeat; returns the current editor list.

    A heartbeat without a name or cursor keeps the ones already known.
    """
    now = now or utcnow()
    entry = _active_editors.setdefault(document_id, {}).setdefault(
        user_id, {"userName": None, "cursorPosition": None},
    )
    if user_name is not None:
        entry["userName"] = user_name
    if cursor_position is not None:
        entry["cursorPosition"] = cursor_position
    entry["lastActivity"] = now
    return active_editors(document_id, now)


def leave_editor(document_id: str, user_id: str) -> None:
    editors = _active_editors.get(document_id)
    if editors is not None:
        editors.pop(user_id, None)
        if not editors:
            _active_editors.pop(document_id, None)


def active_editors(document_id: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    editors = _evict_stale(document_id, now or utcnow())
    return [
        {
            "userId": user_id,
            "userName": entry["userName"],
            "cursorPosition": entry["cursorPosition"],
            "lastActivity": iso(entry["lastActivity"]),
        }
        for user_id, entry in sorted(editors.items())
    ]


# ============================================================
# DOCUMENTS & VERSIONS
# ============================================================

class DocumentService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_document(self, document_id: str) -> Document:
        document = await self.db.get(Document, document_id)
        if document is None or document.deleted_at is not None:
            raise errors.NotFoundError(f"Document not found: {document_id}")
        return document

    async def list_documents(self, owner_id: Optional[str] = None, folder_id: Optional[str] = None,
                             limit: int = 50, offset: int = 0) -> List[Document]:
        stmt = select(Document).where(Document.deleted_at.is_(None))
        if owner_id:
            stmt = stmt.where(Document.owner_id == owner_id)
        if folder_id:
            stmt = stmt.where(Document.folder_id == folder_id)
        result = await self.db.execute(stmt.order_by(Document.last_modified_at.desc()).offset(offset).limit(limit))
        return list(result.scalars().all())

    async def _snapshot(self, document: Document, user_id: Optional[str], change_type: DocumentChangeType,
                        description: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> DocumentVersion:
        await self.db.execute(
            update(DocumentVersion)
            .where(DocumentVersion.document_id == document.id, DocumentVersion.is_current_version.is_(True))
            .values(is_current_version=False)
        )
        version = DocumentVersion(
            document_id=document.id,
            version_number=document.version,
            title=document.title,
            filename=document.filename,
            content=document.content,
            mime_type=document.mime_type,
            size=document.size or 0,
            checksum=checksum(document.content),
            change_type=change_type,
            change_description=description,
            changed_by=user_id,
            changed_at=utcnow(),
            version_metadata=metadata or {},
            is_current_version=True,
        )
        self.db.add(version)
        return version

    async def _next_version_number(self, document_id: str) -> int:
        current = await self.db.execute(
            select(func.max(DocumentVersion.version_number)).where(DocumentVersion.document_id == document_id)
        )
        return (current.scalar() or 0) + 1

    async def create_document(self, owner_id: str, title: str, filename: str, content: str = "",
                              mime_type: str = "text/plain", folder_id: Optional[str] = None,
                              tags: Optional[List[str]] = None, metadata: Optional[Dict[str, Any]] = None) -> Document:
        if not title or not filename:
            raise errors.ValidationError("title and filename are required")
        if folder_id:
            await self.get_folder(folder_id)
        document = Document(
            owner_id=owner_id,
            title=title,
            filename=filename,
            content=content,
            mime_type=mime_type,
            size=len((content or "").encode("utf-8")),
            folder_id=folder_id,
            tags=tags or [],
            doc_metadata=metadata or {},
            version=1,
            last_modified_at=utcnow(),
        )
        self.db.add(document)
        await self.db.flush()
        await self._snapshot(document, owner_id, DocumentChangeType.CREATED, "Initial version")
        await self.db.commit()
        return document

    async def update_document(self, document_id: str, user_id: str, updates: Dict[str, Any],
                              change_description: Optional[str] = None) -> Document:
        unknown = set(updates) - DOCUMENT_FIELDS
        if unknown:
            raise errors.ValidationError(f"Unknown document fields: {sorted(unknown)}")
        document = await self.get_document(document_id)
        changed = {f for f, v in updates.items() if getattr(document, f) != v}
        if not changed:
            return document
        if "folder_id" in changed and updates["folder_id"]:
            await self.get_folder(updates["folder_id"])

        if "content" in changed:
            change_type = DocumentChangeType.CONTENT_UPDATED
        elif changed & {"title", "filename"}:
            change_type = DocumentChangeType.RENAMED
        elif "folder_id" in changed:
            change_type = DocumentChangeType.MOVED
        else:
            change_type = DocumentChangeType.METADATA_UPDATED

        for field in changed:
            setattr(document, field, updates[field])
        document.size = len((document.content or "").encode("utf-8"))
        document.version = await self._next_version_number(document.id)
        document.last_modified_at = utcnow()
        await self._snapshot(document, user_id, change_type, change_description, {"fields": sorted(changed)})
        await self.db.commit()
        return document

    async def delete_document(self, document_id: str) -> None:
        document = await self.get_document(document_id)
        document.deleted_at = utcnow()
        await self.db.commit()
        _active_editors.pop(document_id, None)

    async def create_version(self, document_id: str, user_id: str, change_description: Optional[str] = None,
                             change_type: DocumentChangeType = DocumentChangeType.CONTENT_UPDATED) -> DocumentVersion:
        """Explicit snapshot of the document's present state"""
        document = await self.get_document(document_id)
        document.version = await self._next_version_number(document.id)
        version = await self._snapshot(document, user_id, DocumentChangeType(change_type), change_description)
        await self.db.commit()
        return version

    async def list_versions(self, document_id: str) -> List[DocumentVersion]:
        await self.get_document(document_id)
        result = await self.db.execute(
            select(DocumentVersion)
            .where(DocumentVersion.document_id == document_id)
            .order_by(DocumentVersion.version_number.desc())
        )
        return list(result.scalars().all())

    async def get_version(self, document_id: str, version_number: int) -> DocumentVersion:
        result = await self.db.execute(
            select(DocumentVersion).where(
                DocumentVersion.document_id == document_id,
                DocumentVersion.version_number == version_number,
            )
        )
        version = result.scalar_one_or_none()
        if version is None:
            raise errors.NotFoundError(f"Version {version_number} of document {document_id} not found")
        return version

    async def _current_version(self, document_id: str) -> Optional[DocumentVersion]:
        result = await self.db.execute(
            select(DocumentVersion).where(
                DocumentVersion.document_id == document_id, DocumentVersion.is_current_version.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def restore_version(self, document_id: str, version_number: int, user_id: str) -> Document:
        document = await self.get_document(document_id)
        target = await self.get_version(document_id, version_number)

        # Preserve unsnapshotted state before overwriting it
        current = await self._current_version(document_id)
        if current is None or current.checksum != checksum(document.content) or current.title != document.title:
            document.version = await self._next_version_number(document.id)
            await self._snapshot(document, user_id, DocumentChangeType.CONTENT_UPDATED, "Automatic backup before restore")
            await self.db.flush()

        document.title = target.title
        document.filename = target.filename
        document.content = target.content
        document.mime_type = target.mime_type
        document.size = target.size
        document.version = await self._next_version_number(document.id)
        document.last_modified_at = utcnow()
        await self._snapshot(
            document, user_id, DocumentChangeType.RESTORED,
            f"Restored from version {version_number}", {"restoredFrom": version_number},
        )
        await self.db.commit()
        logger.info(f"Document {document_id} restored to version {version_number} as v{document.version}")
        return document

    async def compare_versions(self, document_id: str, from_version: int, to_version: int) -> Dict[str, Any]:
        old = await self.get_version(document_id, from_version)
        new = await self.get_version(document_id, to_version)
        differences = {
            field: {"from": getattr(old, field), "to": getattr(new, field)}
            for field in COMPARED_FIELDS
            if getattr(old, field) != getattr(new, field)
        }
        diff = list(difflib.unified_diff(
            (old.content or "").splitlines(), (new.content or "").splitlines(),
            fromfile=f"v{from_version}", tofile=f"v{to_version}", lineterm="",
        ))
        added = sum(1 for line in diff if line.startswith("+") and not line.startswith("+++"))
        removed = sum(1 for line in diff if line.startswith("-") and not line.startswith("---"))
        return {
            "fromVersion": from_version,
            "toVersion": to_version,
            "differences": differences,
            "contentChanged": old.checksum != new.checksum,
            "diff": diff,
            "stats": {"linesAdded": added, "linesRemoved": removed},
        }

    async def delete_version(self, document_id: str, version_number: int) -> None:
        version = await self.get_version(document_id, version_number)
        if version.is_current_version:
            raise errors.IntegrityError("The current version of a document cannot be deleted")
        await self.db.delete(version)
        await self.db.commit()

    async def cleanup_versions(self, document_id: str, keep: int = DEFAULT_KEEP_VERSIONS) -> int:
        """Delete all but the ``keep`` most recent versions; the current one always survives"""
        if keep < 1:
            raise errors.ValidationError("keep must be at least 1")
        versions = await self.list_versions(document_id)
        removed = 0
        for version in versions[keep:]:
            if version.is_current_version:
                continue
            await self.db.delete(version)
            removed += 1
        await self.db.commit()
        return removed

    async def version_stats(self, document_id: str) -> Dict[str, Any]:
        document = await self.get_document(document_id)
        versions = await self.list_versions(document_id)
        by_type: Dict[str, int] = {}
        for v in versions:
            by_type[v.change_type.value] = by_type.get(v.change_type.value, 0) + 1
        changed = [v.changed_at for v in versions if v.changed_at]
        return {
            "documentId": document_id,
            "currentVersion": document.version,
            "totalVersions": len(versions),
            "totalSize": sum(v.size or 0 for v in versions),
            "contributors": len({v.changed_by for v in versions if v.changed_by}),
            "byChangeType": by_type,
            "firstVersionAt": iso(min(changed)) if changed else None,
            "lastVersionAt": iso(max(changed)) if changed else None,
        }

    # --------------------------------------------------------
    # Annotations
    # --------------------------------------------------------

    async def add_annotation(self, document_id: str, user_id: str, content: str,
                             annotation_type: str = "comment", position: Optional[Dict[str, Any]] = None,
                             color: Optional[str] = None) -> DocumentAnnotation:
        await self.get_document(document_id)
        if not content or not content.strip():
            raise errors.ValidationError("Annotation content is required")
        annotation = DocumentAnnotation(
            document_id=document_id, user_id=user_id, content=content,
            annotation_type=annotation_type, position=position or {}, color=color,
        )
        self.db.add(annotation)
        await self.db.commit()
        return annotation

    async def list_annotations(self, document_id: str, include_resolved: bool = True) -> List[DocumentAnnotation]:
        stmt = select(DocumentAnnotation).where(DocumentAnnotation.document_id == document_id)
        if not include_resolved:
            stmt = stmt.where(DocumentAnnotation.resolved.is_(False))
        result = await self.db.execute(stmt.order_by(DocumentAnnotation.created_at))
        return list(result.scalars().all())

    async def _annotation(self, annotation_id: str) -> DocumentAnnotation:
        annotation = await self.db.get(DocumentAnnotation, annotation_id)
        if annotation is None:
            raise errors.NotFoundError(f"Annotation not found: {annotation_id}")
        return annotation

    async def resolve_annotation(self, annotation_id: str, user_id: str) -> DocumentAnnotation:
        annotation = await self._annotation(annotation_id)
        annotation.resolved = True
        annotation.resolved_by = user_id
        annotation.resolved_at = utcnow()
        await self.db.commit()
        return annotation

    async def delete_annotation(self, annotation_id: str, user_id: str) -> None:
        annotation = await self._annotation(annotation_id)
        if annotation.user_id != user_id:
            raise errors.ForbiddenError("Only the author can delete an annotation")
        await self.db.delete(annotation)
        await self.db.commit()

    # --------------------------------------------------------
    # Folders
    # --------------------------------------------------------

    async def get_folder(self, folder_id: str) -> Folder:
        folder = await self.db.get(Folder, folder_id)
        if folder is None:
            raise errors.NotFoundError(f"Folder not found: {folder_id}")
        return folder

    async def create_folder(self, name: str, owner_id: str, parent_id: Optional[str] = None) -> Folder:
        if not name or not name.strip():
            raise errors.ValidationError("Folder name is required")
        if parent_id:
            await self.get_folder(parent_id)
        folder = Folder(name=name.strip(), owner_id=owner_id, parent_id=parent_id)
        self.db.add(folder)
        await self.db.commit()
        return folder

    async def list_folders(self, owner_id: str, parent_id: Optional[str] = None) -> List[Folder]:
        stmt = select(Folder).where(Folder.owner_id == owner_id)
        stmt = stmt.where(Folder.parent_id == parent_id) if parent_id else stmt.where(Folder.parent_id.is_(None))
        result = await self.db.execute(stmt.order_by(Folder.name))
        return list(result.scalars().all())

    async def _is_descendant(self, folder_id: str, candidate_id: str) -> bool:
        """True when candidate_id sits anywhere below folder_id"""
        visited = set()
        frontier = [folder_id]
        while frontier:
            node_id = frontier.pop()
            if node_id in visited:
                continue
            visited.add(node_id)
            result = await self.db.execute(select(Folder.id).where(Folder.parent_id == node_id))
            for (child_id,) in result.all():
                if child_id == candidate_id:
                    return True
                frontier.append(child_id)
        return False

    async def move_folder(self, folder_id: str, new_parent_id: Optional[str]) -> Folder:
        folder = await self.get_folder(folder_id)
        if new_parent_id:
            if new_parent_id == folder_id:
                raise errors.ValidationError("A folder cannot be moved into itself")
            await self.get_folder(new_parent_id)
            if await self._is_descendant(folder_id, new_parent_id):
                raise errors.ValidationError("A folder cannot be moved into one of its descendants")
        folder.parent_id = new_parent_id
        await self.db.commit()
        return folder

    async def folder_path(self, folder_id: str) -> List[Dict[str, Any]]:
        """Root-first chain of folders ending at folder_id"""
        path, visited = [], set()
        current: Optional[str] = folder_id
        while current and current not in visited:
            visited.add(current)
            folder = await self.get_folder(current)
            path.append({"id": folder.id, "name": folder.name})
            current = folder.parent_id
        return list(reversed(path))
