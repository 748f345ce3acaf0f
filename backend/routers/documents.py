"""
Document Collaboration Router — Versioned documents and folders
CRUD with automatic version snapshots, restore/compare/cleanup,
annotations, active-editor presence, cycle-safe folder moves
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
from typing import Optional, List

from database import get_db_session
from auth import require_permission, CurrentUser
from documents_collab import (
    DEFAULT_KEEP_VERSIONS, DocumentService, active_editors, leave_editor, touch_editor, version_to_dict,
)
from models import Document, DocumentAnnotation, DocumentChangeType, Folder, iso

router = APIRouter(prefix="/api/v1/documents", tags=["documents"])


# ── Schemas ──────────────────────────────────────────────────

class DocumentCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    filename: str = Field(..., min_length=1, max_length=500)
    content: str = ""
    mime_type: str = "text/plain"
    folder_id: Optional[str] = None
    tags: List[str] = []
    metadata: dict = {}

class DocumentUpdate(BaseModel):
    title: Optional[str] = None
    filename: Optional[str] = None
    content: Optional[str] = None
    mime_type: Optional[str] = None
    folder_id: Optional[str] = None
    tags: Optional[List[str]] = None
    change_description: Optional[str] = None

class VersionCreate(BaseModel):
    change_description: Optional[str] = None
    change_type: DocumentChangeType = DocumentChangeType.CONTENT_UPDATED

class AnnotationCreate(BaseModel):
    content: str = Field(..., min_length=1)
    annotation_type: str = Field("comment", pattern="^(comment|highlight|note)$")
    position: dict = {}
    color: Optional[str] = Field(None, pattern=r"^#[0-9A-Fa-f]{6}$")

class EditorPresence(BaseModel):
    user_name: Optional[str] = Field(None, max_length=200)
    cursor_position: Optional[dict] = None

class FolderCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=300)
    parent_id: Optional[str] = None

class FolderMove(BaseModel):
    parent_id: Optional[str] = None


def _doc_out(d: Document, include_content: bool = False) -> dict:
    data = {
        "id": d.id,
        "title": d.title,
        "filename": d.filename,
        "mimeType": d.mime_type,
        "size": d.size,
        "version": d.version,
        "folderId": d.folder_id,
        "ownerId": d.owner_id,
        "tags": d.tags or [],
        "metadata": d.doc_metadata or {},
        "lastModifiedAt": iso(d.last_modified_at),
        "createdAt": iso(d.created_at),
    }
    if include_content:
        data["content"] = d.content
    return data

def _annotation_out(a: DocumentAnnotation) -> dict:
    return {
        "id": a.id,
        "documentId": a.document_id,
        "userId": a.user_id,
        "annotationType": a.annotation_type,
        "content": a.content,
        "position": a.position or {},
        "color": a.color,
        "resolved": bool(a.resolved),
        "resolvedBy": a.resolved_by,
        "resolvedAt": iso(a.resolved_at),
        "createdAt": iso(a.created_at),
    }

def _folder_out(f: Folder) -> dict:
    return {"id": f.id, "name": f.name, "parentId": f.parent_id, "ownerId": f.owner_id, "createdAt": iso(f.created_at)}


# ── Folders ──────────────────────────────────────────────────

@router.post("/folders", status_code=201)
async def create_folder(
    req: FolderCreate,
    user: CurrentUser = Depends(require_permission("documents:write")),
    db: AsyncSession = Depends(get_db_session),
):
    folder = await DocumentService(db).create_folder(req.name, user.id, req.parent_id)
    return {"success": True, "data": _folder_out(folder)}


@router.get("/folders")
async def list_folders(
    parent_id: Optional[str] = None,
    user: CurrentUser = Depends(require_permission("documents:read")),
    db: AsyncSession = Depends(get_db_session),
):
    folders = await DocumentService(db).list_folders(user.id, parent_id)
    return {"success": True, "data": [_folder_out(f) for f in folders]}


@router.post("/folders/{folder_id}/move")
async def move_folder(
    folder_id: str,
    req: FolderMove,
    user: CurrentUser = Depends(require_permission("documents:write")),
    db: AsyncSession = Depends(get_db_session),
):
    folder = await DocumentService(db).move_folder(folder_id, req.parent_id)
    return {"success": True, "data": _folder_out(folder)}


@router.get("/folders/{folder_id}/path")
async def folder_path(
    folder_id: str,
    user: CurrentUser = Depends(require_permission("documents:read")),
    db: AsyncSession = Depends(get_db_session),
):
    return {"success": True, "data": await DocumentService(db).folder_path(folder_id)}


# ── Annotations by id ────────────────────────────────────────

@router.post("/annotations/{annotation_id}/resolve")
async def resolve_annotation(
    annotation_id: str,
    user: CurrentUser = Depends(require_permission("documents:write")),
    db: AsyncSession = Depends(get_db_session),
):
    annotation = await DocumentService(db).resolve_annotation(annotation_id, user.id)
    return {"success": True, "data": _annotation_out(annotation)}


@router.delete("/annotations/{annotation_id}")
async def delete_annotation(
    annotation_id: str,
    user: CurrentUser = Depends(require_permission("documents:write")),
    db: AsyncSession = Depends(get_db_session),
):
    await DocumentService(db).delete_annotation(annotation_id, user.id)
    return {"success": True, "message": "Annotation deleted"}


# ── Documents ────────────────────────────────────────────────

@router.post("", status_code=201)
async def create_document(
    req: DocumentCreate,
    user: CurrentUser = Depends(require_permission("documents:write")),
    db: AsyncSession = Depends(get_db_session),
):
    document = await DocumentService(db).create_document(
        user.id, req.title, req.filename, req.content,
        mime_type=req.mime_type, folder_id=req.folder_id, tags=req.tags, metadata=req.metadata,
    )
    return {"success": True, "data": _doc_out(document, include_content=True)}


@router.get("")
async def list_documents(
    folder_id: Optional[str] = None,
    mine: bool = False,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(require_permission("documents:read")),
    db: AsyncSession = Depends(get_db_session),
):
    documents = await DocumentService(db).list_documents(
        owner_id=user.id if mine else None, folder_id=folder_id, limit=limit, offset=offset,
    )
    return {"success": True, "data": [_doc_out(d) for d in documents]}


@router.get("/{document_id}")
async def get_document(
    document_id: str,
    user: CurrentUser = Depends(require_permission("documents:read")),
    db: AsyncSession = Depends(get_db_session),
):
    document = await DocumentService(db).get_document(document_id)
    return {
        "success": True,
        "data": {**_doc_out(document, include_content=True), "activeEditors": active_editors(document_id)},
    }


@router.patch("/{document_id}")
async def update_document(
    document_id: str,
    req: DocumentUpdate,
    user: CurrentUser = Depends(require_permission("documents:write")),
    db: AsyncSession = Depends(get_db_session),
):
    updates = req.model_dump(exclude_unset=True)
    description = updates.pop("change_description", None)
    document = await DocumentService(db).update_document(document_id, user.id, updates, description)
    return {"success": True, "data": _doc_out(document, include_content=True)}


@router.delete("/{document_id}")
async def delete_document(
    document_id: str,
    user: CurrentUser = Depends(require_permission("documents:write")),
    db: AsyncSession = Depends(get_db_session),
):
    await DocumentService(db).delete_document(document_id)
    return {"success": True, "message": "Document deleted"}


# ── Versions ─────────────────────────────────────────────────

@router.post("/{document_id}/versions", status_code=201)
async def create_version(
    document_id: str,
    req: VersionCreate,
    user: CurrentUser = Depends(require_permission("documents:write")),
    db: AsyncSession = Depends(get_db_session),
):
    version = await DocumentService(db).create_version(document_id, user.id, req.change_description, req.change_type)
    return {"success": True, "data": version_to_dict(version)}


@router.get("/{document_id}/versions")
async def list_versions(
    document_id: str,
    user: CurrentUser = Depends(require_permission("documents:read")),
    db: AsyncSession = Depends(get_db_session),
):
    versions = await DocumentService(db).list_versions(document_id)
    return {"success": True, "data": [version_to_dict(v) for v in versions]}


@router.get("/{document_id}/versions/stats")
async def version_stats(
    document_id: str,
    user: CurrentUser = Depends(require_permission("documents:read")),
    db: AsyncSession = Depends(get_db_session),
):
    return {"success": True, "data": await DocumentService(db).version_stats(document_id)}


@router.get("/{document_id}/versions/compare")
async def compare_versions(
    document_id: str,
    from_version: int = Query(..., alias="from", ge=1),
    to_version: int = Query(..., alias="to", ge=1),
    user: CurrentUser = Depends(require_permission("documents:read")),
    db: AsyncSession = Depends(get_db_session),
):
    comparison = await DocumentService(db).compare_versions(document_id, from_version, to_version)
    return {"success": True, "data": comparison}


@router.post("/{document_id}/versions/cleanup")
async def cleanup_versions(
    document_id: str,
    keep: int = Query(DEFAULT_KEEP_VERSIONS, ge=1),
    user: CurrentUser = Depends(require_permission("documents:write")),
    db: AsyncSession = Depends(get_db_session),
):
    removed = await DocumentService(db).cleanup_versions(document_id, keep)
    return {"success": True, "data": {"removed": removed}}


@router.get("/{document_id}/versions/{version_number}")
async def get_version(
    document_id: str,
    version_number: int,
    user: CurrentUser = Depends(require_permission("documents:read")),
    db: AsyncSession = Depends(get_db_session),
):
    version = await DocumentService(db).get_version(document_id, version_number)
    return {"success": True, "data": version_to_dict(version, include_content=True)}


@router.post("/{document_id}/versions/{version_number}/restore")
async def restore_version(
    document_id: str,
    version_number: int,
    user: CurrentUser = Depends(require_permission("documents:write")),
    db: AsyncSession = Depends(get_db_session),
):
    document = await DocumentService(db).restore_version(document_id, version_number, user.id)
    return {"success": True, "data": _doc_out(document, include_content=True)}


@router.delete("/{document_id}/versions/{version_number}")
async def delete_version(
    document_id: str,
    version_number: int,
    user: CurrentUser = Depends(require_permission("documents:write")),
    db: AsyncSession = Depends(get_db_session),
):
    await DocumentService(db).delete_version(document_id, version_number)
    return {"success": True, "message": f"Version {version_number} deleted"}


# ── Annotations & presence ───────────────────────────────────

@router.post("/{document_id}/annotations", status_code=201)
async def add_annotation(
    document_id: str,
    req: AnnotationCreate,
    user: CurrentUser = Depends(require_permission("documents:write")),
    db: AsyncSession = Depends(get_db_session),
):
    annotation = await DocumentService(db).add_annotation(
        document_id, user.id, req.content, req.annotation_type, req.position, req.color,
    )
    return {"success": True, "data": _annotation_out(annotation)}


@router.get("/{document_id}/annotations")
async def list_annotations(
    document_id: str,
    include_resolved: bool = True,
    user: CurrentUser = Depends(require_permission("documents:read")),
    db: AsyncSession = Depends(get_db_session),
):
    annotations = await DocumentService(db).list_annotations(document_id, include_resolved)
    return {"success": True, "data": [_annotation_out(a) for a in annotations]}


@router.post("/{document_id}/editors")
async def join_editing(
    document_id: str,
    req: Optional[EditorPresence] = None,
    user: CurrentUser = Depends(require_permission("documents:read")),
    db: AsyncSession = Depends(get_db_session),
):
    await DocumentService(db).get_document(document_id)
    req = req or EditorPresence()
    editors = touch_editor(
        document_id, user.id,
        user_name=req.user_name or user.display_name,
        cursor_position=req.cursor_position,
    )
    return {"success": True, "data": editors}


@router.delete("/{document_id}/editors")
async def leave_editing(
    document_id: str,
    user: CurrentUser = Depends(require_permission("documents:read")),
):
    leave_editor(document_id, user.id)
    return {"success": True, "data": active_editors(document_id)}


@router.get("/{document_id}/editors")
async def list_editors(
    document_id: str,
    user: CurrentUser = Depends(require_permission("documents:read")),
):
    return {"success": True, "data": active_editors(document_id)}
