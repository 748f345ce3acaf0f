# routers/artifacts.py — Low-code artifact export/import against Git workspaces
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from artifact_sync import ArtifactSyncService
from auth import require_permission, CurrentUser
from database import get_db_session
from git_workspace import GitWorkspace, get_workspace

router = APIRouter(prefix="/lowcode/api/artifacts", tags=["Artifacts"])


# ============================================================
# SCHEMAS
# ============================================================

class ExportArtifactRequest(BaseModel):
    artifactType: str = Field(..., min_length=1)
    artifactId: str = Field(..., min_length=1)
    repositoryId: str = Field(..., min_length=1)


class ExportApplicationRequest(BaseModel):
    applicationId: str = Field(..., min_length=1)
    repositoryId: str = Field(..., min_length=1)


class ImportArtifactRequest(BaseModel):
    repositoryId: str = Field(..., min_length=1)
    relativePath: str = Field(..., min_length=1)
    overwrite: bool = False
    createNew: bool = False
    applicationId: Optional[str] = None


class ImportApplicationRequest(BaseModel):
    repositoryId: str = Field(..., min_length=1)
    applicationId: Optional[str] = None
    overwrite: bool = False


class PreambleRequest(BaseModel):
    repositoryId: str = Field(..., min_length=1)
    applicationId: Optional[str] = None


def _service(db: AsyncSession, workspace: GitWorkspace) -> ArtifactSyncService:
    return ArtifactSyncService(db, workspace)


# ============================================================
# EXPORT
# ============================================================

@router.post("/export")
async def export_artifact(
    req: ExportArtifactRequest,
    user: CurrentUser = Depends(require_permission("artifacts:write")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
):
    result = await _service(db, workspace).export_artifact(req.artifactType, req.artifactId, req.repositoryId)
    return {"success": True, "data": result}


@router.post("/export-application")
async def export_application(
    req: ExportApplicationRequest,
    user: CurrentUser = Depends(require_permission("artifacts:write")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
):
    result = await _service(db, workspace).export_application(req.applicationId, req.repositoryId)
    return {"success": result["success"], "data": result}


# ============================================================
# IMPORT
# ============================================================

@router.post("/import")
async def import_artifact(
    req: ImportArtifactRequest,
    user: CurrentUser = Depends(require_permission("artifacts:write")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
):
    result = await _service(db, workspace).import_artifact(
        req.repositoryId, req.relativePath,
        overwrite=req.overwrite, create_new=req.createNew, application_id=req.applicationId,
    )
    if result["conflict"]:
        return JSONResponse(status_code=409, content={
            "success": False,
            "error": "CONFLICT",
            "message": f"Import conflict ({result['conflictDetails']['type']}): {req.relativePath}",
            "conflictDetails": result["conflictDetails"],
            "artifact": result["artifact"],
        })
    return {"success": True, "data": result}


@router.post("/import-application")
async def import_application(
    req: ImportApplicationRequest,
    user: CurrentUser = Depends(require_permission("artifacts:write")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
):
    result = await _service(db, workspace).import_application(
        req.repositoryId, application_id=req.applicationId, overwrite=req.overwrite,
    )
    return {"success": result["success"], "data": result}


# ============================================================
# INSPECTION
# ============================================================

@router.get("/changed-files")
async def changed_files(
    repositoryId: str = Query(...),
    applicationId: str = Query(...),
    user: CurrentUser = Depends(require_permission("artifacts:read")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
):
    files = await _service(db, workspace).get_changed_files(repositoryId, applicationId)
    return {"success": True, "data": files}


@router.get("/file-content")
async def file_content(
    repositoryId: str = Query(...),
    relativePath: str = Query(...),
    user: CurrentUser = Depends(require_permission("artifacts:read")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
):
    content = await _service(db, workspace).get_file_content(repositoryId, relativePath)
    return {"success": True, "data": content}


@router.post("/preamble")
async def generate_preamble(
    req: PreambleRequest,
    user: CurrentUser = Depends(require_permission("artifacts:write")),
    db: AsyncSession = Depends(get_db_session),
    workspace: GitWorkspace = Depends(get_workspace),
):
    written = await _service(db, workspace).generate_preamble(req.repositoryId, req.applicationId)
    return {"success": True, "data": {"files": written}}
