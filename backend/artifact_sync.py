# artifact_sync.py — Export/import orchestration between the database and Git workspaces
"""
Drives the codec and the workspace for whole applications.

Exports are not transactional across artifacts: each artifact is written
independently and failures are collected in ``errors``. Imports commit per
artifact; a conflict is an outcome, not an exception.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

import artifact_codec as codec
import errors
from conflicts import detect_conflict
from git_workspace import GitWorkspace
from models import Application, Api, GitRepository, new_uuid

logger = logging.getLogger("exprsn.artifacts")


class ArtifactSyncService:
    """Round-trips low-code artifacts between the database and a repository tree"""

    def __init__(self, db: AsyncSession, workspace: Optional[GitWorkspace] = None):
        self.db = db
        self.workspace = workspace or GitWorkspace()

    # --------------------------------------------------------
    # Lookups
    # --------------------------------------------------------

    async def get_repository(self, repository_id: str) -> GitRepository:
        repository = await self.db.get(GitRepository, repository_id)
        if repository is None or repository.deleted_at is not None:
            raise errors.NotFoundError(f"Repository not found: {repository_id}")
        return repository

    async def get_application(self, application_id: str) -> Application:
        application = await self.db.get(Application, application_id)
        if application is None or application.deleted_at is not None:
            raise errors.NotFoundError(f"Application not found: {application_id}")
        return application

    async def get_artifact(self, kind: str, artifact_id: str):
        model = codec.model_for(kind)
        artifact = await self.db.get(model, artifact_id)
        if artifact is None or artifact.deleted_at is not None:
            raise errors.NotFoundError(f"{kind} not found: {artifact_id}")
        return artifact

    async def list_application_artifacts(self, application_id: str) -> List[Tuple[str, Any]]:
        artifacts = []
        for kind in codec.ARTIFACT_KINDS:
            model = codec.ARTIFACT_MODELS[kind]
            result = await self.db.execute(
                select(model)
                .where(model.application_id == application_id, model.deleted_at.is_(None))
                .order_by(model.name)
            )
            artifacts.extend((kind, record) for record in result.scalars().all())
        return artifacts

    # --------------------------------------------------------
    # Export
    # --------------------------------------------------------

    async def export_artifact(self, kind: str, artifact_id: str, repository_id: str) -> Dict[str, Any]:
        repository = await self.get_repository(repository_id)
        artifact = await self.get_artifact(kind, artifact_id)
        return self._write_artifact(repository, kind, artifact)

    def _write_artifact(self, repository: GitRepository, kind: str, artifact) -> Dict[str, Any]:
        relative_path = codec.path_for(kind, artifact)
        file_path = self.workspace.write_artifact_file(repository, relative_path, codec.to_file(kind, artifact))
        logger.info(f"Exported {kind}:{artifact.id} to {relative_path}")
        return {
            "success": True,
            "filePath": str(file_path),
            "relativePath": relative_path,
            "artifactId": artifact.id,
            "artifactType": kind,
        }

    async def export_application(self, application_id: str, repository_id: str) -> Dict[str, Any]:
        results: Dict[str, Any] = {"success": True, "exportedFiles": [], "errors": []}
        repository = await self.get_repository(repository_id)

        try:
            application = await self.get_application(application_id)
            results["exportedFiles"].append(
                self._write_artifact(repository, codec.APPLICATION_KIND, application)
            )
        except errors.PlatformError as e:
            logger.error(f"Application export failed: {application_id}: {e.message}")
            results["success"] = False
            results["errors"].append({"artifactType": codec.APPLICATION_KIND, "artifactId": application_id, "error": e.message})
            return results

        for kind, artifact in await self.list_application_artifacts(application_id):
            try:
                results["exportedFiles"].append(self._write_artifact(repository, kind, artifact))
            except errors.PlatformError as e:
                results["success"] = False
                results["errors"].append({"artifactType": kind, "artifactId": artifact.id, "error": e.message})

        logger.info(
            f"Exported application {application_id}: {len(results['exportedFiles'])} files, "
            f"{len(results['errors'])} errors"
        )
        return results

    async def generate_preamble(self, repository_id: str, application_id: Optional[str] = None) -> List[str]:
        repository = await self.get_repository(repository_id)
        application = await self.get_application(application_id) if application_id else None
        return self.workspace.generate_repository_preamble(repository, application)

    # --------------------------------------------------------
    # Import
    # --------------------------------------------------------

    async def import_artifact(
        self,
        repository_id: str,
        relative_path: str,
        overwrite: bool = False,
        create_new: bool = False,
        application_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        repository = await self.get_repository(repository_id)
        payload = self.workspace.read_artifact_file(repository, relative_path)
        kind = codec.detect_kind(relative_path, payload)
        if kind == codec.APPLICATION_KIND:
            raise errors.ValidationError("application.json is imported with import-application")

        model = codec.ARTIFACT_MODELS[kind]
        existing = await self.db.get(model, payload["id"]) if payload.get("id") else None
        if existing is not None and existing.deleted_at is not None:
            existing = None
        # A record owned by another application is not a match for this import
        if existing is not None and application_id and existing.application_id != application_id:
            existing = None

        if existing is not None and not overwrite and not create_new:
            decision = detect_conflict(existing, payload)
            if decision.has_conflict:
                logger.info(f"Conflict importing {relative_path}: {decision.type}")
                return {
                    "success": False,
                    "conflict": True,
                    "conflictDetails": decision.to_dict(),
                    "artifact": codec.to_file(kind, existing),
                    "created": False,
                    "updated": False,
                }

        fields = codec.from_file(kind, payload, application_id)
        if create_new or existing is None:
            artifact = await self._create_artifact(kind, payload, fields, application_id)
            created = True
        else:
            artifact = await self._update_artifact(kind, existing, fields)
            created = False

        logger.info(f"Imported {kind} from {relative_path} ({'created' if created else 'updated'})")
        return {
            "success": True,
            "conflict": False,
            "artifact": codec.to_file(kind, artifact),
            "artifactType": kind,
            "created": created,
            "updated": not created,
        }

    async def _ensure_unique(self, kind: str, application_id: str, fields: Dict[str, Any],
                             exclude_id: Optional[str] = None) -> None:
        model = codec.ARTIFACT_MODELS[kind]
        stmt = select(model.id).where(
            model.application_id == application_id,
            model.name == fields["name"],
            model.deleted_at.is_(None),
        )
        if exclude_id:
            stmt = stmt.where(model.id != exclude_id)
        if (await self.db.execute(stmt)).first():
            raise errors.ConflictError(f"{kind} named '{fields['name']}' already exists in application {application_id}")

        if kind == "api" and fields.get("path"):
            stmt = select(Api.id).where(
                Api.application_id == application_id,
                Api.path == fields["path"],
                Api.method == fields.get("method", "GET"),
                Api.deleted_at.is_(None),
            )
            if exclude_id:
                stmt = stmt.where(Api.id != exclude_id)
            if (await self.db.execute(stmt)).first():
                raise errors.ConflictError(
                    f"API {fields.get('method', 'GET')} {fields['path']} already exists in application {application_id}"
                )

    async def _create_artifact(self, kind: str, payload: Dict[str, Any], fields: Dict[str, Any],
                               application_id: Optional[str]):
        if application_id:
            fields["application_id"] = application_id
        target_app = fields.get("application_id")
        if not target_app:
            raise errors.ValidationError(f"Cannot create {kind} without an applicationId")
        await self.get_application(target_app)
        await self._ensure_unique(kind, target_app, fields)

        if kind == "datasource" and "connection_config" in fields:
            fields["connection_config"] = codec.restore_connection_config(fields["connection_config"])

        model = codec.ARTIFACT_MODELS[kind]
        artifact_id = payload.get("id")
        if not artifact_id or await self.db.get(model, artifact_id) is not None:
            artifact_id = new_uuid()

        artifact = model(id=artifact_id, **fields)
        self.db.add(artifact)
        await self._commit()
        return artifact

    async def _update_artifact(self, kind: str, existing, fields: Dict[str, Any]):
        # Records stay in their own application
        fields.pop("application_id", None)
        if kind == "datasource" and "connection_config" in fields:
            fields["connection_config"] = codec.restore_connection_config(
                fields["connection_config"], existing.connection_config,
            )
        if "name" in fields and fields["name"] != existing.name:
            await self._ensure_unique(kind, existing.application_id, fields, exclude_id=existing.id)
        elif kind == "api" and ("path" in fields or "method" in fields):
            merged = {"name": existing.name, "path": fields.get("path", existing.path),
                      "method": fields.get("method", existing.method)}
            await self._ensure_unique(kind, existing.application_id, merged, exclude_id=existing.id)

        for attr, value in fields.items():
            setattr(existing, attr, value)
        await self._commit()
        return existing

    async def _commit(self) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise errors.StorageError(f"Database write failed: {e.__class__.__name__}")

    async def import_application(
        self,
        repository_id: str,
        application_id: Optional[str] = None,
        overwrite: bool = False,
    ) -> Dict[str, Any]:
        results: Dict[str, Any] = {
            "success": True,
            "applicationId": application_id,
            "importedArtifacts": [],
            "conflicts": [],
            "errors": [],
        }
        repository = await self.get_repository(repository_id)

        try:
            payload = self.workspace.read_artifact_file(repository, codec.APPLICATION_FILE)
            fields = codec.from_file(codec.APPLICATION_KIND, payload)
            fields.pop("updated_at", None)
            if application_id:
                application = await self.get_application(application_id)
                for attr in ("name", "display_name", "description", "version", "settings", "dependencies"):
                    if attr in fields:
                        setattr(application, attr, fields[attr])
            else:
                application = Application(
                    **fields,
                    git_repository=repository.remote_url or repository.name,
                    git_branch=repository.default_branch or "main",
                )
                self.db.add(application)
            await self._commit()
        except errors.PlatformError as e:
            logger.error(f"Application import failed from {repository.name}: {e.message}")
            results["success"] = False
            results["errors"].append({"type": codec.APPLICATION_KIND, "error": e.message})
            return results

        target_id = application.id
        results["applicationId"] = target_id

        for kind, folder in codec.FOLDERS.items():
            try:
                files = self.workspace.list_json_files(repository, folder)
            except FileNotFoundError:
                continue
            except OSError as e:
                results["success"] = False
                results["errors"].append({"folder": folder, "error": str(e)})
                continue

            for filename in files:
                relative_path = f"{folder}/{filename}"
                try:
                    result = await self.import_artifact(
                        repository_id, relative_path, overwrite=overwrite, application_id=target_id,
                    )
                except (errors.PlatformError, SQLAlchemyError) as e:
                    await self.db.rollback()
                    message = e.message if isinstance(e, errors.PlatformError) else str(e)
                    results["success"] = False
                    results["errors"].append({"relativePath": relative_path, "error": message})
                    continue

                if result["conflict"]:
                    results["conflicts"].append({
                        "relativePath": relative_path,
                        "conflictDetails": result["conflictDetails"],
                    })
                else:
                    results["importedArtifacts"].append({
                        "relativePath": relative_path,
                        "artifactId": result["artifact"]["id"],
                        "artifactType": result["artifactType"],
                        "created": result["created"],
                        "updated": result["updated"],
                    })

        logger.info(
            f"Imported application {target_id}: {len(results['importedArtifacts'])} artifacts, "
            f"{len(results['conflicts'])} conflicts, {len(results['errors'])} errors"
        )
        return results

    # --------------------------------------------------------
    # Inspection
    # --------------------------------------------------------

    async def get_changed_files(self, repository_id: str, application_id: str) -> List[Dict[str, Any]]:
        repository = await self.get_repository(repository_id)
        await self.get_application(application_id)
        artifacts = await self.list_application_artifacts(application_id)
        return self.workspace.list_changed_files(repository, artifacts)

    async def get_file_content(self, repository_id: str, relative_path: str) -> Dict[str, Any]:
        repository = await self.get_repository(repository_id)
        if relative_path.endswith(".json"):
            payload = self.workspace.read_artifact_file(repository, relative_path)
            return {"relativePath": relative_path, "content": payload, "type": payload.get("type")}
        return {"relativePath": relative_path, "content": self.workspace.read_text(repository, relative_path), "type": None}
