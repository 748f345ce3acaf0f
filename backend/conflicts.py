# conflicts.py — Decide whether a file payload may overwrite a database record
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import artifact_codec as codec
from models import as_utc, iso

VERSION_MISMATCH = "version_mismatch"
DATABASE_NEWER = "database_newer"


@dataclass
class ConflictDecision:
    has_conflict: bool
    type: Optional[str]
    existing_version: Optional[str]
    file_version: Optional[str]
    existing_updated_at: Optional[datetime]
    file_updated_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hasConflict": self.has_conflict,
            "type": self.type,
            "existingVersion": self.existing_version,
            "fileVersion": self.file_version,
            "existingUpdatedAt": iso(self.existing_updated_at),
            "fileUpdatedAt": iso(self.file_updated_at),
        }


def detect_conflict(existing, payload: Dict[str, Any]) -> ConflictDecision:
    """Version mismatch wins over timestamps; a file older than the record is a conflict.

    Never mutates anything.
    """
    existing_updated = as_utc(existing.updated_at)
    file_updated = codec.parse_timestamp(payload.get("updatedAt"))
    decision = ConflictDecision(
        has_conflict=False,
        type=None,
        existing_version=existing.version,
        file_version=payload.get("version"),
        existing_updated_at=existing_updated,
        file_updated_at=file_updated,
    )

    if existing.version != payload.get("version"):
        decision.has_conflict = True
        decision.type = VERSION_MISMATCH
        return decision

    if existing_updated is not None and (file_updated is None or file_updated < existing_updated):
        decision.has_conflict = True
        decision.type = DATABASE_NEWER
    return decision
