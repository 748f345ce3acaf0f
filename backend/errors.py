# errors.py — Platform error taxonomy
# Every service raises one of these; main.py renders them as
# {"success": false, "error": <code>, "message": <text>}.

from typing import Any, Dict, Optional


class PlatformError(Exception):
    """Base class for all expected platform failures"""

    code = "PLATFORM_ERROR"
    http_status = 500

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"success": False, "error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(PlatformError):
    code = "VALIDATION_ERROR"
    http_status = 400


class UnknownArtifactKindError(ValidationError):
    code = "UNKNOWN_ARTIFACT_KIND"


class FileFormatError(ValidationError):
    code = "FILE_FORMAT_ERROR"


class NotFoundError(PlatformError):
    code = "NOT_FOUND"
    http_status = 404


class ConflictError(PlatformError):
    code = "CONFLICT"
    http_status = 409


class AuthError(PlatformError):
    code = "UNAUTHORIZED"
    http_status = 401


class ForbiddenError(AuthError):
    code = "FORBIDDEN"
    http_status = 403


class IntegrityError(PlatformError):
    code = "INTEGRITY_ERROR"
    http_status = 409


class StorageError(PlatformError):
    """Filesystem or database failure"""
    code = "IO_ERROR"
    http_status = 500


class GitCommandError(StorageError):
    code = "GIT_ERROR"


class DeliveryError(PlatformError):
    code = "DELIVERY_ERROR"
    http_status = 502


class ExternalServiceError(PlatformError):
    code = "EXTERNAL_SERVICE_ERROR"
    http_status = 502


class ReportTimeoutError(PlatformError):
    code = "REPORT_TIMEOUT"
    http_status = 504
