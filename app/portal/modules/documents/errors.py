from __future__ import annotations

from typing import Any

PROCESSING_ERROR = "PROCESSING_ERROR"
CONNECTION_ERROR = "CONNECTION_ERROR"
AUTH_ERROR = "AUTH_ERROR"
BUCKET_ERROR = "BUCKET_ERROR"
UNKNOWN_ERROR = "UNKNOWN_ERROR"

ERROR_TYPES = (PROCESSING_ERROR, CONNECTION_ERROR, AUTH_ERROR, BUCKET_ERROR, UNKNOWN_ERROR)

# ValidationError reasons
NO_FILE = "NoFile"
TOO_LARGE = "TooLarge"
DISALLOWED_TYPE = "DisallowedType"
INVALID_CATEGORY = "InvalidCategory"
INVALID_FIELD = "InvalidField"


class DocumentError(Exception):
    """Base for failures crossing the document subsystem boundary."""

    kind = "document"
    error_type = UNKNOWN_ERROR
    retryable = False
    http_status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "errorType": self.error_type,
            "errorKind": self.kind,
            "retryable": self.retryable,
        }


class ValidationError(DocumentError):
    """User-correctable; raised before any disk or network I/O."""

    kind = "validation"
    error_type = PROCESSING_ERROR
    http_status = 400

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["reason"] = self.reason
        return d


class DocumentNotFound(DocumentError):
    kind = "not_found"
    error_type = PROCESSING_ERROR
    http_status = 404


class StagingError(DocumentError):
    """Local disk write failed."""

    kind = "staging"
    error_type = PROCESSING_ERROR
    retryable = True
    http_status = 500


class CommitError(DocumentError):
    kind = "commit"
    http_status = 503

    def __init__(self, error_type: str, message: str) -> None:
        super().__init__(message)
        if error_type not in ERROR_TYPES:
            error_type = UNKNOWN_ERROR
        self.error_type = error_type
        self.retryable = error_type in (CONNECTION_ERROR, UNKNOWN_ERROR)
        if error_type == UNKNOWN_ERROR:
            self.http_status = 500


class RegistryError(DocumentError):
    """
    Catalog write failed after the object store accepted the bytes.
    The object at `storage_key` now has no catalog entry; reconcile, don't blindly retry.
    """

    kind = "registry"
    error_type = UNKNOWN_ERROR
    http_status = 500

    def __init__(self, message: str, *, storage_key: str | None = None) -> None:
        super().__init__(message)
        self.storage_key = storage_key

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["objectName"] = self.storage_key
        return d
