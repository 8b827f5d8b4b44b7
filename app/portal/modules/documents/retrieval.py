from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, BinaryIO

from app.portal.modules.documents.committer import DEFAULT_PRESIGN_EXPIRY, classify_storage_error
from app.portal.modules.documents.errors import CommitError, DocumentNotFound
from app.portal.storage import ObjectNotFound, Storage

logger = logging.getLogger(__name__)

MAX_PRESIGN_EXPIRY = 7 * 24 * 60 * 60  # S3 SigV4 ceiling


def download_filename(original_name: str | None, extension: str | None, fallback: str) -> str:
    """The object key is opaque, so rebuild a friendly name from stored metadata."""
    name = (original_name or "").strip() or fallback.rsplit("/", 1)[-1]
    ext = (extension or "").strip().lstrip(".")
    if "." in name or not ext:
        return name
    return f"{name}.{ext}"


@dataclass(frozen=True)
class PresignedUrl:
    url: str
    object_name: str
    download_name: str
    expires_in: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "objectName": self.object_name,
            "downloadName": self.download_name,
            "expiresIn": self.expires_in,
        }


class RetrievalService:
    """
    Issues fresh time-limited URLs and download streams for stored objects.
    Stateless: safe to call concurrently without coordination.
    """

    def __init__(self, storage: Storage, *, default_expiry: int = DEFAULT_PRESIGN_EXPIRY) -> None:
        self.storage = storage
        self.default_expiry = default_expiry

    def _expiry(self, expires_in: int | None) -> int:
        if not expires_in or expires_in <= 0:
            return self.default_expiry
        return min(int(expires_in), MAX_PRESIGN_EXPIRY)

    def presign(
        self,
        object_name: str,
        *,
        expires_in: int | None = None,
        original_name: str | None = None,
        extension: str | None = None,
    ) -> PresignedUrl:
        """
        When the caller already knows the original name (from the catalog) the
        store is not consulted; otherwise the name comes from object metadata.
        """
        expiry = self._expiry(expires_in)
        try:
            if original_name is None:
                info = self.storage.head(object_name)
                original_name = info.metadata.get("original-filename")
                extension = extension or info.metadata.get("file-extension")
            name = download_filename(original_name, extension, object_name)
            url = self.storage.presign_get(object_name, expires_in=expiry, download_name=name)
        except ObjectNotFound as e:
            raise DocumentNotFound("Stored file not found") from e
        except Exception as e:
            error_type = classify_storage_error(e)
            logger.error("Presign failed (key=%s, type=%s): %s", object_name, error_type, e)
            raise CommitError(error_type, f"Failed to generate presigned URL: {e}") from e
        return PresignedUrl(url=url, object_name=object_name, download_name=name, expires_in=expiry)

    def open(self, object_name: str, *, original_name: str | None = None) -> tuple[BinaryIO, str, str]:
        """Return (stream, content_type, download_name)."""
        try:
            info = self.storage.head(object_name)
            stream = self.storage.open(object_name)
        except ObjectNotFound as e:
            raise DocumentNotFound("Stored file not found") from e
        except Exception as e:
            error_type = classify_storage_error(e)
            logger.error("Object read failed (key=%s, type=%s): %s", object_name, error_type, e)
            raise CommitError(error_type, f"Failed to get file: {e}") from e
        name = download_filename(
            original_name or info.metadata.get("original-filename"),
            info.metadata.get("file-extension"),
            object_name,
        )
        return stream, info.content_type, name
