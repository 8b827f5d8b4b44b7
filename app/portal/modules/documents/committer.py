from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any

from botocore import exceptions as botocore_exceptions

from app.portal.modules.documents.errors import (
    AUTH_ERROR,
    BUCKET_ERROR,
    CONNECTION_ERROR,
    UNKNOWN_ERROR,
    CommitError,
)
from app.portal.modules.documents.metadata import RelatedItem
from app.portal.modules.documents.staging import GENERIC_MIME_TYPE, StagingHandle, file_extension, resolve_mime_type
from app.portal.storage import Storage

logger = logging.getLogger(__name__)

OBJECT_KEY_PREFIX = "documents/"
DEFAULT_PRESIGN_EXPIRY = 24 * 60 * 60

_AUTH_CODES = frozenset(
    {"InvalidAccessKeyId", "SignatureDoesNotMatch", "InvalidToken", "ExpiredToken", "InvalidSecurity"}
)
_BUCKET_CODES = frozenset({"NoSuchBucket", "AllAccessDisabled", "AccessDenied", "InvalidBucketName", "404", "403"})
_CONNECTION_MARKERS = ("ECONNREFUSED", "ETIMEDOUT", "Connection refused", "timed out")


def classify_storage_error(exc: BaseException) -> str:
    """Map an object-store failure onto the commit error taxonomy."""
    if isinstance(exc, (botocore_exceptions.NoCredentialsError, botocore_exceptions.PartialCredentialsError)):
        return AUTH_ERROR
    if isinstance(exc, botocore_exceptions.ClientError):
        code = str(exc.response.get("Error", {}).get("Code", ""))
        if code in _AUTH_CODES:
            return AUTH_ERROR
        if code in _BUCKET_CODES:
            return BUCKET_ERROR
        return UNKNOWN_ERROR
    if isinstance(
        exc,
        (botocore_exceptions.ConnectionError, botocore_exceptions.HTTPClientError, TimeoutError, ConnectionError),
    ):
        return CONNECTION_ERROR
    msg = str(exc)
    if any(m in msg for m in _CONNECTION_MARKERS):
        return CONNECTION_ERROR
    return UNKNOWN_ERROR


_MESSAGES = {
    CONNECTION_ERROR: "Cannot reach the storage server. Please check that it is running.",
    AUTH_ERROR: "Storage authentication failed. Please check the access credentials.",
    BUCKET_ERROR: "Storage bucket not found or access denied.",
}


@dataclass(frozen=True)
class CommitMetadata:
    category: str
    owner_id: int
    related_item: RelatedItem | None = None


@dataclass(frozen=True)
class CommittedObject:
    object_name: str
    bucket_name: str
    url: str | None
    original_name: str
    mime_type: str
    file_size: int
    file_extension: str
    category: str
    related_item: RelatedItem | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "objectName": self.object_name,
            "bucketName": self.bucket_name,
            "url": self.url,
            "metadata": {
                "originalName": self.original_name,
                "mimeType": self.mime_type,
                "fileSize": self.file_size,
                "fileExtension": self.file_extension,
                "category": self.category,
                "relatedItemId": self.related_item.id if self.related_item else None,
                "relatedItemType": self.related_item.type if self.related_item else None,
            },
        }


def new_object_key() -> str:
    return f"{OBJECT_KEY_PREFIX}{uuid.uuid4().hex}"


class ObjectStoreCommitter:
    """
    Moves a staged upload into the object store.

    The staging file is removed only after the store confirmed the write; on
    failure it is left for the caller to discard (or for the sweep to reclaim).
    """

    def __init__(self, storage: Storage, *, presign_expiry: int = DEFAULT_PRESIGN_EXPIRY) -> None:
        self.storage = storage
        self.presign_expiry = presign_expiry
        self._bucket_ready = False
        self._bucket_lock = threading.Lock()

    @property
    def bucket_ready(self) -> bool:
        return self._bucket_ready

    def ensure_bucket(self) -> bool:
        """Idempotent; returns False (and logs) instead of raising when the store is unreachable."""
        if self._bucket_ready:
            return True
        with self._bucket_lock:
            if self._bucket_ready:
                return True
            try:
                self.storage.ensure_bucket()
            except Exception as e:
                logger.error(
                    "Object store bucket check failed (bucket=%s, type=%s): %s",
                    self.storage.bucket,
                    classify_storage_error(e),
                    e,
                )
                return False
            self._bucket_ready = True
            logger.info("Object store bucket '%s' ready", self.storage.bucket)
            return True

    def _require_bucket(self) -> None:
        if self._bucket_ready:
            return
        try:
            with self._bucket_lock:
                if not self._bucket_ready:
                    self.storage.ensure_bucket()
                    self._bucket_ready = True
        except Exception as e:
            error_type = classify_storage_error(e)
            raise CommitError(error_type, _MESSAGES.get(error_type, str(e) or "Bucket check failed")) from e

    def commit(self, handle: StagingHandle, meta: CommitMetadata) -> CommittedObject:
        if handle is None or not handle.temp_path:
            raise CommitError(UNKNOWN_ERROR, "No valid file data provided")

        self._require_bucket()

        mime_type = handle.mime_type
        if not mime_type or mime_type == GENERIC_MIME_TYPE:
            mime_type = resolve_mime_type(handle.original_name)
        extension = file_extension(handle.original_name).lstrip(".")
        key = new_object_key()
        related = meta.related_item
        store_metadata = {
            "original-filename": handle.original_name,
            "file-extension": extension,
            "file-size": str(handle.size),
            "uploaded-by": str(meta.owner_id),
            "category": meta.category,
            "related-item-id": related.id if related else "",
            "related-item-type": related.type if related else "",
        }

        try:
            self.storage.put_file(key, handle.temp_path, content_type=mime_type, metadata=store_metadata)
        except Exception as e:
            error_type = classify_storage_error(e)
            logger.error("Object store write failed (key=%s, type=%s): %s", key, error_type, e)
            raise CommitError(error_type, _MESSAGES.get(error_type, str(e) or "Upload failed")) from e

        url: str | None
        try:
            url = self.storage.presign_get(key, expires_in=self.presign_expiry, download_name=handle.original_name)
        except Exception as e:
            # Stored fine; a fresh URL can be issued later.
            logger.warning("Presign after commit failed (key=%s): %s", key, e)
            url = None

        try:
            handle.temp_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to delete staging file %s after commit: %s", handle.temp_path, e)

        logger.info("Committed %s as %s (%s bytes)", handle.original_name, key, handle.size)
        return CommittedObject(
            object_name=key,
            bucket_name=self.storage.bucket,
            url=url,
            original_name=handle.original_name,
            mime_type=mime_type,
            file_size=handle.size,
            file_extension=extension,
            category=meta.category,
            related_item=related,
        )

    def delete_object(self, key: str) -> None:
        try:
            self.storage.delete(key)
        except Exception as e:
            error_type = classify_storage_error(e)
            raise CommitError(error_type, _MESSAGES.get(error_type, str(e) or "Delete failed")) from e
