from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, BinaryIO

from sqlalchemy.exc import SQLAlchemyError

from app.portal.modules.documents import registry, versions
from app.portal.modules.documents.committer import CommitMetadata, CommittedObject, ObjectStoreCommitter
from app.portal.modules.documents.errors import (
    INVALID_FIELD,
    NO_FILE,
    TOO_LARGE,
    CommitError,
    DocumentError,
    DocumentNotFound,
    RegistryError,
    UNKNOWN_ERROR,
    ValidationError,
)
from app.portal.modules.documents.metadata import metadata_from_document, parse_metadata
from app.portal.modules.documents.models import Document, DocumentVersion
from app.portal.modules.documents.retrieval import RetrievalService
from app.portal.modules.documents.staging import StagingHandle, UploadStager

if TYPE_CHECKING:
    from flask import Flask
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

UNEXPECTED_FAILURE = "Upload failed due to an unexpected server error."


@dataclass
class UploadRequest:
    stream: BinaryIO | None
    filename: str | None
    mime_type: str | None = None
    declared_size: int | None = None
    title: str | None = None
    description: str | None = None
    category: str | None = None
    tags: list[str] = field(default_factory=list)
    related_item_id: str | None = None
    related_item_type: str | None = None
    change_description: str | None = None


@dataclass
class UploadResult:
    success: bool
    document: Document | None = None
    version: DocumentVersion | None = None
    committed: CommittedObject | None = None
    error: DocumentError | None = None

    @property
    def http_status(self) -> int:
        if self.success:
            return 201
        return self.error.http_status if self.error else 500

    def to_dict(self) -> dict[str, Any]:
        if not self.success:
            err = self.error or DocumentError("Upload failed")
            return err.to_dict()
        out: dict[str, Any] = {"success": True, "id": self.document.id if self.document else None}
        if self.committed is not None:
            out.update(self.committed.to_dict())
        if self.version is not None:
            out["versionNumber"] = self.version.version_number
            out["versionId"] = self.version.id
        return out


@dataclass
class PurgeResult:
    document_id: int
    deleted_objects: list[str] = field(default_factory=list)
    failed_objects: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "id": self.document_id,
            "deletedObjects": self.deleted_objects,
            "failedObjects": self.failed_objects,
        }


class DocumentService:
    """
    Upload pipeline: stage -> commit -> version chain/catalog.

    Every failure comes back as an UploadResult with a typed error; nothing
    escapes to the caller. The catalog is written strictly after the object
    store confirmed the bytes.
    """

    def __init__(
        self,
        stager: UploadStager,
        committer: ObjectStoreCommitter,
        retrieval: RetrievalService,
    ) -> None:
        self.stager = stager
        self.committer = committer
        self.retrieval = retrieval

    @classmethod
    def from_app(cls, app: "Flask") -> "DocumentService":
        svc = app.extensions.get("document_service")
        if svc is None:
            raise RuntimeError("document_service not initialized")
        return svc

    def upload_new(self, s: "Session", owner_id: int, req: UploadRequest) -> UploadResult:
        try:
            self._precheck(req)
            title = (req.title or "").strip()
            if not title:
                raise ValidationError(INVALID_FIELD, "Title is required")
            meta = parse_metadata(
                req.category,
                related_item_id=req.related_item_id,
                related_item_type=req.related_item_type,
            )
            handle = self._stage(req)
            committed = self._commit(handle, CommitMetadata(meta.category, owner_id, meta.related_item))
            # Bytes are in the store from here on: any failure leaves an orphan.
            try:
                doc = registry.new_document(
                    owner_id=owner_id,
                    metadata=meta,
                    title=title[:255],
                    description=(req.description or "").strip() or None,
                    tags=req.tags,
                )
                v = versions.create_first_version(
                    s,
                    doc,
                    versions.VersionFile.from_committed(committed),
                    created_by=owner_id,
                    change_description=(req.change_description or "").strip() or "Initial upload",
                )
            except Exception as e:
                raise self._orphaned(s, committed, e) from e
            logger.info("Document %s created (v1, key=%s, owner=%s)", doc.id, committed.object_name, owner_id)
            return UploadResult(success=True, document=doc, version=v, committed=committed)
        except DocumentError as e:
            return UploadResult(success=False, error=e)
        except Exception:
            logger.exception("Unexpected upload failure (owner=%s)", owner_id)
            return UploadResult(success=False, error=CommitError(UNKNOWN_ERROR, UNEXPECTED_FAILURE))

    def upload_version(self, s: "Session", owner_id: int, document_id: int, req: UploadRequest) -> UploadResult:
        try:
            self._precheck(req)
            doc = registry.get_document(s, document_id, owner_id)
            if doc is None or doc.is_deleted:
                raise DocumentNotFound("Document not found")
            related = metadata_from_document(doc).related_item
            handle = self._stage(req)
            committed = self._commit(handle, CommitMetadata(doc.category, owner_id, related))
            try:
                v = versions.append_version(
                    s,
                    document_id,
                    versions.VersionFile.from_committed(committed),
                    owner_id=owner_id,
                    created_by=owner_id,
                    change_description=req.change_description,
                )
            except DocumentNotFound:
                # Deleted between our check and the allocation; nothing references the new object.
                self._discard_object(committed.object_name)
                raise
            except Exception as e:
                raise self._orphaned(s, committed, e) from e
            # The version is committed; never report a retryable failure past this point.
            logger.info("Document %s now at v%s (key=%s)", document_id, v.version_number, committed.object_name)
            return UploadResult(success=True, document=doc, version=v, committed=committed)
        except DocumentError as e:
            return UploadResult(success=False, error=e)
        except Exception:
            logger.exception("Unexpected version upload failure (document=%s)", document_id)
            return UploadResult(success=False, error=CommitError(UNKNOWN_ERROR, UNEXPECTED_FAILURE))

    def purge(self, s: "Session", doc: Document) -> PurgeResult:
        """Hard delete: catalog row first, then the objects nothing references any more."""
        result = PurgeResult(document_id=doc.id)
        keys = registry.hard_delete(s, doc)
        for key in keys:
            try:
                self.committer.delete_object(key)
                result.deleted_objects.append(key)
            except CommitError as e:
                logger.error("ORPHANED OBJECT after purge of document %s: %s (%s)", result.document_id, key, e.error_type)
                result.failed_objects.append(key)
        return result

    def _precheck(self, req: UploadRequest) -> None:
        # Cheap rejections first: no catalog lookup or disk write for an obviously bad request.
        if req.stream is None or not (req.filename or "").strip():
            raise ValidationError(NO_FILE, "No file provided")
        size = self.stager.measure(req.stream)
        if size is None:
            size = req.declared_size
        if size == 0:
            raise ValidationError(NO_FILE, "Uploaded file is empty")
        if size is not None and size > self.stager.max_bytes:
            raise ValidationError(TOO_LARGE, self.stager.too_large_message())

    def _stage(self, req: UploadRequest) -> StagingHandle:
        return self.stager.stage(
            req.stream,
            original_name=req.filename,
            mime_type=req.mime_type,
            declared_size=req.declared_size,
        )

    def _commit(self, handle: StagingHandle, meta: CommitMetadata) -> CommittedObject:
        try:
            return self.committer.commit(handle, meta)
        except BaseException:
            # Abandoned: never leave the staged bytes behind on a failed commit.
            self.stager.discard(handle)
            raise

    def _discard_object(self, key: str) -> None:
        try:
            self.committer.delete_object(key)
        except CommitError as e:
            logger.error("ORPHANED OBJECT left in store: %s (%s)", key, e.error_type)

    def _orphaned(self, s: "Session", committed: CommittedObject, exc: Exception) -> RegistryError:
        try:
            s.rollback()
        except SQLAlchemyError:
            logger.exception("Rollback after catalog failure failed")
        logger.error(
            "ORPHANED OBJECT: stored %s in bucket %s but catalog write failed: %s",
            committed.object_name,
            committed.bucket_name,
            exc,
        )
        message = exc.message if isinstance(exc, RegistryError) else "Catalog write failed after the file was stored."
        return RegistryError(message, storage_key=committed.object_name)
