from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from app.portal.modules.documents.errors import DocumentNotFound, RegistryError
from app.portal.modules.documents.models import Document, DocumentVersion

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.portal.modules.documents.committer import CommittedObject

logger = logging.getLogger(__name__)

MAX_ALLOCATION_ATTEMPTS = 25


@dataclass(frozen=True)
class VersionFile:
    file_name: str
    file_size: int
    file_type: str
    storage_key: str

    @classmethod
    def from_committed(cls, committed: "CommittedObject") -> "VersionFile":
        return cls(
            file_name=committed.original_name,
            file_size=committed.file_size,
            file_type=committed.mime_type,
            storage_key=committed.object_name,
        )


def _mirror_values(f: VersionFile, version_number: int, now: datetime) -> dict:
    return {
        "current_version_number": version_number,
        "file_name": f.file_name,
        "file_size": f.file_size,
        "file_type": f.file_type,
        "storage_key": f.storage_key,
        "updated_at": now,
    }


def create_first_version(
    s: "Session",
    document: Document,
    f: VersionFile,
    *,
    created_by: int,
    change_description: str = "Initial upload",
) -> DocumentVersion:
    """Insert a new document together with version 1 and commit both."""
    now = datetime.utcnow()
    for k, v in _mirror_values(f, 1, now).items():
        setattr(document, k, v)
    document.created_at = document.created_at or now
    v = DocumentVersion(
        version_number=1,
        file_name=f.file_name,
        file_size=f.file_size,
        file_type=f.file_type,
        storage_key=f.storage_key,
        change_description=change_description or "Initial upload",
        created_by_user_id=created_by,
        created_at=now,
    )
    document.versions.append(v)
    s.add(document)
    s.commit()
    return v


def append_version(
    s: "Session",
    document_id: int,
    f: VersionFile,
    *,
    owner_id: int,
    created_by: int,
    change_description: str | None = None,
    max_attempts: int = MAX_ALLOCATION_ATTEMPTS,
) -> DocumentVersion:
    """
    Append version N+1 to a document and commit.

    Allocation is a compare-and-swap on documents.current_version_number: the
    UPDATE only matches while the number is still the one we read, so two
    writers can never both claim N+1. The loser rolls back and re-reads.
    The unique (document_id, version_number) constraint backs this up.
    """
    for attempt in range(1, max_attempts + 1):
        row = s.execute(
            select(Document.current_version_number, Document.status, Document.owner_user_id).where(
                Document.id == document_id
            )
        ).one_or_none()
        if row is None or row.owner_user_id != owner_id or row.status != "active":
            s.rollback()
            raise DocumentNotFound("Document not found")

        current = row.current_version_number
        nxt = current + 1
        now = datetime.utcnow()
        try:
            res = s.execute(
                update(Document)
                .where(
                    Document.id == document_id,
                    Document.current_version_number == current,
                    Document.status == "active",
                )
                .values(**_mirror_values(f, nxt, now))
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                s.rollback()
                logger.debug("Version allocation conflict on document %s (attempt %s)", document_id, attempt)
                time.sleep(random.uniform(0, 0.005 * attempt))
                continue

            v = DocumentVersion(
                document_id=document_id,
                version_number=nxt,
                file_name=f.file_name,
                file_size=f.file_size,
                file_type=f.file_type,
                storage_key=f.storage_key,
                change_description=(change_description or "").strip() or f"Version {nxt}",
                created_by_user_id=created_by,
                created_at=now,
            )
            s.add(v)
            s.commit()
        except IntegrityError:
            s.rollback()
            logger.warning("Duplicate version number %s for document %s; retrying", nxt, document_id)
            continue
        except OperationalError as e:
            # sqlite reports a lost write-lock race as "database is locked"
            s.rollback()
            logger.debug("Version allocation lock contention on document %s: %s", document_id, e)
            time.sleep(random.uniform(0, 0.02 * attempt))
            continue

        # Committed: a failed reload only leaves the identity map stale.
        try:
            doc = s.get(Document, document_id)
            if doc is not None:
                s.refresh(doc)
        except SQLAlchemyError as e:
            logger.warning("Document %s reload after v%s failed: %s", document_id, nxt, e)
        return v

    raise RegistryError(
        f"Could not allocate a version number for document {document_id} after {max_attempts} attempts",
        storage_key=f.storage_key,
    )


def list_versions(s: "Session", document_id: int) -> list[DocumentVersion]:
    """Full chain, newest first. Read-only."""
    return list(
        s.execute(
            select(DocumentVersion)
            .where(DocumentVersion.document_id == document_id)
            .order_by(DocumentVersion.version_number.desc())
        ).scalars()
    )


def get_version(s: "Session", document_id: int, version_number: int) -> DocumentVersion | None:
    return s.execute(
        select(DocumentVersion).where(
            DocumentVersion.document_id == document_id,
            DocumentVersion.version_number == version_number,
        )
    ).scalar_one_or_none()
