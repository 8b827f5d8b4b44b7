from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select

from app.portal.modules.documents.metadata import DocumentMetadata, RelatedItem
from app.portal.modules.documents.models import Document, DocumentTag, DocumentVersion
from app.portal.utils import file_type_display_name, format_file_size

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


@dataclass
class DocumentQuery:
    owner_id: int
    category: str | None = None
    related_item: RelatedItem | None = None
    search: str | None = None
    tags: list[str] = field(default_factory=list)
    created_from: datetime | None = None
    created_to: datetime | None = None
    file_type: str | None = None
    include_deleted: bool = False


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def new_document(
    *,
    owner_id: int,
    metadata: DocumentMetadata,
    title: str,
    description: str | None = None,
    tags: list[str] | None = None,
) -> Document:
    """Build (but do not persist) a catalog row; the version chain inserts it with version 1."""
    related = metadata.related_item
    now = datetime.utcnow()
    d = Document(
        owner_user_id=owner_id,
        category=metadata.category,
        title=title,
        description=description or None,
        current_version_number=0,
        related_item_type=related.type if related else None,
        related_item_id=related.id if related else None,
        status="active",
        created_at=now,
        updated_at=now,
    )
    d.tag_rows = [DocumentTag(tag=t) for t in (tags or [])]
    return d


def get_document(s: "Session", document_id: int, owner_id: int) -> Document | None:
    """Direct lookup; soft-deleted documents are still returned."""
    return s.execute(
        select(Document).where(Document.id == document_id, Document.owner_user_id == owner_id)
    ).scalar_one_or_none()


def list_documents(s: "Session", q: DocumentQuery) -> list[Document]:
    stmt = select(Document).where(Document.owner_user_id == q.owner_id)
    if not q.include_deleted:
        stmt = stmt.where(Document.status == "active")
    if q.category:
        stmt = stmt.where(Document.category == q.category)
    if q.related_item:
        stmt = stmt.where(
            Document.related_item_type == q.related_item.type,
            Document.related_item_id == q.related_item.id,
        )
    if q.file_type:
        stmt = stmt.where(Document.file_type == q.file_type)
    if q.search and q.search.strip():
        pattern = f"%{_escape_like(q.search.strip())}%"
        stmt = stmt.where(
            or_(
                Document.title.ilike(pattern, escape="\\"),
                Document.description.ilike(pattern, escape="\\"),
                Document.file_name.ilike(pattern, escape="\\"),
            )
        )
    if q.tags:
        stmt = stmt.where(Document.id.in_(select(DocumentTag.document_id).where(DocumentTag.tag.in_(q.tags))))
    if q.created_from:
        stmt = stmt.where(Document.created_at >= q.created_from)
    if q.created_to:
        stmt = stmt.where(Document.created_at <= q.created_to)
    stmt = stmt.order_by(Document.updated_at.desc(), Document.id.desc())
    return list(s.execute(stmt).scalars())


def list_by_owner(s: "Session", owner_id: int) -> list[Document]:
    return list_documents(s, DocumentQuery(owner_id=owner_id))


def list_by_category(s: "Session", owner_id: int, category: str) -> list[Document]:
    return list_documents(s, DocumentQuery(owner_id=owner_id, category=category))


def list_by_related_item(s: "Session", owner_id: int, related_item: RelatedItem) -> list[Document]:
    return list_documents(s, DocumentQuery(owner_id=owner_id, related_item=related_item))


def search_documents(s: "Session", owner_id: int, term: str) -> list[Document]:
    return list_documents(s, DocumentQuery(owner_id=owner_id, search=term))


def filter_by_tags(s: "Session", owner_id: int, tags: list[str]) -> list[Document]:
    # An empty tag filter matches nothing rather than everything.
    if not tags:
        return []
    return list_documents(s, DocumentQuery(owner_id=owner_id, tags=tags))


def set_tags(doc: Document, tags: list[str]) -> None:
    existing = {t.tag: t for t in doc.tag_rows}
    doc.tag_rows = [existing.get(t) or DocumentTag(tag=t) for t in tags]


def update_metadata(
    s: "Session",
    doc: Document,
    *,
    title: str | None = None,
    description: str | None = None,
    tags: list[str] | None = None,
    metadata: DocumentMetadata | None = None,
) -> Document:
    """Edit catalog-only fields. File fields and the version chain are untouched."""
    if title is not None:
        doc.title = title
    if description is not None:
        doc.description = description or None
    if tags is not None:
        set_tags(doc, tags)
    if metadata is not None:
        related = metadata.related_item
        doc.category = metadata.category
        doc.related_item_type = related.type if related else None
        doc.related_item_id = related.id if related else None
    doc.updated_at = datetime.utcnow()
    s.flush()
    return doc


def soft_delete(s: "Session", doc: Document) -> Document:
    if doc.status != "deleted":
        doc.status = "deleted"
        doc.deleted_at = datetime.utcnow()
        doc.updated_at = doc.deleted_at
        s.flush()
    return doc


def restore(s: "Session", doc: Document) -> Document:
    if doc.status == "deleted":
        doc.status = "active"
        doc.deleted_at = None
        doc.updated_at = datetime.utcnow()
        s.flush()
    return doc


def hard_delete(s: "Session", doc: Document) -> list[str]:
    """
    Remove the catalog row with its versions and tags, and commit.

    Returns the storage keys that no longer have any catalog reference; only
    those may be deleted from the object store, and only after this returns.
    """
    keys = sorted({v.storage_key for v in doc.versions} | ({doc.storage_key} if doc.storage_key else set()))
    s.delete(doc)
    s.commit()
    if not keys:
        return []
    still_referenced = set(
        s.execute(select(DocumentVersion.storage_key).where(DocumentVersion.storage_key.in_(keys))).scalars()
    ) | set(s.execute(select(Document.storage_key).where(Document.storage_key.in_(keys))).scalars())
    return [k for k in keys if k not in still_referenced]


def catalog_storage_keys(s: "Session") -> set[str]:
    keys = set(s.execute(select(DocumentVersion.storage_key)).scalars())
    keys.update(k for k in s.execute(select(Document.storage_key)).scalars() if k)
    return keys


def document_stats(s: "Session", owner_id: int) -> dict[str, Any]:
    docs = list_by_owner(s, owner_id)
    version_counts = dict(
        s.execute(
            select(DocumentVersion.document_id, func.count(DocumentVersion.id))
            .join(Document, Document.id == DocumentVersion.document_id)
            .where(Document.owner_user_id == owner_id, Document.status == "active")
            .group_by(DocumentVersion.document_id)
        ).all()
    )
    total = len(docs)
    total_size = sum(d.file_size or 0 for d in docs)
    return {
        "totalDocuments": total,
        "countByCategory": dict(Counter(d.category for d in docs)),
        "countByFileType": dict(Counter(d.file_type or "unknown" for d in docs)),
        "totalSize": total_size,
        "totalSizeDisplay": format_file_size(total_size),
        "avgVersions": (sum(version_counts.values()) / total) if total else 0,
    }


def serialize_version(v: DocumentVersion) -> dict[str, Any]:
    return {
        "id": v.id,
        "documentId": v.document_id,
        "versionNumber": v.version_number,
        "fileName": v.file_name,
        "fileSize": v.file_size,
        "fileType": v.file_type,
        "storageKey": v.storage_key,
        "changeDescription": v.change_description,
        "createdBy": v.created_by_user_id,
        "createdAt": v.created_at.isoformat() if v.created_at else None,
    }


def serialize_document(doc: Document, *, include_versions: bool = False) -> dict[str, Any]:
    out: dict[str, Any] = {
        "id": doc.id,
        "ownerId": doc.owner_user_id,
        "category": doc.category,
        "title": doc.title,
        "description": doc.description,
        "tags": doc.tags,
        "currentVersionNumber": doc.current_version_number,
        "fileName": doc.file_name,
        "fileSize": doc.file_size,
        "fileSizeDisplay": format_file_size(doc.file_size),
        "fileType": doc.file_type,
        "fileTypeDisplay": file_type_display_name(doc.file_type),
        "storageKey": doc.storage_key,
        "relatedItem": (
            {"type": doc.related_item_type, "id": doc.related_item_id} if doc.related_item_id else None
        ),
        "status": doc.status,
        "createdAt": doc.created_at.isoformat() if doc.created_at else None,
        "updatedAt": doc.updated_at.isoformat() if doc.updated_at else None,
    }
    if include_versions:
        out["versions"] = [serialize_version(v) for v in doc.versions]
    return out
