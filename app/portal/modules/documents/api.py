from __future__ import annotations

from flask import Blueprint, abort, current_app, g, jsonify, request, send_file
from sqlalchemy.orm import Session

from app.portal.audit import record_document_event
from app.portal.db import db_session
from app.portal.models import User
from app.portal.modules.documents import registry, versions
from app.portal.modules.documents.errors import (
    INVALID_FIELD,
    DocumentError,
    DocumentNotFound,
    ValidationError,
)
from app.portal.modules.documents.metadata import RelatedItem, normalize_category, parse_metadata
from app.portal.modules.documents.models import Document
from app.portal.modules.documents.service import DocumentService, UploadRequest
from app.portal.rbac import require_permission
from app.portal.storage import LocalStorage, ObjectNotFound, StorageError
from app.portal.utils import parse_date_bound, parse_tags

bp = Blueprint("documents", __name__)
files_bp = Blueprint("files", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _service() -> DocumentService:
    return DocumentService.from_app(current_app)


def _error(e: DocumentError):
    return jsonify(e.to_dict()), e.http_status


def _get_doc_or_404(s: Session, doc_id: int, *, allow_deleted: bool = True) -> Document:
    d = registry.get_document(s, doc_id, _current_user().id)
    if d is None or (d.is_deleted and not allow_deleted):
        raise DocumentNotFound("Document not found")
    return d


def _int_arg(name: str) -> int | None:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(INVALID_FIELD, f"'{name}' must be an integer.") from None


def _bool_arg(name: str) -> bool:
    return (request.args.get(name) or "").strip().lower() in ("1", "true", "yes")


def _upload_request(*, with_metadata: bool) -> UploadRequest:
    f = request.files.get("file")
    tags: list[str] = []
    if with_metadata:
        tags, err = parse_tags(request.form.get("tags"))
        if err:
            raise ValidationError(INVALID_FIELD, err)
    return UploadRequest(
        stream=f.stream if f and f.filename else None,
        filename=f.filename if f else None,
        mime_type=f.mimetype if f else None,
        declared_size=(f.content_length or None) if f else None,
        title=request.form.get("title"),
        description=request.form.get("description"),
        category=request.form.get("category"),
        tags=tags,
        related_item_id=request.form.get("relatedItemId"),
        related_item_type=request.form.get("relatedItemType"),
        change_description=request.form.get("changeDescription"),
    )


@bp.errorhandler(DocumentError)
def _document_error(e: DocumentError):
    return _error(e)


@bp.post("/upload")
@require_permission("docs.upload")
def upload_document():
    s = db_session()
    u = _current_user()
    result = _service().upload_new(s, u.id, _upload_request(with_metadata=True))
    if not result.success:
        current_app.logger.warning(
            "Upload rejected (user=%s, type=%s): %s",
            u.id,
            result.error.error_type if result.error else None,
            result.error.message if result.error else None,
        )
        return jsonify(result.to_dict()), result.http_status

    c = result.committed
    record_document_event(
        s,
        u,
        "doc.upload",
        result.document.id,
        category=result.document.category,
        filename=c.original_name,
        object_name=c.object_name,
        size_bytes=c.file_size,
    )
    s.commit()
    return jsonify(result.to_dict()), 201


@bp.post("/<int:doc_id>/versions")
@require_permission("docs.upload")
def upload_version(doc_id: int):
    s = db_session()
    u = _current_user()
    result = _service().upload_version(s, u.id, doc_id, _upload_request(with_metadata=False))
    if not result.success:
        return jsonify(result.to_dict()), result.http_status

    record_document_event(
        s,
        u,
        "doc.version",
        doc_id,
        version=result.version.version_number,
        filename=result.committed.original_name,
        object_name=result.committed.object_name,
    )
    s.commit()
    return jsonify(result.to_dict()), 201


@bp.get("")
@require_permission("docs.view")
def list_documents():
    s = db_session()
    u = _current_user()
    tags, err = parse_tags(request.args.get("tags"))
    if err:
        raise ValidationError(INVALID_FIELD, err)
    try:
        created_from = parse_date_bound(request.args.get("from"))
        created_to = parse_date_bound(request.args.get("to"), end=True)
    except ValueError:
        raise ValidationError(INVALID_FIELD, "Dates must be YYYY-MM-DD or ISO 8601.") from None

    category = request.args.get("category")
    related = None
    rel_type = (request.args.get("relatedItemType") or "").strip()
    rel_id = (request.args.get("relatedItemId") or "").strip()
    if bool(rel_type) != bool(rel_id):
        raise ValidationError(INVALID_FIELD, "relatedItemType and relatedItemId must be given together.")
    if rel_type:
        related = RelatedItem(type=rel_type.lower(), id=rel_id)

    q = registry.DocumentQuery(
        owner_id=u.id,
        category=normalize_category(category) if category else None,
        related_item=related,
        search=request.args.get("search"),
        tags=tags,
        created_from=created_from,
        created_to=created_to,
        file_type=(request.args.get("fileType") or "").strip() or None,
        include_deleted=_bool_arg("includeDeleted"),
    )
    docs = registry.list_documents(s, q)
    return jsonify({"success": True, "documents": [registry.serialize_document(d) for d in docs], "total": len(docs)})


@bp.get("/stats")
@require_permission("docs.stats")
def document_stats():
    s = db_session()
    return jsonify({"success": True, "stats": registry.document_stats(s, _current_user().id)})


@bp.get("/<int:doc_id>")
@require_permission("docs.view")
def get_document(doc_id: int):
    s = db_session()
    d = _get_doc_or_404(s, doc_id)
    return jsonify({"success": True, "document": registry.serialize_document(d, include_versions=True)})


@bp.patch("/<int:doc_id>")
@require_permission("docs.edit")
def update_document(doc_id: int):
    s = db_session()
    u = _current_user()
    d = _get_doc_or_404(s, doc_id, allow_deleted=False)
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError(INVALID_FIELD, "Expected a JSON object.")

    title = data.get("title")
    if title is not None:
        title = str(title).strip()
        if not title:
            raise ValidationError(INVALID_FIELD, "Title cannot be empty")
        title = title[:255]
    description = data.get("description")
    if description is not None:
        description = str(description).strip()
    tags = None
    if "tags" in data:
        tags, err = parse_tags(data.get("tags"))
        if err:
            raise ValidationError(INVALID_FIELD, err)
    metadata = None
    if any(k in data for k in ("category", "relatedItemId", "relatedItemType")):
        metadata = parse_metadata(
            data.get("category", d.category),
            related_item_id=data.get("relatedItemId", d.related_item_id),
            related_item_type=data.get("relatedItemType"),
        )

    registry.update_metadata(s, d, title=title, description=description, tags=tags, metadata=metadata)
    changed = {k: data[k] for k in ("title", "description", "tags", "category", "relatedItemId") if k in data}
    record_document_event(s, u, "doc.update", d.id, **changed)
    s.commit()
    return jsonify({"success": True, "document": registry.serialize_document(d)})


@bp.delete("/<int:doc_id>")
@require_permission("docs.delete")
def delete_document(doc_id: int):
    s = db_session()
    u = _current_user()
    d = _get_doc_or_404(s, doc_id)
    registry.soft_delete(s, d)
    record_document_event(s, u, "doc.delete", d.id)
    s.commit()
    return jsonify({"success": True, "id": d.id, "status": d.status})


@bp.post("/<int:doc_id>/restore")
@require_permission("docs.delete")
def restore_document(doc_id: int):
    s = db_session()
    u = _current_user()
    d = _get_doc_or_404(s, doc_id)
    registry.restore(s, d)
    record_document_event(s, u, "doc.restore", d.id)
    s.commit()
    return jsonify({"success": True, "id": d.id, "status": d.status})


@bp.delete("/<int:doc_id>/purge")
@require_permission("docs.purge")
def purge_document(doc_id: int):
    s = db_session()
    u = _current_user()
    d = _get_doc_or_404(s, doc_id)
    title = d.title
    version_count = len(d.versions)
    result = _service().purge(s, d)
    record_document_event(
        s,
        u,
        "doc.purge",
        doc_id,
        title=title,
        versions=version_count,
        deleted_objects=result.deleted_objects,
        failed_objects=result.failed_objects,
    )
    s.commit()
    return jsonify(result.to_dict())


@bp.get("/<int:doc_id>/versions")
@require_permission("docs.view")
def list_versions(doc_id: int):
    s = db_session()
    d = _get_doc_or_404(s, doc_id)
    chain = versions.list_versions(s, d.id)
    return jsonify({"success": True, "versions": [registry.serialize_version(v) for v in chain]})


def _resolve_version_file(s: Session, d: Document) -> tuple[str, str | None]:
    number = _int_arg("version")
    if number is None:
        if not d.storage_key:
            raise DocumentNotFound("Document has no stored file")
        return d.storage_key, d.file_name
    v = versions.get_version(s, d.id, number)
    if v is None:
        raise DocumentNotFound(f"Version {number} not found")
    return v.storage_key, v.file_name


@bp.get("/<int:doc_id>/url")
@require_permission("docs.download")
def presigned_url(doc_id: int):
    s = db_session()
    u = _current_user()
    d = _get_doc_or_404(s, doc_id)
    key, name = _resolve_version_file(s, d)
    presigned = _service().retrieval.presign(key, expires_in=_int_arg("expires"), original_name=name)
    record_document_event(s, u, "doc.url", d.id, object_name=key, expires_in=presigned.expires_in)
    s.commit()
    return jsonify({"success": True, **presigned.to_dict()})


@bp.get("/<int:doc_id>/download")
@require_permission("docs.download")
def download_document(doc_id: int):
    s = db_session()
    u = _current_user()
    d = _get_doc_or_404(s, doc_id)
    key, name = _resolve_version_file(s, d)
    stream, content_type, download_name = _service().retrieval.open(key, original_name=name)
    record_document_event(s, u, "doc.download", d.id, object_name=key, filename=download_name)
    s.commit()
    return send_file(
        stream,
        mimetype=content_type,
        as_attachment=True,
        download_name=download_name,
        max_age=0,
    )


@files_bp.get("/files/<token>")
def signed_download(token: str):
    """Serves presigned links issued by the local storage backend."""
    svc = _service()
    storage = svc.retrieval.storage
    if not isinstance(storage, LocalStorage):
        abort(404)
    try:
        key, name = storage.resolve_token(token)
        info = storage.head(key)
        stream = storage.open(key)
    except ObjectNotFound:
        abort(404)
    except StorageError as e:
        return jsonify({"success": False, "error": str(e)}), 403
    return send_file(
        stream,
        mimetype=info.content_type,
        as_attachment=True,
        download_name=name or key.rsplit("/", 1)[-1],
        max_age=0,
    )
