import json
from typing import Any

from flask import g, has_request_context
from sqlalchemy.orm import Session

from app.portal.models import AuditEvent, User


def _request_id() -> str | None:
    return getattr(g, "request_id", None) if has_request_context() else None


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> AuditEvent:
    """
    Add one append-only audit row to `s`. The caller commits it together with
    the change it describes, so a rolled-back change leaves no audit trace.
    """
    ev = AuditEvent(
        request_id=_request_id(),
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
    )
    s.add(ev)
    return ev


def record_document_event(s: Session, actor: User, action: str, document_id: int, **metadata: Any) -> AuditEvent:
    """`doc.*` events; `None` metadata values are dropped."""
    meta = {k: v for k, v in metadata.items() if v is not None}
    return record_event(
        s,
        actor=actor,
        action=action,
        entity_type="Document",
        entity_id=str(document_id),
        metadata=meta or None,
    )
