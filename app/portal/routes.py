from flask import Blueprint, current_app

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    return {"name": "accreditation-portal", "api": "/api/documents"}


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON, including whether the bucket was reachable."""
    svc = current_app.extensions.get("document_service")
    bucket_ready = bool(svc and svc.committer.bucket_ready)
    return {"ok": True, "storageReady": bucket_ready}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for probes. No DB or storage access.
    """
    return "ok", 200
