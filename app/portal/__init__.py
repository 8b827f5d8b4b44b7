import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge

from app.portal.auth import bp as auth_bp, load_current_user
from app.portal.config import load_config
from app.portal.db import init_db, teardown_db_session
from app.portal.modules.documents.api import bp as documents_bp, files_bp
from app.portal.modules.documents.cleanup import start_background_sweeper
from app.portal.modules.documents.committer import ObjectStoreCommitter
from app.portal.modules.documents.errors import TOO_LARGE, ValidationError
from app.portal.modules.documents.retrieval import RetrievalService
from app.portal.modules.documents.service import DocumentService
from app.portal.modules.documents.staging import UploadStager
from app.portal.routes import bp as routes_bp
from app.portal.storage import S3Storage, storage_from_config

logger = logging.getLogger(__name__)

_UNGUARDED_PREFIXES = ("/health", "/healthz", "/files/")


def _init_documents(app: Flask) -> None:
    """Build the storage client and upload pipeline once per app."""
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [k for k in ("S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not app.config.get(k)]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    storage = storage_from_config(app.config)
    app.extensions["object_storage"] = storage

    committer = ObjectStoreCommitter(storage, presign_expiry=int(app.config["PRESIGN_EXPIRY_SECONDS"]))
    # Best-effort: an unreachable store must not stop the app from booting.
    if committer.ensure_bucket():
        if isinstance(storage, S3Storage):
            app.logger.info("Storage health check PASSED: S3 bucket '%s' accessible", storage.bucket)
    else:
        app.logger.error("Storage health check FAILED; will retry on first upload")

    stager = UploadStager(app.config["STAGING_DIR"], max_bytes=int(app.config["MAX_UPLOAD_BYTES"]))
    retrieval = RetrievalService(storage, default_expiry=int(app.config["PRESIGN_EXPIRY_SECONDS"]))
    app.extensions["document_service"] = DocumentService(stager, committer, retrieval)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    from app.portal.security import ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_UNGUARDED_PREFIXES):
            return None
        ensure_csrf_token()
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Login/logout pass through; login rotates the token.
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return jsonify({"success": False, "error": "CSRF token missing or invalid."}), 400
        return None

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    _init_documents(app)
    start_background_sweeper(app)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(documents_bp, url_prefix="/api/documents")
    app.register_blueprint(files_bp)

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(RequestEntityTooLarge)
    def _err_413(e):  # type: ignore[no-redef]
        limit_mb = max(1, int(app.config["MAX_UPLOAD_BYTES"]) // (1024 * 1024))
        err = ValidationError(TOO_LARGE, f"File size must be less than {limit_mb}MB")
        return jsonify(err.to_dict()), 413

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):  # type: ignore[no-redef]
        return jsonify({"success": False, "error": e.description or e.name}), e.code or 500

    @app.errorhandler(Exception)
    def _err_500(e):  # type: ignore[no-redef]
        if isinstance(e, HTTPException):
            return _err_http(e)
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"success": False, "error": "Internal server error"}), 500

    logger.info("create_app() complete; app ready to serve")
    return app
