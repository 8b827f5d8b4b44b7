import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    storage_backend: str
    s3_endpoint: str
    s3_port: int | None
    s3_use_ssl: bool
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str
    s3_connect_timeout: float
    s3_read_timeout: float
    local_storage_dir: str

    staging_dir: str
    max_upload_bytes: int
    presign_expiry_seconds: int
    staging_max_age_seconds: int
    staging_sweep_interval_seconds: int
    public_base_url: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    return int(raw)


def _getenv_float(name: str, default: float) -> float:
    raw = _getenv(name)
    if not raw:
        return default
    return float(raw)


def _getenv_bool(name: str, default: bool = False) -> bool:
    raw = _getenv(name).lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    port = _getenv("S3_PORT")
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///portal.db"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_port=int(port) if port else None,
        s3_use_ssl=_getenv_bool("S3_USE_SSL", True),
        s3_region=_getenv("S3_REGION", "us-east-1"),
        s3_bucket=_getenv("S3_BUCKET", "accreditation-documents"),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        s3_connect_timeout=_getenv_float("S3_CONNECT_TIMEOUT", 5.0),
        s3_read_timeout=_getenv_float("S3_READ_TIMEOUT", 30.0),
        local_storage_dir=_getenv("LOCAL_STORAGE_DIR", os.path.join(os.getcwd(), "storage")),
        staging_dir=_getenv("STAGING_DIR", os.path.join(os.getcwd(), "tmp", "uploads")),
        max_upload_bytes=_getenv_int("MAX_UPLOAD_BYTES", 10 * 1024 * 1024),
        presign_expiry_seconds=_getenv_int("PRESIGN_EXPIRY_SECONDS", 24 * 60 * 60),
        staging_max_age_seconds=_getenv_int("STAGING_MAX_AGE_SECONDS", 60 * 60),
        staging_sweep_interval_seconds=_getenv_int("STAGING_SWEEP_INTERVAL_SECONDS", 0),
        public_base_url=_getenv("PUBLIC_BASE_URL", ""),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "STORAGE_BACKEND": s.storage_backend,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_PORT": s.s3_port,
        "S3_USE_SSL": s.s3_use_ssl,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "S3_CONNECT_TIMEOUT": s.s3_connect_timeout,
        "S3_READ_TIMEOUT": s.s3_read_timeout,
        "LOCAL_STORAGE_DIR": s.local_storage_dir,
        "STAGING_DIR": s.staging_dir,
        "MAX_UPLOAD_BYTES": s.max_upload_bytes,
        "PRESIGN_EXPIRY_SECONDS": s.presign_expiry_seconds,
        "STAGING_MAX_AGE_SECONDS": s.staging_max_age_seconds,
        "STAGING_SWEEP_INTERVAL_SECONDS": s.staging_sweep_interval_seconds,
        "PUBLIC_BASE_URL": s.public_base_url,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # request body ceiling; per-file limit is MAX_UPLOAD_BYTES
        "MAX_CONTENT_LENGTH": s.max_upload_bytes + 1024 * 1024,
    }
