import pytest
from werkzeug.security import generate_password_hash

from app.portal import create_app
from app.portal.db import session_scope
from app.portal.models import Base, Permission, Role, User

DOC_PERMISSIONS = (
    "docs.view",
    "docs.upload",
    "docs.edit",
    "docs.delete",
    "docs.purge",
    "docs.download",
    "docs.stats",
)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("LOCAL_STORAGE_DIR", str(tmp_path / "storage"))
    monkeypatch.setenv("STAGING_DIR", str(tmp_path / "staging"))
    monkeypatch.setenv("MAX_UPLOAD_BYTES", str(1024 * 1024))
    monkeypatch.setenv("STAGING_SWEEP_INTERVAL_SECONDS", "0")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "PUBLIC_BASE_URL"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        perms = [Permission(key=k, name=k) for k in DOC_PERMISSIONS]
        lecturer = Role(key="dosen", name="Lecturer")
        lecturer.permissions.extend(perms)
        viewer = Role(key="viewer", name="Viewer")
        viewer.permissions.append(perms[0])
        u1 = User(email="dosen@example.com", name="Dr. Sari", password_hash=generate_password_hash("pw"), is_active=True)
        u1.roles.append(lecturer)
        u2 = User(email="other@example.com", name="Dr. Budi", password_hash=generate_password_hash("pw"), is_active=True)
        u2.roles.append(lecturer)
        u3 = User(email="viewer@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u3.roles.append(viewer)
        s.add_all(perms + [lecturer, viewer, u1, u2, u3])

    return app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def owner_id(app):
    with session_scope(app) as s:
        return s.query(User).filter(User.email == "dosen@example.com").one().id


def login(client, email="dosen@example.com", password="pw") -> dict:
    """Log in and return headers carrying the CSRF token."""
    r = client.post("/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.json
    return {"X-CSRF-Token": r.json["csrfToken"]}
