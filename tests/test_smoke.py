from conftest import login

from app.portal.db import session_scope
from app.portal.models import AuditEvent


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    # local backend creates its bucket directory at startup
    assert r.json["storageReady"] is True


def test_healthz_plain(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_api_requires_login(client):
    r = client.get("/api/documents")
    assert r.status_code == 401
    assert r.json["success"] is False


def test_login_me_logout(client):
    r = client.post("/auth/login", json={"email": "dosen@example.com", "password": "pw"})
    assert r.status_code == 200
    assert r.json["user"]["roles"] == ["dosen"]
    assert r.json["csrfToken"]

    r = client.get("/auth/me")
    assert r.status_code == 200
    assert r.json["user"]["email"] == "dosen@example.com"
    assert "docs.purge" in r.json["user"]["permissions"]
    assert r.json["user"]["permissions"] == sorted(r.json["user"]["permissions"])

    r = client.post("/auth/logout")
    assert r.status_code == 200
    assert client.get("/auth/me").status_code == 401


def test_login_rejects_bad_password_and_audits(client):
    r = client.post("/auth/login", data={"email": "dosen@example.com", "password": "nope"})
    assert r.status_code == 401
    with session_scope(client.application) as s:
        actions = [e.action for e in s.query(AuditEvent).all()]
    assert "auth.login_failed" in actions


def test_mutations_require_csrf_token(client):
    login(client)
    r = client.delete("/api/documents/1")
    assert r.status_code == 400
    assert "CSRF" in r.json["error"]


def test_missing_permission_is_forbidden(client):
    headers = login(client, email="viewer@example.com")
    r = client.get("/api/documents", headers=headers)
    assert r.status_code == 200
    r = client.get("/api/documents/stats")
    assert r.status_code == 403
    assert r.json["missingPermission"] == "docs.stats"
