import io
from pathlib import Path

import pytest

from app.portal.modules.documents.errors import DocumentNotFound
from app.portal.modules.documents.retrieval import MAX_PRESIGN_EXPIRY, RetrievalService, download_filename


def _put(storage, tmp_path: Path, key: str, data: bytes, **metadata) -> None:
    src = tmp_path / "src.bin"
    src.write_bytes(data)
    storage.put_file(key, src, content_type="application/pdf", metadata=metadata)


def test_download_filename():
    assert download_filename("proposal", "pdf", "documents/abc") == "proposal.pdf"
    assert download_filename("proposal.pdf", "pdf", "documents/abc") == "proposal.pdf"
    assert download_filename(None, None, "documents/abc") == "abc"


def test_two_urls_for_same_object_serve_identical_bytes(app, client, tmp_path):
    storage = app.extensions["object_storage"]
    _put(storage, tmp_path, "documents/k1", b"%PDF-1.7 evidence", **{"original-filename": "SK Mengajar", "file-extension": "pdf"})
    svc = RetrievalService(storage, default_expiry=600)

    u1 = svc.presign("documents/k1")
    u2 = svc.presign("documents/k1", expires_in=60)
    assert u1.url != u2.url
    assert u1.download_name == "SK Mengajar.pdf"
    assert (u1.expires_in, u2.expires_in) == (600, 60)

    r1 = client.get(u1.url)
    r2 = client.get(u2.url)
    assert r1.status_code == r2.status_code == 200
    assert r1.data == r2.data == b"%PDF-1.7 evidence"
    assert "SK Mengajar.pdf" in r1.headers["Content-Disposition"]


def test_expiry_is_capped(app, tmp_path):
    storage = app.extensions["object_storage"]
    _put(storage, tmp_path, "documents/k2", b"x")
    p = RetrievalService(storage).presign("documents/k2", expires_in=10 * MAX_PRESIGN_EXPIRY, original_name="a.pdf")
    assert p.expires_in == MAX_PRESIGN_EXPIRY


def test_expired_and_tampered_links_are_refused(app, client, tmp_path):
    storage = app.extensions["object_storage"]
    _put(storage, tmp_path, "documents/k3", b"x")

    expired = storage.presign_get("documents/k3", expires_in=-1)
    r = client.get(expired)
    assert r.status_code == 403
    assert r.json["error"] == "Link expired."

    good = storage.presign_get("documents/k3", expires_in=60)
    r = client.get(good[:-2] + ("AA" if not good.endswith("AA") else "BB"))
    assert r.status_code == 403


def test_presign_missing_object_is_not_found(app):
    svc = RetrievalService(app.extensions["object_storage"])
    with pytest.raises(DocumentNotFound):
        svc.presign("documents/nope")


def test_open_returns_stream_and_name(app, tmp_path):
    storage = app.extensions["object_storage"]
    _put(storage, tmp_path, "documents/k4", b"abc", **{"original-filename": "rps.docx", "file-extension": "docx"})
    stream, content_type, name = RetrievalService(storage).open("documents/k4")
    with stream:
        assert stream.read() == b"abc"
    assert content_type == "application/pdf"
    assert name == "rps.docx"
    assert isinstance(stream, io.BufferedReader)
