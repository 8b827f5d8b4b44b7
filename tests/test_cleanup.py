import os
import time
from datetime import datetime, timedelta, timezone

from app.portal.db import session_scope
from app.portal.modules.documents import registry, versions
from app.portal.modules.documents.cleanup import StagingSweeper, reconcile_store, sweep_staging_dir
from app.portal.modules.documents.metadata import parse_metadata
from app.portal.storage import LocalStorage


def test_sweep_deletes_only_stale_files(tmp_path):
    staging = tmp_path / "staging"
    staging.mkdir()
    old = staging / "old.pdf"
    fresh = staging / "fresh.pdf"
    old.write_bytes(b"x")
    fresh.write_bytes(b"y")
    two_hours_ago = time.time() - 7200
    os.utime(old, (two_hours_ago, two_hours_ago))

    result = sweep_staging_dir(staging, max_age_seconds=3600)

    assert result.scanned == 2
    assert result.deleted == ["old.pdf"]
    assert not old.exists()
    assert fresh.exists()


def test_sweep_missing_directory_is_noop(tmp_path):
    result = sweep_staging_dir(tmp_path / "nope", max_age_seconds=1)
    assert result.scanned == 0


def test_background_sweeper_runs_and_stops(tmp_path):
    staging = tmp_path / "staging"
    staging.mkdir()
    stale = staging / "stale.bin"
    stale.write_bytes(b"x")
    os.utime(stale, (time.time() - 100, time.time() - 100))

    sweeper = StagingSweeper(staging, interval_seconds=0.05, max_age_seconds=10)
    sweeper.start()
    try:
        deadline = time.time() + 5
        while stale.exists() and time.time() < deadline:
            time.sleep(0.05)
    finally:
        sweeper.stop()
    assert not stale.exists()


def test_reconcile_reports_and_deletes_orphans(app, owner_id, tmp_path):
    storage = app.extensions["object_storage"]
    src = tmp_path / "src.bin"
    src.write_bytes(b"data")
    for key in ("documents/catalogued", "documents/orphan"):
        storage.put_file(key, src, content_type="application/pdf")

    with session_scope(app) as s:
        d = registry.new_document(owner_id=owner_id, metadata=parse_metadata("personal"), title="CV")
        versions.create_first_version(
            s,
            d,
            versions.VersionFile("cv.pdf", 4, "application/pdf", "documents/catalogued"),
            created_by=owner_id,
        )
        d2 = registry.new_document(owner_id=owner_id, metadata=parse_metadata("personal"), title="Lost")
        versions.create_first_version(
            s,
            d2,
            versions.VersionFile("lost.pdf", 4, "application/pdf", "documents/lost"),
            created_by=owner_id,
        )

    with session_scope(app) as s:
        report = reconcile_store(s, storage)
        assert report.orphaned == ["documents/orphan"]
        assert report.deleted == []
        assert report.missing == ["documents/lost"]
        assert storage.exists("documents/orphan")

        # within the grace period: still kept
        report = reconcile_store(s, storage, delete_older_than=timedelta(hours=1))
        assert report.deleted == []

        later = datetime.now(timezone.utc) + timedelta(hours=2)
        report = reconcile_store(s, storage, delete_older_than=timedelta(hours=1), now=later)
        assert report.deleted == ["documents/orphan"]
        assert not storage.exists("documents/orphan")
        assert storage.exists("documents/catalogued")


class _StuckDeleteStorage(LocalStorage):
    def delete(self, key: str) -> None:
        if key.endswith("stuck"):
            raise PermissionError(f"read-only: {key}")
        super().delete(key)


def test_reconcile_keeps_going_when_an_orphan_delete_fails(app, owner_id, tmp_path):
    healthy = app.extensions["object_storage"]
    storage = _StuckDeleteStorage(root=healthy.root, secret_key=healthy.secret_key)
    src = tmp_path / "src.bin"
    src.write_bytes(b"data")
    for key in ("documents/a-stuck", "documents/b-loose"):
        storage.put_file(key, src, content_type="application/pdf")

    with session_scope(app) as s:
        d = registry.new_document(owner_id=owner_id, metadata=parse_metadata("personal"), title="Lost")
        versions.create_first_version(
            s,
            d,
            versions.VersionFile("lost.pdf", 4, "application/pdf", "documents/lost"),
            created_by=owner_id,
        )

    later = datetime.now(timezone.utc) + timedelta(hours=2)
    with session_scope(app) as s:
        report = reconcile_store(s, storage, delete_older_than=timedelta(hours=1), now=later)

    assert sorted(report.orphaned) == ["documents/a-stuck", "documents/b-loose"]
    assert report.failed == ["documents/a-stuck"]
    assert report.deleted == ["documents/b-loose"]
    assert report.missing == ["documents/lost"]
    assert storage.exists("documents/a-stuck")
    assert not storage.exists("documents/b-loose")
