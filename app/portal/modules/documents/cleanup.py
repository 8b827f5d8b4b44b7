from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from botocore.exceptions import BotoCoreError, ClientError

from app.portal.modules.documents.committer import OBJECT_KEY_PREFIX
from app.portal.modules.documents.registry import catalog_storage_keys
from app.portal.storage import StorageError

if TYPE_CHECKING:
    from flask import Flask
    from sqlalchemy.orm import Session

    from app.portal.storage import Storage

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    scanned: int = 0
    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def sweep_staging_dir(staging_dir: str | Path, *, max_age_seconds: int, now: float | None = None) -> SweepResult:
    """Delete staging files older than `max_age_seconds` (abandoned or crashed uploads)."""
    result = SweepResult()
    root = Path(staging_dir)
    if not root.is_dir():
        return result
    cutoff = (now if now is not None else time.time()) - max_age_seconds
    for p in root.iterdir():
        if not p.is_file():
            continue
        result.scanned += 1
        try:
            if p.stat().st_mtime >= cutoff:
                continue
            p.unlink()
            result.deleted.append(p.name)
        except FileNotFoundError:
            # committed or discarded while we were looking
            continue
        except OSError as e:
            logger.warning("Staging sweep could not delete %s: %s", p, e)
            result.failed.append(p.name)
    if result.deleted:
        logger.info("Staging sweep removed %s of %s file(s) from %s", len(result.deleted), result.scanned, root)
    return result


class StagingSweeper:
    """Background thread running `sweep_staging_dir` on an interval."""

    def __init__(self, staging_dir: str | Path, *, interval_seconds: int, max_age_seconds: int) -> None:
        self.staging_dir = Path(staging_dir)
        self.interval_seconds = interval_seconds
        self.max_age_seconds = max_age_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="staging-sweeper", daemon=True)
        self._thread.start()
        logger.info(
            "Staging sweeper started (dir=%s, every %ss, max age %ss)",
            self.staging_dir,
            self.interval_seconds,
            self.max_age_seconds,
        )

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                sweep_staging_dir(self.staging_dir, max_age_seconds=self.max_age_seconds)
            except Exception:
                logger.exception("Staging sweep failed")


@dataclass
class ReconcileResult:
    orphaned: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def reconcile_store(
    s: "Session",
    storage: "Storage",
    *,
    delete_older_than: timedelta | None = None,
    now: datetime | None = None,
) -> ReconcileResult:
    """
    Compare object-store contents with the catalog.

    `orphaned`: stored objects with no catalog reference (e.g. the catalog write
    failed after a successful commit). `missing`: catalog keys with no object.
    Orphans are deleted only when `delete_older_than` is given and the object is
    older than that grace period, so in-flight uploads are left alone.
    """
    result = ReconcileResult()
    known = catalog_storage_keys(s)
    seen: set[str] = set()
    now = now or datetime.now(timezone.utc)
    for info in storage.iter_objects(OBJECT_KEY_PREFIX):
        seen.add(info.key)
        if info.key in known:
            continue
        result.orphaned.append(info.key)
        logger.warning("ORPHANED OBJECT without catalog entry: %s", info.key)
        if delete_older_than is None:
            continue
        modified = info.last_modified
        if modified is not None and modified.tzinfo is None:
            modified = modified.replace(tzinfo=timezone.utc)
        if modified is not None and now - modified < delete_older_than:
            continue
        try:
            storage.delete(info.key)
        except (OSError, StorageError, BotoCoreError, ClientError) as e:
            logger.warning("Reconcile could not delete orphan %s: %s", info.key, e)
            result.failed.append(info.key)
            continue
        result.deleted.append(info.key)
    result.missing = sorted(k for k in known if k.startswith(OBJECT_KEY_PREFIX) and k not in seen)
    for key in result.missing:
        logger.error("Catalog references missing object: %s", key)
    return result


def start_background_sweeper(app: "Flask") -> StagingSweeper | None:
    interval = int(app.config.get("STAGING_SWEEP_INTERVAL_SECONDS") or 0)
    if interval <= 0:
        return None
    sweeper = StagingSweeper(
        app.config["STAGING_DIR"],
        interval_seconds=interval,
        max_age_seconds=int(app.config.get("STAGING_MAX_AGE_SECONDS") or 3600),
    )
    sweeper.start()
    app.extensions["staging_sweeper"] = sweeper
    return sweeper
