#!/usr/bin/env python
"""
Compare object-store contents with the document catalog.

Reports objects that no document version references (left behind when the
catalog write failed after a successful upload) and catalog entries whose object
is missing. Nothing is deleted unless --delete-orphans is given; even then only
orphans older than --grace-hours are removed, so in-flight uploads are safe.

Usage:
    python scripts/reconcile_storage.py
    python scripts/reconcile_storage.py --delete-orphans --grace-hours 24

Environment:
    DATABASE_URL, STORAGE_BACKEND and the S3_* settings, as for the web app.
"""
from __future__ import annotations

import sys
from datetime import timedelta
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Reconcile object store with the document catalog")
    parser.add_argument("--delete-orphans", action="store_true", help="Delete orphaned objects past the grace period")
    parser.add_argument("--grace-hours", type=float, default=24.0, help="Minimum orphan age before deletion")
    args = parser.parse_args()

    from app.portal import create_app
    from app.portal.db import session_scope
    from app.portal.modules.documents.cleanup import reconcile_store

    app = create_app()
    storage = app.extensions["object_storage"]
    grace = timedelta(hours=args.grace_hours) if args.delete_orphans else None

    with session_scope(app) as s:
        result = reconcile_store(s, storage, delete_older_than=grace)

    print(f"Orphaned objects: {len(result.orphaned)}")
    for key in result.orphaned:
        marker = " (deleted)" if key in result.deleted else " (delete failed)" if key in result.failed else ""
        print(f"  {key}{marker}")
    print(f"Catalog entries with missing objects: {len(result.missing)}")
    for key in result.missing:
        print(f"  {key}")
    if result.missing:
        sys.exit(2)


if __name__ == "__main__":
    main()
