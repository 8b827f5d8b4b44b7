"""
Release phase: migrate the catalog, seed roles, check the upload staging area.

Usage:
    python scripts/release.py
    python scripts/release.py --skip-seed
"""

from __future__ import annotations

import argparse
import os
import sys
import tempfile
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _database_url() -> str:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL is required for the release phase.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to release against sqlite in production; point DATABASE_URL at Postgres.")
    return db_url


def migrate(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


def check_staging_dir() -> Path:
    """Uploads are staged on local disk before commit; fail the release if that disk is not writable."""
    from app.portal.config import load_settings

    staging = Path(load_settings().staging_dir)
    staging.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(dir=staging, prefix=".release-check-"):
        pass
    return staging


def run_release(*, seed: bool = True) -> None:
    db_url = _database_url()
    print("Migrating catalog schema...", flush=True)
    migrate(db_url)

    if seed:
        from scripts import init_db

        print("Seeding permissions and roles...", flush=True)
        init_db.seed_only(database_url=db_url)

    staging = check_staging_dir()
    print(f"Staging directory writable: {staging}", flush=True)
    print("Release complete.", flush=True)


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--skip-seed", action="store_true", help="Only migrate; leave roles and the admin user alone.")
    args = parser.parse_args()
    run_release(seed=not args.skip_seed)


if __name__ == "__main__":
    main()
