#!/usr/bin/env python
"""
Delete abandoned upload staging files.

A staging file normally lives only for the length of one upload request; anything
older than STAGING_MAX_AGE_SECONDS was left behind by a crash or an aborted commit.

Usage:
    python scripts/sweep_staging.py
    python scripts/sweep_staging.py --max-age 600 --dir /tmp/uploads

Run from cron, or set STAGING_SWEEP_INTERVAL_SECONDS to let the web process do it.
"""
from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> None:
    import argparse

    from dotenv import load_dotenv

    from app.portal.config import load_settings
    from app.portal.modules.documents.cleanup import sweep_staging_dir

    load_dotenv()
    settings = load_settings()

    parser = argparse.ArgumentParser(description="Delete stale upload staging files")
    parser.add_argument("--dir", default=settings.staging_dir, help="Staging directory")
    parser.add_argument(
        "--max-age",
        type=int,
        default=settings.staging_max_age_seconds,
        help="Delete files older than this many seconds",
    )
    args = parser.parse_args()

    result = sweep_staging_dir(args.dir, max_age_seconds=args.max_age)
    print(f"Scanned {result.scanned} file(s) in {args.dir}")
    print(f"Deleted {len(result.deleted)}; failed {len(result.failed)}")
    if result.failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
