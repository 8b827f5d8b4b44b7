#!/usr/bin/env python3
"""
Run the release phase, then replace this process with gunicorn serving app.wsgi:app.

Environment:
    PORT               listen port (default 8080)
    WEB_CONCURRENCY    gunicorn workers (default 2)
    GUNICORN_TIMEOUT   worker timeout in seconds (default 120)
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _int_env(name: str, default: int, *, lo: int = 1, hi: int | None = None) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        sys.exit(f"{name} must be an integer, got {raw!r}")
    if value < lo or (hi is not None and value > hi):
        sys.exit(f"{name}={value} is out of range")
    return value


def gunicorn_argv() -> list[str]:
    port = _int_env("PORT", 8080, hi=65535)
    workers = _int_env("WEB_CONCURRENCY", 2)
    # Large uploads go to staging disk and then to the object store in one request.
    timeout = _int_env("GUNICORN_TIMEOUT", 120)
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", str(workers),
        "--threads", "4",
        "--timeout", str(timeout),
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    parser = argparse.ArgumentParser(description="Release and serve the accreditation portal.")
    parser.add_argument("--skip-release", action="store_true", help="Serve without migrating or seeding first.")
    args = parser.parse_args()

    argv = gunicorn_argv()
    if not args.skip_release:
        from scripts.release import run_release

        try:
            run_release()
        except Exception as e:
            sys.exit(f"Release failed: {e}")

    print(f"Starting {' '.join(argv[:4])}", flush=True)
    os.execvp(argv[0], argv)


if __name__ == "__main__":
    main()
