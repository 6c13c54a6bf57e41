#!/usr/bin/env python3
"""
Install crontab lines for the auto-apply sweep and the daily recruiter digest.

Intervals come from the normal settings (config/settings.yaml, then .env):
SWEEP_INTERVAL_MINUTES and DIGEST_HOUR. Cron fires on the server clock, so
DIGEST_HOUR here is server time, not SCHEDULE_TZ.
Pick either this or a long-running ``run_worker.py``.
Run once: python setup_cron.py [--dry-run]
"""
from __future__ import annotations

import subprocess
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(ROOT))

from autoapply.config import Settings, load_settings

MARKER = "# autoapply"
FALLBACK_FILE = ROOT / "crontab.txt"


def cron_entries(settings: Settings, python: Path, script: Path) -> list[str]:
    prefix = f"cd {ROOT} && {python} {script}"
    return [
        f"*/{settings.sweep_interval_minutes} * * * * {prefix} --sweep {MARKER}",
        f"0 {settings.digest_hour} * * * {prefix} --digest {MARKER}",
    ]


def merge_crontab(existing: str, entries: list[str]) -> str | None:
    """New crontab text with our lines replaced, or None when nothing changes."""
    kept = [line for line in existing.splitlines() if line.strip() and not line.endswith(MARKER)]
    ours = [line for line in existing.splitlines() if line.endswith(MARKER)]
    if ours == entries:
        return None
    return "\n".join(kept + entries)


def _crontab(*args: str, stdin: str | None = None) -> subprocess.CompletedProcess:
    return subprocess.run(["crontab", *args], input=stdin, capture_output=True, text=True, timeout=5)


def main(argv: list[str]) -> int:
    python = ROOT / ".venv" / "bin" / "python"
    if not python.exists():
        print("No .venv found. Create it first: python -m venv .venv && .venv/bin/pip install -e .")
        return 1
    settings = load_settings()
    entries = cron_entries(settings, python, ROOT / "run_worker.py")

    if "--dry-run" in argv:
        print("\n".join(entries))
        return 0

    try:
        current = _crontab("-l")
        existing = current.stdout if current.returncode == 0 else ""
        updated = merge_crontab(existing, entries)
        if updated is None:
            print("autoapply cron lines already up to date.")
            return 0
        if _crontab("-", stdin=updated + "\n").returncode != 0:
            _write_fallback(updated)
            return 1
    except (subprocess.TimeoutExpired, FileNotFoundError) as exc:
        print(f"crontab unavailable ({type(exc).__name__}). On Windows use Task Scheduler.")
        _write_fallback("\n".join(entries))
        return 1

    print(
        f"Installed: sweep every {settings.sweep_interval_minutes} min, "
        f"digest daily at {settings.digest_hour:02d}:00 server time"
    )
    for entry in entries:
        print(f"  {entry}")
    return 0


def _write_fallback(content: str) -> None:
    FALLBACK_FILE.write_text(content + "\n", encoding="utf-8")
    print(f"Could not install automatically. Wrote {FALLBACK_FILE}; install it with:")
    print(f"  crontab {FALLBACK_FILE}")


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
