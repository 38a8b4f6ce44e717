"""CLI script to run or schedule the consent expiry scan."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_ROOT))


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Expire unanswered consent proposals and complete elapsed dissolutions.",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--once",
        action="store_true",
        help="Run a single scan in this process (default)",
    )
    mode.add_argument(
        "--schedule",
        action="store_true",
        help="Register the recurring scan with rq-scheduler and exit",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Seconds between scheduled scans (defaults to EXPIRY_SCAN_INTERVAL_SECONDS)",
    )
    return parser.parse_args()


async def _run() -> int:
    from app.core.logging import configure_logging
    from app.services.consent.factory import build_expiry_scanner
    from app.services.consent.scheduler import bootstrap_expiry_scan_schedule

    args = _parse_args()
    configure_logging()
    if args.schedule:
        bootstrap_expiry_scan_schedule(interval_seconds=args.interval)
        sys.stdout.write("scheduled=1\n")
        return 0

    result = await build_expiry_scanner().run_once()
    sys.stdout.write(
        f"expired={result.expired} completed={result.completed} skipped={result.skipped}\n",
    )
    return 0


def main() -> None:
    """Run the async CLI workflow and exit with its return code."""
    raise SystemExit(asyncio.run(_run()))


if __name__ == "__main__":
    main()
