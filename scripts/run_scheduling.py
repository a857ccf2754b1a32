"""
Run the recurring-service scheduler from the command line (cron entry point).

Usage:
    python scripts/run_scheduling.py [--date YYYY-MM-DD] [--manual] [--force] [--workers N]
    python scripts/run_scheduling.py --catchup

Without --date the run covers today. A scheduled run before the configured
run hour (SCHEDULER_RUN_HOUR_UTC) exits without doing anything; --manual
ignores the run hour. --catchup replays the days missed since the last
completed run.
"""
import sys
import os
import argparse
from datetime import date

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import structlog

from practicehub.logging import setup_logging
from practicehub.models.models import utcnow
from practicehub.services.errors import RunFatalError
from practicehub.services.scheduling_run import ensure_run_for_date, run_startup_catchup


logger = structlog.get_logger("run_scheduling")


def _print_result(result) -> None:
    if not result.ran:
        print(f"[SKIP] {result.reason} (run log: {result.run_log_id or '-'})")
        return
    run = result.run
    print(f"[{run.status.upper()}] {run.summary} ({run.execution_time_ms} ms, run log: {run.run_log_id})")


def main() -> int:
    parser = argparse.ArgumentParser(description="Create projects for recurring services that are due")
    parser.add_argument("--date", type=date.fromisoformat, default=None, help="Run date (default: today, UTC)")
    parser.add_argument("--manual", action="store_true", help="Record as a manual run and ignore the run hour")
    parser.add_argument("--force", action="store_true", help="Run even if the date already completed")
    parser.add_argument("--workers", type=int, default=None, help="Worker threads (default: SCHEDULER_MAX_WORKERS)")
    parser.add_argument("--catchup", action="store_true", help="Replay missed days since the last completed run")
    args = parser.parse_args()

    setup_logging()
    try:
        if args.catchup:
            results = run_startup_catchup(max_workers=args.workers)
            if not results:
                print("[SKIP] Nothing to catch up")
            for result in results:
                _print_result(result)
            return 0

        target = args.date or utcnow().date()
        result = ensure_run_for_date(
            target,
            "manual" if args.manual else "scheduled",
            force=args.force,
            max_workers=args.workers,
        )
        _print_result(result)
        return 0
    except RunFatalError as e:
        logger.error("scheduling_run_aborted", error=str(e))
        print(f"[ERROR] {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
