"""
scheduler.py — Daily Sync-and-Detect Scheduler.

Wraps the per-tenant cycle in APScheduler for production cron-style
scheduling. Runs as a persistent daemon process, triggering ledger sync
followed by leak detection for every connected tenant at a configured
time each day.

Features:
    - Timezone-aware scheduling
    - Tenants processed concurrently; each tenant's cycle is sequential
    - Failed tenants retried with a configurable delay
    - Graceful shutdown on SIGINT / SIGTERM
    - Rotating file logging independent of main.py log

Usage:
    python scheduler.py                  # Run daemon (blocks)
    python scheduler.py --run-now        # Trigger one immediate run then exit
    python scheduler.py --config custom.yaml
"""

import argparse
import logging
import logging.handlers
import signal
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from revleak.config import load_config
from revleak.jobs import Services, build_services, run_all

logger = logging.getLogger(__name__)


def _configure_scheduler_logging(log_dir: str) -> None:
    """Set up dedicated rotating log for the scheduler process.

    Args:
        log_dir: Directory for log files.
    """
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    log_file = Path(log_dir) / "scheduler.log"

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)-30s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    file_handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=5 * 1024 * 1024, backupCount=14, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(logging.INFO)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)

    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def run_scheduled_cycle(
    services: Services,
    max_retries: int,
    retry_delay: int,
    max_workers: int = 4,
    sleep=time.sleep,
) -> list[dict[str, Any]]:
    """Run sync + detect for all connected tenants, retrying the ones that fail.

    Each retry only re-runs the tenants whose previous attempt failed.

    Args:
        services: Component graph from jobs.build_services().
        max_retries: Maximum attempts per tenant.
        retry_delay: Seconds to wait between attempts.
        max_workers: Tenants processed concurrently.
        sleep: Delay function (injectable for tests).

    Returns:
        The final result for every tenant.
    """
    run_time = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    logger.info("=" * 70)
    logger.info("SCHEDULED RUN — %s", run_time)
    logger.info("=" * 70)

    final: dict[str, dict[str, Any]] = {}
    pending = None  # None = all connected tenants

    for attempt in range(1, max_retries + 1):
        results = run_all(services, pending, max_workers=max_workers)
        for result in results:
            final[result["company_id"]] = result

        pending = [r["company_id"] for r in results if not r["success"]]
        if not pending:
            logger.info("Scheduled run completed successfully (attempt %d)", attempt)
            break

        logger.error(
            "%d companies failed (attempt %d): %s", len(pending), attempt, ", ".join(pending)
        )
        if attempt < max_retries:
            logger.info("Retrying in %d seconds...", retry_delay)
            sleep(retry_delay)
    else:
        logger.error(
            "%d companies still failing after %d attempt(s) — will retry at next scheduled time",
            len(pending), max_retries,
        )

    return list(final.values())


def _parse_args() -> argparse.Namespace:
    """Parse scheduler-specific CLI arguments.

    Returns:
        Parsed Namespace.
    """
    parser = argparse.ArgumentParser(
        prog="scheduler",
        description="Daily APScheduler daemon for ledger sync and leak detection.",
    )
    parser.add_argument(
        "--config",
        default="config.yaml",
        help="Path to configuration YAML (default: config.yaml)",
    )
    parser.add_argument(
        "--run-now",
        action="store_true",
        help="Execute one cycle immediately then exit (useful for testing)",
    )
    return parser.parse_args()


def main() -> None:
    """Entry point: configure scheduler and start the blocking daemon."""
    args = _parse_args()

    try:
        cfg = load_config(args.config)
    except FileNotFoundError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

    _configure_scheduler_logging(cfg["paths"]["log_dir"])

    sched_cfg = cfg["scheduler"]
    run_time = sched_cfg["run_time"]
    timezone = sched_cfg["timezone"]
    job_kwargs = {
        "services": build_services(cfg),
        "max_retries": sched_cfg["max_retries"],
        "retry_delay": sched_cfg["retry_delay_seconds"],
        "max_workers": sched_cfg["max_workers"],
    }

    run_hour, run_minute = map(int, run_time.split(":"))

    if args.run_now:
        logger.info("--run-now flag set — executing cycle immediately")
        run_scheduled_cycle(**job_kwargs)
        logger.info("Immediate run complete — exiting")
        return

    scheduler = BlockingScheduler(timezone=timezone)
    scheduler.add_job(
        func=run_scheduled_cycle,
        trigger=CronTrigger(hour=run_hour, minute=run_minute, timezone=timezone),
        kwargs=job_kwargs,
        id="daily_sync_and_detect",
        name="Daily Ledger Sync and Leak Detection",
        replace_existing=True,
        max_instances=1,
        misfire_grace_time=600,  # 10 min grace if server was down
    )

    def _handle_shutdown(signum, frame):
        logger.info("Shutdown signal received — stopping scheduler gracefully")
        scheduler.shutdown(wait=False)
        sys.exit(0)

    signal.signal(signal.SIGINT, _handle_shutdown)
    signal.signal(signal.SIGTERM, _handle_shutdown)

    logger.info("Scheduler started — daily run at %s | timezone: %s", run_time, timezone)
    logger.info("Press Ctrl+C or send SIGTERM to stop.")

    scheduler.start()


if __name__ == "__main__":
    main()
