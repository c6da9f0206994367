"""
main.py — Revenue Leak Detector — CLI Entry Point.

Provides a command-line interface to run any combination of pipeline stages
for one or more tenants:
  1. init-db    — Create database tables
  2. sync       — Pull invoices and payments from the accounting ledger
  3. detect     — Run the four leak detection rules
  4. report     — Write an Excel recovery worklist per tenant
  5. full-run   — init-db → sync → detect → report (default for the scheduler)
  6. connect    — Print the ledger consent URL for a tenant

Usage examples:
    python main.py --init-db
    python main.py --full-run
    python main.py --sync --detect --company 6f1c...
    python main.py --detect --report
    python main.py --connect 6f1c...

Environment:
    LEDGER_CLIENT_ID / LEDGER_CLIENT_SECRET   OAuth app credentials
    DATABASE_URL                              Overrides paths.database_url
    LOG_LEVEL                                 Override log verbosity (default: INFO)
"""

import argparse
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from pathlib import Path

import yaml


def _configure_logging(log_dir: str = "logs", level: str = "INFO") -> None:
    """Set up rotating file handler and stream handler for the pipeline.

    Creates a dated log file in `log_dir` and mirrors output to stdout.
    Log level is read from the LOG_LEVEL environment variable or the `level`
    parameter.

    Args:
        log_dir: Directory to write log files into.
        level: Default log level string (DEBUG, INFO, WARNING, ERROR).
    """
    effective_level = os.environ.get("LOG_LEVEL", level).upper()
    numeric_level = getattr(logging, effective_level, logging.INFO)

    Path(log_dir).mkdir(parents=True, exist_ok=True)
    log_filename = Path(log_dir) / f"pipeline_{datetime.today().strftime('%Y%m%d')}.log"

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)-30s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Rotating file handler: 10 MB max, keep 7
    file_handler = logging.handlers.RotatingFileHandler(
        log_filename, maxBytes=10 * 1024 * 1024, backupCount=7, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.addHandler(file_handler)
    root_logger.addHandler(stream_handler)

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Define and parse command-line arguments.

    Returns:
        Parsed argument namespace.
    """
    parser = argparse.ArgumentParser(
        prog="revenue-leak-detector",
        description=(
            "Revenue Leak Detector — "
            "ledger sync, leak detection and recovery worklists.\n\n"
            "Run --full-run to execute sync, detection and reporting in sequence."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --init-db
  python main.py --full-run
  python main.py --sync --company 6f1c0b6e-...
  python main.py --detect --report --log-level DEBUG
  python main.py --connect 6f1c0b6e-...
        """,
    )

    parser.add_argument(
        "--config",
        default="config.yaml",
        metavar="PATH",
        help="Path to configuration YAML file (default: config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity level (default: INFO)",
    )
    parser.add_argument(
        "--company",
        action="append",
        metavar="ID",
        help="Tenant id to process (repeatable; default: all connected tenants)",
    )

    stages = parser.add_argument_group("Pipeline Stages")
    stages.add_argument("--init-db", action="store_true", help="Create database tables")
    stages.add_argument(
        "--sync", action="store_true", help="Sync invoices and payments from the ledger"
    )
    stages.add_argument("--detect", action="store_true", help="Run leak detection rules")
    stages.add_argument(
        "--report", action="store_true", help="Generate Excel recovery worklists"
    )
    stages.add_argument(
        "--full-run",
        action="store_true",
        help="Execute all stages: init-db → sync → detect → report",
    )
    stages.add_argument(
        "--connect",
        metavar="ID",
        help="Print the ledger authorization URL for a tenant and exit",
    )

    return parser.parse_args(argv)


def write_reports(services, company_ids: list[str], cfg: dict, logger: logging.Logger) -> int:
    """Write one recovery worklist per tenant; returns the number of failures."""
    from revleak.reporter import generate_worklist
    from revleak.scorer import build_leak_summary, leaks_frame

    failures = 0
    for company_id in company_ids:
        with services.store.transaction() as repo:
            company = repo.get_company(company_id)
            open_leaks = repo.find_leaks(company_id, open_only=True) if company else []
        if company is None:
            logger.error("Company %s not found — skipping report", company_id)
            failures += 1
            continue

        leaks = leaks_frame(open_leaks)
        if leaks.empty:
            logger.info("No open leaks for %s — skipping report", company.name)
            continue
        try:
            summary = build_leak_summary(leaks, currency=company.currency)
            path = generate_worklist(leaks, summary, cfg, company.name)
            logger.info("Worklist for %s: %s", company.name, path)
        except OSError as exc:
            logger.error("Report generation failed for %s: %s", company.name, exc, exc_info=True)
            failures += 1
    return failures


def run_pipeline(args: argparse.Namespace, logger: logging.Logger) -> int:
    """Execute the requested pipeline stages and return an exit code.

    Args:
        args: Parsed CLI arguments.
        logger: Configured logger.

    Returns:
        0 on success, 1 if any stage failed for any tenant.
    """
    from revleak.config import load_config
    from revleak.jobs import build_services, connected_company_ids, run_all

    cfg = load_config(args.config)
    services = build_services(cfg)
    do_all = args.full_run

    if args.connect:
        print(services.tokens.authorization_url(args.connect))
        return 0

    if do_all or args.init_db:
        services.store.create_schema()
        logger.info("Database schema ready")

    company_ids = args.company or connected_company_ids(services.store)

    stages = tuple(
        stage for stage, wanted in (
            ("sync", do_all or args.sync),
            ("detect", do_all or args.detect),
        ) if wanted
    )

    exit_code = 0
    if stages:
        logger.info("=" * 60)
        logger.info("STAGE: %s", " + ".join(s.upper() for s in stages))
        logger.info("=" * 60)
        results = run_all(
            services, company_ids, stages, max_workers=cfg["scheduler"]["max_workers"]
        )
        for result in results:
            if not result["success"]:
                exit_code = 1
            sync = result.get("sync", {})
            detect = result.get("detect", {})
            logger.info(
                "  %-38s sync=%s detect=%s",
                result["company_id"],
                sync.get("count", "-") if sync.get("success", True) else "FAILED",
                detect.get("count", "-") if detect.get("success", True) else "FAILED",
            )

    if do_all or args.report:
        logger.info("=" * 60)
        logger.info("STAGE: REPORT")
        logger.info("=" * 60)
        if write_reports(services, company_ids, cfg, logger):
            exit_code = 1

    logger.info("=" * 60)
    logger.info("PIPELINE COMPLETE (exit code %d)", exit_code)
    logger.info("=" * 60)
    return exit_code


def main(argv: list[str] | None = None) -> None:
    """Parse arguments, configure logging, and run the pipeline."""
    args = _parse_args(argv)

    # Load config to get log directory
    try:
        with open(args.config, "r") as fh:
            cfg = yaml.safe_load(fh) or {}
        log_dir = cfg.get("paths", {}).get("log_dir", "logs")
    except (OSError, yaml.YAMLError):
        log_dir = "logs"

    _configure_logging(log_dir=log_dir, level=args.log_level)
    logger = logging.getLogger(__name__)

    no_stage_selected = not any([
        args.full_run, args.init_db, args.sync, args.detect, args.report, args.connect,
    ])
    if no_stage_selected:
        _parse_args(["--help"])

    logger.info(
        "Revenue Leak Detector | %s", datetime.today().strftime("%Y-%m-%d %H:%M:%S")
    )
    logger.info("Config: %s | Log level: %s", args.config, args.log_level)

    sys.exit(run_pipeline(args, logger))


if __name__ == "__main__":
    main()
