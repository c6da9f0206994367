"""
jobs.py — Per-tenant sync-then-detect cycle.

Builds the component graph from configuration and runs one tenant's cycle:
ledger sync, then leak detection. Every outcome is returned as a structured
summary; a sync failure is reported as {"success": False, "error", "count": 0}
and detection is skipped for that tenant so stale data is not scanned.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, NamedTuple

import requests

from revleak.auth import TokenManager
from revleak.detector import LeakDetector
from revleak.errors import RevLeakError
from revleak.ledger_client import LedgerClient
from revleak.store import Store, init_store
from revleak.sync import IngestionPipeline

logger = logging.getLogger(__name__)

STAGES = ("sync", "detect")


class Services(NamedTuple):
    store: Store
    tokens: TokenManager
    client: LedgerClient
    pipeline: IngestionPipeline
    detector: LeakDetector


def build_services(
    cfg: dict[str, Any],
    store: Store | None = None,
    session: requests.Session | None = None,
) -> Services:
    """Wire store, token manager, ledger client, pipeline and detector."""
    # Schema creation is left to `main.py --init-db`
    store = store or init_store(cfg["paths"]["database_url"], create=False)
    session = session or requests.Session()
    tokens = TokenManager.from_config(cfg, store, session=session)
    client = LedgerClient.from_config(cfg, tokens, session=session)
    pipeline = IngestionPipeline(
        store, client, skip_invalid_records=cfg["sync"]["skip_invalid_records"]
    )
    detector = LeakDetector(store, settings=cfg["detection"])
    return Services(store, tokens, client, pipeline, detector)


def _failure(exc: Exception) -> dict[str, Any]:
    return {"success": False, "error": str(exc), "count": 0}


def run_cycle(
    services: Services,
    company_id: str,
    stages: tuple[str, ...] = STAGES,
) -> dict[str, Any]:
    """Run the requested stages for one tenant and summarise the outcome.

    Args:
        services: Component graph from build_services().
        company_id: Tenant to process.
        stages: Any of "sync", "detect", in that order.

    Returns:
        {"company_id", "success", "sync"?: {...}, "detect"?: {...}}
    """
    summary: dict[str, Any] = {"company_id": company_id, "success": True}

    with services.store.transaction() as repo:
        company = repo.get_company(company_id)
    if company is None:
        logger.error("Company %s not found", company_id)
        summary.update(success=False, error=f"Unknown company {company_id}")
        return summary

    if "sync" in stages:
        try:
            results = services.pipeline.full_sync(company)
        except RevLeakError as exc:
            logger.error("Sync failed for company %s: %s", company_id, exc)
            summary["sync"] = _failure(exc)
            summary["success"] = False
            return summary
        except Exception as exc:
            logger.error(
                "Unexpected sync error for company %s: %s", company_id, exc, exc_info=True
            )
            summary["sync"] = _failure(exc)
            summary["success"] = False
            return summary
        summary["sync"] = {
            "success": True,
            "count": sum(r["count"] for r in results.values()),
            **results,
        }

    if "detect" in stages:
        results = services.detector.detect_leaks(company)
        detect_ok = all(
            r["success"] for key, r in results.items() if key != "total"
        )
        summary["detect"] = {"success": detect_ok, "count": results["total"], **results}
        summary["success"] = summary["success"] and detect_ok

    logger.info(
        "Cycle for company %s finished (success=%s)", company_id, summary["success"]
    )
    return summary


def connected_company_ids(store: Store) -> list[str]:
    with store.transaction() as repo:
        return [c.id for c in repo.list_companies(connected_only=True)]


def run_all(
    services: Services,
    company_ids: list[str] | None = None,
    stages: tuple[str, ...] = STAGES,
    max_workers: int = 4,
) -> list[dict[str, Any]]:
    """Run the cycle for many tenants concurrently, one worker per tenant."""
    if company_ids is None:
        company_ids = connected_company_ids(services.store)
    if not company_ids:
        logger.warning("No connected companies to process")
        return []

    def cycle(company_id: str) -> dict[str, Any]:
        try:
            return run_cycle(services, company_id, stages)
        except Exception as exc:
            logger.error(
                "Cycle crashed for company %s: %s", company_id, exc, exc_info=True
            )
            return {"company_id": company_id, "success": False, "error": str(exc)}

    logger.info("Running %s for %d companies", "+".join(stages), len(company_ids))
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        return list(pool.map(cycle, company_ids))
