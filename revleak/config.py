"""
config.py — Configuration loading.

Reads config.yaml, layers it over built-in defaults and applies environment
overrides for secrets and deployment-specific values. Credentials are only
ever taken from the environment, never from the YAML file.

Environment:
    LEDGER_CLIENT_ID        OAuth client id for the accounting ledger
    LEDGER_CLIENT_SECRET    OAuth client secret
    LEDGER_ENVIRONMENT      sandbox | production
    LEDGER_REDIRECT_URI     OAuth redirect URI registered with the ledger
    DATABASE_URL            SQLAlchemy URL overriding paths.database_url
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULTS: dict[str, Any] = {
    "project": {
        "name": "Revenue Leak Detector",
        "currency": "USD",
    },
    "paths": {
        "database_url": "sqlite:///revleak.db",
        "log_dir": "logs",
        "output_dir": "output",
        "report_filename": "recovery_worklist_{date}.xlsx",
    },
    "ledger": {
        "environment": "sandbox",
        "base_urls": {
            "sandbox": "https://sandbox-quickbooks.api.intuit.com",
            "production": "https://quickbooks.api.intuit.com",
        },
        "authorize_url": "https://appcenter.intuit.com/connect/oauth2",
        "token_url": "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer",
        "redirect_uri": "http://localhost:5000/integrations/quickbooks/callback",
        "scopes": ["com.intuit.quickbooks.accounting", "openid"],
        "max_results": 1000,
        "timeout_seconds": 30,
        "minor_version": None,
    },
    "sync": {
        "skip_invalid_records": False,
    },
    "detection": {
        "escalation_days": 60,
        "aging_threshold_days": 60,
        "renewal_window_days": 30,
        "under_billing_tolerance_pct": 5.0,
        "under_billing_high_amount": 10000,
    },
    "scheduler": {
        "run_time": "06:00",
        "timezone": "America/New_York",
        "max_retries": 3,
        "retry_delay_seconds": 300,
        "max_workers": 4,
    },
}

_ENV_OVERRIDES = {
    "LEDGER_CLIENT_ID": ("ledger", "client_id"),
    "LEDGER_CLIENT_SECRET": ("ledger", "client_secret"),
    "LEDGER_ENVIRONMENT": ("ledger", "environment"),
    "LEDGER_REDIRECT_URI": ("ledger", "redirect_uri"),
    "DATABASE_URL": ("paths", "database_url"),
}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: str = "config.yaml") -> dict[str, Any]:
    """Load configuration from YAML, merged over defaults, with env overrides.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Fully populated configuration dict.

    Raises:
        FileNotFoundError: If `config_path` does not exist.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, "r") as fh:
        file_cfg = yaml.safe_load(fh) or {}

    cfg = _deep_merge(DEFAULTS, file_cfg)

    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            cfg[section][key] = value

    cfg["ledger"].setdefault("client_id", None)
    cfg["ledger"].setdefault("client_secret", None)
    if not cfg["ledger"]["client_id"] or not cfg["ledger"]["client_secret"]:
        logger.warning(
            "LEDGER_CLIENT_ID / LEDGER_CLIENT_SECRET not set; token refresh will fail"
        )

    logger.debug("Loaded configuration from %s", path)
    return cfg


def ledger_base_url(cfg: dict[str, Any]) -> str:
    """Resolve the ledger API base URL for the configured environment."""
    ledger_cfg = cfg["ledger"]
    environment = ledger_cfg["environment"]
    try:
        return ledger_cfg["base_urls"][environment]
    except KeyError:
        raise ValueError(f"Unknown ledger environment: {environment!r}") from None
