"""
revenue-leak-detector — Source package.

Modules:
    errors         — Exception taxonomy (auth, ledger, validation)
    models         — Enums and SQLAlchemy tables for tenants, invoices,
                     payments, contracts and leaks
    store          — Persistence layer (find / upsert / create / update)
    config         — YAML configuration with environment overrides
    locks          — Per-tenant mutual exclusion
    auth           — OAuth token lifecycle for the accounting ledger
    ledger_client  — Ledger query client and wire-to-canonical mapping
    sync           — Idempotent invoice / payment ingestion
    scorer         — Priority and confidence scoring, leak summaries
    detector       — Four-rule revenue leak detection engine
    jobs           — Per-tenant sync-then-detect cycle
    reporter       — Excel recovery worklist
"""

__version__ = "1.0.0"
