"""
locks.py — Per-tenant mutual exclusion.

Token refresh and leak detection must not run twice at once for the same
tenant within a process. Different tenants never block each other.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class TenantLocks:
    """Lazily created `threading.Lock` per tenant id."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def get(self, company_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(company_id)
            if lock is None:
                lock = self._locks[company_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, company_id: str) -> Iterator[None]:
        with self.get(company_id):
            yield
