from __future__ import annotations

import asyncio
from typing import Dict


class TenantLocks:
    """
    One asyncio.Lock per tenant. Ingestion and snapshot rebuilds for the same
    tenant take this lock, so a tenant's (log, snapshot, timer) triple is only
    touched by one task at a time while other tenants proceed freely.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def __call__(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock
