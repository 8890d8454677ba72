"""
Debounced snapshot cache.

Each tenant has a single timer slot. `schedule_rebuild` replaces whatever is
in the slot (last write wins); when the delay elapses without another call,
the tenant's log is sorted by date, cut to the newest SNAPSHOT_SIZE entries
and serialized as the greeting payload for new subscribers.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import Dict, Optional

from app.core.context import spawn_detached
from app.core.logging import get_logger
from app.models.feed_item import placeholder_payload, serialize_items
from services.log_store import ItemLog
from services.tenant_locks import TenantLocks

logger = get_logger()


class CacheDebouncer:
    def __init__(
        self,
        store: ItemLog,
        locks: TenantLocks,
        *,
        delay_s: float = 5.0,
        snapshot_size: int = 25,
    ) -> None:
        self.store = store
        self.locks = locks
        self.delay_s = delay_s
        self.snapshot_size = snapshot_size
        self._snapshots: Dict[str, str] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self._generation: Dict[str, int] = {}

    # -- timer slot ------------------------------------------------------------

    def cancel(self, tenant_id: str) -> None:
        # bumping the generation also voids a fire that already left sleep()
        self._generation[tenant_id] = self._generation.get(tenant_id, 0) + 1
        timer = self._timers.pop(tenant_id, None)
        if timer is not None and not timer.done():
            timer.cancel()

    def schedule_rebuild(self, tenant_id: str) -> None:
        self.cancel(tenant_id)
        generation = self._generation[tenant_id]
        self._timers[tenant_id] = spawn_detached(
            self._fire_after_delay(tenant_id, generation),
            name=f"snapshot-debounce:{tenant_id}",
            tenant=tenant_id,
        )

    def is_pending(self, tenant_id: str) -> bool:
        timer = self._timers.get(tenant_id)
        return timer is not None and not timer.done()

    async def _fire_after_delay(self, tenant_id: str, generation: int) -> None:
        await asyncio.sleep(self.delay_s)
        try:
            async with self.locks(tenant_id):
                await self._rebuild(tenant_id, generation)
        except Exception:
            logger.exception("snapshot_rebuild_failed", tenant=tenant_id)
        finally:
            if self._timers.get(tenant_id) is asyncio.current_task():
                del self._timers[tenant_id]

    # -- snapshot --------------------------------------------------------------

    async def _rebuild(self, tenant_id: str, generation: Optional[int]) -> None:
        entries = await self.store.list(tenant_id)
        # sort first: insertion order and publication order can disagree
        ordered = sorted(entries, key=lambda item: item.date)[-self.snapshot_size:]
        payload = serialize_items(ordered)
        if generation is not None and self._generation.get(tenant_id, 0) != generation:
            logger.debug("snapshot_rebuild_stale", tenant=tenant_id)
            return
        self._snapshots[tenant_id] = payload
        logger.info("snapshot_rebuilt", tenant=tenant_id, items=len(ordered))

    async def rebuild_now(self, tenant_id: str) -> str:
        """Rebuild immediately, bypassing the debounce window."""
        self.cancel(tenant_id)
        async with self.locks(tenant_id):
            await self._rebuild(tenant_id, None)
        return self._snapshots[tenant_id]

    def has_snapshot(self, tenant_id: str) -> bool:
        return tenant_id in self._snapshots

    def snapshot_for(self, tenant_id: str) -> str:
        snapshot = self._snapshots.get(tenant_id)
        if snapshot is None:
            return placeholder_payload()
        return snapshot

    async def close(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        for timer in timers:
            with suppress(asyncio.CancelledError):
                await timer
