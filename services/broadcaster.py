"""
Live subscriber fan-out.

Subscriptions are keyed by tenant. Every subscription owns a bounded outbound
queue drained by a single sender task: publishing only enqueues, messages to
one socket keep their order, and a stalled socket never holds up the others.
Delivery is best effort; anything that cannot be sent is dropped.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from contextlib import suppress
from typing import Any, Dict, List, Optional, Protocol, Set

from starlette.websockets import WebSocketState

from app.core.logging import get_logger
from app.models.feed_item import FeedItem
from services.cache_debouncer import CacheDebouncer

logger = get_logger()


class Connection(Protocol):
    client_state: WebSocketState
    application_state: WebSocketState

    async def send_text(self, data: str) -> None: ...


def _is_open(connection: Any) -> bool:
    return (
        getattr(connection, "client_state", WebSocketState.CONNECTED) == WebSocketState.CONNECTED
        and getattr(connection, "application_state", WebSocketState.CONNECTED) == WebSocketState.CONNECTED
    )


class Subscription:
    def __init__(self, tenant_id: str, connection: Connection, *, queue_size: int = 100) -> None:
        self.id = uuid.uuid4().hex
        self.tenant_id = tenant_id
        self.connection = connection
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self._sender = asyncio.create_task(self._drain(), name=f"subscriber-send:{self.id}")

    def offer(self, payload: str) -> bool:
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning("subscriber_queue_full", tenant=self.tenant_id, subscription=self.id)
            return False
        return True

    async def _drain(self) -> None:
        while True:
            payload = await self._queue.get()
            try:
                if _is_open(self.connection):
                    await self.connection.send_text(payload)
            except Exception as exc:
                logger.debug(
                    "subscriber_send_failed",
                    tenant=self.tenant_id,
                    subscription=self.id,
                    error=str(exc) or exc.__class__.__name__,
                )
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """Wait until everything queued so far went out (or was dropped)."""
        if not self._sender.done():
            await self._queue.join()

    async def close(self) -> None:
        self._sender.cancel()
        with suppress(asyncio.CancelledError):
            await self._sender


class ConnectionRegistry:
    def __init__(self) -> None:
        self._by_tenant: Dict[str, Set[Subscription]] = {}

    def add(self, subscription: Subscription) -> None:
        self._by_tenant.setdefault(subscription.tenant_id, set()).add(subscription)

    def remove(self, subscription: Subscription) -> bool:
        subs = self._by_tenant.get(subscription.tenant_id)
        if not subs or subscription not in subs:
            return False
        subs.discard(subscription)
        if not subs:
            del self._by_tenant[subscription.tenant_id]
        return True

    def for_tenant(self, tenant_id: str) -> List[Subscription]:
        # copy: sets may change while a publish iterates
        return list(self._by_tenant.get(tenant_id, ()))

    def count(self, tenant_id: str) -> int:
        return len(self._by_tenant.get(tenant_id, ()))

    def all(self) -> List[Subscription]:
        return [sub for subs in self._by_tenant.values() for sub in subs]


class FanOutBroadcaster:
    def __init__(
        self,
        debouncer: CacheDebouncer,
        *,
        connections: Optional[ConnectionRegistry] = None,
        queue_size: int = 100,
    ) -> None:
        self.debouncer = debouncer
        self.connections = connections or ConnectionRegistry()
        self.queue_size = queue_size

    def register_connection(self, tenant_id: str, connection: Connection) -> Subscription:
        subscription = Subscription(tenant_id, connection, queue_size=self.queue_size)
        self.connections.add(subscription)
        logger.info("subscriber_registered", tenant=tenant_id, subscribers=self.connections.count(tenant_id))
        return subscription

    async def unregister_connection(self, subscription: Subscription) -> None:
        if self.connections.remove(subscription):
            logger.info(
                "subscriber_unregistered",
                tenant=subscription.tenant_id,
                subscribers=self.connections.count(subscription.tenant_id),
            )
        await subscription.close()

    def greet(self, subscription: Subscription) -> None:
        subscription.offer(self.debouncer.snapshot_for(subscription.tenant_id))

    def send_control(self, subscription: Subscription, message: str) -> None:
        subscription.offer(message)

    def publish(self, tenant_id: str, item: FeedItem) -> int:
        """Queue a one-element array for every open subscriber of the tenant."""
        payload = json.dumps([item.to_wire()])
        delivered = 0
        for subscription in self.connections.for_tenant(tenant_id):
            if not _is_open(subscription.connection):
                continue
            if subscription.offer(payload):
                delivered += 1
        return delivered

    def subscriber_count(self, tenant_id: str) -> int:
        return self.connections.count(tenant_id)

    async def close(self) -> None:
        for subscription in self.connections.all():
            self.connections.remove(subscription)
            await subscription.close()
