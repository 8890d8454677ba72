# app/core/context.py
from __future__ import annotations

import asyncio
import contextvars
import uuid
from contextlib import contextmanager
from typing import Any, Coroutine, Iterator, Optional

_connection_id_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("connection_id", default=None)
_tenant_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("tenant", default=None)

# -------- Connection / request ID --------------------------------------------

def set_connection_id(connection_id: Optional[str]) -> None:
    _connection_id_ctx.set(connection_id)

def get_connection_id() -> Optional[str]:
    return _connection_id_ctx.get()

def clear_connection_id() -> None:
    _connection_id_ctx.set(None)

# -------- Tenant ---------------------------------------------------------------

def get_tenant() -> Optional[str]:
    return _tenant_ctx.get()

@contextmanager
def with_connection_id(
    connection_id: Optional[str] = None,
    *,
    tenant: Optional[str] = None,
) -> Iterator[str]:
    """
    Bind a connection id (and optionally the tenant) for everything logged
    inside the block:
        with with_connection_id(tenant="acme") as cid:
            ... handle the socket ...
    """
    previous_cid = _connection_id_ctx.get()
    previous_tenant = _tenant_ctx.get()
    cid = connection_id or uuid.uuid4().hex
    _connection_id_ctx.set(cid)
    if tenant is not None:
        _tenant_ctx.set(tenant)
    try:
        yield cid
    finally:
        _connection_id_ctx.set(previous_cid)
        _tenant_ctx.set(previous_tenant)


def spawn_detached(
    coro: Coroutine[Any, Any, Any],
    *,
    name: Optional[str] = None,
    tenant: Optional[str] = None,
) -> asyncio.Task:
    """
    Start a long-lived task that does not inherit the caller's connection id.
    Only the tenant (if given) is bound inside it.
    """
    ctx = contextvars.Context()
    if tenant is not None:
        ctx.run(_tenant_ctx.set, tenant)
    # create_task copies the running context, which is `ctx` here
    return ctx.run(asyncio.create_task, coro, name=name)
