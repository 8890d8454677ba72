from __future__ import annotations

from typing import List

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from app.core.logging import get_logger
from services.log_store import StoreError

logger = get_logger()

router = APIRouter(
    prefix="/tenants",
    tags=["tenants"],
)


class TenantSummary(BaseModel):
    tenant_id: str
    feeds: int
    subscribers: int
    snapshot_ready: bool


class TenantListResponse(BaseModel):
    items: List[TenantSummary]
    total: int


@router.get("", response_model=TenantListResponse)
async def list_tenants(request: Request) -> TenantListResponse:
    """Known tenants with their feed count and live subscriber count."""
    hub = request.app.state.hub
    items: List[TenantSummary] = []
    try:
        for tenant_id in hub.registry.tenants():
            feeds = await hub.registry.feeds(tenant_id)
            items.append(
                TenantSummary(
                    tenant_id=tenant_id,
                    feeds=len(feeds),
                    subscribers=hub.broadcaster.subscriber_count(tenant_id),
                    snapshot_ready=hub.debouncer.has_snapshot(tenant_id),
                )
            )
    except StoreError as exc:
        logger.error("tenants_list_failed", error=str(exc))
        raise HTTPException(status_code=503, detail="tenant data unavailable") from exc
    return TenantListResponse(items=items, total=len(items))
