from __future__ import annotations

from typing import Optional, Tuple

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from app.core.context import with_connection_id
from app.core.logging import get_logger
from services.log_store import InvalidTenantError, StoreError, validate_tenant_id

logger = get_logger()

router = APIRouter(tags=["stream"])

PING = "ping"
PONG = "pong"


def resolve_tenant(websocket: WebSocket) -> Tuple[Optional[str], Optional[str]]:
    """
    Tenant comes from the first requested subprotocol (underscores map to
    dashes), or from `?tenant=` for clients that cannot set subprotocols.
    Returns (tenant_id, subprotocol_to_echo).
    """
    subprotocols = websocket.scope.get("subprotocols") or []
    if subprotocols:
        requested = subprotocols[0]
        return requested.replace("_", "-"), requested
    tenant = websocket.query_params.get("tenant")
    return (tenant.replace("_", "-") if tenant else None), None


async def _receive_message(websocket: WebSocket) -> Optional[str]:
    """Next inbound frame as text. Binary frames are decoded leniently."""
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        code = message.get("code", status.WS_1000_NORMAL_CLOSURE)
        raise WebSocketDisconnect(code, message.get("reason"))
    text = message.get("text")
    if text is None:
        data = message.get("bytes")
        if data is None:
            logger.debug("subscriber_frame_ignored", frame_type=message["type"])
            return None
        text = data.decode("utf-8", errors="replace")
    return text


@router.websocket("/")
@router.websocket("/ws")
async def subscriber_stream(websocket: WebSocket) -> None:
    hub = websocket.app.state.hub
    tenant_id, subprotocol = resolve_tenant(websocket)
    try:
        validate_tenant_id(tenant_id or "")
    except InvalidTenantError:
        logger.warning("subscriber_rejected", reason="invalid_tenant", tenant=tenant_id)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept(subprotocol=subprotocol)

    with with_connection_id(tenant=tenant_id):
        logger.info("subscriber_connected")
        subscription = hub.broadcaster.register_connection(tenant_id, websocket)
        hub.broadcaster.greet(subscription)
        try:
            while True:
                message = await _receive_message(websocket)
                if message is None:
                    continue
                if message == PING:
                    hub.broadcaster.send_control(subscription, PONG)
                    continue
                # anything else is a feed URL; bad URLs surface as poll errors
                await hub.registry.register_feed(tenant_id, message)
        except WebSocketDisconnect:
            pass
        except StoreError as exc:
            logger.error("feed_registration_failed", error=str(exc))
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        finally:
            await hub.broadcaster.unregister_connection(subscription)
            logger.info("subscriber_disconnected")
