"""ICE configuration and signaling endpoints."""
from __future__ import annotations

import logging

import anyio
from fastapi import APIRouter, WebSocket

from ..schemas.signaling import BrokerStats, IceConfigResponse
from ..services import rtc as rtc_service
from ..services.broker import broker

router = APIRouter()

logger = logging.getLogger(__name__)


@router.get("/config", response_model=IceConfigResponse, response_model_by_alias=True, response_model_exclude_none=True)
async def get_ice_config() -> IceConfigResponse:
    """Return the STUN/TURN servers participants should use."""

    return rtc_service.ice_config()


@router.get("/stats", response_model=BrokerStats)
async def get_broker_stats() -> BrokerStats:
    """Expose queue and room counts for monitoring."""

    return await broker.stats()


@router.websocket("/signaling")
async def signaling_endpoint(websocket: WebSocket) -> None:
    """One participant per connection: matching requests in, relayed signaling out."""

    await websocket.accept()
    participant = await broker.connect(websocket.send_json)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                raw = (message.get("bytes") or b"").decode("utf-8", errors="replace")
            await broker.handle_message(participant, raw)
    except Exception as exc:
        logger.warning("Signaling channel for %s failed: %s", participant.id, exc)
    finally:
        # The server cancels the endpoint once the client disconnects; cleanup must still finish.
        with anyio.CancelScope(shield=True):
            await broker.disconnect(participant)
