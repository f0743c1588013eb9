import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from wishlisty.api.deps import load_user
from wishlisty.services.container import Services

router = APIRouter(tags=["ws"])
logger = logging.getLogger("wishlisty.ws")

WS_PING_INTERVAL = 30   # seconds between server-initiated pings
WS_PING_TIMEOUT  = 60   # seconds to wait for pong before closing idle connection


def _ws_token(websocket: WebSocket) -> str | None:
    auth_header = websocket.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.removeprefix("Bearer ").strip()
    if websocket.query_params.get("token"):
        return websocket.query_params["token"]
    return websocket.cookies.get("access_token")


@router.websocket("/ws/notifications")
async def notifications_ws(websocket: WebSocket) -> None:
    await websocket.accept()
    services: Services = websocket.app.state.services

    # ── Auth ──────────────────────────────────────────────────────────────
    token = _ws_token(websocket)
    user = await load_user(services, token) if token else None
    if user is None:
        logger.warning("WS auth failed")
        await websocket.close(code=1008)
        return

    user_id = user.id
    await services.presence.join_room(user_id, websocket)
    try:
        unread = await services.router.badge_unread_count(user_id)
        await websocket.send_json({"type": "unread_count_update", "unreadCount": unread})
    except Exception:
        logger.exception("WS initial badge sync failed user_id=%s", user_id)

    # ── Message loop with idle-timeout ────────────────────────────────────
    try:
        while True:
            try:
                await asyncio.wait_for(
                    websocket.receive_text(),
                    timeout=WS_PING_INTERVAL,
                )
            except asyncio.TimeoutError:
                # No message received within ping interval, send a ping
                try:
                    await asyncio.wait_for(
                        websocket.send_text('{"type":"ping"}'),
                        timeout=WS_PING_TIMEOUT - WS_PING_INTERVAL,
                    )
                except Exception:
                    logger.info("WS idle timeout, closing user_id=%s", user_id)
                    break
    except WebSocketDisconnect:
        logger.info("WS disconnected user_id=%s", user_id)
    finally:
        await services.presence.leave_room(user_id, websocket)
