"""WebSocket endpoint — live profile change notifications.

Learn: Each client connects to /ws/profiles. The handler:
1. Subscribes to the notification bus (bounded queue, WS_QUEUE_CAPACITY)
2. Waits for one client frame (the "kick") before streaming anything;
   events that arrive in the meantime are queued, not lost
3. Forwards every change event as one text frame
4. Unsubscribes when the session ends, whichever side ended it

This is a long-lived connection. Closing codes tell the client why:
1011 evicted as a slow consumer, 1012 change feed lost (INVALIDATE was
sent, reconnect to resume), 1001 server shutting down, 1002 protocol
error on the kick frame.
"""

import asyncio

import structlog
from fastapi import APIRouter, WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

from profilecast.realtime.bus import CloseReason, NotificationBus, Subscription
from profilecast.schemas.profile import ProfileNotification
from profilecast.store.base import ChangeEvent

logger = structlog.get_logger()
router = APIRouter()

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_PROTOCOL_ERROR = 1002
CLOSE_INTERNAL_ERROR = 1011
CLOSE_SERVICE_RESTART = 1012

_CLOSE_CODES = {
    CloseReason.SLOW_CONSUMER: CLOSE_INTERNAL_ERROR,
    CloseReason.UPSTREAM_LOST: CLOSE_SERVICE_RESTART,
    CloseReason.BUS_STOPPED: CLOSE_GOING_AWAY,
}


def encode_notification(event: ChangeEvent, fmt: str = "json") -> str:
    """Render a change event as a text frame.

    "json" → {"id": ..., "email": ..., "kind": ...} (INVALIDATE: {"kind": "INVALIDATE"})
    "id"   → the bare profile id (INVALIDATE: "INVALIDATE")
    """
    if fmt == "id":
        return event.profile.id if event.profile else event.kind.value
    return ProfileNotification.from_event(event).model_dump_json(exclude_none=True)


@router.websocket("/ws/profiles")
async def profiles_websocket(websocket: WebSocket):
    """WebSocket endpoint for profile change notifications.

    Learn: Two concurrent tasks run after the kick frame:
    1. Writer — reads the subscription queue, sends text frames
    2. Reader — reads client frames (payloads ignored), notices disconnect

    When either finishes, the other is cancelled and the subscription is
    released. A slow client only ever overflows its own queue.
    """
    bus: NotificationBus = websocket.app.state.bus
    settings = websocket.app.state.settings

    await websocket.accept()
    subscription = bus.subscribe(capacity=settings.ws_queue_capacity)
    log = logger.bind(subscription_id=subscription.id)
    protocol_error = False

    try:
        # ── Kick frame ──────────────────────────────────────
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            log.info("ws.disconnected_before_ready")
            return
        if message.get("text") is None:
            log.warning("ws.protocol_error", detail="initial frame must be text")
            protocol_error = True
            return
        log.info("ws.ready")

        await _pump(websocket, subscription, settings.notification_format, log)
    finally:
        if protocol_error:
            close_code = CLOSE_PROTOCOL_ERROR
        else:
            close_code = _CLOSE_CODES.get(subscription.close_reason, CLOSE_NORMAL)
        bus.unsubscribe(subscription)
        await _close_quietly(websocket, close_code, log)
        log.info(
            "ws.closed",
            code=close_code,
            delivered=subscription.delivered,
            dropped=subscription.dropped,
        )


async def _pump(websocket: WebSocket, subscription: Subscription, fmt: str, log) -> None:
    async def forward_changes():
        """Forward subscription events to the WebSocket client."""
        try:
            async for event in subscription:
                await websocket.send_text(encode_notification(event, fmt))
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            log.info("ws.send_failed", error=str(e) or type(e).__name__)

    async def watch_client():
        """Drain incoming frames until the client goes away."""
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    log.info("ws.client_disconnected", code=message.get("code"))
                    return
        except (WebSocketDisconnect, RuntimeError) as e:
            log.info("ws.receive_failed", error=str(e) or type(e).__name__)

    writer = asyncio.create_task(forward_changes())
    reader = asyncio.create_task(watch_client())

    try:
        # Wait for either to finish (client disconnect or subscription closed)
        await asyncio.wait(
            [writer, reader],
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        for task in (writer, reader):
            task.cancel()
        await asyncio.gather(writer, reader, return_exceptions=True)


async def _close_quietly(websocket: WebSocket, code: int, log) -> None:
    if (
        websocket.application_state != WebSocketState.CONNECTED
        or websocket.client_state != WebSocketState.CONNECTED
    ):
        return
    try:
        await websocket.close(code=code)
    except (RuntimeError, OSError) as e:
        log.debug("ws.close_failed", error=str(e))
