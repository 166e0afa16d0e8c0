"""
Gateway feature: WebSocket routes.

  /esp32-ws   device channel, one receive loop per socket
  /ws/events  observer stream of {event, data} frames
"""

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from classroom_sync.features.gateway.gateway import Channel, ProtocolGateway

logger = logging.getLogger(__name__)

router = APIRouter()


class WebSocketChannel(Channel):
    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def send_text(self, text: str) -> None:
        await self.websocket.send_text(text)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self.websocket.close(code=code, reason=reason)


@router.websocket("/esp32-ws")
async def device_socket(websocket: WebSocket):
    gateway: ProtocolGateway = websocket.app.state.gateway
    await websocket.accept()

    client = websocket.client.host if websocket.client else None
    conn = gateway.open(WebSocketChannel(websocket), remote_ip=client)
    try:
        while True:
            raw = await websocket.receive_text()
            await gateway.handle_message(conn, raw)
    except WebSocketDisconnect:
        pass
    except RuntimeError as e:
        # Socket closed from our side (replaced / liveness / protocol error)
        logger.debug(f"Receive loop for connection {conn.id} ended: {e}")
    finally:
        await gateway.handle_disconnect(conn)


@router.websocket("/ws/events")
async def observer_socket(websocket: WebSocket):
    hub = websocket.app.state.event_hub
    await websocket.accept()
    queue = hub.subscribe()
    logger.info(f"👀 Observer connected ({hub.observer_count} total)")
    try:
        while True:
            frame = await queue.get()
            await websocket.send_json(frame)
    except (WebSocketDisconnect, RuntimeError):
        pass
    finally:
        hub.unsubscribe(queue)
        logger.info(f"👀 Observer disconnected ({hub.observer_count} left)")
