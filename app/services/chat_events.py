import json
import logging
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

from app.config import ChatConfig

logger = logging.getLogger(__name__)

MESSAGE_CREATED = "message.created"
THREAD_CLOSED = "thread.closed"


def thread_channel(thread_id: int) -> str:
    return f"private-chat.{thread_id}"


class ChatEventBroadcaster:
    """Fans chat events out to sockets subscribed to a thread."""

    def __init__(self) -> None:
        self.sockets_by_thread: dict[int, set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, thread_id: int) -> None:
        await websocket.accept()
        self.sockets_by_thread.setdefault(thread_id, set()).add(websocket)

    def disconnect(self, websocket: WebSocket, thread_id: int) -> None:
        sockets = self.sockets_by_thread.get(thread_id)
        if sockets:
            sockets.discard(websocket)
            if len(sockets) == 0:
                self.sockets_by_thread.pop(thread_id, None)

    def subscriber_count(self, thread_id: int) -> int:
        return len(self.sockets_by_thread.get(thread_id, set()))

    async def listen(self, websocket: WebSocket, thread_id: int) -> None:
        """Serve a subscribed socket until the client goes away.

        Clients may only ping; messages are written through the REST endpoints
        so the policy and validation apply.
        """
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                if not isinstance(data, dict):
                    continue

                if data.get("action") == "ping":
                    await websocket.send_json({"event": "pong"})
                    continue

                await websocket.send_json({"event": "chat.error", "detail": "Use REST endpoint for sending messages"})
        except WebSocketDisconnect:
            pass
        finally:
            self.disconnect(websocket, thread_id)

    async def publish(self, thread_id: int, event: str, data: dict[str, Any], config: ChatConfig) -> None:
        if not config.enabled:
            return
        payload = {"event": event, "channel": thread_channel(thread_id), "data": data}
        for socket in list(self.sockets_by_thread.get(thread_id, set())):
            try:
                await socket.send_json(payload)
            except Exception:
                logger.debug("Dropping dead chat socket", extra={"thread_id": thread_id})
                self.disconnect(socket, thread_id)


chat_events = ChatEventBroadcaster()
