"""
WebSocket fan-out of connectivity transitions to the application shell.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Set

from fastapi import WebSocket, WebSocketDisconnect

from fieldsync.services.connectivity import ConnectivityState

logger = logging.getLogger(__name__)


class ConnectivityBroadcaster:
    """Keeps the open status sockets and pushes every transition to them."""

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()

    async def connect(self, websocket: WebSocket, current: ConnectivityState):
        await websocket.accept()
        self.active_connections.add(websocket)

        # Initial snapshot so the shell does not wait for the next transition
        await self._send_to_websocket(websocket, self._message(current, "connectivity_snapshot"))

    def disconnect(self, websocket: WebSocket):
        self.active_connections.discard(websocket)

    async def broadcast(self, state: ConnectivityState):
        """Send ``state`` to every socket, dropping the ones that fail."""
        message = self._message(state, "connectivity_changed")

        failed_connections = []
        for websocket in self.active_connections.copy():
            try:
                await self._send_to_websocket(websocket, message)
            except Exception as e:
                logger.debug(f"Dropping connectivity socket: {e}")
                failed_connections.append(websocket)

        for websocket in failed_connections:
            self.disconnect(websocket)

    async def serve(self, websocket: WebSocket, current: ConnectivityState):
        """Hold the socket open until the client goes away."""
        await self.connect(websocket, current)
        try:
            while True:
                # Clients may ping; anything they send is ignored
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            self.disconnect(websocket)

    def _message(self, state: ConnectivityState, event: str) -> dict:
        return {
            "type": event,
            "state": state.to_dict(),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    async def _send_to_websocket(self, websocket: WebSocket, message: dict):
        await websocket.send_text(json.dumps(message))

    def get_active_connections_count(self) -> int:
        return len(self.active_connections)
