"""
Connection gateway: the transport side of the persistent channel.

Holds this process's live WebSocket objects under opaque connection handles
and pushes frames to them. A handle the gateway does not hold (closed, or
left in the registry by a previous process) reports ConnectionGone, which is
distinct from every transient failure.
"""

import asyncio
import logging
import uuid
from typing import Dict, Protocol

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

from chatrelay.errors import ConnectionGone, TransientDeliveryError
from chatrelay.metrics import active_connections

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def send(self, connection_id: str, payload: str) -> None:
        """
        Push one text frame to a connection.

        Raises:
            ConnectionGone: the handle is dead
            TransientDeliveryError: anything worth retrying
        """
        ...


class ConnectionGateway:
    def __init__(self):
        self._sockets: Dict[str, WebSocket] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._sockets)

    def attach(self, websocket: WebSocket) -> str:
        """Take ownership of an accepted socket and assign its handle."""
        connection_id = uuid.uuid4().hex
        self._sockets[connection_id] = websocket
        self._locks[connection_id] = asyncio.Lock()
        active_connections.inc()
        logger.debug(f"Attached connection {connection_id}")
        return connection_id

    def detach(self, connection_id: str) -> None:
        if self._sockets.pop(connection_id, None) is not None:
            active_connections.dec()
            logger.debug(f"Detached connection {connection_id}")
        self._locks.pop(connection_id, None)

    async def send(self, connection_id: str, payload: str) -> None:
        websocket = self._sockets.get(connection_id)
        lock = self._locks.get(connection_id)
        if websocket is None or lock is None:
            raise ConnectionGone(connection_id, "handle not held by this gateway")

        async with lock:
            if (
                websocket.application_state != WebSocketState.CONNECTED
                or websocket.client_state != WebSocketState.CONNECTED
            ):
                self.detach(connection_id)
                raise ConnectionGone(connection_id, "socket closed")
            try:
                await websocket.send_text(payload)
            except WebSocketDisconnect as e:
                self.detach(connection_id)
                raise ConnectionGone(connection_id, f"client went away ({e.code})") from e
            except RuntimeError as e:
                # Starlette raises RuntimeError for a send after close
                self.detach(connection_id)
                raise ConnectionGone(connection_id, str(e)) from e
            except Exception as e:
                raise TransientDeliveryError(connection_id, str(e)) from e
