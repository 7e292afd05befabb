"""
Connection lifecycle: CONNECTING -> CONNECTED -> DISCONNECTED (terminal).

The persistent channel is send-only toward clients. Subscribe and disconnect
are the only events acted on; every other inbound frame gets an
"unsupported operation" reply and is otherwise ignored.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.orm import Session

from chatrelay.config import settings
from chatrelay.errors import InvalidRequest, NotFound, StoreUnavailable
from chatrelay.metrics import record_connection_event
from chatrelay.registry import ConnectionRegistry
from chatrelay.schemas import ConnectionInfo
from chatrelay.storage import SessionLocal, normalize_room_id, room_exists
from chatrelay.utils import to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_ROOM_ID = "general"
DEFAULT_USER_ID = "anonymous"
DEFAULT_USERNAME = "anon"

UNSUPPORTED_OPERATION = "unsupported operation"


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass
class ConnectionSession:
    room_id: str
    user_id: str
    username: str
    state: ConnectionState = ConnectionState.CONNECTING
    connection_id: Optional[str] = None


class ConnectionLifecycleHandler:
    def __init__(
        self,
        registry: ConnectionRegistry,
        session_factory: Callable[[], Session] = SessionLocal,
        ttl_seconds: int = settings.CONNECTION_TTL_SECONDS,
        max_username_length: int = settings.MAX_USERNAME_LENGTH,
    ):
        self.registry = registry
        self._session_factory = session_factory
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_username_length = max_username_length

    def open(
        self,
        room_id: Optional[str] = None,
        user_id: Optional[str] = None,
        username: Optional[str] = None,
    ) -> ConnectionSession:
        """
        Resolve subscribe parameters into a CONNECTING session.

        Raises:
            InvalidRequest: bad username
            NotFound: room does not exist
        """
        room_id = normalize_room_id(room_id or DEFAULT_ROOM_ID)
        user_id = (user_id or "").strip() or DEFAULT_USER_ID
        username = (username or "").strip() or DEFAULT_USERNAME

        if len(username) > self.max_username_length:
            record_connection_event("rejected")
            raise InvalidRequest(
                f"Username cannot be longer than {self.max_username_length} characters"
            )
        with self._session_factory() as db:
            exists = room_exists(db, room_id)
        if not exists:
            record_connection_event("rejected")
            raise NotFound(f"Unknown room: {room_id}")

        return ConnectionSession(room_id=room_id, user_id=user_id, username=username)

    def establish(self, session: ConnectionSession, connection_id: str) -> ConnectionInfo:
        """Register the transport handle and move to CONNECTED."""
        if session.state != ConnectionState.CONNECTING:
            raise InvalidRequest(f"Cannot establish a {session.state.value} connection")

        now = utc_now()
        connection = ConnectionInfo(
            connection_id=connection_id,
            room_id=session.room_id,
            user_id=session.user_id,
            username=session.username,
            connected_at=to_iso(now),
            expires_at=to_iso(now + self.ttl),
        )
        self.registry.put(connection)
        session.connection_id = connection_id
        session.state = ConnectionState.CONNECTED
        record_connection_event("connect")
        logger.info(
            f"Connected {session.username} to room {session.room_id}",
            extra={"connection_id": connection_id, "room_id": session.room_id},
        )
        return connection

    def disconnect(self, session: ConnectionSession) -> None:
        """Deregister and move to DISCONNECTED. Safe to call more than once."""
        if session.state == ConnectionState.DISCONNECTED:
            return
        previous, session.state = session.state, ConnectionState.DISCONNECTED
        if previous != ConnectionState.CONNECTED or session.connection_id is None:
            return

        try:
            self.registry.delete(session.connection_id)
        except StoreUnavailable:
            # The row expires on its own, or the next fanout prunes it
            logger.error(f"Failed to remove connection {session.connection_id}")
        record_connection_event("disconnect")
        logger.info(
            f"Disconnected {session.username} from room {session.room_id}",
            extra={"connection_id": session.connection_id, "room_id": session.room_id},
        )

    def handle_frame(self, session: ConnectionSession, frame: str) -> dict:
        """Reply to any inbound frame; nothing else happens."""
        logger.debug(f"Ignoring inbound frame on {session.connection_id} ({len(frame)} chars)")
        return {"error": UNSUPPORTED_OPERATION, "detail": "this channel only delivers messages"}
