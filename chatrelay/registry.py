"""
Connection registry: which live connection handles are subscribed to which room.

Rows are owned by the lifecycle handler (put/delete) and the fanout engine
(delete on a gone signal). Deletes are unconditional and idempotent, so a
client disconnect racing a fanout prune simply leaves the row absent.
"""

import logging
from datetime import datetime
from typing import Callable, Iterator, Optional

from sqlalchemy.orm import Session

from chatrelay.models import Connection
from chatrelay.schemas import ConnectionInfo
from chatrelay.storage import SessionLocal, store_errors
from chatrelay.utils import to_iso, utc_now

logger = logging.getLogger(__name__)

# Rows fetched per round-trip while enumerating a room
ROOM_SCAN_CHUNK = 100


class ConnectionRegistry:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def put(self, connection: ConnectionInfo) -> None:
        """Insert or replace a connection row."""
        with store_errors("registry.put"), self._session_factory() as db:
            db.merge(Connection(**connection.model_dump()))
            db.commit()
        logger.debug(f"Registered connection {connection.connection_id} in room {connection.room_id}")

    def get(self, connection_id: str) -> Optional[ConnectionInfo]:
        with store_errors("registry.get"), self._session_factory() as db:
            row = db.get(Connection, connection_id)
            return ConnectionInfo.model_validate(row) if row is not None else None

    def get_by_room(self, room_id: str, now: Optional[datetime] = None) -> Iterator[ConnectionInfo]:
        """
        Lazily enumerate connections subscribed to a room.

        Ordered by (connected_at, connection_id) off the room index. Rows
        already past expires_at are skipped; a returned connection may still
        turn out to be gone when delivered to.
        """
        cutoff = to_iso(now or utc_now())
        with store_errors("registry.get_by_room"), self._session_factory() as db:
            query = (
                db.query(Connection)
                .filter(Connection.room_id == room_id, Connection.expires_at > cutoff)
                .order_by(Connection.connected_at.asc(), Connection.connection_id.asc())
                .yield_per(ROOM_SCAN_CHUNK)
            )
            for row in query:
                yield ConnectionInfo.model_validate(row)

    def count_by_room(self, room_id: str, now: Optional[datetime] = None) -> int:
        """Live connections in a room; expired rows are not counted, as in get_by_room."""
        cutoff = to_iso(now or utc_now())
        with store_errors("registry.count_by_room"), self._session_factory() as db:
            return (
                db.query(Connection)
                .filter(Connection.room_id == room_id, Connection.expires_at > cutoff)
                .count()
            )

    def delete(self, connection_id: str) -> bool:
        """
        Remove a connection row. No error if it is already gone.

        Returns:
            True if a row was removed
        """
        with store_errors("registry.delete"), self._session_factory() as db:
            removed = (
                db.query(Connection)
                .filter(Connection.connection_id == connection_id)
                .delete(synchronize_session=False)
            )
            db.commit()
        logger.debug(f"Deleted connection {connection_id} (removed={bool(removed)})")
        return bool(removed)

    def reap_expired(self, now: Optional[datetime] = None) -> int:
        """Delete every row whose expires_at has passed. Returns the count."""
        cutoff = to_iso(now or utc_now())
        with store_errors("registry.reap_expired"), self._session_factory() as db:
            removed = (
                db.query(Connection)
                .filter(Connection.expires_at <= cutoff)
                .delete(synchronize_session=False)
            )
            db.commit()
        if removed:
            logger.info(f"Reaped {removed} expired connections")
        return removed
