"""
Utility functions for the chat relay.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import ulid

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Format a datetime as ISO-8601 UTC with microseconds and Z suffix (sortable as text)."""
    return dt.astimezone(timezone.utc).strftime(ISO_FORMAT)


def parse_iso(value: str) -> datetime:
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)


def new_message_id() -> str:
    """Globally unique, time-sortable message identifier (ULID)."""
    return str(ulid.ULID())


def next_created_at(previous: Optional[str], now: Optional[datetime] = None) -> str:
    """
    Server timestamp for the next message in a room.

    Strictly greater than the room's newest created_at, so that
    (room_id, created_at) stays unique and matches append order even when
    the clock has not advanced (or went backwards).

    Args:
        previous: created_at of the newest message in the room, if any
        now: current time (defaults to utc_now())

    Returns:
        ISO-8601 UTC timestamp string
    """
    now = now or utc_now()
    if previous is not None:
        floor = parse_iso(previous) + timedelta(microseconds=1)
        if now < floor:
            now = floor
    return to_iso(now)
