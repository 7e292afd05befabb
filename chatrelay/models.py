"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Column, ForeignKey, Index, Integer, String, Text, UniqueConstraint

from chatrelay.storage import Base


class Room(Base):
    """
    Chat room reference data, seeded at startup.

    Table: rooms
    """
    __tablename__ = "rooms"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    created_at = Column(String, nullable=False)  # Server time ISO-8601


class ChatMessage(Base):
    """
    Append-only per-room message log.

    Table: messages
    - seq: autoincrement change-feed position
    - (room_id, created_at) unique: total order within a room
    - (room_id, client_message_id) unique: idempotent ingestion
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("room_id", "created_at", name="uq_messages_room_created_at"),
        UniqueConstraint("room_id", "client_message_id", name="uq_messages_room_client_message_id"),
    )

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(26), nullable=False, unique=True, index=True)  # ULID
    room_id = Column(String, ForeignKey("rooms.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False)
    username = Column(String, nullable=False)
    message_text = Column(Text, nullable=False)
    created_at = Column(String, nullable=False)  # ISO-8601 UTC, microseconds
    client_message_id = Column(String, nullable=True)


class Connection(Base):
    """
    Live persistent-channel subscriptions.

    Table: connections
    Secondary index (room_id, connected_at) backs stable room enumeration.
    """
    __tablename__ = "connections"
    __table_args__ = (
        Index("ix_connections_room_connected_at", "room_id", "connected_at"),
    )

    connection_id = Column(String, primary_key=True)
    room_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    username = Column(String, nullable=False)
    connected_at = Column(String, nullable=False)
    expires_at = Column(String, nullable=False, index=True)


class FeedCursor(Base):
    """
    Last committed change-feed position per room partition.

    Table: feed_cursors
    """
    __tablename__ = "feed_cursors"

    partition = Column(String, primary_key=True)
    position = Column(Integer, nullable=False, default=0)
    updated_at = Column(String, nullable=False)
