import logging
from contextlib import contextmanager
from typing import Generator, Iterator, List, Optional, Tuple

from sqlalchemy import create_engine, text, func, inspect
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from chatrelay.config import settings
from chatrelay.errors import InvalidRequest, StoreUnavailable
from chatrelay.utils import new_message_id, next_created_at, to_iso, utc_now

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's async
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

# Attempts at picking a unique created_at when concurrent writers collide
CREATED_AT_ATTEMPTS = 3

REQUIRED_TABLES = ("rooms", "messages", "connections", "feed_cursors")


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """Translate SQLAlchemy failures into StoreUnavailable."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(f"Store operation failed: {operation}: {e}")
        raise StoreUnavailable(f"{operation} failed") from e


def init_db() -> None:
    """
    Initialize the database by creating all tables and seeding rooms.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from chatrelay import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        with SessionLocal() as db:
            seed_rooms(db, settings.SEED_ROOMS)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def seed_rooms(db: Session, room_ids: List[str]) -> None:
    """Insert any configured rooms that do not exist yet."""
    from chatrelay.models import Room

    for raw in room_ids:
        room_id = normalize_room_id(raw)
        if not room_id or db.get(Room, room_id) is not None:
            continue
        db.add(Room(id=room_id, name=room_id.title(), created_at=to_iso(utc_now())))
        logger.info(f"Seeded room: {room_id}")
    db.commit()


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        tables = set(inspect(engine).get_table_names())
        missing = [name for name in REQUIRED_TABLES if name not in tables]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


def normalize_room_id(room_id: str) -> str:
    return room_id.strip().lower()


# =============================================================================
# Room Repository Functions
# =============================================================================

def get_room(db: Session, room_id: str):
    from chatrelay.models import Room

    with store_errors("get_room"):
        return db.get(Room, normalize_room_id(room_id))


def room_exists(db: Session, room_id: str) -> bool:
    return get_room(db, room_id) is not None


def list_rooms(db: Session) -> list:
    from chatrelay.models import Room

    with store_errors("list_rooms"):
        return db.query(Room).order_by(Room.id.asc()).all()


# =============================================================================
# Message Store Functions
# =============================================================================

def append_message(
    db: Session,
    room_id: str,
    user_id: str,
    username: str,
    message_text: str,
    client_message_id: Optional[str] = None,
) -> Tuple[object, bool]:
    """
    Append a message to a room's log (idempotent on client_message_id).

    The insert is the conditional write: the unique constraint on
    (room_id, client_message_id) rejects a concurrent identical retry, which
    then resolves to the row that won.

    Args:
        db: Database session
        room_id: Normalized, existing room id
        user_id: Sender id
        username: Sender display name
        message_text: Validated message body
        client_message_id: Optional client idempotency token

    Returns:
        Tuple of (message, created)
        - (message, True): new row appended
        - (message, False): previously stored message for this token

    Raises:
        StoreUnavailable: store failure, or no unique created_at could be assigned
    """
    from chatrelay.models import ChatMessage

    if client_message_id is not None:
        existing = get_message_by_client_id(db, room_id, client_message_id)
        if existing is not None:
            logger.info(f"Duplicate message detected: room={room_id}, client_message_id={client_message_id}")
            return existing, False

    for attempt in range(1, CREATED_AT_ATTEMPTS + 1):
        try:
            newest = (
                db.query(func.max(ChatMessage.created_at))
                .filter(ChatMessage.room_id == room_id)
                .scalar()
            )
            message = ChatMessage(
                id=new_message_id(),
                room_id=room_id,
                user_id=user_id,
                username=username,
                message_text=message_text,
                created_at=next_created_at(newest),
                client_message_id=client_message_id,
            )
            db.add(message)
            db.commit()
            db.refresh(message)
            logger.info(f"Message appended: id={message.id}, room={room_id}, seq={message.seq}")
            return message, True

        except IntegrityError:
            db.rollback()
            if client_message_id is not None:
                existing = get_message_by_client_id(db, room_id, client_message_id)
                if existing is not None:
                    logger.info(f"Concurrent duplicate resolved: room={room_id}, client_message_id={client_message_id}")
                    return existing, False
            logger.warning(f"created_at collision in room {room_id}, attempt {attempt}/{CREATED_AT_ATTEMPTS}")

        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to append message to room {room_id}: {e}")
            raise StoreUnavailable("append_message failed") from e

    raise StoreUnavailable(f"could not assign a unique created_at in room {room_id}")


def get_message_by_client_id(db: Session, room_id: str, client_message_id: str):
    from chatrelay.models import ChatMessage

    with store_errors("get_message_by_client_id"):
        return (
            db.query(ChatMessage)
            .filter(
                ChatMessage.room_id == room_id,
                ChatMessage.client_message_id == client_message_id,
            )
            .first()
        )


def count_messages(db: Session, room_id: str) -> int:
    from chatrelay.models import ChatMessage

    with store_errors("count_messages"):
        return db.query(func.count(ChatMessage.seq)).filter(ChatMessage.room_id == room_id).scalar() or 0


def get_messages(
    db: Session,
    room_id: str,
    limit: int = 50,
    since_id: Optional[str] = None,
) -> list:
    """
    Read a room's history, oldest-first.

    Without since_id, returns the newest `limit` messages (still ascending).
    With since_id, returns up to `limit` messages appended after that one;
    re-running the same query is safe, which is what client polling relies on.

    Raises:
        InvalidRequest: since_id is not a message of this room
    """
    from chatrelay.models import ChatMessage

    logger.debug(f"Querying messages: room={room_id}, limit={limit}, since_id={since_id}")

    with store_errors("get_messages"):
        query = db.query(ChatMessage).filter(ChatMessage.room_id == room_id)

        if since_id:
            anchor = query.filter(ChatMessage.id == since_id).first()
            if anchor is None:
                raise InvalidRequest(f"since_id {since_id} is not a message in room {room_id}")
            return (
                query.filter(ChatMessage.created_at > anchor.created_at)
                .order_by(ChatMessage.created_at.asc())
                .limit(limit)
                .all()
            )

        newest = query.order_by(ChatMessage.created_at.desc()).limit(limit).all()
        newest.reverse()
        return newest
