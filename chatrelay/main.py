"""
Chat relay HTTP and WebSocket application.

Runs as a single process: the gateway holds this process's sockets, and any
registry row whose handle it does not hold is pruned as gone. Do not run it
under `uvicorn --workers N` with N > 1.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, Query, Request, Response, WebSocket, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from chatrelay.config import settings
from chatrelay.errors import (
    ConnectionGone,
    InvalidRequest,
    NotFound,
    RelayError,
    StoreUnavailable,
    TransientDeliveryError,
)
from chatrelay.fanout import FanoutEngine
from chatrelay.feed import ChangeFeed, FeedConsumer
from chatrelay.ingestion import IngestionService
from chatrelay.lifecycle import ConnectionLifecycleHandler
from chatrelay.logging_utils import setup_logging, RequestLoggingMiddleware, log_ingest_data
from chatrelay.metrics import record_message_outcome, get_metrics, get_metrics_content_type
from chatrelay.registry import ConnectionRegistry
from chatrelay.schemas import (
    ChatMessageResponse,
    ErrorResponse,
    HealthResponse,
    MessagesListResponse,
    RoomResponse,
    RoomsListResponse,
    SendMessageRequest,
)
from chatrelay.storage import check_db_health, get_db, get_messages, get_room, init_db, list_rooms
from chatrelay.transport import ConnectionGateway


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# WebSocket close codes
WS_POLICY_VIOLATION = 1008
WS_INTERNAL_ERROR = 1011

ingestion_service = IngestionService()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: create tables, seed rooms, wire the fanout pipeline and start
    the feed consumer. Shutdown: stop the consumer.
    """
    init_db()

    registry = ConnectionRegistry()
    gateway = ConnectionGateway()
    engine = FanoutEngine(registry=registry, transport=gateway)
    consumer = FeedConsumer(feed=ChangeFeed(), engine=engine, registry=registry)

    app.state.registry = registry
    app.state.gateway = gateway
    app.state.fanout_engine = engine
    app.state.feed_consumer = consumer
    app.state.lifecycle = ConnectionLifecycleHandler(registry=registry)

    if settings.FANOUT_WORKER_ENABLED:
        consumer.start()
    yield
    if settings.FANOUT_WORKER_ENABLED:
        await consumer.stop()


app = FastAPI(
    title="Chat Relay",
    description="Real-time chat relay: REST ingestion, WebSocket fanout",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the
    schema is applied; otherwise 503.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Chat Routes
# =============================================================================

@app.post(
    "/chat/messages",
    status_code=status.HTTP_201_CREATED,
    response_model=ChatMessageResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid request"},
        500: {"model": ErrorResponse, "description": "Store unavailable"},
    }
)
async def post_message(
    request: Request,
    db: Session = Depends(get_db)
) -> ChatMessageResponse:
    """
    Store a chat message; the change feed broadcasts it to the room.

    - Validates body, length limits and room existence (400 otherwise)
    - Idempotent: a repeated (room_id, client_message_id) returns the
      originally stored message instead of creating another one

    Body:
        {room_id, user_id, username, message_text, client_message_id?}
    """
    raw_body = await request.body()

    try:
        body = json.loads(raw_body)
        send_request = SendMessageRequest.model_validate(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error(f"Invalid JSON: {e}")
        record_message_outcome("validation_error")
        log_ingest_data(request=request, result="validation_error")
        raise InvalidRequest(f"Invalid JSON: {e}")
    except ValidationError as e:
        logger.error(f"Validation error: {e}")
        record_message_outcome("validation_error")
        log_ingest_data(request=request, result="validation_error")
        raise InvalidRequest(str(e))

    try:
        message, created = ingestion_service.submit(db, send_request)
    except InvalidRequest:
        record_message_outcome("validation_error")
        log_ingest_data(request=request, room_id=send_request.room_id, result="validation_error")
        raise
    except StoreUnavailable:
        record_message_outcome("error")
        log_ingest_data(request=request, room_id=send_request.room_id, result="error")
        raise

    result = "created" if created else "duplicate"
    record_message_outcome(result, len(message.message_text))
    log_ingest_data(
        request=request,
        message_id=message.id,
        room_id=message.room_id,
        dup=not created,
        result=result,
    )

    if created:
        request.app.state.feed_consumer.notify()

    return message


@app.get(
    "/chat/messages/{room_id}",
    response_model=MessagesListResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Unknown since_id"},
        404: {"model": ErrorResponse, "description": "Unknown room"},
    }
)
async def list_room_messages(
    room_id: str,
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of messages to return")] = settings.HISTORY_DEFAULT_LIMIT,
    since_id: Annotated[str | None, Query(description="Only messages after this message id")] = None,
    db: Session = Depends(get_db)
) -> MessagesListResponse:
    """
    Room history, oldest-first.

    Without since_id: the newest `limit` messages. With since_id: up to
    `limit` messages appended after it, for clients reconciling after
    missed pushes.
    """
    room = get_room(db, room_id)
    if room is None:
        raise NotFound(f"Unknown room: {room_id.strip().lower()}")

    messages = get_messages(db=db, room_id=room.id, limit=limit, since_id=since_id)
    logger.info(f"GET /chat/messages/{room.id}: returned {len(messages)} messages (since_id={since_id})")

    return MessagesListResponse(
        room_id=room.id,
        messages=[ChatMessageResponse.model_validate(m) for m in messages],
    )


@app.get("/chat/rooms", response_model=RoomsListResponse)
async def list_chat_rooms(db: Session = Depends(get_db)) -> RoomsListResponse:
    return RoomsListResponse(rooms=[RoomResponse.model_validate(r) for r in list_rooms(db)])


# =============================================================================
# Persistent Channel
# =============================================================================

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Subscribe to a room: ws://host/ws?room_id=general&user_id=u1&username=alice

    - Unknown room or bad parameters: handshake rejected (close 1008)
    - Each stored message in the room arrives as one JSON text frame
    - Inbound frames are answered with {"error": "unsupported operation"}
    """
    lifecycle: ConnectionLifecycleHandler = websocket.app.state.lifecycle
    gateway: ConnectionGateway = websocket.app.state.gateway
    params = websocket.query_params

    try:
        session = lifecycle.open(
            room_id=params.get("room_id"),
            user_id=params.get("user_id") or params.get("userId"),
            username=params.get("username"),
        )
    except (InvalidRequest, NotFound) as e:
        logger.warning(f"WebSocket subscribe rejected: {e.detail}")
        await websocket.close(code=WS_POLICY_VIOLATION, reason=e.detail)
        return
    except StoreUnavailable:
        await websocket.close(code=WS_INTERNAL_ERROR)
        return

    await websocket.accept()
    # Held by the gateway before the registry row exists, so a concurrent
    # fanout never sees the row without a live handle
    connection_id = gateway.attach(websocket)

    try:
        lifecycle.establish(session, connection_id)
    except StoreUnavailable:
        gateway.detach(connection_id)
        await websocket.close(code=WS_INTERNAL_ERROR)
        return

    try:
        while True:
            event = await websocket.receive()
            if event["type"] == "websocket.disconnect":
                break
            frame = event.get("text")
            if frame is None:
                frame = (event.get("bytes") or b"").decode("utf-8", "replace")
            reply = lifecycle.handle_frame(session, frame)
            try:
                await gateway.send(connection_id, json.dumps(reply))
            except ConnectionGone:
                break
            except TransientDeliveryError as e:
                logger.warning(f"Could not answer frame on {connection_id}: {e.detail}")
    finally:
        gateway.detach(connection_id)
        lifecycle.disconnect(session)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
