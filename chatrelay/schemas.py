"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses and WebSocket frames
"""

from typing import Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendMessageRequest(BaseModel):
    """
    Body of POST /chat/messages.

    Only shape is checked here; length limits and room existence are
    enforced by the ingestion service.
    """
    room_id: str = Field(..., description="Target room id")
    user_id: str = Field(..., description="Sender id")
    username: str = Field(..., description="Sender display name")
    message_text: str = Field(..., description="Message body")
    client_message_id: Optional[str] = Field(
        None,
        description="Client-generated idempotency token"
    )

    @field_validator("room_id", "user_id", "username", "message_text")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        return v.strip()

    @field_validator("client_message_id")
    @classmethod
    def empty_token_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "room_id": "general",
                    "user_id": "u1",
                    "username": "alice",
                    "message_text": "hi",
                    "client_message_id": "c-01",
                }
            ]
        }
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ChatMessageResponse(BaseModel):
    """
    A stored chat message. Same shape for REST responses and WebSocket pushes.
    """
    id: str = Field(..., description="Time-sortable unique message id (ULID)")
    room_id: str = Field(..., description="Room the message belongs to")
    user_id: str = Field(..., description="Sender id")
    username: str = Field(..., description="Sender display name")
    message_text: str = Field(..., description="Message body")
    created_at: str = Field(..., description="Server timestamp (ISO-8601 UTC)")
    client_message_id: Optional[str] = Field(None, description="Client idempotency token")

    model_config = {"from_attributes": True}


class MessagesListResponse(BaseModel):
    """Response model for GET /chat/messages/{room_id}, oldest-first."""
    room_id: str
    messages: list[ChatMessageResponse] = Field(default_factory=list)


class RoomResponse(BaseModel):
    id: str
    name: str
    created_at: str

    model_config = {"from_attributes": True}


class RoomsListResponse(BaseModel):
    rooms: list[RoomResponse] = Field(default_factory=list)


class ConnectionInfo(BaseModel):
    """A connection registry row."""
    connection_id: str
    room_id: str
    user_id: str
    username: str
    connected_at: str
    expires_at: str

    model_config = {"from_attributes": True}


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
