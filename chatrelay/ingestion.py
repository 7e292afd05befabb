"""
Ingestion service: validates client-submitted messages and appends them to
the message store.

The append is the only trigger for broadcast; this service never talks to
connections. Retries carrying the same (room_id, client_message_id) resolve
to the message stored by the first attempt.
"""

import logging
from typing import Tuple

from sqlalchemy.orm import Session

from chatrelay.config import settings
from chatrelay.errors import InvalidRequest
from chatrelay.schemas import ChatMessageResponse, SendMessageRequest
from chatrelay.storage import append_message, normalize_room_id, room_exists

logger = logging.getLogger(__name__)


class IngestionService:
    def __init__(
        self,
        max_message_length: int = settings.MAX_MESSAGE_LENGTH,
        max_username_length: int = settings.MAX_USERNAME_LENGTH,
        max_client_message_id_length: int = settings.MAX_CLIENT_MESSAGE_ID_LENGTH,
    ):
        self.max_message_length = max_message_length
        self.max_username_length = max_username_length
        self.max_client_message_id_length = max_client_message_id_length

    def validate(self, db: Session, request: SendMessageRequest) -> SendMessageRequest:
        """
        Check limits and room existence; returns the request with room_id normalized.

        Raises:
            InvalidRequest: on any violation, including an unknown room
        """
        if not request.message_text:
            raise InvalidRequest("Message text cannot be empty")
        if len(request.message_text) > self.max_message_length:
            raise InvalidRequest(
                f"Message text cannot be longer than {self.max_message_length} characters"
            )
        if not request.username:
            raise InvalidRequest("Username cannot be empty")
        if len(request.username) > self.max_username_length:
            raise InvalidRequest(
                f"Username cannot be longer than {self.max_username_length} characters"
            )
        if not request.user_id:
            raise InvalidRequest("User ID cannot be empty")
        if (
            request.client_message_id is not None
            and len(request.client_message_id) > self.max_client_message_id_length
        ):
            raise InvalidRequest(
                f"client_message_id cannot be longer than {self.max_client_message_id_length} characters"
            )

        room_id = normalize_room_id(request.room_id)
        if not room_id:
            raise InvalidRequest("Room ID cannot be empty")
        if not room_exists(db, room_id):
            raise InvalidRequest(f"Unknown room: {room_id}")

        return request.model_copy(update={"room_id": room_id})

    def submit(self, db: Session, request: SendMessageRequest) -> Tuple[ChatMessageResponse, bool]:
        """
        Validate and durably append a message.

        Returns:
            Tuple of (stored message, created). created is False when an
            earlier message with the same client_message_id was returned.

        Raises:
            InvalidRequest: validation failed
            StoreUnavailable: the message store could not be written
        """
        request = self.validate(db, request)

        message, created = append_message(
            db=db,
            room_id=request.room_id,
            user_id=request.user_id,
            username=request.username,
            message_text=request.message_text,
            client_message_id=request.client_message_id,
        )
        stored = ChatMessageResponse.model_validate(message)
        logger.info(
            f"Message {'created' if created else 'replayed'}: {stored.id}",
            extra={"room_id": stored.room_id, "dup": not created},
        )
        return stored, created
