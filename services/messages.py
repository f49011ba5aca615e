import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from backend import RedisBackend
from constants import (
    DEFAULT_ROOM_ID,
    DEFAULT_ROOM_NAME,
    EVENT_INSERT,
    MAX_MESSAGE_LENGTH,
    MAX_USERNAME_LENGTH,
    MESSAGE_PAGE_SIZE,
    UNKNOWN_USER_ID,
)
from errors import StoreError, ValidationError
from logging_config import get_logger
from schemas.chat import ChatMessage, SendMessageRequest

logger = get_logger(__name__)


def validate_username(username: Optional[str]) -> str:
    trimmed = (username or "").strip()
    if not trimmed:
        raise ValidationError("Username cannot be empty")
    if len(trimmed) > MAX_USERNAME_LENGTH:
        raise ValidationError(f"Username cannot be longer than {MAX_USERNAME_LENGTH} characters")
    return trimmed


def validate_message_text(text: Optional[str]) -> str:
    trimmed = (text or "").strip()
    if not trimmed:
        raise ValidationError("Message text cannot be empty")
    if len(trimmed) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message text cannot be longer than {MAX_MESSAGE_LENGTH} characters")
    return trimmed


def validate_room_id(room_id: Optional[str]) -> str:
    trimmed = (room_id or "").strip()
    if not trimmed:
        raise ValidationError("Room ID cannot be empty")
    return trimmed.lower()


def millis_to_datetime(ts: int) -> datetime:
    # Integer split keeps the millisecond part exact
    return datetime.fromtimestamp(ts // 1000, tz=timezone.utc) + timedelta(milliseconds=ts % 1000)


def build_insert_record(message_item: dict) -> dict:
    """Change record for a freshly inserted message, in stream-image form."""
    image = {}
    for field, value in message_item.items():
        image[field] = {"N": str(value)} if field == "ts" else {"S": str(value)}
    return {"eventName": EVENT_INSERT, "dynamodb": {"NewImage": image}}


def message_from_item(item: dict, room_id: str) -> Optional[ChatMessage]:
    """Rebuild a ChatMessage from its stored hash; None if the hash is incomplete."""
    try:
        ts = int(item["ts"])
        return ChatMessage(
            id=item["id"],
            room_id=room_id,
            user_id=item.get("user_id") or UNKNOWN_USER_ID,
            username=item["username"],
            text=item["message_text"],
            created_at=millis_to_datetime(ts),
            client_message_id=item.get("client_message_id"),
        )
    except (KeyError, ValueError) as e:
        logger.warning(f"Skipping malformed message item in room {room_id}: {e}")
        return None


class MessageService:
    def __init__(self, backend: RedisBackend, clock: Callable[[], datetime] = None):
        self.backend = backend
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def ensure_room_exists(self, room_id: str) -> bool:
        if await self.backend.get_room(room_id):
            return False
        now = self.clock()
        return await self.backend.create_room_if_absent(room_id, {
            "name": DEFAULT_ROOM_NAME if room_id == DEFAULT_ROOM_ID else room_id,
            "created_at_iso": now.isoformat(),
            "created_at_epoch": int(now.timestamp()),
        })

    async def post_message(self, request: SendMessageRequest) -> ChatMessage:
        room_id = validate_room_id(request.room_id)
        username = validate_username(request.username)
        text = validate_message_text(request.text)
        # Empty ids read back as the placeholder everywhere else
        user_id = request.user_id or UNKNOWN_USER_ID

        await self.ensure_room_exists(room_id)

        now = self.clock()
        ts = int(now.timestamp()) * 1000 + now.microsecond // 1000
        created_at = millis_to_datetime(ts)
        message_id = str(uuid.uuid4())

        item = {
            "id": message_id,
            "room_id": room_id,
            "user_id": user_id,
            "username": username,
            "message_text": text,
            "ts": str(ts),
            "created_at_iso": created_at.isoformat(),
        }
        if request.client_message_id:
            item["client_message_id"] = request.client_message_id

        await self.backend.save_message(item)

        try:
            await self.backend.publish_change(build_insert_record(item))
        except StoreError as e:
            # Message is committed; only the live fan-out for it is lost
            logger.error(f"Failed to publish change record for message {message_id}: {e}")

        return ChatMessage(
            id=message_id,
            room_id=room_id,
            user_id=user_id,
            username=username,
            text=text,
            created_at=created_at,
            client_message_id=item.get("client_message_id"),
        )

    async def get_messages(self, room_id: str) -> List[ChatMessage]:
        room_id = validate_room_id(room_id)
        items = await self.backend.get_room_messages(room_id, MESSAGE_PAGE_SIZE)
        messages = [m for m in (message_from_item(item, room_id) for item in items) if m is not None]
        logger.info(f"Retrieved {len(messages)} messages for room {room_id}")
        return messages
