from fastapi import APIRouter, HTTPException, Request

from errors import ChatError
from logging_config import get_logger
from schemas.chat import ChatMessage, GetMessagesResponse, SendMessageRequest
from services.messages import validate_room_id

logger = get_logger(__name__)

chat_router = APIRouter(prefix="/chat", tags=["chat"])


@chat_router.post("/messages", status_code=201, response_model=ChatMessage, response_model_exclude_none=True)
async def post_message(message_request: SendMessageRequest, request: Request):
    # Body: { "roomId": "general", "userId": "...", "username": "alice", "text": "hi", "clientMessageId": "optional" }
    logger.info(f"Received message request for room: {message_request.room_id}")
    try:
        return await request.app.state.message_service.post_message(message_request)
    except ChatError as e:
        # Validation failures included: the HTTP contract only knows opaque 500s
        logger.error(f"Failed to post message: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@chat_router.get("/messages/{room_id}", response_model=GetMessagesResponse, response_model_exclude_none=True)
async def get_messages(room_id: str, request: Request):
    """Oldest 25 messages of a room, ascending by time."""
    logger.info(f"Retrieving messages for room: {room_id}")
    try:
        messages = await request.app.state.message_service.get_messages(room_id)
    except ChatError as e:
        logger.error(f"Failed to get messages: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")
    return GetMessagesResponse(room_id=validate_room_id(room_id), messages=messages)
