import json

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from delivery import PUSH_GONE, PUSH_NOT_FOUND
from logging_config import get_logger
from schemas.chat import ChatMessage

logger = get_logger(__name__)

dev_router = APIRouter(prefix="/dev", tags=["dev"])


@dev_router.post("/conn/{connection_id}/send")
async def push_to_connection(connection_id: str, message: ChatMessage, request: Request):
    """Local push target: hand a message to one development-mode socket.

    200 when queued, 404 when no such socket is held here, 410 while it is
    closing. The dispatcher prunes the registry record on 404 and 410.
    """
    result = await request.app.state.channel_hub.push(connection_id, json.dumps(message.to_payload()))
    if result == PUSH_NOT_FOUND:
        logger.debug(f"Push to unknown local connection {connection_id}")
        return JSONResponse(status_code=404, content={"status": "not_found"})
    if result == PUSH_GONE:
        logger.debug(f"Push to closing local connection {connection_id}")
        return JSONResponse(status_code=410, content={"status": "gone"})
    return {"status": "ok"}
