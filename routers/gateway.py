from fastapi import APIRouter, Request

from logging_config import get_logger
from schemas.chat import GatewayEvent

logger = get_logger(__name__)

gateway_router = APIRouter(prefix="/gateway", tags=["gateway"])


@gateway_router.post("/events")
async def gateway_event(event: GatewayEvent, request: Request):
    # Managed gateway route integration: CONNECT / DISCONNECT / MESSAGE
    # { "requestContext": { "connectionId": "abc=", "eventType": "CONNECT" }, "queryStringParameters": {...}, "body": "..." }
    lifecycle = request.app.state.lifecycle
    context = event.request_context
    event_type = context.event_type.upper()
    params = event.query_string_parameters or {}

    if event_type == "CONNECT":
        await lifecycle.on_connect(
            room_id=params.get("roomId") or params.get("room_id"),
            user_id=params.get("userId"),
            username=params.get("username"),
            connection_id=context.connection_id,
        )
    elif event_type == "DISCONNECT":
        await lifecycle.on_disconnect(context.connection_id)
    else:
        logger.info(f"WebSocket default route - connectionId: {context.connection_id}, message: {event.body or ''}")

    # Always 200: the handshake never fails on registry trouble
    return {"statusCode": 200}
