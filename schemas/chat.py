from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SendMessageRequest(CamelModel):
    room_id: str
    user_id: str
    username: str
    text: str
    client_message_id: Optional[str] = None

class ChatMessage(CamelModel):
    id: str
    room_id: str
    user_id: str
    username: str
    text: str
    created_at: datetime
    client_message_id: Optional[str] = None

    def to_payload(self) -> dict:
        """JSON-ready dict in the wire shape clients receive over the socket."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

class GetMessagesResponse(CamelModel):
    room_id: str
    messages: List[ChatMessage]

class Connection(CamelModel):
    """Connection registry record, stored under its field names."""

    connection_id: str
    room_id: str
    user_id: str
    username: str
    transport: str
    push_target: str
    connected_at: int  # epoch millis
    expires_at: int  # epoch seconds

class HealthStatus(str, Enum):
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    UNHEALTHY = "Unhealthy"

class HealthCheck(BaseModel):
    status: HealthStatus
    version: str
    timestamp: datetime

class GatewayRequestContext(CamelModel):
    connection_id: str
    event_type: str
    route_key: Optional[str] = None
    domain_name: Optional[str] = None
    stage: Optional[str] = None

class GatewayEvent(CamelModel):
    request_context: GatewayRequestContext
    query_string_parameters: Optional[Dict[str, str]] = None
    body: Optional[str] = None
