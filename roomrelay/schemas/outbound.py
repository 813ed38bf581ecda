"""Outbound message body and envelope published to the delivery queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

SEND_ROUTING_KEY = "message.send"


class ContentType(str, Enum):
    TEXT = "TEXT"
    PHOTO = "PHOTO"
    VIDEO = "VIDEO"
    AUDIO = "AUDIO"
    FILE = "FILE"
    ANIMATION = "ANIMATION"


class MessageType(str, Enum):
    SINGLE_CHAT = "SINGLE_CHAT"
    BROADCAST = "BROADCAST"
    GROUP = "GROUP"


class OutboundMessage(BaseModel):
    """Body consumed by the sender process."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    bot_token: str = Field(..., alias="botToken")
    chat_id: str = Field(..., alias="chatId")
    text: str | None = None
    file_id: str | None = Field(default=None, alias="fileId")
    content_type: ContentType = Field(default=ContentType.TEXT, alias="contentType")
    type: MessageType = MessageType.SINGLE_CHAT


@dataclass(slots=True)
class Envelope:
    """Durable, deduplicable wrapper around one outbound message."""

    body: OutboundMessage
    idempotency_key: str
    routing_key: str = SEND_ROUTING_KEY
    headers: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.headers.setdefault("x-original-routing-key", self.routing_key)
        self.headers.setdefault("message-id", self.idempotency_key)

    def body_dict(self) -> dict[str, Any]:
        """Wire representation of the body using the sender's field names."""
        return self.body.model_dump(by_alias=True, exclude_none=True)
