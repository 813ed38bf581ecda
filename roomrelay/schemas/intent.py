"""Schemas for inbound intents delivered by the transport adapter."""

from pydantic import BaseModel, ConfigDict, Field

from roomrelay.schemas.outbound import ContentType


class InboundIntent(BaseModel):
    """One structured update from the bot platform."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId", description="Platform user id", examples=["772526893"])
    room_id: str | None = Field(default=None, alias="roomId", description="Room scope for dedicated-room bots")
    message_id: str | None = Field(default=None, alias="messageId", description="Platform message id")
    text: str | None = None
    media_ref: str | None = Field(default=None, alias="mediaRef", description="Platform file id")
    content_type: ContentType = Field(default=ContentType.TEXT, alias="contentType")
    reply_to_text: str | None = Field(default=None, alias="replyToText")
    first_name: str | None = Field(default=None, alias="firstName")
    last_name: str | None = Field(default=None, alias="lastName")
    username: str | None = None


class IntentAccepted(BaseModel):
    """Response payload for the intent webhook."""

    status: str = "accepted"
