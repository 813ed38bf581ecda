"""Room fanout: one inbound message becomes one envelope per other member."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from roomrelay.core.errors import MissingContextError
from roomrelay.schemas.outbound import ContentType
from roomrelay.services.delivery import DeliveryProducer, fanout_key, notice_key
from roomrelay.services.state_cache import StateCache

logger = logging.getLogger(__name__)

SENDER_MARK = "\U0001F977"
NOTICE_MARK = "\U0001F4E3"
REPLY_MARK = "↪"
REPLY_QUOTE_LIMIT = 64


@dataclass(slots=True)
class MessagePayload:
    """Content relayed to a room, detached from the platform update."""

    text: str | None = None
    file_id: str | None = None
    content_type: ContentType = ContentType.TEXT
    reply_to_text: str | None = None
    message_id: str | None = None


def quote_reply(reply_to_text: str | None) -> str | None:
    """One-line quote of a relayed message, without its sender header."""
    if not reply_to_text:
        return None
    lines = [line.strip() for line in reply_to_text.strip().splitlines() if line.strip()]
    if lines and lines[0].startswith((SENDER_MARK, NOTICE_MARK)):
        lines = lines[1:]
    lines = [line for line in lines if not line.startswith(REPLY_MARK)]
    if not lines:
        return None
    quote = " ".join(lines)
    if len(quote) > REPLY_QUOTE_LIMIT:
        quote = quote[: REPLY_QUOTE_LIMIT - 3].rstrip() + "..."
    return quote


def format_room_text(username: str, payload: MessagePayload) -> str:
    parts = [f"{SENDER_MARK} {username}"]
    quote = quote_reply(payload.reply_to_text)
    if quote:
        parts.append(f"{REPLY_MARK} {quote}")
    if payload.text:
        parts.append(payload.text)
    return "\n".join(parts)


class FanoutBroadcaster:
    """Resolves the active members of a room from the cache and emits envelopes."""

    def __init__(self, state_cache: StateCache, producer: DeliveryProducer) -> None:
        self.state_cache = state_cache
        self.producer = producer

    async def broadcast(self, room_id: str, sender_id: str, payload: MessagePayload) -> None:
        """Relay ``payload`` to every active member of the room except the sender.

        The sender is shown by their room username only. Empty and
        single-member rooms are a no-op.
        """
        sender = await self.state_cache.get_participant(room_id, sender_id)
        if sender is None or not sender.username:
            raise MissingContextError(f"No active participant {sender_id} in room {room_id}")

        member_ids = await self.state_cache.get_active_member_ids(room_id)
        recipients = sorted(member_id for member_id in member_ids if member_id != sender_id)
        if not recipients:
            logger.debug("Room %s has no other active members; nothing to relay.", room_id)
            return

        text = format_room_text(sender.username, payload)
        for recipient_id in recipients:
            message = self.producer.build_message(
                chat_id=recipient_id,
                text=text,
                file_id=payload.file_id,
                content_type=payload.content_type,
            )
            self.producer.publish(message, fanout_key(sender_id, recipient_id, payload.message_id))
        logger.debug("Relayed message from %s to %d members of room %s.", sender_id, len(recipients), room_id)

    async def notify(
        self,
        room_id: str,
        text: str,
        *,
        token: str,
        exclude: set[str] | None = None,
        recipients: list[str] | None = None,
    ) -> None:
        """Send a room notice. ``recipients`` overrides the cached member set."""
        if recipients is None:
            recipients = sorted(await self.state_cache.get_active_member_ids(room_id))
        excluded = exclude or set()
        notice = f"{NOTICE_MARK} {text}"
        for recipient_id in recipients:
            if recipient_id in excluded:
                continue
            message = self.producer.build_message(chat_id=recipient_id, text=notice)
            self.producer.publish(message, notice_key(room_id, recipient_id, token))
