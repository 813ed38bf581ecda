"""Inbound intent routing: commands, status dispatch and the error boundary."""

from __future__ import annotations

import logging

from roomrelay.core.errors import (
    GENERIC_FAILURE_REPLY,
    MissingContextError,
    RelayError,
    UnhandledStatusError,
)
from roomrelay.schemas.intent import InboundIntent
from roomrelay.services.broadcast import MessagePayload
from roomrelay.services.command_handler import CommandHandler, parse_command
from roomrelay.services.delivery import DeliveryProducer, Replier
from roomrelay.services.flow_manager import ConversationStateMachine

logger = logging.getLogger(__name__)


class MessageRouter:
    """Routes one inbound intent to a command or to the status handler."""

    def __init__(
        self,
        state_machine: ConversationStateMachine,
        command_handler: CommandHandler,
        producer: DeliveryProducer,
        *,
        inbound_dedupe_ttl: int = 300,
    ) -> None:
        self.state_machine = state_machine
        self.command_handler = command_handler
        self.producer = producer
        self.directory = state_machine.directory
        self.state_cache = state_machine.state_cache
        self.inbound_dedupe_ttl = inbound_dedupe_ttl

    async def route_message(self, intent: InboundIntent) -> Replier:
        """Handle one inbound intent. Returns the replier holding the direct replies sent."""
        user_id = intent.user_id.strip()
        reply = Replier(self.producer, chat_id=user_id, message_id=intent.message_id)

        if intent.message_id and not await self.state_cache.mark_inbound_event(
            user_id, intent.message_id, self.inbound_dedupe_ttl
        ):
            logger.info("Skipping redelivered event %s from user %s.", intent.message_id, user_id)
            return reply

        try:
            await self._dispatch(user_id=user_id, intent=intent, reply=reply)
        except UnhandledStatusError:
            logger.error("No handler for status of user %s.", user_id, exc_info=True)
            raise
        except MissingContextError as exc:
            logger.exception("Missing context for user %s: %s", user_id, exc)
            reply(exc.reply)
        except RelayError as exc:
            logger.info("Rejected input from user %s: %s", user_id, exc)
            reply(exc.reply)
        except Exception:
            logger.exception("Failed to handle event %s from user %s.", intent.message_id, user_id)
            if intent.message_id:
                await self._forget_event(user_id, intent.message_id)
            reply(GENERIC_FAILURE_REPLY)
        return reply

    async def _dispatch(self, *, user_id: str, intent: InboundIntent, reply: Replier) -> None:
        await self.directory.upsert_user(
            user_id,
            first_name=intent.first_name,
            last_name=intent.last_name,
            username=intent.username,
        )
        status = await self.state_cache.get_status(user_id, intent.room_id)
        payload = self._build_payload(intent)

        command = parse_command(intent.text) if intent.text and not intent.media_ref else None
        if command is not None:
            name, args = command
            await self.command_handler.handle(
                user_id=user_id,
                command=name,
                args=args,
                status=status,
                payload=payload,
                reply=reply,
                scope_room_id=intent.room_id,
            )
            return

        logger.debug("Dispatching event from user %s in status %s.", user_id, status.kind.value)
        await self.state_machine.handle(
            user_id,
            status,
            payload,
            reply=reply,
            scope_room_id=intent.room_id,
        )

    def _build_payload(self, intent: InboundIntent) -> MessagePayload:
        text = intent.text.strip() if intent.text else None
        return MessagePayload(
            text=text or None,
            file_id=intent.media_ref,
            content_type=intent.content_type,
            reply_to_text=intent.reply_to_text,
            message_id=intent.message_id,
        )

    async def _forget_event(self, user_id: str, message_id: str) -> None:
        try:
            await self.state_cache.forget_inbound_event(user_id, message_id)
        except Exception:
            logger.warning("Could not release inbound marker %s for user %s.", message_id, user_id, exc_info=True)
