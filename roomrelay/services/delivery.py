"""Fire-and-forget producer in front of the delivery queue backend."""

from __future__ import annotations

import asyncio
import logging

from roomrelay.interfaces.delivery_queue import DeliveryQueue
from roomrelay.schemas.outbound import ContentType, Envelope, MessageType, OutboundMessage

logger = logging.getLogger(__name__)


def fanout_key(sender_id: str, recipient_id: str, message_id: str | None) -> str:
    key = f"{sender_id}-fanout-{recipient_id}"
    return f"{key}-{message_id}" if message_id else key


def reply_key(chat_id: str, message_id: str | None, index: int) -> str:
    return f"{chat_id}-{message_id or 'none'}-{index}"


def notice_key(room_id: str, recipient_id: str, token: str) -> str:
    return f"{room_id}-notice-{recipient_id}-{token}"


class DeliveryProducer:
    """Wraps outbound messages in envelopes and hands them to the broker.

    ``publish`` never blocks and never raises. Envelopes go through one
    in-process queue drained by a single worker, so envelopes leave in
    the order they were published. Broker failures are logged and the
    worker moves on to the next envelope.
    """

    def __init__(self, queue: DeliveryQueue, bot_token: str) -> None:
        self.queue = queue
        self.bot_token = bot_token
        self._pending: asyncio.Queue[Envelope | None] | None = None
        self._worker: asyncio.Task[None] | None = None
        self.failed_count = 0

    def build_message(
        self,
        *,
        chat_id: str,
        text: str | None,
        file_id: str | None = None,
        content_type: ContentType = ContentType.TEXT,
        message_type: MessageType = MessageType.SINGLE_CHAT,
    ) -> OutboundMessage:
        return OutboundMessage(
            bot_token=self.bot_token,
            chat_id=chat_id,
            text=text,
            file_id=file_id,
            content_type=content_type,
            type=message_type,
        )

    def publish(self, message: OutboundMessage, idempotency_key: str) -> None:
        """Queue one message for asynchronous delivery."""
        envelope = Envelope(body=message, idempotency_key=idempotency_key)
        try:
            self._ensure_worker()
            self._pending.put_nowait(envelope)
        except Exception:
            self.failed_count += 1
            logger.exception("Failed to enqueue envelope %s.", idempotency_key)

    def _ensure_worker(self) -> None:
        if self._pending is None:
            self._pending = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run(self._pending))

    async def _run(self, pending: asyncio.Queue[Envelope | None]) -> None:
        while True:
            envelope = await pending.get()
            try:
                if envelope is None:
                    return
                await self.queue.publish(envelope)
            except Exception:
                self.failed_count += 1
                logger.exception(
                    "Error publishing envelope %s to chat %s.",
                    envelope.idempotency_key,
                    envelope.body.chat_id,
                )
            finally:
                pending.task_done()

    async def drain(self) -> None:
        """Wait until every queued envelope has been handed to the backend."""
        if self._pending is not None and self._worker is not None and not self._worker.done():
            await self._pending.join()

    async def close(self) -> None:
        """Flush the backlog, stop the worker and close the backend."""
        if self._pending is not None and self._worker is not None and not self._worker.done():
            self._pending.put_nowait(None)
            await self._worker
        self._worker = None
        self._pending = None
        await self.queue.close()


class Replier:
    """Direct replies to the user whose inbound event is being handled."""

    def __init__(self, producer: DeliveryProducer, chat_id: str, message_id: str | None = None) -> None:
        self.producer = producer
        self.chat_id = chat_id
        self.message_id = message_id
        self.sent: list[str] = []

    def __call__(self, text: str) -> None:
        self.sent.append(text)
        message = self.producer.build_message(chat_id=self.chat_id, text=text)
        self.producer.publish(message, reply_key(self.chat_id, self.message_id, len(self.sent)))
