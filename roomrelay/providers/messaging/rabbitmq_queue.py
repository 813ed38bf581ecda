"""RabbitMQ delivery queue backed by aio-pika."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractRobustConnection

from roomrelay.interfaces.delivery_queue import DeliveryQueue
from roomrelay.schemas.outbound import SEND_ROUTING_KEY, Envelope

logger = logging.getLogger(__name__)


def build_queue_arguments(
    *,
    message_ttl_ms: int,
    dead_letter_exchange: str,
    dead_letter_routing_key: str,
) -> dict[str, Any]:
    """Arguments of the durable send queue: expire after the TTL into the DLX."""
    return {
        "x-message-ttl": message_ttl_ms,
        "x-dead-letter-exchange": dead_letter_exchange,
        "x-dead-letter-routing-key": dead_letter_routing_key,
    }


def build_message(envelope: Envelope) -> aio_pika.Message:
    return aio_pika.Message(
        body=json.dumps(envelope.body_dict(), ensure_ascii=False).encode("utf-8"),
        headers=dict(envelope.headers),
        message_id=envelope.idempotency_key,
        content_type="application/json",
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
    )


class RabbitMQDeliveryQueue(DeliveryQueue):
    """Publishes envelopes to a durable queue with dead-lettering on expiry.

    Topology (declared lazily on first publish):
    - direct exchange ``exchange_name`` -> queue ``queue_name`` bound by ``message.send``
    - queue arguments: x-message-ttl, x-dead-letter-exchange, x-dead-letter-routing-key
    - direct exchange ``dead_letter_exchange`` -> ``{queue_name}.dead`` parking queue
    """

    def __init__(
        self,
        url: str,
        *,
        queue_name: str,
        exchange_name: str,
        message_ttl_ms: int = 60_000,
        dead_letter_exchange: str = "dlx_exchange",
        dead_letter_routing_key: str = "dlx_routing_key",
    ) -> None:
        self.url = url
        self.queue_name = queue_name
        self.exchange_name = exchange_name
        self.message_ttl_ms = message_ttl_ms
        self.dead_letter_exchange = dead_letter_exchange
        self.dead_letter_routing_key = dead_letter_routing_key
        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None
        self._setup_lock = asyncio.Lock()

    async def _ensure_exchange(self) -> AbstractExchange:
        if self._exchange is not None:
            return self._exchange
        async with self._setup_lock:
            if self._exchange is not None:
                return self._exchange

            connection = await aio_pika.connect_robust(self.url)
            try:
                channel = await connection.channel()
                exchange = await self._declare_topology(channel)
            except Exception:
                logger.error("[RabbitMQ] Topology declaration failed; closing connection.")
                await connection.close()
                raise

            self._connection = connection
            self._channel = channel
            self._exchange = exchange
            logger.info("[RabbitMQ] Declared queue %s on exchange %s.", self.queue_name, self.exchange_name)
            return exchange

    async def _declare_topology(self, channel: AbstractChannel) -> AbstractExchange:
        dead_letter_exchange = await channel.declare_exchange(
            self.dead_letter_exchange,
            aio_pika.ExchangeType.DIRECT,
            durable=True,
        )
        dead_letter_queue = await channel.declare_queue(f"{self.queue_name}.dead", durable=True)
        await dead_letter_queue.bind(dead_letter_exchange, routing_key=self.dead_letter_routing_key)

        exchange = await channel.declare_exchange(
            self.exchange_name,
            aio_pika.ExchangeType.DIRECT,
            durable=True,
        )
        queue = await channel.declare_queue(
            self.queue_name,
            durable=True,
            arguments=build_queue_arguments(
                message_ttl_ms=self.message_ttl_ms,
                dead_letter_exchange=self.dead_letter_exchange,
                dead_letter_routing_key=self.dead_letter_routing_key,
            ),
        )
        await queue.bind(exchange, routing_key=SEND_ROUTING_KEY)
        return exchange

    async def publish(self, envelope: Envelope) -> None:
        exchange = await self._ensure_exchange()
        await exchange.publish(build_message(envelope), routing_key=envelope.routing_key)

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            logger.info("[RabbitMQ] Connection closed")
        self._connection = None
        self._channel = None
        self._exchange = None
