"""Process-lifetime session object wiring every collaborator explicitly."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import redis.asyncio as redis
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine

from roomrelay.core.settings import Settings
from roomrelay.db.session import create_engine, create_session_factory
from roomrelay.interfaces.delivery_queue import DeliveryQueue
from roomrelay.providers.messaging.mock_queue import MockDeliveryQueue
from roomrelay.providers.messaging.rabbitmq_queue import RabbitMQDeliveryQueue
from roomrelay.services.bot_service import BotService
from roomrelay.services.broadcast import FanoutBroadcaster
from roomrelay.services.command_handler import CommandHandler
from roomrelay.services.delivery import DeliveryProducer
from roomrelay.services.directory import RoomDirectory
from roomrelay.services.flow_manager import ConversationStateMachine
from roomrelay.services.locks import LockManager
from roomrelay.services.message_router import MessageRouter
from roomrelay.services.state_cache import StateCache

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BotRuntime:
    """Connections and services shared by every request, from start to shutdown."""

    redis: Redis
    engine: AsyncEngine
    producer: DeliveryProducer
    bot_service: BotService

    async def close(self) -> None:
        await self.producer.close()
        await self.redis.aclose()
        await self.engine.dispose()
        logger.info("Runtime closed")


def build_delivery_queue(settings: Settings) -> DeliveryQueue:
    if settings.delivery_backend == "mock":
        return MockDeliveryQueue()
    if settings.delivery_backend != "rabbitmq":
        raise ValueError(f"Unsupported delivery backend '{settings.delivery_backend}'.")
    return RabbitMQDeliveryQueue(
        settings.rabbitmq_url,
        queue_name=settings.rabbitmq_queue,
        exchange_name=settings.rabbitmq_exchange,
        message_ttl_ms=settings.message_ttl_ms,
        dead_letter_exchange=settings.dead_letter_exchange,
        dead_letter_routing_key=settings.dead_letter_routing_key,
    )


def build_bot_service(
    *,
    settings: Settings,
    redis_client: Redis,
    directory: RoomDirectory,
    producer: DeliveryProducer,
) -> BotService:
    state_cache = StateCache(redis_client, directory)
    locks = LockManager(redis_client, default_ttl=settings.lock_ttl_seconds)
    broadcaster = FanoutBroadcaster(state_cache, producer)
    state_machine = ConversationStateMachine(
        directory=directory,
        state_cache=state_cache,
        locks=locks,
        broadcaster=broadcaster,
        username_max_length=settings.username_max_length,
        bot_url=settings.bot_url,
    )
    command_handler = CommandHandler(state_machine, rooms_page_size=settings.rooms_page_size)
    router = MessageRouter(
        state_machine,
        command_handler,
        producer,
        inbound_dedupe_ttl=settings.inbound_dedupe_ttl_seconds,
    )
    return BotService(router)


async def build_runtime(settings: Settings) -> BotRuntime:
    redis_client = redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_timeout=5.0,
        socket_connect_timeout=5.0,
    )
    await redis_client.ping()
    logger.info("[Redis] Connected to %s", settings.redis_url)

    engine = create_engine(settings.database_url)
    directory = RoomDirectory(create_session_factory(engine))
    producer = DeliveryProducer(build_delivery_queue(settings), bot_token=settings.bot_token)
    bot_service = build_bot_service(
        settings=settings,
        redis_client=redis_client,
        directory=directory,
        producer=producer,
    )
    return BotRuntime(redis=redis_client, engine=engine, producer=producer, bot_service=bot_service)
