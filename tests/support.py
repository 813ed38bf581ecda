"""Test doubles and a fully wired conversation engine for tests."""

from __future__ import annotations

import unittest
import uuid
from typing import Any

from redis.exceptions import LockError, LockNotOwnedError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

import roomrelay.models  # noqa: F401
from roomrelay.db.base import Base
from roomrelay.db.session import create_session_factory
from roomrelay.interfaces.delivery_queue import DeliveryQueue
from roomrelay.models.room import Room
from roomrelay.schemas.outbound import Envelope
from roomrelay.services.broadcast import FanoutBroadcaster, MessagePayload
from roomrelay.services.command_handler import CommandHandler
from roomrelay.services.conversation_status import ConversationStatus, StatusKind
from roomrelay.services.delivery import DeliveryProducer, Replier
from roomrelay.services.directory import RoomDirectory
from roomrelay.services.flow_manager import ConversationStateMachine
from roomrelay.services.locks import LockManager
from roomrelay.services.message_router import MessageRouter
from roomrelay.services.state_cache import StateCache


class StubPipeline:
    """Buffered MULTI/EXEC over StubRedis."""

    def __init__(self, redis: "StubRedis") -> None:
        self.redis = redis
        self.commands: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []

    async def __aenter__(self) -> "StubPipeline":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.commands.clear()

    def __getattr__(self, name: str):
        if name not in {"get", "set", "delete", "sadd", "srem", "smembers", "sismember"}:
            raise AttributeError(name)

        def queue(*args: Any, **kwargs: Any) -> "StubPipeline":
            self.commands.append((name, args, kwargs))
            return self

        return queue

    async def execute(self) -> list[Any]:
        self.redis.pipeline_executions += 1
        if self.redis.fail_pipelines:
            raise ConnectionError("stub redis is down")
        results = []
        for name, args, kwargs in self.commands:
            results.append(await getattr(self.redis, name)(*args, **kwargs))
        self.commands.clear()
        return results


class StubLock:
    """Token-owned lock with the semantics of redis.asyncio.lock.Lock."""

    def __init__(self, redis: "StubRedis", name: str, timeout: float | None) -> None:
        self.redis = redis
        self.name = name
        self.timeout = timeout
        self.token: str | None = None

    async def acquire(self) -> bool:
        token = uuid.uuid4().hex
        if await self.redis.set(self.name, token, nx=True, ex=self.timeout):
            self.token = token
            return True
        return False

    async def release(self) -> None:
        token, self.token = self.token, None
        if token is None:
            raise LockError("Cannot release an unlocked lock")
        if await self.redis.get(self.name) != token:
            raise LockNotOwnedError("Cannot release a lock that's no longer owned")
        await self.redis.delete(self.name)


class StubRedis:
    """In-memory subset of redis.asyncio.Redis with a manual clock for expiry."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.sets: dict[str, set[str]] = {}
        self.expires_at: dict[str, float] = {}
        self.now = 0.0
        self.pipeline_executions = 0
        self.fail_pipelines = False

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def _purge(self, key: str) -> None:
        expires_at = self.expires_at.get(key)
        if expires_at is not None and expires_at <= self.now:
            self.values.pop(key, None)
            self.sets.pop(key, None)
            self.expires_at.pop(key, None)

    def _exists(self, key: str) -> bool:
        self._purge(key)
        return key in self.values or key in self.sets

    async def get(self, key: str) -> str | None:
        self._purge(key)
        return self.values.get(key)

    async def set(self, key: str, value: Any, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and self._exists(key):
            return None
        self.values[key] = str(value)
        if ex is not None:
            self.expires_at[key] = self.now + ex
        else:
            self.expires_at.pop(key, None)
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._exists(key):
                removed += 1
            self.values.pop(key, None)
            self.sets.pop(key, None)
            self.expires_at.pop(key, None)
        return removed

    async def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if self._exists(key))

    async def sadd(self, key: str, *members: str) -> int:
        self._purge(key)
        bucket = self.sets.setdefault(key, set())
        added = len(set(members) - bucket)
        bucket.update(members)
        return added

    async def srem(self, key: str, *members: str) -> int:
        bucket = self.sets.get(key, set())
        removed = len(bucket & set(members))
        bucket.difference_update(members)
        if not bucket:
            self.sets.pop(key, None)
        return removed

    async def smembers(self, key: str) -> set[str]:
        self._purge(key)
        return set(self.sets.get(key, set()))

    async def sismember(self, key: str, member: str) -> int:
        self._purge(key)
        return 1 if member in self.sets.get(key, set()) else 0

    def pipeline(self, transaction: bool = True) -> StubPipeline:
        del transaction
        return StubPipeline(self)

    def lock(self, name: str, timeout: float | None = None, blocking: bool = True) -> StubLock:
        del blocking
        return StubLock(self, name, timeout)


class RecordingDeliveryQueue(DeliveryQueue):
    """Delivery backend test double that records published envelopes."""

    def __init__(self) -> None:
        self.envelopes: list[Envelope] = []
        self.fail_for_chats: set[str] = set()
        self.closed = False

    async def publish(self, envelope: Envelope) -> None:
        if envelope.body.chat_id in self.fail_for_chats:
            raise ConnectionError(f"broker rejected chat {envelope.body.chat_id}")
        self.envelopes.append(envelope)

    async def close(self) -> None:
        self.closed = True

    def texts_for(self, chat_id: str) -> list[str]:
        return [envelope.body.text or "" for envelope in self.envelopes if envelope.body.chat_id == chat_id]


class RelayTestCase(unittest.IsolatedAsyncioTestCase):
    """Wires the conversation engine against SQLite, StubRedis and a recording queue."""

    async def asyncSetUp(self) -> None:
        self.engine = create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        async with self.engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)

        self.directory = RoomDirectory(create_session_factory(self.engine))
        self.redis = StubRedis()
        self.queue = RecordingDeliveryQueue()
        self.producer = DeliveryProducer(self.queue, bot_token="test-token")
        self.state_cache = StateCache(self.redis, self.directory)
        self.locks = LockManager(self.redis, default_ttl=5)
        self.broadcaster = FanoutBroadcaster(self.state_cache, self.producer)
        self.state_machine = ConversationStateMachine(
            directory=self.directory,
            state_cache=self.state_cache,
            locks=self.locks,
            broadcaster=self.broadcaster,
            username_max_length=32,
            bot_url="https://t.me/room_relay_bot",
        )
        self.command_handler = CommandHandler(self.state_machine, rooms_page_size=2)
        self.router = MessageRouter(self.state_machine, self.command_handler, self.producer)

    async def asyncTearDown(self) -> None:
        await self.producer.close()
        await self.engine.dispose()

    async def create_room(self, code: str = "ABC123", title: str = "Night Owls") -> Room:
        return await self.directory.create_room(code=code, title=title, description=f"{title} description")

    async def create_user(self, user_id: str, *, admin: bool = False) -> None:
        await self.directory.upsert_user(user_id, first_name=f"name-{user_id}", username=f"tg_{user_id}")
        if admin:
            await self.directory.set_admin(user_id)

    async def status_of(self, user_id: str) -> ConversationStatus:
        return await self.state_cache.get_status(user_id)

    async def handle(self, user_id: str, text: str | None, *, message_id: str | None = None) -> Replier:
        reply = Replier(self.producer, chat_id=user_id, message_id=message_id)
        status = await self.state_cache.get_status(user_id)
        await self.state_machine.handle(
            user_id,
            status,
            MessagePayload(text=text, message_id=message_id),
            reply=reply,
        )
        await self.producer.drain()
        return reply

    async def join(self, user_id: str, code: str, username: str) -> None:
        """Drive a user from FREE to PARTICIPANT through the state machine."""
        await self.create_user(user_id)
        await self.state_cache.set_status(user_id, ConversationStatus(kind=StatusKind.INPUT_CODE))
        await self.handle(user_id, code)
        await self.handle(user_id, username)
