"""Ephemeral conversation state kept in Redis in front of the directory.

Key structure:
- user-status:{userId} / user-status:{roomId}:{userId} - serialized ConversationStatus
- room-active-users:{roomId} - set of active participant user ids
- participant-data:{roomId}:{userId} - serialized ParticipantSnapshot
- room-draft:{userId} - partially entered room for the new-room flow
- inbound-event:{userId}:{messageId} - redelivery marker

Everything here can be dropped at any time. Status reads reconcile from the
directory on a miss and write the derived value back.
"""

from __future__ import annotations

import logging
from dataclasses import asdict

from redis.asyncio import Redis

from roomrelay.schemas.participant import ParticipantSnapshot
from roomrelay.schemas.room import RoomDraft
from roomrelay.services.conversation_status import ConversationStatus, derive_status
from roomrelay.services.directory import RoomDirectory
from roomrelay.services.serialization import deserialize, serialize

logger = logging.getLogger(__name__)

USER_STATUS_PREFIX = "user-status:"
ROOM_ACTIVE_USERS_PREFIX = "room-active-users:"
PARTICIPANT_PREFIX = "participant-data:"
ROOM_DRAFT_PREFIX = "room-draft:"
INBOUND_EVENT_PREFIX = "inbound-event:"


class StateCache:
    """Read-through / write-through cache over the room directory."""

    def __init__(self, redis: Redis, directory: RoomDirectory) -> None:
        self._redis = redis
        self._directory = directory

    def _status_key(self, user_id: str, room_id: str | None) -> str:
        if room_id:
            return f"{USER_STATUS_PREFIX}{room_id}:{user_id}"
        return f"{USER_STATUS_PREFIX}{user_id}"

    def _members_key(self, room_id: str) -> str:
        return f"{ROOM_ACTIVE_USERS_PREFIX}{room_id}"

    def _participant_key(self, room_id: str, user_id: str) -> str:
        return f"{PARTICIPANT_PREFIX}{room_id}:{user_id}"

    def _draft_key(self, user_id: str) -> str:
        return f"{ROOM_DRAFT_PREFIX}{user_id}"

    # Status

    async def get_status(self, user_id: str, room_id: str | None = None) -> ConversationStatus:
        """Return the cached status, reconciling from the directory on a miss."""
        raw = await self._redis.get(self._status_key(user_id, room_id))
        data = deserialize(raw)
        if data:
            return ConversationStatus.from_dict(data)
        return await self.reconcile_status(user_id, room_id)

    async def reconcile_status(self, user_id: str, room_id: str | None = None) -> ConversationStatus:
        """Derive the status from the participant row and cache it."""
        if room_id:
            participant = await self._directory.get_participant(room_id, user_id)
        else:
            participant = await self._directory.find_current_participant(user_id)
        status = derive_status(participant)
        logger.debug("Reconciled status for user %s (scope=%s): %s.", user_id, room_id, status.kind.value)
        return await self.set_status(user_id, status, scope_room_id=room_id)

    async def set_status(
        self,
        user_id: str,
        status: ConversationStatus,
        *,
        scope_room_id: str | None = None,
    ) -> ConversationStatus:
        await self._redis.set(self._status_key(user_id, scope_room_id), serialize(status.to_dict()))
        return status

    async def clear_status(self, user_id: str, scope_room_id: str | None = None) -> None:
        await self._redis.delete(self._status_key(user_id, scope_room_id))

    # Membership

    async def add_user_to_room(self, user_id: str, room_id: str, participant: ParticipantSnapshot) -> None:
        """Add to the active set and store the snapshot in one transaction."""
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.sadd(self._members_key(room_id), user_id)
            pipe.set(self._participant_key(room_id, user_id), serialize(participant.model_dump()))
            await pipe.execute()

    async def remove_user_from_room(self, user_id: str, room_id: str) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.srem(self._members_key(room_id), user_id)
            pipe.delete(self._participant_key(room_id, user_id))
            await pipe.execute()

    async def clear_room(self, room_id: str, user_ids: list[str]) -> None:
        """Forget a room's active set and the snapshots of ``user_ids``."""
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._members_key(room_id))
            for user_id in user_ids:
                pipe.delete(self._participant_key(room_id, user_id))
            await pipe.execute()

    async def is_user_active_in_room(self, user_id: str, room_id: str) -> bool:
        return bool(await self._redis.sismember(self._members_key(room_id), user_id))

    async def get_active_member_ids(self, room_id: str) -> set[str]:
        members = await self._redis.smembers(self._members_key(room_id))
        return {str(member) for member in members}

    async def get_participant(self, room_id: str, user_id: str) -> ParticipantSnapshot | None:
        """Return the cached snapshot, falling back to the directory.

        An active row found in the directory is put back into the active set
        together with its snapshot. Inactive or missing rows return ``None``.
        """
        data = deserialize(await self._redis.get(self._participant_key(room_id, user_id)))
        if data:
            return ParticipantSnapshot.model_validate(data)

        participant = await self._directory.get_participant(room_id, user_id)
        if participant is None or not participant.is_active:
            return None

        snapshot = ParticipantSnapshot.from_model(participant)
        await self.add_user_to_room(user_id, room_id, snapshot)
        logger.debug("Restored participant snapshot for user %s in room %s.", user_id, room_id)
        return snapshot

    async def get_active_participants(self, room_id: str) -> list[ParticipantSnapshot]:
        member_ids = await self.get_active_member_ids(room_id)
        snapshots: list[ParticipantSnapshot] = []
        for user_id in sorted(member_ids):
            snapshot = await self.get_participant(room_id, user_id)
            if snapshot is not None:
                snapshots.append(snapshot)
        return snapshots

    # New-room drafts

    async def get_room_draft(self, user_id: str) -> RoomDraft | None:
        data = deserialize(await self._redis.get(self._draft_key(user_id)))
        if not data:
            return None
        return RoomDraft(**data)

    async def set_room_draft(self, user_id: str, draft: RoomDraft) -> None:
        await self._redis.set(self._draft_key(user_id), serialize(asdict(draft)))

    async def delete_room_draft(self, user_id: str) -> None:
        await self._redis.delete(self._draft_key(user_id))

    # Inbound redelivery

    async def mark_inbound_event(self, user_id: str, message_id: str, ttl: int) -> bool:
        """Record an inbound event. Returns False if it was already seen."""
        key = f"{INBOUND_EVENT_PREFIX}{user_id}:{message_id}"
        return bool(await self._redis.set(key, "1", nx=True, ex=ttl))

    async def forget_inbound_event(self, user_id: str, message_id: str) -> None:
        await self._redis.delete(f"{INBOUND_EVENT_PREFIX}{user_id}:{message_id}")
