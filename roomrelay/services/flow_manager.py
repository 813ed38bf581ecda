"""Conversation state machine: one handler per conversation status."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from roomrelay.core.errors import (
    AuthorizationError,
    InvalidInputError,
    MissingContextError,
    UnhandledStatusError,
)
from roomrelay.models.room import Room
from roomrelay.schemas.participant import ParticipantSnapshot
from roomrelay.schemas.room import RoomDraft
from roomrelay.services.broadcast import FanoutBroadcaster, MessagePayload
from roomrelay.services.conversation_status import ConversationStatus, NewRoomStage, StatusKind
from roomrelay.services.delivery import Replier
from roomrelay.services.directory import CODE_TAKEN_REPLY, USERNAME_TAKEN_REPLY, RoomDirectory
from roomrelay.services.locks import LockManager
from roomrelay.services.state_cache import StateCache

logger = logging.getLogger(__name__)

INVALID_CODE_REPLY = "Invalid Code"
MAX_CODE_LENGTH = 64
MAX_TITLE_LENGTH = 255


@dataclass(slots=True)
class Turn:
    """Everything a handler needs about the inbound event being processed."""

    user_id: str
    status: ConversationStatus
    payload: MessagePayload
    reply: Replier
    scope_room_id: str | None = None

    @property
    def text(self) -> str:
        return (self.payload.text or "").strip()


class ConversationStateMachine:
    """Dispatches inbound payloads on the user's current conversation status.

    Handlers may read and write the directory and the cache, reply directly
    to the user and fan messages out to a room. Errors propagate to the
    message router, which owns the user-visible failure reply.
    """

    def __init__(
        self,
        *,
        directory: RoomDirectory,
        state_cache: StateCache,
        locks: LockManager,
        broadcaster: FanoutBroadcaster,
        username_max_length: int = 32,
        bot_url: str | None = None,
    ) -> None:
        self.directory = directory
        self.state_cache = state_cache
        self.locks = locks
        self.broadcaster = broadcaster
        self.username_max_length = username_max_length
        self.bot_url = bot_url

    async def handle(
        self,
        user_id: str,
        status: ConversationStatus,
        payload: MessagePayload,
        *,
        reply: Replier,
        scope_room_id: str | None = None,
    ) -> None:
        """Run the handler registered for ``status.kind``."""
        turn = Turn(user_id=user_id, status=status, payload=payload, reply=reply, scope_room_id=scope_room_id)
        match status.kind:
            case StatusKind.FREE:
                await self._handle_free(turn)
            case StatusKind.INPUT_CODE:
                await self._handle_input_code(turn)
            case StatusKind.INPUT_USERNAME:
                await self._handle_input_username(turn)
            case StatusKind.PARTICIPANT:
                await self._handle_participant(turn)
            case StatusKind.INPUT_NEW_ADMIN:
                await self._handle_input_new_admin(turn)
            case StatusKind.INPUT_NEW_ROOM:
                await self._handle_input_new_room(turn)
            case StatusKind.DISACTIVATE_ROOM:
                await self._handle_disactivate_room(turn)
            case _:
                raise UnhandledStatusError(f"No handler implemented for status: {status.kind}")

    # Shared transitions

    async def set_status(self, turn: Turn, status: ConversationStatus) -> None:
        await self.state_cache.set_status(turn.user_id, status, scope_room_id=turn.scope_room_id)
        logger.info(
            "User %s: %s -> %s (room=%s, stage=%s).",
            turn.user_id,
            turn.status.kind.value,
            status.kind.value,
            status.room_id,
            status.stage,
        )

    async def resting_status(self, user_id: str) -> ConversationStatus:
        """Status to return to after a side flow: PARTICIPANT if still in a room, else FREE."""
        participant = await self.directory.find_current_participant(user_id)
        if participant is not None and participant.is_active and participant.username:
            return ConversationStatus(kind=StatusKind.PARTICIPANT, room_id=str(participant.room_id))
        return ConversationStatus.free()

    async def active_room_id(self, user_id: str) -> str | None:
        participant = await self.directory.find_current_participant(user_id)
        if participant is not None and participant.is_active:
            return str(participant.room_id)
        return None

    async def require_admin(self, user_id: str) -> None:
        user = await self.directory.get_user(user_id)
        if user is None or not user.is_admin:
            raise AuthorizationError(f"User {user_id} is not an admin")

    async def join_room(self, turn: Turn, room: Room, username: str) -> ParticipantSnapshot:
        """Claim ``username`` in ``room`` and become an active member.

        An active participation in another room is exited first, so a user
        is never active in two rooms at once.
        """
        room_id = str(room.id)
        async with self.locks.hold(f"username:{room.id}:{username}"):
            if await self.directory.is_username_taken(room.id, turn.user_id, username):
                raise InvalidInputError(USERNAME_TAKEN_REPLY)
            await self.leave_other_room(turn, room_id)
            participant = await self.directory.claim_username(room.id, turn.user_id, username)
        snapshot = ParticipantSnapshot.from_model(participant)
        await self.state_cache.add_user_to_room(turn.user_id, room_id, snapshot)
        await self.set_status(turn, ConversationStatus(kind=StatusKind.PARTICIPANT, room_id=room_id))
        await self.broadcaster.notify(
            room_id,
            f"{username} joined the room",
            token=f"join-{turn.user_id}-{turn.payload.message_id or 'none'}",
            exclude={turn.user_id},
        )
        return snapshot

    async def leave_other_room(self, turn: Turn, room_id: str) -> None:
        """Exit the user's active participation when it is not ``room_id``."""
        previous_room_id = await self.active_room_id(turn.user_id)
        if previous_room_id is None or previous_room_id == room_id:
            return

        async with self.locks.hold(f"participant-switch:{turn.user_id}"):
            await self.leave_room(turn.user_id, previous_room_id, token=turn.payload.message_id or "switch")
        await self.state_cache.set_status(
            turn.user_id,
            ConversationStatus(kind=StatusKind.FREE, room_id=previous_room_id),
            scope_room_id=previous_room_id,
        )
        if turn.scope_room_id:
            # Unscoped status may still point at the previous room.
            await self.state_cache.clear_status(turn.user_id)

    async def leave_room(self, user_id: str, room_id: str, *, token: str) -> ParticipantSnapshot | None:
        """Deactivate the participation and tell the remaining members."""
        snapshot = await self.state_cache.get_participant(room_id, user_id)
        await self.directory.exit_participant(room_id, user_id)
        await self.state_cache.remove_user_from_room(user_id, room_id)
        if snapshot is not None and snapshot.username:
            await self.broadcaster.notify(
                room_id,
                f"{snapshot.username} left the room",
                token=f"exit-{user_id}-{token}",
                exclude={user_id},
            )
        logger.info("User %s left room %s.", user_id, room_id)
        return snapshot

    # Handlers

    async def _handle_free(self, turn: Turn) -> None:
        return None

    async def _handle_input_code(self, turn: Turn) -> None:
        code = turn.text
        if not code or len(code) > MAX_CODE_LENGTH:
            raise InvalidInputError(INVALID_CODE_REPLY)

        room = await self.directory.get_room_by_code(code, active_only=True)
        if room is None:
            raise InvalidInputError(INVALID_CODE_REPLY)

        current_room_id = turn.status.room_id or await self.active_room_id(turn.user_id)
        if current_room_id == str(room.id) and await self.state_cache.is_user_active_in_room(
            turn.user_id, current_room_id
        ):
            await self.set_status(turn, ConversationStatus(kind=StatusKind.PARTICIPANT, room_id=current_room_id))
            turn.reply(f"You are already in {room.title}")
            return

        if current_room_id and current_room_id != str(room.id):
            async with self.locks.hold(f"participant-switch:{turn.user_id}"):
                await self.leave_room(
                    turn.user_id,
                    current_room_id,
                    token=turn.payload.message_id or "switch",
                )
                participant = await self.directory.add_participant(code, turn.user_id)
        else:
            participant = await self.directory.add_participant(code, turn.user_id)

        if participant is None:
            raise InvalidInputError(INVALID_CODE_REPLY)

        room_id = str(participant.room_id)
        await self.state_cache.remove_user_from_room(turn.user_id, room_id)
        await self.set_status(turn, ConversationStatus(kind=StatusKind.INPUT_USERNAME, room_id=room_id))

        prompt = f"Input username for room {room.title}"
        if participant.username:
            prompt += f"\nYour last username here was {participant.username}. Send it again to keep it."
        turn.reply(prompt)

    async def _handle_input_username(self, turn: Turn) -> None:
        room_id = turn.status.room_id
        if not room_id:
            raise MissingContextError("RoomId is not provided for INPUT_USERNAME")

        room = await self.directory.get_room(room_id)
        if room is None or not room.is_active:
            raise MissingContextError(f"Room {room_id} does not resolve")

        username = self.validate_username(turn.payload.text)
        await self.join_room(turn, room, username)
        turn.reply(f"Welcome {username} to {room.title}\nDescription: {room.description or '-'}")

    def validate_username(self, raw: str | None) -> str:
        username = (raw or "").strip()
        if (
            not username
            or username.startswith("/")
            or "\n" in username
            or len(username) > self.username_max_length
        ):
            raise InvalidInputError(
                f"Username must be a single line of 1-{self.username_max_length} characters. Try again!"
            )
        return username

    async def _handle_participant(self, turn: Turn) -> None:
        room_id = turn.status.room_id
        if not room_id:
            raise MissingContextError("RoomId is not provided for PARTICIPANT")

        payload = turn.payload
        if not payload.text and not payload.file_id:
            return

        try:
            await self.broadcaster.broadcast(room_id, turn.user_id, payload)
        except MissingContextError:
            # The cached status outlived the participation; rebuild it for the next event.
            await self.state_cache.reconcile_status(turn.user_id, turn.scope_room_id)
            raise

    async def _handle_input_new_admin(self, turn: Turn) -> None:
        await self.require_admin(turn.user_id)
        target_id = turn.text
        user = await self.directory.get_user(target_id) if target_id else None
        if user is None:
            raise InvalidInputError("This user doesn`t exist at this bot!")
        if user.is_admin:
            raise InvalidInputError("This user already admin!")

        await self.directory.set_admin(user.id)
        await self.set_status(turn, await self.resting_status(turn.user_id))
        turn.reply(f"Added new admin {user.username or user.first_name or '-'} with ID {user.id}")

    async def _handle_input_new_room(self, turn: Turn) -> None:
        await self.require_admin(turn.user_id)
        stage = turn.status.stage
        text = turn.text

        if stage == NewRoomStage.CODE.value:
            if not text or len(text) > MAX_CODE_LENGTH or any(char.isspace() for char in text):
                raise InvalidInputError("Code must be a single word up to 64 characters. Try again!")
            if await self.directory.get_room_by_code(text, active_only=False) is not None:
                raise InvalidInputError(CODE_TAKEN_REPLY)
            if await self.locks.is_locked(f"room-code:{text}"):
                raise InvalidInputError(CODE_TAKEN_REPLY)
            await self.state_cache.set_room_draft(turn.user_id, RoomDraft(code=text))
            await self.set_status(
                turn,
                ConversationStatus(kind=StatusKind.INPUT_NEW_ROOM, stage=NewRoomStage.TITLE.value),
            )
            turn.reply("Input Title of room")
            return

        if stage == NewRoomStage.TITLE.value:
            draft = await self.state_cache.get_room_draft(turn.user_id)
            if draft is None or not draft.code:
                raise MissingContextError("Empty room draft at cache")
            if not text or len(text) > MAX_TITLE_LENGTH:
                raise InvalidInputError("Title must be 1-255 characters. Try again!")
            await self.state_cache.set_room_draft(turn.user_id, RoomDraft(code=draft.code, title=text))
            await self.set_status(
                turn,
                ConversationStatus(kind=StatusKind.INPUT_NEW_ROOM, stage=NewRoomStage.DESCRIPTION.value),
            )
            turn.reply("Input Description of room")
            return

        if stage == NewRoomStage.DESCRIPTION.value:
            draft = await self.state_cache.get_room_draft(turn.user_id)
            if draft is None or not draft.code or not draft.title:
                raise MissingContextError("Empty room draft at cache")
            room = await self._claim_room(turn, draft, text or None)
            await self.state_cache.delete_room_draft(turn.user_id)
            await self.set_status(turn, await self.resting_status(turn.user_id))
            message = (
                f"Added new room {room.title}\nDescription: {room.description or '-'}\nCode {room.code}"
            )
            if self.bot_url:
                message += f"\nLink: {self.bot_url}?start={room.code}"
            turn.reply(message)
            return

        raise MissingContextError(f"Unknown new room stage: {stage}")

    async def _claim_room(self, turn: Turn, draft: RoomDraft, description: str | None) -> Room:
        """Create the room while holding the code lock."""
        async with self.locks.hold(f"room-code:{draft.code}"):
            if await self.directory.get_room_by_code(draft.code, active_only=False) is not None:
                await self.set_status(
                    turn,
                    ConversationStatus(kind=StatusKind.INPUT_NEW_ROOM, stage=NewRoomStage.CODE.value),
                )
                raise InvalidInputError(f"{CODE_TAKEN_REPLY}\nInput another Code of room")
            return await self.directory.create_room(
                code=draft.code,
                title=draft.title,
                description=description,
            )

    async def _handle_disactivate_room(self, turn: Turn) -> None:
        await self.require_admin(turn.user_id)
        reference = turn.text
        room = await self.directory.get_room(reference) if reference else None
        if room is None and reference:
            room = await self.directory.get_room_by_code(reference, active_only=False)
        if room is None:
            raise InvalidInputError(f"Room with code {reference} doesn't exist")
        if not room.is_active:
            raise InvalidInputError(f"Room {room.title} with code {room.code} is already disactivated")

        room_id = str(room.id)
        cached_members = await self.state_cache.get_active_member_ids(room_id)
        result = await self.directory.deactivate_room(room.id)
        if result is None:
            raise MissingContextError(f"Room {room_id} disappeared during deactivation")
        room, exited_user_ids = result

        members = sorted(set(exited_user_ids) | cached_members)
        await self.state_cache.clear_room(room_id, members)
        for member_id in members:
            await self.state_cache.set_status(
                member_id,
                ConversationStatus(kind=StatusKind.FREE, room_id=room_id),
            )
            await self.state_cache.clear_status(member_id, scope_room_id=room_id)
        await self.broadcaster.notify(
            room_id,
            f"Room {room.title} was closed",
            token=f"closed-{turn.payload.message_id or 'none'}",
            recipients=members,
        )

        await self.set_status(turn, await self.resting_status(turn.user_id))
        turn.reply(f"Room {room.title} with code {room.code} disactivated successfuly")
