"""Slash commands that move users between conversation statuses."""

from __future__ import annotations

import logging

from roomrelay.core.errors import InvalidInputError, MissingContextError
from roomrelay.schemas.room import RoomPage
from roomrelay.services.broadcast import MessagePayload
from roomrelay.services.conversation_status import ConversationStatus, NewRoomStage, StatusKind
from roomrelay.services.delivery import Replier
from roomrelay.services.flow_manager import ConversationStateMachine, Turn

logger = logging.getLogger(__name__)

WELCOME_REPLY = "Welcome to Anonymous Rooms!\nEnter /open for room connection"
HELP_REPLY = (
    "Commands:\n"
    "/open - join a room by code\n"
    "/exit - leave the current room\n"
    "/rooms [page] - rooms you have joined\n"
    "/cancel - cancel the current input"
)
ADMIN_HELP_REPLY = (
    "\nAdmin commands:\n"
    "/new_room - create a room\n"
    "/new_admin - grant admin rights\n"
    "/disactivate_room - close a room"
)


def parse_command(text: str) -> tuple[str, str] | None:
    """Split ``/name@bot args`` into ``(name, args)``. Non-commands return None."""
    stripped = text.strip()
    if not stripped.startswith("/"):
        return None
    head, _, args = stripped.partition(" ")
    name = head[1:].split("@", 1)[0].lower()
    if not name:
        return None
    return name, args.strip()


class CommandHandler:
    """Handles slash commands before status dispatch."""

    def __init__(self, state_machine: ConversationStateMachine, rooms_page_size: int = 10) -> None:
        self.state_machine = state_machine
        self.directory = state_machine.directory
        self.state_cache = state_machine.state_cache
        self.rooms_page_size = rooms_page_size

    async def handle(
        self,
        *,
        user_id: str,
        command: str,
        args: str,
        status: ConversationStatus,
        payload: MessagePayload,
        reply: Replier,
        scope_room_id: str | None = None,
    ) -> None:
        turn = Turn(user_id=user_id, status=status, payload=payload, reply=reply, scope_room_id=scope_room_id)
        logger.debug("User %s issued /%s in status %s.", user_id, command, status.kind.value)

        if command == "start":
            await self._start(turn, args)
        elif command == "open":
            await self._open(turn)
        elif command in {"exit", "stop"}:
            await self._exit(turn)
        elif command == "cancel":
            await self._cancel(turn)
        elif command == "rooms":
            await self._rooms(turn, args)
        elif command == "new_admin":
            await self.state_machine.require_admin(user_id)
            await self.state_machine.set_status(turn, ConversationStatus(kind=StatusKind.INPUT_NEW_ADMIN))
            reply("Input user ID of new admin")
        elif command == "new_room":
            await self.state_machine.require_admin(user_id)
            await self.state_cache.delete_room_draft(user_id)
            await self.state_machine.set_status(
                turn,
                ConversationStatus(kind=StatusKind.INPUT_NEW_ROOM, stage=NewRoomStage.CODE.value),
            )
            reply("Input Code of room")
        elif command == "disactivate_room":
            await self.state_machine.require_admin(user_id)
            await self.state_machine.set_status(turn, ConversationStatus(kind=StatusKind.DISACTIVATE_ROOM))
            reply("Input ID or Code of room")
        else:
            await self._help(turn)

    async def _start(self, turn: Turn, code: str) -> None:
        if turn.scope_room_id:
            await self._start_in_scope(turn)
            return

        turn.reply(WELCOME_REPLY)
        if code:
            current_room_id = await self.state_machine.active_room_id(turn.user_id)
            await self.state_machine.handle(
                turn.user_id,
                ConversationStatus(kind=StatusKind.INPUT_CODE, room_id=current_room_id),
                MessagePayload(text=code, message_id=turn.payload.message_id),
                reply=turn.reply,
            )

    async def _start_in_scope(self, turn: Turn) -> None:
        """Dedicated-room bots: /start enters the bot's own room directly."""
        room_id = turn.scope_room_id
        room = await self.directory.get_room(room_id)
        if room is None or not room.is_active:
            raise MissingContextError(f"Can`t find room by roomId: {room_id}")

        participant = await self.directory.get_participant(room_id, turn.user_id)
        if participant is None:
            participant = await self.directory.upsert_participant(room_id, turn.user_id, is_active=False)

        turn.reply(room.description or WELCOME_REPLY)
        if not participant.username:
            await self.state_machine.set_status(
                turn,
                ConversationStatus(kind=StatusKind.INPUT_USERNAME, room_id=room_id),
            )
            turn.reply("Input Username!")
            return
        if participant.is_active:
            await self.state_machine.set_status(
                turn,
                ConversationStatus(kind=StatusKind.PARTICIPANT, room_id=room_id),
            )
            return
        await self.state_machine.join_room(turn, room, participant.username)

    async def _open(self, turn: Turn) -> None:
        room_id = turn.status.room_id if turn.status.kind == StatusKind.PARTICIPANT else None
        await self.state_machine.set_status(turn, ConversationStatus(kind=StatusKind.INPUT_CODE, room_id=room_id))
        turn.reply("Input room code")

    async def _exit(self, turn: Turn) -> None:
        room_id = turn.status.room_id
        in_room = turn.status.kind == StatusKind.PARTICIPANT or (
            turn.status.kind == StatusKind.INPUT_CODE
            and room_id is not None
            and await self.state_cache.is_user_active_in_room(turn.user_id, room_id)
        )
        if not in_room or not room_id:
            raise InvalidInputError("Open chat before stop it!")

        await self.state_machine.leave_room(turn.user_id, room_id, token=turn.payload.message_id or "exit")
        await self.state_machine.set_status(turn, ConversationStatus(kind=StatusKind.FREE, room_id=room_id))
        turn.reply("You successfully left the room. Enter /open to join a room again")

    async def _cancel(self, turn: Turn) -> None:
        kind = turn.status.kind
        if kind in {StatusKind.FREE, StatusKind.PARTICIPANT}:
            turn.reply("Nothing to cancel")
            return

        if kind == StatusKind.INPUT_NEW_ROOM:
            await self.state_cache.delete_room_draft(turn.user_id)
        await self.state_machine.set_status(turn, await self.state_machine.resting_status(turn.user_id))
        turn.reply("Cancelled")

    async def _rooms(self, turn: Turn, args: str) -> None:
        try:
            page_number = int(args) if args else 1
        except ValueError as exc:
            raise InvalidInputError("Page must be a number") from exc
        page_number = max(page_number, 1)
        take = self.rooms_page_size
        page = await self.directory.get_user_rooms(turn.user_id, skip=(page_number - 1) * take, take=take)
        turn.reply(format_room_page(page, page_number))

    async def _help(self, turn: Turn) -> None:
        user = await self.directory.get_user(turn.user_id)
        text = HELP_REPLY
        if user is not None and user.is_admin:
            text += ADMIN_HELP_REPLY
        turn.reply(text)


def format_room_page(page: RoomPage, page_number: int) -> str:
    if not page.items:
        return "You have not joined any rooms yet."

    lines = [f"Your rooms (page {page_number}/{max(page.total_pages, 1)}):"]
    for membership in page.items:
        room = membership.room
        participant = membership.participant
        if not room.is_active:
            state = "closed"
        elif participant.is_active:
            state = "active"
        else:
            state = "left"
        name = participant.username or "-"
        lines.append(f"- {room.title} ({room.code}) as {name} [{state}]")
    return "\n".join(lines)
