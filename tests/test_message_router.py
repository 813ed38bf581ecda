"""Unit tests for MessageRouter behavior."""

from __future__ import annotations

import unittest

from roomrelay.core.errors import GENERIC_FAILURE_REPLY
from roomrelay.schemas.intent import InboundIntent
from roomrelay.services.command_handler import ADMIN_HELP_REPLY, HELP_REPLY, WELCOME_REPLY, parse_command
from roomrelay.services.conversation_status import ConversationStatus, NewRoomStage, StatusKind
from roomrelay.services.delivery import Replier
from roomrelay.services.directory import USERNAME_TAKEN_REPLY
from tests.support import RelayTestCase


class ParseCommandTests(unittest.TestCase):
    def test_command_with_bot_suffix_and_args(self) -> None:
        self.assertEqual(parse_command("/start@room_relay_bot ABC123"), ("start", "ABC123"))

    def test_plain_text_is_not_a_command(self) -> None:
        self.assertIsNone(parse_command("hello /start"))
        self.assertIsNone(parse_command("/"))


class MessageRouterTests(RelayTestCase):
    async def send(self, user_id: str, text: str | None, **fields) -> Replier:
        intent = InboundIntent(user_id=user_id, text=text, first_name=f"name-{user_id}", **fields)
        reply = await self.router.route_message(intent)
        await self.producer.drain()
        return reply

    async def test_deep_link_start_joins_room(self) -> None:
        room = await self.create_room("ABC123", "Night Owls")

        reply = await self.send("1", "/start ABC123", message_id="m-1")

        self.assertEqual(reply.sent, [WELCOME_REPLY, "Input username for room Night Owls"])
        self.assertEqual(
            await self.status_of("1"),
            ConversationStatus(kind=StatusKind.INPUT_USERNAME, room_id=str(room.id)),
        )

        reply = await self.send("1", "owl", message_id="m-2")

        self.assertTrue(reply.sent[0].startswith("Welcome owl"))
        self.assertEqual(
            await self.status_of("1"),
            ConversationStatus(kind=StatusKind.PARTICIPANT, room_id=str(room.id)),
        )
        self.assertEqual((await self.directory.get_user("1")).first_name, "name-1")

    async def test_room_member_receives_exactly_one_envelope(self) -> None:
        room = await self.create_room("ABC123", "Night Owls")
        await self.send("U", "/start ABC123", message_id="u-1")
        await self.send("U", "alice", message_id="u-2")
        await self.send("V", "/start ABC123", message_id="v-1")
        await self.send("V", "bob", message_id="v-2")
        self.assertEqual(await self.state_cache.get_active_member_ids(str(room.id)), {"U", "V"})
        self.queue.envelopes.clear()

        await self.send("V", "hi", message_id="v-3")

        self.assertEqual(len(self.queue.envelopes), 1)
        envelope = self.queue.envelopes[0]
        self.assertEqual(envelope.body.chat_id, "U")
        self.assertEqual(envelope.body.text, "\U0001F977 bob\nhi")
        self.assertEqual(envelope.idempotency_key, "V-fanout-U-v-3")

    async def test_open_then_code(self) -> None:
        await self.create_room("ABC123")

        reply = await self.send("1", "/open")

        self.assertEqual(reply.sent, ["Input room code"])
        self.assertEqual((await self.status_of("1")).kind, StatusKind.INPUT_CODE)

        reply = await self.send("1", "nope")

        self.assertEqual(reply.sent, ["Invalid Code"])
        self.assertEqual((await self.status_of("1")).kind, StatusKind.INPUT_CODE)

    async def test_admin_command_is_forbidden_for_regular_user(self) -> None:
        reply = await self.send("1", "/new_room")

        self.assertEqual(reply.sent, ["Forbidden"])
        self.assertEqual(await self.status_of("1"), ConversationStatus.free())

    async def test_admin_starts_new_room_flow(self) -> None:
        await self.create_user("admin", admin=True)

        reply = await self.send("admin", "/new_room")

        self.assertEqual(reply.sent, ["Input Code of room"])
        self.assertEqual(
            await self.status_of("admin"),
            ConversationStatus(kind=StatusKind.INPUT_NEW_ROOM, stage=NewRoomStage.CODE.value),
        )

    async def test_cancel_drops_new_room_draft(self) -> None:
        await self.create_user("admin", admin=True)
        await self.send("admin", "/new_room")
        await self.send("admin", "OWLS")

        reply = await self.send("admin", "/cancel")

        self.assertEqual(reply.sent, ["Cancelled"])
        self.assertIsNone(await self.state_cache.get_room_draft("admin"))
        self.assertEqual(await self.status_of("admin"), ConversationStatus.free())

    async def test_cancel_with_nothing_pending(self) -> None:
        reply = await self.send("1", "/cancel")

        self.assertEqual(reply.sent, ["Nothing to cancel"])

    async def test_exit_leaves_room_and_notifies_members(self) -> None:
        room = await self.create_room()
        await self.join("1", room.code, "owl")
        await self.join("2", room.code, "fox")
        self.queue.envelopes.clear()

        reply = await self.send("1", "/exit", message_id="m-3")

        self.assertEqual(reply.sent, ["You successfully left the room. Enter /open to join a room again"])
        self.assertEqual(await self.status_of("1"), ConversationStatus(kind=StatusKind.FREE, room_id=str(room.id)))
        self.assertEqual(await self.state_cache.get_active_member_ids(str(room.id)), {"2"})
        self.assertEqual(self.queue.texts_for("2"), ["\U0001F4E3 owl left the room"])

    async def test_exit_outside_room_is_rejected(self) -> None:
        reply = await self.send("1", "/stop")

        self.assertEqual(reply.sent, ["Open chat before stop it!"])

    async def test_rooms_lists_memberships(self) -> None:
        room = await self.create_room("ABC123", "Night Owls")
        await self.join("1", room.code, "owl")

        reply = await self.send("1", "/rooms")

        self.assertEqual(reply.sent, ["Your rooms (page 1/1):\n- Night Owls (ABC123) as owl [active]"])

    async def test_rooms_with_bad_page_number(self) -> None:
        reply = await self.send("1", "/rooms two")

        self.assertEqual(reply.sent, ["Page must be a number"])

    async def test_unknown_command_shows_help(self) -> None:
        await self.create_user("admin", admin=True)

        user_reply = await self.send("1", "/help")
        admin_reply = await self.send("admin", "/help")

        self.assertEqual(user_reply.sent, [HELP_REPLY])
        self.assertEqual(admin_reply.sent, [HELP_REPLY + ADMIN_HELP_REPLY])

    async def test_redelivered_event_is_skipped(self) -> None:
        room = await self.create_room()
        await self.join("1", room.code, "owl")
        await self.join("2", room.code, "fox")
        self.queue.envelopes.clear()

        await self.send("1", "hello", message_id="m-10")
        duplicate = await self.send("1", "hello", message_id="m-10")

        self.assertEqual(duplicate.sent, [])
        self.assertEqual(self.queue.texts_for("2"), ["\U0001F977 owl\nhello"])

    async def test_media_with_caption_is_relayed_not_parsed_as_command(self) -> None:
        room = await self.create_room()
        await self.join("1", room.code, "owl")
        await self.join("2", room.code, "fox")
        self.queue.envelopes.clear()

        await self.send("1", "/exit", message_id="m-11", media_ref="file-1", content_type="PHOTO")

        self.assertEqual(len(self.queue.envelopes), 1)
        body = self.queue.envelopes[0].body_dict()
        self.assertEqual(body["chatId"], "2")
        self.assertEqual(body["fileId"], "file-1")
        self.assertEqual(body["contentType"], "PHOTO")

    async def test_unexpected_error_sends_generic_reply_and_allows_retry(self) -> None:
        original_handle = self.state_machine.handle
        calls = []

        async def failing_handle(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise RuntimeError("database went away")
            return await original_handle(*args, **kwargs)

        self.state_machine.handle = failing_handle

        with self.assertLogs("roomrelay.services.message_router", level="ERROR"):
            reply = await self.send("1", "hello", message_id="m-20")

        self.assertEqual(reply.sent, [GENERIC_FAILURE_REPLY])
        self.assertFalse(await self.redis.exists("inbound-event:1:m-20"))

        retry = await self.send("1", "hello", message_id="m-20")

        self.assertEqual(retry.sent, [])
        self.assertEqual(len(calls), 2)

    async def test_scoped_start_enters_dedicated_room(self) -> None:
        room = await self.create_room("ABC123", "Night Owls")
        room_id = str(room.id)

        reply = await self.send("1", "/start", room_id=room_id)

        self.assertEqual(reply.sent, ["Night Owls description", "Input Username!"])
        self.assertIn(f"user-status:{room_id}:1", self.redis.values)
        self.assertEqual(
            await self.state_cache.get_status("1", room_id),
            ConversationStatus(kind=StatusKind.INPUT_USERNAME, room_id=room_id),
        )

        await self.send("1", "owl", room_id=room_id)

        self.assertEqual(
            await self.state_cache.get_status("1", room_id),
            ConversationStatus(kind=StatusKind.PARTICIPANT, room_id=room_id),
        )
        self.assertEqual(await self.state_cache.get_active_member_ids(room_id), {"1"})

    async def test_scoped_start_exits_other_active_room(self) -> None:
        room_a = await self.create_room("AAA", "Larks")
        room_b = await self.create_room("BBB", "Night Owls")
        room_a_id, room_b_id = str(room_a.id), str(room_b.id)
        await self.send("U", "/start", room_id=room_b_id, message_id="u-1")
        await self.send("U", "owl", room_id=room_b_id, message_id="u-2")
        await self.send("U", "/exit", room_id=room_b_id, message_id="u-3")
        await self.join("X", "AAA", "fox")
        await self.send("U", "/start AAA", message_id="u-4")
        await self.send("U", "hawk", message_id="u-5")
        self.assertTrue((await self.directory.get_participant(room_a_id, "U")).is_active)
        self.queue.envelopes.clear()

        await self.send("U", "/start", room_id=room_b_id, message_id="u-6")

        self.assertFalse((await self.directory.get_participant(room_a_id, "U")).is_active)
        self.assertTrue((await self.directory.get_participant(room_b_id, "U")).is_active)
        self.assertEqual(await self.state_cache.get_active_member_ids(room_a_id), {"X"})
        self.assertEqual(await self.state_cache.get_active_member_ids(room_b_id), {"U"})
        self.assertEqual(self.queue.texts_for("X"), ["\U0001F4E3 hawk left the room"])
        self.assertEqual(
            await self.state_cache.get_status("U", room_a_id),
            ConversationStatus(kind=StatusKind.FREE, room_id=room_a_id),
        )
        self.assertEqual(
            await self.status_of("U"),
            ConversationStatus(kind=StatusKind.PARTICIPANT, room_id=room_b_id),
        )

    async def test_taken_username_keeps_user_in_current_room(self) -> None:
        room_a = await self.create_room("AAA", "Larks")
        room_b = await self.create_room("BBB", "Night Owls")
        room_a_id, room_b_id = str(room_a.id), str(room_b.id)
        await self.send("W", "/start", room_id=room_b_id, message_id="w-1")
        await self.send("W", "owl", room_id=room_b_id, message_id="w-2")
        await self.send("U", "/start AAA", message_id="u-1")
        await self.send("U", "hawk", message_id="u-2")

        await self.send("U", "/start", room_id=room_b_id, message_id="u-3")
        reply = await self.send("U", "owl", room_id=room_b_id, message_id="u-4")

        self.assertEqual(reply.sent, [USERNAME_TAKEN_REPLY])
        self.assertTrue((await self.directory.get_participant(room_a_id, "U")).is_active)
        self.assertFalse((await self.directory.get_participant(room_b_id, "U")).is_active)
        self.assertEqual(await self.state_cache.get_active_member_ids(room_a_id), {"U"})
        self.assertEqual(await self.state_cache.get_active_member_ids(room_b_id), {"W"})


if __name__ == "__main__":
    unittest.main()
