"""Unit tests for cache serialization."""

from __future__ import annotations

import unittest
from datetime import datetime, timezone
from uuid import UUID

from roomrelay.services.serialization import deserialize, revive_dates, serialize


class SerializationTests(unittest.TestCase):
    def test_nested_timestamps_are_revived(self) -> None:
        joined_at = datetime(2026, 3, 1, 12, 30, 5, 123000, tzinfo=timezone.utc)
        value = {
            "roomId": UUID("7c4f0f9e-2d3a-4b7e-9a52-2f0bb0b4c6a1"),
            "participants": [{"username": "owl", "updatedAt": joined_at}],
            "meta": {"exitedAt": None},
        }

        restored = deserialize(serialize(value))

        self.assertEqual(restored["roomId"], "7c4f0f9e-2d3a-4b7e-9a52-2f0bb0b4c6a1")
        self.assertEqual(restored["participants"][0]["updatedAt"], joined_at)
        self.assertIsNone(restored["meta"]["exitedAt"])

    def test_zulu_suffix_is_parsed_as_utc(self) -> None:
        revived = revive_dates({"at": "2026-03-01T12:30:05.000Z"})

        self.assertEqual(revived["at"], datetime(2026, 3, 1, 12, 30, 5, tzinfo=timezone.utc))

    def test_strings_that_only_look_like_dates_are_left_alone(self) -> None:
        value = ["2026-03-01", "code 2026-03-01T12:30:05", "2026-13-45T99:99:99"]

        self.assertEqual(revive_dates(value), value)

    def test_empty_payload_deserializes_to_none(self) -> None:
        self.assertIsNone(deserialize(None))
        self.assertIsNone(deserialize(""))


if __name__ == "__main__":
    unittest.main()
