"""Room listing schemas."""

from __future__ import annotations

from dataclasses import dataclass, field

from roomrelay.models.participant import Participant
from roomrelay.models.room import Room


@dataclass(slots=True)
class RoomMembership:
    room: Room
    participant: Participant


@dataclass(slots=True)
class RoomPage:
    """One page of the rooms a user has joined."""

    items: list[RoomMembership] = field(default_factory=list)
    total: int = 0
    skip: int = 0
    take: int = 10

    @property
    def total_pages(self) -> int:
        if self.take <= 0:
            return 0
        return (self.total + self.take - 1) // self.take


@dataclass(slots=True)
class RoomDraft:
    """Partially entered room kept in the cache during the new-room flow."""

    code: str | None = None
    title: str | None = None
