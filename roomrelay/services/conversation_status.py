"""Per-user conversation status and its derivation from Participant state."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from roomrelay.models.participant import Participant
from roomrelay.schemas.participant import ParticipantSnapshot


class StatusKind(str, Enum):
    FREE = "FREE"
    INPUT_CODE = "INPUT_CODE"
    INPUT_USERNAME = "INPUT_USERNAME"
    PARTICIPANT = "PARTICIPANT"
    INPUT_NEW_ADMIN = "INPUT_NEW_ADMIN"
    INPUT_NEW_ROOM = "INPUT_NEW_ROOM"
    DISACTIVATE_ROOM = "DISACTIVATE_ROOM"


class NewRoomStage(str, Enum):
    CODE = "code"
    TITLE = "title"
    DESCRIPTION = "description"


@dataclass(frozen=True, slots=True)
class ConversationStatus:
    """Single-slot state selecting the handler for a user's next input."""

    kind: StatusKind
    room_id: str | None = None
    stage: str | None = None

    @classmethod
    def free(cls) -> "ConversationStatus":
        return cls(kind=StatusKind.FREE)

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.kind.value, "roomId": self.room_id, "stage": self.stage}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationStatus":
        return cls(
            kind=StatusKind(data["status"]),
            room_id=data.get("roomId"),
            stage=data.get("stage"),
        )


def derive_status(participant: Participant | ParticipantSnapshot | None) -> ConversationStatus:
    """Rebuild a status from durable Participant state.

    Active with a username is PARTICIPANT, inactive with a username is FREE,
    and a row without a username is still waiting for one.
    """
    if participant is None:
        return ConversationStatus.free()

    room_id = str(participant.room_id)
    if not participant.username:
        return ConversationStatus(kind=StatusKind.INPUT_USERNAME, room_id=room_id)
    if participant.is_active:
        return ConversationStatus(kind=StatusKind.PARTICIPANT, room_id=room_id)
    return ConversationStatus(kind=StatusKind.FREE, room_id=room_id)
