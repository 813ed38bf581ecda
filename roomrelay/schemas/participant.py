"""Participant snapshot cached next to the room's active member set."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from roomrelay.models.participant import Participant


class ParticipantSnapshot(BaseModel):
    """Serializable projection of a Participant row."""

    model_config = ConfigDict(frozen=True)

    room_id: str
    user_id: str
    username: str | None = None
    is_active: bool = False
    exited_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, participant: "Participant") -> "ParticipantSnapshot":
        return cls(
            room_id=str(participant.room_id),
            user_id=participant.user_id,
            username=participant.username,
            is_active=participant.is_active,
            exited_at=participant.exited_at,
            updated_at=participant.updated_at,
        )
