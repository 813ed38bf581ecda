"""Domain models package."""

from roomrelay.models.participant import Participant
from roomrelay.models.room import Room
from roomrelay.models.user import User

__all__ = [
    "User",
    "Room",
    "Participant",
]
