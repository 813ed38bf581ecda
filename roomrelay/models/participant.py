"""Participant model."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from sqlalchemy import Boolean, ForeignKey, Index, String, TIMESTAMP, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from roomrelay.db.base import Base

if TYPE_CHECKING:
    from roomrelay.models.room import Room
    from roomrelay.models.user import User


class Participant(Base):
    """Membership of a user in a room with a room-scoped username."""

    __tablename__ = "participants"
    __table_args__ = (
        Index("ix_participants_user_id", "user_id"),
        Index(
            "uq_participants_room_active_username",
            "room_id",
            "username",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
    )

    room_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("rooms.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    username: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    exited_at: Mapped[Any | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    created_at: Mapped[Any] = mapped_column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[Any] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    room: Mapped["Room"] = relationship("Room", back_populates="participants")
    user: Mapped["User"] = relationship("User", back_populates="participations")
