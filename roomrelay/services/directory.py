"""Durable room/participant directory backed by SQLAlchemy.

Every operation opens its own session and commits on its own. There is
no transaction spanning the directory and the cache; the cache heals
itself on the next miss.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from roomrelay.core.errors import InvalidInputError
from roomrelay.models.participant import Participant
from roomrelay.models.room import Room
from roomrelay.models.user import User
from roomrelay.schemas.room import RoomMembership, RoomPage

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10

USERNAME_TAKEN_REPLY = "This username is already taken in this room. Try another one!"
CODE_TAKEN_REPLY = "This code is already taken(\nTry again!!!"


def _as_uuid(value: str | UUID) -> UUID | None:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RoomDirectory:
    """Source of truth for users, rooms and participants."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # Users

    async def get_user(self, user_id: str) -> User | None:
        async with self._session_factory() as db:
            return await db.get(User, user_id)

    async def upsert_user(
        self,
        user_id: str,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
        username: str | None = None,
    ) -> User:
        """Create the user on first contact and refresh changed profile attributes."""
        attributes = {"first_name": first_name, "last_name": last_name, "username": username}
        async with self._session_factory() as db:
            user = await db.get(User, user_id)
            if user is None:
                user = User(id=user_id, is_admin=False, **attributes)
                db.add(user)
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    existing_user = await db.get(User, user_id)
                    if existing_user is not None:
                        return existing_user
                    raise
                await db.refresh(user)
                logger.info("Registered user %s.", user_id)
                return user

            changed = {
                key: value
                for key, value in attributes.items()
                if value is not None and getattr(user, key) != value
            }
            if not changed:
                return user
            for key, value in changed.items():
                setattr(user, key, value)
            await self._commit(db, user)
            return user

    async def set_admin(self, user_id: str) -> User | None:
        async with self._session_factory() as db:
            user = await db.get(User, user_id)
            if user is None:
                return None
            user.is_admin = True
            await self._commit(db, user)
            return user

    # Rooms

    async def get_room(self, room_id: str | UUID) -> Room | None:
        room_uuid = _as_uuid(room_id)
        if room_uuid is None:
            return None
        async with self._session_factory() as db:
            return await db.get(Room, room_uuid)

    async def get_room_by_code(self, code: str, *, active_only: bool = True) -> Room | None:
        query = select(Room).where(Room.code == code)
        if active_only:
            query = query.where(Room.is_active.is_(True))
        async with self._session_factory() as db:
            return (await db.execute(query)).scalars().first()

    async def create_room(self, *, code: str, title: str, description: str | None) -> Room:
        room = Room(code=code, title=title, description=description, is_active=True)
        async with self._session_factory() as db:
            db.add(room)
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                raise InvalidInputError(CODE_TAKEN_REPLY) from exc
            await db.refresh(room)
        logger.info("Created room %s with code %s.", room.id, room.code)
        return room

    async def update_room(self, room_id: str | UUID, **values) -> Room | None:
        room_uuid = _as_uuid(room_id)
        if room_uuid is None:
            return None
        async with self._session_factory() as db:
            room = await db.get(Room, room_uuid)
            if room is None:
                return None
            for key, value in values.items():
                setattr(room, key, value)
            await self._commit(db, room)
            return room

    async def deactivate_room(self, room_id: str | UUID) -> tuple[Room, list[str]] | None:
        """Soft-delete a room and deactivate everyone inside it.

        Returns the room and the ids of users that were active, or ``None``
        when the room does not exist.
        """
        room_uuid = _as_uuid(room_id)
        if room_uuid is None:
            return None
        now = _utcnow()
        async with self._session_factory() as db:
            room = await db.get(Room, room_uuid)
            if room is None:
                return None

            active_query = select(Participant.user_id).where(
                Participant.room_id == room_uuid,
                Participant.is_active.is_(True),
            )
            active_user_ids = list((await db.execute(active_query)).scalars().all())

            room.is_active = False
            room.blocked_at = now
            await db.execute(
                update(Participant)
                .where(
                    Participant.room_id == room_uuid,
                    Participant.is_active.is_(True),
                )
                .values(is_active=False, exited_at=now)
            )
            await self._commit(db, room)
        logger.info("Deactivated room %s; %d participants exited.", room_uuid, len(active_user_ids))
        return room, active_user_ids

    # Participants

    async def get_participant(self, room_id: str | UUID, user_id: str) -> Participant | None:
        room_uuid = _as_uuid(room_id)
        if room_uuid is None:
            return None
        async with self._session_factory() as db:
            return await db.get(Participant, (room_uuid, user_id))

    async def upsert_participant(self, room_id: str | UUID, user_id: str, **values) -> Participant:
        """Insert the (room, user) row or update it with ``values``."""
        room_uuid = _as_uuid(room_id)
        if room_uuid is None:
            raise ValueError(f"Invalid room id '{room_id}'.")
        async with self._session_factory() as db:
            participant = await db.get(Participant, (room_uuid, user_id))
            if participant is None:
                participant = Participant(room_id=room_uuid, user_id=user_id, **values)
                db.add(participant)
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    participant = await db.get(Participant, (room_uuid, user_id))
                    if participant is None:
                        raise
                    for key, value in values.items():
                        setattr(participant, key, value)
                    await self._commit(db, participant)
                    return participant
                await db.refresh(participant)
                return participant

            for key, value in values.items():
                setattr(participant, key, value)
            await self._commit(db, participant)
            return participant

    async def update_participant(self, room_id: str | UUID, user_id: str, **values) -> Participant | None:
        room_uuid = _as_uuid(room_id)
        if room_uuid is None:
            return None
        async with self._session_factory() as db:
            participant = await db.get(Participant, (room_uuid, user_id))
            if participant is None:
                return None
            for key, value in values.items():
                setattr(participant, key, value)
            await self._commit(db, participant)
            return participant

    async def add_participant(self, code: str, user_id: str) -> Participant | None:
        """Join by code.

        Looks up an active room by ``code`` and upserts the participant with
        ``is_active=False`` whatever its previous state, so every join has to
        confirm a username again. A previously chosen username is kept on the
        row. Returns ``None`` when no active room has this code.
        """
        room = await self.get_room_by_code(code, active_only=True)
        if room is None:
            return None
        return await self.upsert_participant(room.id, user_id, is_active=False)

    def _username_conflict_query(self, room_uuid: UUID, user_id: str, username: str):
        return select(Participant.user_id).where(
            Participant.room_id == room_uuid,
            Participant.username == username,
            Participant.is_active.is_(True),
            Participant.user_id != user_id,
        )

    async def is_username_taken(self, room_id: str | UUID, user_id: str, username: str) -> bool:
        """True when another active participant of the room holds ``username``."""
        room_uuid = _as_uuid(room_id)
        if room_uuid is None:
            return False
        async with self._session_factory() as db:
            result = await db.execute(self._username_conflict_query(room_uuid, user_id, username))
            return result.first() is not None

    async def claim_username(self, room_id: str | UUID, user_id: str, username: str) -> Participant:
        """Activate the participant under ``username``.

        Raises:
            InvalidInputError: another active participant of the same room
                already holds the username.
        """
        room_uuid = _as_uuid(room_id)
        if room_uuid is None:
            raise ValueError(f"Invalid room id '{room_id}'.")
        async with self._session_factory() as db:
            if (await db.execute(self._username_conflict_query(room_uuid, user_id, username))).first() is not None:
                raise InvalidInputError(USERNAME_TAKEN_REPLY)

            participant = await db.get(Participant, (room_uuid, user_id))
            if participant is None:
                participant = Participant(room_id=room_uuid, user_id=user_id)
                db.add(participant)
            participant.username = username
            participant.is_active = True
            participant.exited_at = None
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                raise InvalidInputError(USERNAME_TAKEN_REPLY) from exc
            await db.refresh(participant)
        logger.info("User %s joined room %s as %s.", user_id, room_uuid, username)
        return participant

    async def exit_participant(self, room_id: str | UUID, user_id: str) -> Participant | None:
        return await self.update_participant(room_id, user_id, is_active=False, exited_at=_utcnow())

    async def remove_participant(self, room_id: str | UUID, user_id: str) -> bool:
        """Hard-delete an inactive participant row. Active rows are kept."""
        room_uuid = _as_uuid(room_id)
        if room_uuid is None:
            return False
        async with self._session_factory() as db:
            participant = await db.get(Participant, (room_uuid, user_id))
            if participant is None or participant.is_active:
                return False
            await db.delete(participant)
            await db.commit()
            return True

    async def find_current_participant(self, user_id: str) -> Participant | None:
        """Return the user's active participation, else the most recent one."""
        query = (
            select(Participant)
            .where(Participant.user_id == user_id)
            .order_by(Participant.is_active.desc(), Participant.updated_at.desc())
            .limit(1)
        )
        async with self._session_factory() as db:
            return (await db.execute(query)).scalars().first()

    async def list_active_participants(self, room_id: str | UUID) -> list[Participant]:
        room_uuid = _as_uuid(room_id)
        if room_uuid is None:
            return []
        query = select(Participant).where(
            Participant.room_id == room_uuid,
            Participant.is_active.is_(True),
        )
        async with self._session_factory() as db:
            return list((await db.execute(query)).scalars().all())

    async def get_user_rooms(self, user_id: str, skip: int = 0, take: int = DEFAULT_PAGE_SIZE) -> RoomPage:
        """Paginate the rooms the user has joined, most recent first."""
        skip = max(skip, 0)
        take = take if take > 0 else DEFAULT_PAGE_SIZE
        count_query = select(func.count()).select_from(Participant).where(Participant.user_id == user_id)
        page_query = (
            select(Room, Participant)
            .join(Participant, Participant.room_id == Room.id)
            .where(Participant.user_id == user_id)
            .order_by(Participant.updated_at.desc(), Room.title.asc())
            .offset(skip)
            .limit(take)
        )
        async with self._session_factory() as db:
            total = (await db.execute(count_query)).scalar_one()
            rows = (await db.execute(page_query)).all()
        items = [RoomMembership(room=room, participant=participant) for room, participant in rows]
        return RoomPage(items=items, total=total, skip=skip, take=take)

    async def _commit(self, db: AsyncSession, instance) -> None:
        try:
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        await db.refresh(instance)
