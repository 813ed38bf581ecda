"""
Seed the directory with a root admin and, optionally, a first room.

Run from project root: python -m scripts.seed --admin-id 772526893 --room-code TEST_CODE_1
Uses DATABASE_URL from the environment / .env file.
"""
import argparse
import asyncio
import logging

from roomrelay.core.settings import get_settings
from roomrelay.db.session import create_engine, create_session_factory
from roomrelay.services.directory import RoomDirectory

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def run_seed(args: argparse.Namespace) -> None:
    engine = create_engine(get_settings().database_url)
    directory = RoomDirectory(create_session_factory(engine))
    try:
        await directory.upsert_user(args.admin_id, first_name="admin", username=args.admin_username)
        admin = await directory.set_admin(args.admin_id)
        logger.info("Root admin ready: %s", admin.id)

        if args.room_code:
            room = await directory.get_room_by_code(args.room_code, active_only=False)
            if room is None:
                room = await directory.create_room(
                    code=args.room_code,
                    title=args.room_title,
                    description=args.room_description,
                )
                logger.info("Room created: %s (%s)", room.title, room.id)
            else:
                logger.info("Room with code %s already exists: %s", room.code, room.id)
    finally:
        await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--admin-id", required=True, help="Platform user id of the root admin")
    parser.add_argument("--admin-username", default="admin")
    parser.add_argument("--room-code", default=None)
    parser.add_argument("--room-title", default="Test Room")
    parser.add_argument("--room-description", default="Test description about room!")
    asyncio.run(run_seed(parser.parse_args()))


if __name__ == "__main__":
    main()
