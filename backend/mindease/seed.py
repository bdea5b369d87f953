"""Seed development rooms and users, and print bearer tokens for them.

Usage:
    python -m mindease.seed --settings mindease.settings.yaml \
        --room "Calm Corner:support" --user Alice --user Bob
"""
import argparse
import logging
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

from mindease.auth.service import UserDirectory, issue_token
from mindease.config import AppConfig, load_config, require_jwt_secret
from mindease.rooms.schemas import RoomCategory, RoomMetadata
from mindease.rooms.service import RoomDirectory

logger = logging.getLogger(__name__)


def _parse_room(value: str) -> RoomMetadata:
    """``"Name"`` or ``"Name:category"`` -> RoomMetadata."""
    name, _, category = value.partition(":")
    return RoomMetadata(
        name=name.strip(),
        category=RoomCategory(category.strip()) if category else RoomCategory.GENERAL,
    )


def seed(config: AppConfig, room_args: List[str], usernames: List[str]) -> dict:
    """Create the requested rooms and users; return ``{username: token}``."""
    secret_key = require_jwt_secret(config)
    rooms = RoomDirectory.get_instance(config.storage.rooms_db_path)
    users = UserDirectory.get_instance(config.storage.users_db_path)

    for value in room_args:
        room = rooms.create_room(_parse_room(value))
        print(f"room  {room.id}  {room.name} ({room.category.value})")

    tokens = {}
    for username in usernames:
        user = users.create_user(username)
        tokens[username] = issue_token(
            user.id,
            secret_key,
            algorithm=config.auth.algorithm,
            expires_in=timedelta(minutes=config.auth.token_expire_minutes),
        )
        print(f"user  {user.id}  {username}\n      token={tokens[username]}")
    logger.info("Seeded %d rooms and %d users", len(room_args), len(usernames))
    return tokens


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Seed MindEase chat rooms and users")
    parser.add_argument("--settings", type=Path, default=None, help="Path to mindease.settings.yaml")
    parser.add_argument("--room", action="append", default=[], help="Room as 'Name' or 'Name:category'")
    parser.add_argument("--user", action="append", default=[], help="Username to create")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    config = load_config(settings_path=args.settings)
    try:
        seed(config, args.room, args.user)
    finally:
        RoomDirectory.reset_instance()
        UserDirectory.reset_instance()


if __name__ == "__main__":
    main()
