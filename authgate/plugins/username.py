"""Username sign-in on top of email and password."""

import re
from typing import Any

from sqlalchemy.orm import Session

from authgate.errors import ConflictError, FieldError, ValidationError
from authgate.models.user import User
from authgate.plugins.base import AuthPlugin

USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.]+$")


class UsernamePlugin(AuthPlugin):
    """Optional unique username, matched case-insensitively."""

    id = "username"

    def __init__(self, min_length: int = 3, max_length: int = 30) -> None:
        self.min_length = min_length
        self.max_length = max_length

    def normalize(self, username: str) -> str:
        username = username.strip()
        if not self.min_length <= len(username) <= self.max_length:
            raise ValidationError.for_field(
                "username", f"Username must be between {self.min_length} and {self.max_length} characters"
            )
        if not USERNAME_PATTERN.match(username):
            raise ValidationError.for_field("username", "Username may only contain letters, numbers, '_' and '.'")
        return username.lower()

    def find_user(self, db: Session, username: str) -> User | None:
        return db.query(User).filter(User.username == username.strip().lower()).first()

    def resolve_identifier(self, db: Session, identifier: str) -> User | None:
        if "@" in identifier:
            return None
        return self.find_user(db, identifier)

    def on_sign_up(self, db: Session, user: User, data: dict[str, Any]) -> None:
        username = data.get("username")
        if not username:
            return
        normalized = self.normalize(username)
        if self.find_user(db, normalized):
            raise ConflictError("Username is already taken", [FieldError("username", "Username is already taken")])
        user.username = normalized
        user.display_username = username.strip()

    def update_username(self, db: Session, user: User, username: str) -> User:
        normalized = self.normalize(username)
        existing = self.find_user(db, normalized)
        if existing is not None and existing.id != user.id:
            raise ConflictError("Username is already taken", [FieldError("username", "Username is already taken")])
        with self.service.transaction(db):
            user.username = normalized
            user.display_username = username.strip()
        return user
