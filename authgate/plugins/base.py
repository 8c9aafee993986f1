"""Plugin hooks into the identity workflow."""

from typing import TYPE_CHECKING, Any

from sqlalchemy.orm import Session

from authgate.models.user import User

if TYPE_CHECKING:
    from authgate.services.auth import ClientInfo, IdentityService, TwoFactorPending


class AuthPlugin:
    """A capability composed into IdentityService with ``register``.

    Hooks run inside the calling workflow's transaction; they add rows but
    never commit.
    """

    id: str = ""

    def setup(self, service: "IdentityService") -> None:
        self.service = service

    def resolve_identifier(self, db: Session, identifier: str) -> User | None:
        """Map a sign-in identifier that is not an email to a user."""
        return None

    def on_sign_up(self, db: Session, user: User, data: dict[str, Any]) -> None:
        """Validate and apply plugin fields to a new user before it is inserted."""

    def second_factor(self, db: Session, user: User, client: "ClientInfo") -> "TwoFactorPending | None":
        """Return a pending challenge to hold back the session, or None."""
        return None
