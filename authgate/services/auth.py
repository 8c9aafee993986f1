"""Identity workflow engine.

Every public method is one state transition of a user's identity:

    Unregistered -> Unverified -> Verified <-> TwoFactorPending -> Authenticated

and ``Deleted`` is absorbing. Each transition commits once; a failure rolls
the whole transition back, so a consumed token and the change it authorizes
are always committed together. Notifications go out only after commit.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from sqlalchemy.orm import Session

from authgate.config import Settings, get_settings
from authgate.database import transaction
from authgate.errors import (
    ConflictError,
    FieldError,
    InvalidCredentialError,
    InvalidTokenError,
    NotFoundError,
    UnverifiedEmailError,
    ValidationError,
)
from authgate.models.account import CREDENTIAL_PROVIDER, Account
from authgate.models.session import UserSession
from authgate.models.two_factor import TwoFactorChallenge
from authgate.models.user import User, new_id
from authgate.models.verification import DELETE_ACCOUNT, EMAIL_CHANGE, EMAIL_VERIFY, PASSWORD_RESET
from authgate.services import notifications
from authgate.services.credentials import CredentialVerifier
from authgate.services.federation import FederatedIdentityProvider, FederationError
from authgate.services.jwt import JWTService
from authgate.services.notifications import NotificationDispatcher

if TYPE_CHECKING:
    from authgate.plugins.base import AuthPlugin

logger = logging.getLogger("authgate")

AUTHENTICATED = "authenticated"
TWO_FACTOR_REQUIRED = "two_factor_required"


@dataclass
class ClientInfo:
    """Audit metadata recorded on sessions and challenges."""

    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class IssuedSession:
    """A freshly created session and the bearer token naming it."""

    token: str
    session: UserSession
    user: User

    @property
    def expires_at(self) -> datetime:
        return self.session.expires_at


@dataclass
class TwoFactorPending:
    """First factor passed; a second factor is owed before a session exists."""

    challenge_id: str
    expires_at: datetime
    user_id: str


@dataclass
class SignInResult:
    """Outcome of any full-authentication workflow."""

    status: str
    session: IssuedSession | None = None
    challenge: TwoFactorPending | None = None


@dataclass
class SignUpResult:
    user: User
    session: IssuedSession | None = None


def normalize_email(email: str) -> str:
    return email.strip().lower()


class IdentityService:
    """Orchestrates sign-up, sign-in, verification, recovery and deletion."""

    def __init__(
        self,
        credentials: CredentialVerifier,
        notifier: NotificationDispatcher,
        jwt_service: JWTService,
        providers: dict[str, FederatedIdentityProvider] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.credentials = credentials
        self.notifier = notifier
        self.jwt_service = jwt_service
        self.providers = providers or {}
        self.settings = settings or get_settings()
        self.plugins: list[AuthPlugin] = []
        self._dummy_hash: str | None = None

    # --- Plugins ---

    def register(self, plugin: "AuthPlugin") -> "IdentityService":
        if any(p.id == plugin.id for p in self.plugins):
            raise ValueError(f"Plugin '{plugin.id}' is already registered")
        plugin.setup(self)
        self.plugins.append(plugin)
        return self

    def plugin(self, plugin_id: str) -> "AuthPlugin":
        for p in self.plugins:
            if p.id == plugin_id:
                return p
        raise NotFoundError(f"Feature '{plugin_id}' is not enabled")

    # --- Lookups ---

    def find_user_by_email(self, db: Session, email: str) -> User | None:
        return db.query(User).filter(User.email == normalize_email(email)).first()

    def credential_account(self, db: Session, user: User) -> Account | None:
        return (
            db.query(Account)
            .filter(Account.user_id == user.id, Account.provider_id == CREDENTIAL_PROVIDER)
            .first()
        )

    def resolve_user(self, db: Session, identifier: str) -> User | None:
        for plugin in self.plugins:
            user = plugin.resolve_identifier(db, identifier)
            if user is not None:
                return user
        return self.find_user_by_email(db, identifier)

    def require_password(self, db: Session, user: User, password: str) -> Account:
        """Check the user's own password. Raises InvalidCredentialError."""
        account = self.credential_account(db, user)
        if not account or not self.credentials.verify_password(password, account.password_hash):
            raise InvalidCredentialError("Invalid password")
        return account

    # --- Helpers shared with plugins ---

    def transaction(self, db: Session):
        return transaction(db)

    def link(self, path: str, token: str) -> str:
        return f"{self.settings.BASE_URL.rstrip('/')}{path}?{urlencode({'token': token})}"

    def notify(self, recipient: str, template: str, payload: dict[str, Any]) -> None:
        self.notifier.enqueue(recipient, template, payload)

    def create_session(self, db: Session, user: User, client: ClientInfo | None = None) -> IssuedSession:
        """Add a session row (not committed) and sign a token for it."""
        client = client or ClientInfo()
        session = UserSession(
            id=new_id(),
            user_id=user.id,
            expires_at=datetime.utcnow() + timedelta(minutes=self.settings.SESSION_EXPIRE_MINUTES),
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
        db.add(session)
        return IssuedSession(token=self.jwt_service.create_token(session), session=session, user=user)

    def revoke_sessions(self, db: Session, user_id: str, keep: str | None = None) -> int:
        query = db.query(UserSession).filter(UserSession.user_id == user_id, UserSession.revoked_at.is_(None))
        if keep:
            query = query.filter(UserSession.id != keep)
        return query.update({UserSession.revoked_at: datetime.utcnow()}, synchronize_session=False)

    def _send_verification(self, user: User, token: str, recipient: str | None = None) -> None:
        self.notify(
            recipient or user.email,
            notifications.VERIFY_EMAIL,
            {"url": self.link("/api/auth/verify-email", token), "token": token, "name": user.name},
        )

    def _complete_sign_in(self, db: Session, user: User, client: ClientInfo | None) -> SignInResult:
        """Issue a session, unless a plugin demands another factor first."""
        with transaction(db):
            for plugin in self.plugins:
                pending = plugin.second_factor(db, user, client or ClientInfo())
                if pending is not None:
                    logger.info("Second factor required for user %s", user.id)
                    return SignInResult(status=TWO_FACTOR_REQUIRED, challenge=pending)
            issued = self.create_session(db, user, client)
        logger.info("Session %s issued for user %s", issued.session.id, user.id)
        return SignInResult(status=AUTHENTICATED, session=issued)

    # --- Sign up / sign in ---

    def sign_up(
        self,
        db: Session,
        email: str,
        password: str,
        name: str,
        username: str | None = None,
        client: ClientInfo | None = None,
    ) -> SignUpResult:
        """Register a user with a password credential."""
        email = normalize_email(email)
        self.credentials.check_password_policy(password)
        if self.find_user_by_email(db, email):
            raise ConflictError("Email already registered", [FieldError("email", "Email already registered")])

        with transaction(db):
            user = User(id=new_id(), email=email, name=name.strip(), email_verified=False)
            for plugin in self.plugins:
                plugin.on_sign_up(db, user, {"username": username})
            db.add(user)
            db.flush()
            db.add(
                Account(
                    user_id=user.id,
                    provider_id=CREDENTIAL_PROVIDER,
                    account_id=user.id,
                    password_hash=self.credentials.hash_password(password),
                )
            )
            token = self.credentials.issue_token(db, user, EMAIL_VERIFY)

        logger.info("User %s signed up", user.id)
        self._send_verification(user, token)

        if self.settings.REQUIRE_EMAIL_VERIFICATION:
            return SignUpResult(user=user)
        return SignUpResult(user=user, session=self._complete_sign_in(db, user, client).session)

    def sign_in(self, db: Session, identifier: str, password: str, client: ClientInfo | None = None) -> SignInResult:
        """Check a password credential. ``identifier`` is an email, or a username when enabled."""
        user = self.resolve_user(db, identifier)
        account = self.credential_account(db, user) if user else None
        if account is None:
            # Same bcrypt cost whether or not the user exists.
            self.credentials.verify_password(password, self._timing_hash())
            raise InvalidCredentialError()
        if not self.credentials.verify_password(password, account.password_hash):
            raise InvalidCredentialError()

        if self.settings.REQUIRE_EMAIL_VERIFICATION and not user.email_verified:
            with transaction(db):
                token = self.credentials.issue_token(db, user, EMAIL_VERIFY)
            self._send_verification(user, token)
            raise UnverifiedEmailError("Email not verified. A new verification link has been sent.")

        return self._complete_sign_in(db, user, client)

    def sign_in_federated(
        self, db: Session, provider_name: str, code: str, client: ClientInfo | None = None
    ) -> SignInResult:
        """Sign in (or up) with an identity vouched for by an external provider."""
        provider = self.providers.get(provider_name)
        if provider is None:
            raise ValidationError.for_field("provider", f"Unsupported provider '{provider_name}'")
        try:
            identity = provider.exchange(code)
        except FederationError as e:
            logger.warning("Federated sign-in with %s failed: %s", provider_name, e)
            raise InvalidCredentialError(f"Could not sign in with {provider_name}") from e

        with transaction(db):
            account = (
                db.query(Account)
                .filter(Account.provider_id == identity.provider, Account.account_id == identity.subject)
                .first()
            )
            if account is not None:
                user = account.user
            else:
                user = self.find_user_by_email(db, identity.email)
                if user is None:
                    user = User(
                        id=new_id(),
                        email=normalize_email(identity.email),
                        name=identity.name,
                        image=identity.image,
                        email_verified=identity.email_verified,
                    )
                    db.add(user)
                    db.flush()
                    logger.info("User %s signed up with %s", user.id, identity.provider)
                elif identity.email_verified:
                    user.email_verified = True
                else:
                    raise ConflictError("An account with this email already exists")
                account = Account(user_id=user.id, provider_id=identity.provider, account_id=identity.subject)
                db.add(account)

            account.access_token = identity.access_token
            account.refresh_token = identity.refresh_token or account.refresh_token
            account.access_token_expires_at = identity.access_token_expires_at
            account.scope = identity.scope

        if self.settings.REQUIRE_EMAIL_VERIFICATION and not user.email_verified:
            with transaction(db):
                token = self.credentials.issue_token(db, user, EMAIL_VERIFY)
            self._send_verification(user, token)
            raise UnverifiedEmailError("Email not verified. A new verification link has been sent.")

        return self._complete_sign_in(db, user, client)

    def _timing_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = self.credentials.hash_password(new_id())
        return self._dummy_hash

    # --- Email verification ---

    def verify_email(self, db: Session, token: str, client: ClientInfo | None = None) -> SignInResult | None:
        """Mark the user's email verified. Returns a sign-in result when auto sign-in is on."""
        with transaction(db):
            row = self.credentials.consume_token(db, token, EMAIL_VERIFY)
            user = db.get(User, row.user_id)
            if user is None:
                raise InvalidTokenError()
            user.email_verified = True

        logger.info("Email verified for user %s", user.id)
        if self.settings.AUTO_SIGN_IN_AFTER_VERIFICATION:
            return self._complete_sign_in(db, user, client)
        return None

    def send_verification_email(self, db: Session, email: str) -> None:
        """Re-send a verification link. Silent when there is nothing to verify."""
        user = self.find_user_by_email(db, email)
        if user is None or user.email_verified:
            return
        with transaction(db):
            token = self.credentials.issue_token(db, user, EMAIL_VERIFY)
        self._send_verification(user, token)

    # --- Passwords ---

    def request_password_reset(self, db: Session, email: str) -> None:
        """Send a reset link if the user exists. Callers must not reveal which case happened."""
        user = self.find_user_by_email(db, email)
        if user is None:
            return
        with transaction(db):
            token = self.credentials.issue_token(db, user, PASSWORD_RESET)
        self.notify(
            user.email,
            notifications.RESET_PASSWORD,
            {"url": self.link("/reset-password", token), "token": token, "name": user.name},
        )

    def reset_password(self, db: Session, token: str, new_password: str) -> User:
        """Replace the password and revoke every session of the user."""
        self.credentials.check_password_policy(new_password, field="new_password")
        with transaction(db):
            row = self.credentials.consume_token(db, token, PASSWORD_RESET)
            user = db.get(User, row.user_id)
            if user is None:
                raise InvalidTokenError()
            account = self.credential_account(db, user)
            if account is None:
                account = Account(user_id=user.id, provider_id=CREDENTIAL_PROVIDER, account_id=user.id)
                db.add(account)
            account.password_hash = self.credentials.hash_password(new_password)
            revoked = self.revoke_sessions(db, user.id)
            db.query(TwoFactorChallenge).filter(TwoFactorChallenge.user_id == user.id).delete(
                synchronize_session=False
            )

        logger.info("Password reset for user %s; %d sessions revoked", user.id, revoked)
        return user

    def change_password(
        self,
        db: Session,
        user: User,
        current_password: str,
        new_password: str,
        revoke_other_sessions: bool = False,
        current_session_id: str | None = None,
    ) -> None:
        self.credentials.check_password_policy(new_password, field="new_password")
        with transaction(db):
            account = self.require_password(db, user, current_password)
            account.password_hash = self.credentials.hash_password(new_password)
            if revoke_other_sessions:
                self.revoke_sessions(db, user.id, keep=current_session_id)
        logger.info("Password changed for user %s", user.id)

    # --- Email change ---

    def change_email(self, db: Session, user: User, new_email: str) -> str:
        """Start an email change. Returns "updated" or "verification_sent"."""
        new_email = normalize_email(new_email)
        if new_email == user.email:
            raise ValidationError.for_field("new_email", "New email is the same as the current email")
        if self.find_user_by_email(db, new_email):
            raise ConflictError("Email already registered", [FieldError("new_email", "Email already registered")])

        if not user.email_verified and self.settings.CHANGE_EMAIL_WITHOUT_VERIFICATION:
            with transaction(db):
                user.email = new_email
                token = self.credentials.issue_token(db, user, EMAIL_VERIFY)
            logger.info("Unverified email changed for user %s", user.id)
            self._send_verification(user, token)
            return "updated"

        # Nothing changes until the new address proves itself.
        with transaction(db):
            token = self.credentials.issue_token(db, user, EMAIL_CHANGE, payload=new_email)
        self.notify(
            new_email,
            notifications.CHANGE_EMAIL,
            {"url": self.link("/api/auth/confirm-email-change", token), "token": token, "new_email": new_email},
        )
        return "verification_sent"

    def confirm_email_change(self, db: Session, token: str) -> User:
        with transaction(db):
            row = self.credentials.consume_token(db, token, EMAIL_CHANGE)
            user = db.get(User, row.user_id)
            if user is None or not row.payload:
                raise InvalidTokenError()
            taken = self.find_user_by_email(db, row.payload)
            if taken is not None and taken.id != user.id:
                raise ConflictError("Email already registered")
            user.email = row.payload
            user.email_verified = True
        logger.info("Email change confirmed for user %s", user.id)
        return user

    # --- Deletion ---

    def request_user_deletion(self, db: Session, user: User) -> str:
        """Returns "deleted" or "verification_sent" depending on DELETE_REQUIRES_CONFIRMATION."""
        if not self.settings.DELETE_REQUIRES_CONFIRMATION:
            self.delete_user(db, user)
            return "deleted"
        with transaction(db):
            token = self.credentials.issue_token(db, user, DELETE_ACCOUNT)
        self.notify(
            user.email,
            notifications.DELETE_ACCOUNT,
            {"url": self.link("/api/auth/delete-user/callback", token), "token": token},
        )
        return "verification_sent"

    def delete_user(self, db: Session, user: User | None = None, token: str | None = None) -> str:
        """Irreversibly delete a user and everything it owns. Returns the deleted user id."""
        with transaction(db):
            if token is not None:
                row = self.credentials.consume_token(db, token, DELETE_ACCOUNT)
                if user is not None and row.user_id != user.id:
                    raise InvalidTokenError()
                user = db.get(User, row.user_id)
            elif self.settings.DELETE_REQUIRES_CONFIRMATION:
                raise ValidationError.for_field("token", "Account deletion must be confirmed")
            if user is None:
                raise InvalidTokenError()
            user_id = user.id
            db.delete(user)

        logger.info("User %s deleted", user_id)
        return user_id

    # --- Sessions ---

    def authenticate_token(self, db: Session, token: str) -> UserSession | None:
        """Resolve a bearer token to a live session, or None."""
        payload = self.jwt_service.decode_token(token)
        if not payload:
            return None
        session = db.get(UserSession, payload["sid"])
        if session is None or session.user_id != payload["sub"] or not session.is_active():
            return None
        return session

    def sign_out(self, db: Session, session: UserSession) -> None:
        with transaction(db):
            session.revoked_at = datetime.utcnow()

    def list_sessions(self, db: Session, user: User) -> list[UserSession]:
        now = datetime.utcnow()
        return (
            db.query(UserSession)
            .filter(UserSession.user_id == user.id, UserSession.revoked_at.is_(None), UserSession.expires_at > now)
            .order_by(UserSession.created_at.desc())
            .all()
        )

    def revoke_session(self, db: Session, user: User, session_id: str) -> None:
        session = db.get(UserSession, session_id)
        if session is None or session.user_id != user.id:
            raise NotFoundError("Session not found")
        with transaction(db):
            session.revoked_at = session.revoked_at or datetime.utcnow()


_identity_service: IdentityService | None = None


def get_identity_service() -> IdentityService:
    """Get singleton identity service instance with the default plugins registered."""
    global _identity_service
    if _identity_service is None:
        from authgate.plugins.two_factor import TwoFactorPlugin
        from authgate.plugins.username import UsernamePlugin
        from authgate.services.federation import build_identity_providers
        from authgate.services.jwt import get_jwt_service

        settings = get_settings()
        service = IdentityService(
            credentials=CredentialVerifier(),
            notifier=NotificationDispatcher(
                notifications.build_notification_sink(), run_async=settings.NOTIFICATIONS_ASYNC
            ),
            jwt_service=get_jwt_service(),
            providers=build_identity_providers(),
            settings=settings,
        )
        service.register(UsernamePlugin())
        service.register(
            TwoFactorPlugin(
                challenge_minutes=settings.TWO_FACTOR_CHALLENGE_MINUTES,
                max_attempts=settings.TWO_FACTOR_MAX_ATTEMPTS,
            )
        )
        _identity_service = service
    return _identity_service
