"""Pytest configuration and fixtures."""

from dataclasses import dataclass, field
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import authgate.models  # noqa: F401
from authgate.config import Settings
from authgate.database import Base, get_db
from authgate.models.user import User
from authgate.plugins import TwoFactorPlugin, UsernamePlugin
from authgate.rate_limit import RateLimiter, get_rate_limiter
from authgate.services.auth import IdentityService, get_identity_service
from authgate.services.credentials import CredentialVerifier
from authgate.services.federation import ExternalIdentity, FederationError
from authgate.services.jwt import JWTService
from authgate.services.notifications import NotificationDispatcher

PASSWORD = "password123"


@dataclass
class SentNotification:
    recipient: str
    template: str
    payload: dict[str, Any]


@dataclass
class RecordingSink:
    """Notification sink that keeps every message in memory."""

    sent: list[SentNotification] = field(default_factory=list)

    def send(self, recipient: str, template: str, payload: dict[str, Any]) -> bool:
        self.sent.append(SentNotification(recipient, template, payload))
        return True

    def last(self, template: str, recipient: str | None = None) -> SentNotification:
        for message in reversed(self.sent):
            if message.template == template and (recipient is None or message.recipient == recipient):
                return message
        raise AssertionError(f"No {template} notification sent")

    def count(self, template: str) -> int:
        return sum(1 for m in self.sent if m.template == template)


class FakeIdentityProvider:
    """Federated provider answering from a fixed code -> identity table."""

    name = "fake"

    def __init__(self) -> None:
        self.identities: dict[str, ExternalIdentity] = {}

    def add(self, code: str, subject: str, email: str, email_verified: bool = True, name: str = "Fed User") -> None:
        self.identities[code] = ExternalIdentity(
            provider=self.name,
            subject=subject,
            email=email,
            email_verified=email_verified,
            name=name,
            access_token=f"access-{subject}",
        )

    def exchange(self, code: str) -> ExternalIdentity:
        if code not in self.identities:
            raise FederationError("invalid_grant")
        return self.identities[code]


@pytest.fixture(name="db_session")
def db_session_fixture():
    """Create an in-memory SQLite database for tests."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    testing_session_local = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = testing_session_local()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    """Per-test settings. Tests flip policy flags on this instance."""
    settings = Settings()
    settings.APP_ENV = "development"
    settings.BASE_URL = "http://testserver"
    settings.REQUIRE_EMAIL_VERIFICATION = True
    settings.AUTO_SIGN_IN_AFTER_VERIFICATION = False
    settings.CHANGE_EMAIL_WITHOUT_VERIFICATION = False
    settings.DELETE_REQUIRES_CONFIRMATION = True
    return settings


@pytest.fixture(name="sink")
def sink_fixture() -> RecordingSink:
    return RecordingSink()


@pytest.fixture(name="provider")
def provider_fixture() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture(name="service")
def service_fixture(settings: Settings, sink: RecordingSink, provider: FakeIdentityProvider) -> IdentityService:
    """Identity service wired to the recording sink, with username and two-factor plugins."""
    service = IdentityService(
        credentials=CredentialVerifier(),
        notifier=NotificationDispatcher(sink, run_async=False),
        jwt_service=JWTService(),
        providers={provider.name: provider},
        settings=settings,
    )
    service.register(UsernamePlugin())
    service.register(TwoFactorPlugin(challenge_minutes=5, max_attempts=5))
    return service


@pytest.fixture(name="limiter")
def limiter_fixture() -> RateLimiter:
    """Rate limiting off unless a test builds its own limiter."""
    return RateLimiter(enabled=False)


@pytest.fixture(name="client")
def client_fixture(db_session: Session, service: IdentityService, limiter: RateLimiter):
    """Create a test client with overridden DB, service and rate limiter dependencies."""
    from main import app

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_identity_service] = lambda: service
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture(name="test_user")
def test_user_fixture(db_session: Session, service: IdentityService) -> User:
    """A registered user whose email is already verified."""
    result = service.sign_up(db_session, "test@example.com", PASSWORD, "Test User", username="tester")
    user = result.user
    user.email_verified = True
    db_session.commit()
    return user


@pytest.fixture(name="auth_headers")
def auth_headers_fixture(db_session: Session, service: IdentityService, test_user: User) -> dict[str, str]:
    """Bearer header for a live session of ``test_user``."""
    result = service.sign_in(db_session, "test@example.com", PASSWORD)
    return {"Authorization": f"Bearer {result.session.token}"}
