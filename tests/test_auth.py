"""Tests for authentication endpoints and flows."""

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from authgate.models.account import Account
from authgate.models.session import UserSession
from authgate.models.user import User
from authgate.services import notifications
from conftest import PASSWORD, RecordingSink


def token_from(url: str) -> str:
    return url.split("token=", 1)[1]


class TestSignUp:
    """Tests for email sign-up."""

    def test_sign_up_creates_unverified_user(self, client: TestClient, db_session: Session, sink: RecordingSink):
        """Sign-up stores a lower-cased email, a credential account and sends a verification link."""
        response = client.post(
            "/api/auth/sign-up/email",
            json={"email": "New@Example.com", "password": PASSWORD, "name": "New User"},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["user"]["email"] == "new@example.com"
        assert data["user"]["email_verified"] is False
        assert data["session"] is None

        user = db_session.query(User).filter(User.email == "new@example.com").one()
        account = db_session.query(Account).filter(Account.user_id == user.id).one()
        assert account.provider_id == "credential"
        assert account.password_hash != PASSWORD

        message = sink.last(notifications.VERIFY_EMAIL)
        assert message.recipient == "new@example.com"
        assert message.payload["url"].startswith("http://testserver/api/auth/verify-email?token=")

    def test_sign_up_duplicate_email_any_case(self, client: TestClient, test_user: User):
        """Emails differing only in case collide."""
        response = client.post(
            "/api/auth/sign-up/email",
            json={"email": "TEST@example.com", "password": PASSWORD, "name": "Another"},
        )
        assert response.status_code == 409
        data = response.json()
        assert data["success"] is False
        assert data["errors"] == [{"field": "email", "message": "Email already registered"}]

    def test_sign_up_short_password(self, client: TestClient, db_session: Session):
        """Passwords under the minimum length are rejected before anything is stored."""
        response = client.post(
            "/api/auth/sign-up/email",
            json={"email": "short@example.com", "password": "short", "name": "Short"},
        )
        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "password"
        assert db_session.query(User).count() == 0

    def test_sign_up_invalid_email(self, client: TestClient):
        """Malformed request bodies map to 400 with field errors."""
        response = client.post(
            "/api/auth/sign-up/email",
            json={"email": "not-an-email", "password": PASSWORD, "name": "Bad"},
        )
        assert response.status_code == 400
        data = response.json()
        assert data["message"] == "Invalid request"
        assert any(e["field"] == "email" for e in data["errors"])

    def test_sign_up_without_verification_returns_session(self, client: TestClient, settings):
        """With verification not required, sign-up signs the user in."""
        settings.REQUIRE_EMAIL_VERIFICATION = False
        response = client.post(
            "/api/auth/sign-up/email",
            json={"email": "open@example.com", "password": PASSWORD, "name": "Open"},
        )
        assert response.status_code == 200
        session = response.json()["session"]
        assert session["token"]
        assert session["user"]["email"] == "open@example.com"


class TestSignIn:
    """Tests for password sign-in."""

    def test_sign_in_success(self, client: TestClient, test_user: User):
        response = client.post("/api/auth/sign-in/email", json={"email": "test@example.com", "password": PASSWORD})
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "authenticated"
        assert data["session"]["user"]["id"] == test_user.id
        assert "authgate_session" in response.cookies

    def test_sign_in_case_insensitive(self, client: TestClient, test_user: User):
        response = client.post("/api/auth/sign-in/email", json={"email": "TEST@EXAMPLE.COM", "password": PASSWORD})
        assert response.status_code == 200

    def test_sign_in_wrong_password(self, client: TestClient, test_user: User):
        response = client.post(
            "/api/auth/sign-in/email", json={"email": "test@example.com", "password": "wrongpassword"}
        )
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid email or password"

    def test_sign_in_unknown_email_same_answer(self, client: TestClient):
        """Unknown users get the same failure as a wrong password."""
        response = client.post("/api/auth/sign-in/email", json={"email": "nobody@example.com", "password": PASSWORD})
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid email or password"

    def test_sign_in_unverified_resends_link(self, client: TestClient, sink: RecordingSink):
        """An unverified user is refused and gets a fresh verification link."""
        client.post(
            "/api/auth/sign-up/email",
            json={"email": "pending@example.com", "password": PASSWORD, "name": "Pending"},
        )
        assert sink.count(notifications.VERIFY_EMAIL) == 1

        response = client.post("/api/auth/sign-in/email", json={"email": "pending@example.com", "password": PASSWORD})
        assert response.status_code == 403
        assert "not verified" in response.json()["message"]
        assert sink.count(notifications.VERIFY_EMAIL) == 2

    def test_sign_in_by_username(self, client: TestClient, test_user: User):
        response = client.post("/api/auth/sign-in/username", json={"username": "TESTER", "password": PASSWORD})
        assert response.status_code == 200
        assert response.json()["session"]["user"]["username"] == "tester"

    def test_sign_in_by_username_rejects_email(self, client: TestClient, test_user: User):
        response = client.post(
            "/api/auth/sign-in/username", json={"username": "test@example.com", "password": PASSWORD}
        )
        assert response.status_code == 400

    def test_sign_in_records_client_metadata(self, client: TestClient, db_session: Session, test_user: User):
        client.post(
            "/api/auth/sign-in/email",
            json={"email": "test@example.com", "password": PASSWORD},
            headers={"User-Agent": "pytest-agent"},
        )
        session = db_session.query(UserSession).filter(UserSession.user_id == test_user.id).one()
        assert session.user_agent == "pytest-agent"
        assert session.ip_address == "testclient"


class TestVerificationScenario:
    """Sign-up, blocked sign-in, verification, then successful sign-in."""

    def test_full_flow(self, client: TestClient, sink: RecordingSink):
        client.post(
            "/api/auth/sign-up/email",
            json={"email": "flow@example.com", "password": PASSWORD, "name": "Flow"},
        )
        blocked = client.post("/api/auth/sign-in/email", json={"email": "flow@example.com", "password": PASSWORD})
        assert blocked.status_code == 403

        token = token_from(sink.last(notifications.VERIFY_EMAIL).payload["url"])
        verified = client.get("/api/auth/verify-email", params={"token": token})
        assert verified.status_code == 200
        assert verified.json()["status"] == "verified"

        response = client.post("/api/auth/sign-in/email", json={"email": "flow@example.com", "password": PASSWORD})
        assert response.status_code == 200
        assert response.json()["session"]["user"]["email_verified"] is True

    def test_verification_link_is_single_use(self, client: TestClient, sink: RecordingSink):
        client.post(
            "/api/auth/sign-up/email",
            json={"email": "once@example.com", "password": PASSWORD, "name": "Once"},
        )
        token = token_from(sink.last(notifications.VERIFY_EMAIL).payload["url"])
        assert client.get("/api/auth/verify-email", params={"token": token}).status_code == 200
        again = client.get("/api/auth/verify-email", params={"token": token})
        assert again.status_code == 401

    def test_superseded_link_stops_working(self, client: TestClient, sink: RecordingSink):
        """Re-sending a verification link invalidates the previous one."""
        client.post(
            "/api/auth/sign-up/email",
            json={"email": "resend@example.com", "password": PASSWORD, "name": "Resend"},
        )
        first = token_from(sink.last(notifications.VERIFY_EMAIL).payload["url"])
        client.post("/api/auth/send-verification-email", json={"email": "resend@example.com"})
        second = token_from(sink.last(notifications.VERIFY_EMAIL).payload["url"])

        assert client.get("/api/auth/verify-email", params={"token": first}).status_code == 401
        assert client.get("/api/auth/verify-email", params={"token": second}).status_code == 200

    def test_auto_sign_in_after_verification(self, client: TestClient, sink: RecordingSink, settings):
        settings.AUTO_SIGN_IN_AFTER_VERIFICATION = True
        client.post(
            "/api/auth/sign-up/email",
            json={"email": "auto@example.com", "password": PASSWORD, "name": "Auto"},
        )
        token = token_from(sink.last(notifications.VERIFY_EMAIL).payload["url"])
        response = client.get("/api/auth/verify-email", params={"token": token})
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "authenticated"
        assert data["session"]["token"]


class TestSessions:
    """Tests for session lookup, listing and revocation."""

    def test_get_session(self, client: TestClient, test_user: User, auth_headers: dict):
        response = client.get("/api/auth/get-session", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["user"]["email"] == "test@example.com"

    def test_get_session_without_token(self, client: TestClient):
        response = client.get("/api/auth/get-session")
        assert response.status_code == 401
        assert response.json()["message"] == "Not authenticated"

    def test_get_session_garbage_token(self, client: TestClient):
        response = client.get("/api/auth/get-session", headers={"Authorization": "Bearer invalid.token.here"})
        assert response.status_code == 401

    def test_sign_out_revokes_session(self, client: TestClient, auth_headers: dict):
        response = client.post("/api/auth/sign-out", headers=auth_headers)
        assert response.status_code == 200
        client.cookies.clear()
        assert client.get("/api/auth/get-session", headers=auth_headers).status_code == 401

    def test_list_and_revoke_sessions(self, client: TestClient, test_user: User, auth_headers: dict):
        other = client.post("/api/auth/sign-in/email", json={"email": "test@example.com", "password": PASSWORD})
        client.cookies.clear()
        other_headers = {"Authorization": f"Bearer {other.json()['session']['token']}"}

        sessions = client.get("/api/auth/list-sessions", headers=auth_headers).json()["sessions"]
        assert len(sessions) == 2

        current_id = client.get("/api/auth/get-session", headers=other_headers).json()["session"]["id"]
        response = client.post("/api/auth/revoke-session", json={"session_id": current_id}, headers=auth_headers)
        assert response.status_code == 200
        assert client.get("/api/auth/get-session", headers=other_headers).status_code == 401
        assert len(client.get("/api/auth/list-sessions", headers=auth_headers).json()["sessions"]) == 1

    def test_revoke_unknown_session(self, client: TestClient, auth_headers: dict):
        response = client.post("/api/auth/revoke-session", json={"session_id": "missing"}, headers=auth_headers)
        assert response.status_code == 404


class TestPasswordReset:
    """Tests for the password reset flow."""

    def test_request_reset_existing_email(self, client: TestClient, test_user: User, sink: RecordingSink):
        response = client.post("/api/auth/request-password-reset", json={"email": "test@example.com"})
        assert response.status_code == 200
        assert "If an account exists" in response.json()["message"]
        assert sink.last(notifications.RESET_PASSWORD).recipient == "test@example.com"

    def test_request_reset_unknown_email_same_answer(self, client: TestClient, sink: RecordingSink):
        """Unknown emails get the identical response and no notification."""
        response = client.post("/api/auth/request-password-reset", json={"email": "nobody@example.com"})
        assert response.status_code == 200
        assert "If an account exists" in response.json()["message"]
        assert sink.sent == []

    def test_reset_password_revokes_every_session(
        self, client: TestClient, test_user: User, auth_headers: dict, sink: RecordingSink
    ):
        client.post("/api/auth/request-password-reset", json={"email": "test@example.com"})
        token = sink.last(notifications.RESET_PASSWORD).payload["token"]

        response = client.post("/api/auth/reset-password", json={"token": token, "new_password": "newpassword456"})
        assert response.status_code == 200
        assert client.get("/api/auth/get-session", headers=auth_headers).status_code == 401

        old = client.post("/api/auth/sign-in/email", json={"email": "test@example.com", "password": PASSWORD})
        assert old.status_code == 401
        new = client.post("/api/auth/sign-in/email", json={"email": "test@example.com", "password": "newpassword456"})
        assert new.status_code == 200

    def test_reset_password_token_single_use(self, client: TestClient, test_user: User, sink: RecordingSink):
        client.post("/api/auth/request-password-reset", json={"email": "test@example.com"})
        token = sink.last(notifications.RESET_PASSWORD).payload["token"]
        assert client.post(
            "/api/auth/reset-password", json={"token": token, "new_password": "newpassword456"}
        ).status_code == 200
        again = client.post("/api/auth/reset-password", json={"token": token, "new_password": "another789"})
        assert again.status_code == 401

    def test_reset_password_bad_token(self, client: TestClient):
        response = client.post("/api/auth/reset-password", json={"token": "nope", "new_password": "newpassword456"})
        assert response.status_code == 401

    def test_change_password(self, client: TestClient, auth_headers: dict):
        response = client.post(
            "/api/auth/change-password",
            json={"current_password": PASSWORD, "new_password": "newpassword456"},
            headers=auth_headers,
        )
        assert response.status_code == 200
        assert client.get("/api/auth/get-session", headers=auth_headers).status_code == 200

    def test_change_password_wrong_current(self, client: TestClient, auth_headers: dict):
        response = client.post(
            "/api/auth/change-password",
            json={"current_password": "wrongpassword", "new_password": "newpassword456"},
            headers=auth_headers,
        )
        assert response.status_code == 401

    def test_change_password_revokes_other_sessions(self, client: TestClient, test_user: User, auth_headers: dict):
        other = client.post("/api/auth/sign-in/email", json={"email": "test@example.com", "password": PASSWORD})
        client.cookies.clear()
        other_headers = {"Authorization": f"Bearer {other.json()['session']['token']}"}

        client.post(
            "/api/auth/change-password",
            json={"current_password": PASSWORD, "new_password": "newpassword456", "revoke_other_sessions": True},
            headers=auth_headers,
        )
        assert client.get("/api/auth/get-session", headers=auth_headers).status_code == 200
        assert client.get("/api/auth/get-session", headers=other_headers).status_code == 401


class TestChangeEmail:
    """Tests for changing the account email."""

    def test_verified_user_change_is_pending(
        self, client: TestClient, db_session: Session, test_user: User, auth_headers: dict, sink: RecordingSink
    ):
        response = client.post("/api/auth/change-email", json={"new_email": "moved@example.com"}, headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "verification_sent"

        db_session.refresh(test_user)
        assert test_user.email == "test@example.com"
        message = sink.last(notifications.CHANGE_EMAIL)
        assert message.recipient == "moved@example.com"

        confirmed = client.get("/api/auth/confirm-email-change", params={"token": message.payload["token"]})
        assert confirmed.status_code == 200
        db_session.refresh(test_user)
        assert test_user.email == "moved@example.com"
        assert test_user.email_verified is True

    def test_change_to_taken_email(self, client: TestClient, db_session: Session, service, auth_headers: dict):
        service.sign_up(db_session, "taken@example.com", PASSWORD, "Taken")
        response = client.post("/api/auth/change-email", json={"new_email": "TAKEN@example.com"}, headers=auth_headers)
        assert response.status_code == 409

    def test_change_to_same_email(self, client: TestClient, auth_headers: dict):
        response = client.post("/api/auth/change-email", json={"new_email": "test@example.com"}, headers=auth_headers)
        assert response.status_code == 400


class TestUsername:
    """Tests for the username plugin endpoints."""

    def test_update_username(self, client: TestClient, auth_headers: dict):
        response = client.post("/api/auth/update-username", json={"username": "New.Name"}, headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["username"] == "new.name"
        assert data["display_username"] == "New.Name"

    def test_update_username_invalid(self, client: TestClient, auth_headers: dict):
        response = client.post("/api/auth/update-username", json={"username": "no spaces"}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "username"

    def test_sign_up_taken_username(self, client: TestClient, test_user: User):
        response = client.post(
            "/api/auth/sign-up/email",
            json={"email": "other@example.com", "password": PASSWORD, "name": "Other", "username": "Tester"},
        )
        assert response.status_code == 409


class TestDeleteUser:
    """Tests for account deletion."""

    def test_delete_requires_confirmation(
        self, client: TestClient, db_session: Session, test_user: User, auth_headers: dict, sink: RecordingSink
    ):
        response = client.post("/api/auth/delete-user", json={}, headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "verification_sent"
        assert db_session.query(User).count() == 1

        token = sink.last(notifications.DELETE_ACCOUNT).payload["token"]
        callback = client.get("/api/auth/delete-user/callback", params={"token": token})
        assert callback.status_code == 200
        assert callback.json()["status"] == "deleted"

        db_session.expire_all()
        assert db_session.query(User).count() == 0
        assert db_session.query(Account).count() == 0
        assert db_session.query(UserSession).count() == 0

    def test_delete_immediately(self, client: TestClient, db_session: Session, auth_headers: dict, settings):
        settings.DELETE_REQUIRES_CONFIRMATION = False
        response = client.post("/api/auth/delete-user", json={}, headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "deleted"
        db_session.expire_all()
        assert db_session.query(User).count() == 0

    def test_deleted_user_session_is_dead(self, client: TestClient, auth_headers: dict, settings):
        settings.DELETE_REQUIRES_CONFIRMATION = False
        client.post("/api/auth/delete-user", json={}, headers=auth_headers)
        client.cookies.clear()
        assert client.get("/api/auth/get-session", headers=auth_headers).status_code == 401


class TestSocialSignIn:
    """Tests for federated sign-in through the HTTP surface."""

    def test_social_sign_in_creates_user(self, client: TestClient, provider, db_session: Session):
        provider.add("code-1", subject="fed-1", email="Fed@Example.com")
        response = client.post("/api/auth/sign-in/social", json={"provider": "fake", "code": "code-1"})
        assert response.status_code == 200
        assert response.json()["session"]["user"]["email"] == "fed@example.com"
        assert db_session.query(Account).filter(Account.provider_id == "fake").count() == 1

    def test_social_sign_in_unknown_provider(self, client: TestClient):
        response = client.post("/api/auth/sign-in/social", json={"provider": "myspace", "code": "x"})
        assert response.status_code == 400

    def test_social_sign_in_bad_code(self, client: TestClient):
        response = client.post("/api/auth/sign-in/social", json={"provider": "fake", "code": "bogus"})
        assert response.status_code == 401
