"""TOTP / emailed-OTP second factor.

Once a user's secret is enabled, every full sign-in stops at a
``TwoFactorChallenge``. A challenge turns into a session only through a
correct code before it expires and before ``max_attempts`` wrong codes; on
lockout or expiry it is deleted and the user starts over. Confirming
enrollment hands out single-use backup codes that can answer a challenge
when the authenticator is lost.
"""

import hmac
import json
import logging
from datetime import datetime, timedelta

from sqlalchemy import or_
from sqlalchemy.orm import Session

from authgate.errors import ChallengeExpiredError, ConflictError, InvalidOtpError, ValidationError
from authgate.models.two_factor import TwoFactorChallenge, TwoFactorSecret
from authgate.models.user import User
from authgate.plugins.base import AuthPlugin
from authgate.services import notifications
from authgate.services.auth import ClientInfo, IssuedSession, TwoFactorPending
from authgate.services.credentials import digest

logger = logging.getLogger("authgate")


class TwoFactorPlugin(AuthPlugin):
    id = "two-factor"

    def __init__(self, challenge_minutes: int = 5, max_attempts: int = 5) -> None:
        self.challenge_lifetime = timedelta(minutes=challenge_minutes)
        self.max_attempts = max_attempts

    @property
    def credentials(self):
        return self.service.credentials

    # --- Hooks ---

    def second_factor(self, db: Session, user: User, client: ClientInfo) -> TwoFactorPending | None:
        secret = user.two_factor
        if secret is None or not secret.enabled:
            return None
        challenge = TwoFactorChallenge(
            id=self.credentials.new_challenge_id(),
            user_id=user.id,
            expires_at=datetime.utcnow() + self.challenge_lifetime,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
        db.add(challenge)
        return TwoFactorPending(challenge_id=challenge.id, expires_at=challenge.expires_at, user_id=user.id)

    # --- Enrollment ---

    def enable(self, db: Session, user: User, password: str) -> str:
        """Create a fresh secret and return its otpauth:// URI. Takes effect after ``confirm``."""
        if user.two_factor is not None and user.two_factor.enabled:
            raise ConflictError("Two-factor authentication is already enabled")
        self.service.require_password(db, user, password)
        with self.service.transaction(db):
            secret = user.two_factor
            if secret is None:
                secret = TwoFactorSecret(user_id=user.id)
                user.two_factor = secret
            secret.secret = self.credentials.generate_otp_secret()
            secret.enabled = False
            secret.enabled_at = None
            secret.backup_codes = None
            secret.last_used_step = None
            secret.last_used_at = None
        return self.credentials.provisioning_uri(secret.secret, user.email)

    def confirm(self, db: Session, user: User, code: str) -> list[str]:
        """Activate the secret with a first valid code and return the backup codes, shown only once."""
        secret = user.two_factor
        if secret is None:
            raise ValidationError("Two-factor authentication has not been set up")
        if secret.enabled:
            raise ConflictError("Two-factor authentication is already enabled")
        if not self.credentials.verify_otp(secret.secret, code):
            raise InvalidOtpError()
        with self.service.transaction(db):
            secret.enabled = True
            secret.enabled_at = datetime.utcnow()
            user.two_factor_enabled = True
            codes = self._store_backup_codes(secret)
        logger.info("Two-factor enabled for user %s", user.id)
        return codes

    def regenerate_backup_codes(self, db: Session, user: User, password: str) -> list[str]:
        """Replace every backup code. Earlier codes stop working."""
        secret = user.two_factor
        if secret is None or not secret.enabled:
            raise ValidationError("Two-factor authentication is not enabled")
        self.service.require_password(db, user, password)
        with self.service.transaction(db):
            codes = self._store_backup_codes(secret)
        logger.info("Backup codes regenerated for user %s", user.id)
        return codes

    def _store_backup_codes(self, secret: TwoFactorSecret) -> list[str]:
        codes = self.credentials.generate_backup_codes()
        secret.backup_codes = json.dumps([digest(self.credentials.normalize_backup_code(c)) for c in codes])
        return codes

    def _matching_backup_code(self, secret: TwoFactorSecret, code: str) -> str | None:
        if not secret.backup_codes:
            return None
        candidate = digest(self.credentials.normalize_backup_code(code))
        for stored in json.loads(secret.backup_codes):
            if hmac.compare_digest(stored, candidate):
                return stored
        return None

    def disable(self, db: Session, user: User, password: str) -> None:
        self.service.require_password(db, user, password)
        with self.service.transaction(db):
            user.two_factor = None
            user.two_factor_enabled = False
            db.query(TwoFactorChallenge).filter(TwoFactorChallenge.user_id == user.id).delete(
                synchronize_session=False
            )
        logger.info("Two-factor disabled for user %s", user.id)

    # --- Challenge ---

    def _live_challenge(self, db: Session, challenge_id: str) -> TwoFactorChallenge:
        challenge = db.get(TwoFactorChallenge, challenge_id)
        if challenge is None:
            raise ChallengeExpiredError()
        if challenge.expires_at <= datetime.utcnow():
            db.delete(challenge)
            db.commit()
            raise ChallengeExpiredError()
        return challenge

    def send_otp(self, db: Session, challenge_id: str) -> None:
        """Email a one-time code that can answer this challenge instead of a TOTP."""
        challenge = self._live_challenge(db, challenge_id)
        otp = self.credentials.random_otp()
        with self.service.transaction(db):
            challenge.otp_hash = digest(otp)
        self.service.notify(challenge.user.email, notifications.TWO_FACTOR_OTP, {"otp": otp})

    def verify(self, db: Session, challenge_id: str, code: str, client: ClientInfo | None = None) -> IssuedSession:
        """Answer a challenge with a TOTP, the emailed OTP or a backup code.

        A TOTP step is accepted once per user: a code at or before the last
        accepted step is refused even on a fresh challenge. A backup code is
        removed when used.
        """
        challenge = self._live_challenge(db, challenge_id)
        user = challenge.user
        secret = user.two_factor
        enabled = secret is not None and secret.enabled

        step = self.credentials.match_otp_step(secret.secret, code) if enabled else None
        if step is not None and secret.last_used_step is not None and step <= secret.last_used_step:
            logger.warning("Replayed TOTP code refused for user %s", user.id)
            step = None
        emailed = self.credentials.verify_hashed_otp(code, challenge.otp_hash)
        backup = None
        if step is None and not emailed and enabled:
            backup = self._matching_backup_code(secret, code)

        if step is None and not emailed and backup is None:
            db.query(TwoFactorChallenge).filter(TwoFactorChallenge.id == challenge.id).update(
                {TwoFactorChallenge.attempts: TwoFactorChallenge.attempts + 1}, synchronize_session=False
            )
            db.commit()
            db.refresh(challenge)
            if challenge.attempts >= self.max_attempts:
                db.delete(challenge)
                db.commit()
                logger.warning("Two-factor challenge locked out for user %s", user.id)
                raise InvalidOtpError("Too many failed attempts. Please sign in again.")
            remaining = self.max_attempts - challenge.attempts
            raise InvalidOtpError(f"Invalid two-factor code. {remaining} attempt(s) remaining.")

        with self.service.transaction(db):
            claimed = (
                db.query(TwoFactorChallenge)
                .filter(TwoFactorChallenge.id == challenge.id)
                .delete(synchronize_session=False)
            )
            if claimed != 1:
                raise ChallengeExpiredError()
            if step is not None:
                self._spend_step(db, secret, step)
            elif backup is not None:
                self._spend_backup_code(db, secret, backup)
            client = client or ClientInfo(challenge.ip_address, challenge.user_agent)
            issued = self.service.create_session(db, user, client)
        logger.info("Two-factor challenge passed; session %s issued for user %s", issued.session.id, user.id)
        return issued

    def _spend_step(self, db: Session, secret: TwoFactorSecret, step: int) -> None:
        # At most one answer per step wins, even when two arrive together.
        spent = (
            db.query(TwoFactorSecret)
            .filter(
                TwoFactorSecret.id == secret.id,
                or_(TwoFactorSecret.last_used_step.is_(None), TwoFactorSecret.last_used_step < step),
            )
            .update(
                {TwoFactorSecret.last_used_step: step, TwoFactorSecret.last_used_at: datetime.utcnow()},
                synchronize_session=False,
            )
        )
        if spent != 1:
            raise InvalidOtpError()

    def _spend_backup_code(self, db: Session, secret: TwoFactorSecret, used: str) -> None:
        stored = secret.backup_codes
        remaining = [code for code in json.loads(stored) if code != used]
        spent = (
            db.query(TwoFactorSecret)
            .filter(TwoFactorSecret.id == secret.id, TwoFactorSecret.backup_codes == stored)
            .update(
                {TwoFactorSecret.backup_codes: json.dumps(remaining), TwoFactorSecret.last_used_at: datetime.utcnow()},
                synchronize_session=False,
            )
        )
        if spent != 1:
            raise InvalidOtpError()
        logger.info("Backup code used for user %s; %d left", secret.user_id, len(remaining))
