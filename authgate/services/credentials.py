"""Password hashing, single-use tokens, and one-time codes."""

import hashlib
import hmac
import secrets
import string
from datetime import datetime, timedelta

import bcrypt
import pyotp
from sqlalchemy.orm import Session

from authgate.config import get_settings
from authgate.errors import InvalidTokenError, ValidationError
from authgate.models.user import User
from authgate.models.verification import (
    DELETE_ACCOUNT,
    EMAIL_CHANGE,
    EMAIL_VERIFY,
    PASSWORD_RESET,
    VerificationToken,
)


def digest(value: str) -> str:
    """SHA-256 hex digest used to store tokens and emailed codes."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class CredentialVerifier:
    """Handles password hashes, verification tokens and OTPs."""

    def __init__(self) -> None:
        settings = get_settings()
        self.min_password_length = settings.PASSWORD_MIN_LENGTH
        self.max_password_length = settings.PASSWORD_MAX_LENGTH
        self.otp_digits = settings.OTP_DIGITS
        self.issuer = settings.APP_NAME
        self.backup_code_count = settings.TWO_FACTOR_BACKUP_CODES
        self.lifetimes = {
            EMAIL_VERIFY: timedelta(minutes=settings.EMAIL_VERIFICATION_EXPIRE_MINUTES),
            PASSWORD_RESET: timedelta(minutes=settings.PASSWORD_RESET_EXPIRE_MINUTES),
            DELETE_ACCOUNT: timedelta(minutes=settings.DELETE_ACCOUNT_EXPIRE_MINUTES),
            EMAIL_CHANGE: timedelta(minutes=settings.EMAIL_CHANGE_EXPIRE_MINUTES),
        }

    # --- Passwords ---

    def check_password_policy(self, password: str, field: str = "password") -> None:
        if len(password) < self.min_password_length:
            raise ValidationError.for_field(field, f"Password must be at least {self.min_password_length} characters")
        if len(password) > self.max_password_length:
            raise ValidationError.for_field(field, f"Password must be at most {self.max_password_length} characters")

    @staticmethod
    def _secret(password: str) -> bytes:
        # bcrypt only reads the first 72 bytes and newer releases refuse longer input.
        return password.encode("utf-8")[:72]

    def hash_password(self, password: str) -> str:
        return bcrypt.hashpw(self._secret(password), bcrypt.gensalt()).decode("utf-8")

    def verify_password(self, password: str, password_hash: str | None) -> bool:
        if not password_hash:
            return False
        return bcrypt.checkpw(self._secret(password), password_hash.encode("utf-8"))

    # --- Verification tokens ---

    def issue_token(self, db: Session, user: User, purpose: str, payload: str | None = None) -> str:
        """Create a verification row and return the raw token. Not committed.

        Older tokens for the same user and purpose are dropped so only the
        latest link works.
        """
        # Pending rows from earlier in this transaction must reach the table before the bulk delete.
        db.flush()
        db.query(VerificationToken).filter(
            VerificationToken.user_id == user.id,
            VerificationToken.purpose == purpose,
        ).delete(synchronize_session=False)

        token = secrets.token_urlsafe(32)
        db.add(
            VerificationToken(
                user_id=user.id,
                purpose=purpose,
                token_hash=digest(token),
                payload=payload,
                expires_at=datetime.utcnow() + self.lifetimes[purpose],
            )
        )
        return token

    def consume_token(self, db: Session, token: str, purpose: str) -> VerificationToken:
        """Claim a token for ``purpose``. Raises InvalidTokenError if absent, expired or already used.

        The row is deleted inside the caller's transaction; the caller commits
        together with the state change the token authorizes.
        """
        token_hash = digest(token)
        row = db.query(VerificationToken).filter(VerificationToken.token_hash == token_hash).first()
        if not row or row.purpose != purpose or not hmac.compare_digest(row.token_hash, token_hash):
            raise InvalidTokenError()

        claimed = (
            db.query(VerificationToken)
            .filter(VerificationToken.id == row.id)
            .delete(synchronize_session=False)
        )
        if claimed != 1:
            raise InvalidTokenError()
        if row.expires_at <= datetime.utcnow():
            db.commit()
            raise InvalidTokenError("Token has expired. Please request a new one.")
        return row

    # --- One-time codes ---

    def generate_otp_secret(self) -> str:
        return pyotp.random_base32()

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        return pyotp.TOTP(secret, digits=self.otp_digits).provisioning_uri(name=account_name, issuer_name=self.issuer)

    def current_otp(self, secret: str) -> str:
        return pyotp.TOTP(secret, digits=self.otp_digits).now()

    def match_otp_step(self, secret: str, code: str) -> int | None:
        """Return the time step a TOTP code belongs to, accepting one step of drift either way."""
        totp = pyotp.TOTP(secret, digits=self.otp_digits)
        now = datetime.now()
        candidate = code.strip().encode("utf-8")
        for offset in (-1, 0, 1):
            if hmac.compare_digest(totp.at(now, offset).encode("utf-8"), candidate):
                return totp.timecode(now) + offset
        return None

    def verify_otp(self, secret: str, code: str) -> bool:
        return self.match_otp_step(secret, code) is not None

    def random_otp(self) -> str:
        return "".join(secrets.choice("0123456789") for _ in range(self.otp_digits))

    def verify_hashed_otp(self, code: str, otp_hash: str | None) -> bool:
        if not otp_hash:
            return False
        return hmac.compare_digest(digest(code.strip()), otp_hash)

    def new_challenge_id(self) -> str:
        return secrets.token_urlsafe(32)

    # --- Backup codes ---

    def generate_backup_codes(self) -> list[str]:
        """Fresh single-use recovery codes, formatted as ``xxxxx-xxxxx``."""
        alphabet = string.ascii_lowercase + string.digits
        codes = []
        for _ in range(self.backup_code_count):
            raw = "".join(secrets.choice(alphabet) for _ in range(10))
            codes.append(f"{raw[:5]}-{raw[5:]}")
        return codes

    @staticmethod
    def normalize_backup_code(code: str) -> str:
        return code.strip().lower()
