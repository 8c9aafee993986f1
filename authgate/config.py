"""Configuration settings for authgate."""

import os
import secrets
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Settings:
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./authgate.db")

    # JWT / sessions
    JWT_SECRET_KEY: str = os.getenv("JWT_SECRET_KEY", "")
    JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")
    SESSION_EXPIRE_MINUTES: int = int(os.getenv("SESSION_EXPIRE_MINUTES", str(7 * 24 * 60)))

    # Application
    APP_NAME: str = os.getenv("APP_NAME", "Finora AI")
    BASE_URL: str = os.getenv("BASE_URL", "http://localhost:7000")
    APP_ENV: str = os.getenv("APP_ENV", "development")
    DEBUG: bool = _flag("DEBUG", "false")
    CORS_ORIGINS: list[str] = [
        o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()
    ]

    # Workflow policy
    REQUIRE_EMAIL_VERIFICATION: bool = _flag("REQUIRE_EMAIL_VERIFICATION", "true")
    AUTO_SIGN_IN_AFTER_VERIFICATION: bool = _flag("AUTO_SIGN_IN_AFTER_VERIFICATION", "false")
    CHANGE_EMAIL_WITHOUT_VERIFICATION: bool = _flag("CHANGE_EMAIL_WITHOUT_VERIFICATION", "false")
    DELETE_REQUIRES_CONFIRMATION: bool = _flag("DELETE_REQUIRES_CONFIRMATION", "true")
    PASSWORD_MIN_LENGTH: int = int(os.getenv("PASSWORD_MIN_LENGTH", "8"))
    PASSWORD_MAX_LENGTH: int = int(os.getenv("PASSWORD_MAX_LENGTH", "128"))

    # Token lifetimes (minutes)
    EMAIL_VERIFICATION_EXPIRE_MINUTES: int = int(os.getenv("EMAIL_VERIFICATION_EXPIRE_MINUTES", "60"))
    PASSWORD_RESET_EXPIRE_MINUTES: int = int(os.getenv("PASSWORD_RESET_EXPIRE_MINUTES", "30"))
    DELETE_ACCOUNT_EXPIRE_MINUTES: int = int(os.getenv("DELETE_ACCOUNT_EXPIRE_MINUTES", "30"))
    EMAIL_CHANGE_EXPIRE_MINUTES: int = int(os.getenv("EMAIL_CHANGE_EXPIRE_MINUTES", "60"))

    # Two-factor
    TWO_FACTOR_CHALLENGE_MINUTES: int = int(os.getenv("TWO_FACTOR_CHALLENGE_MINUTES", "5"))
    TWO_FACTOR_MAX_ATTEMPTS: int = int(os.getenv("TWO_FACTOR_MAX_ATTEMPTS", "5"))
    OTP_DIGITS: int = int(os.getenv("OTP_DIGITS", "6"))
    TWO_FACTOR_BACKUP_CODES: int = int(os.getenv("TWO_FACTOR_BACKUP_CODES", "10"))

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = _flag("RATE_LIMIT_ENABLED", "true")
    RATE_LIMIT_WINDOW_SECONDS: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
    RATE_LIMIT_MAX: int = int(os.getenv("RATE_LIMIT_MAX", "120"))

    # Notifications
    NOTIFICATION_BACKEND: str = os.getenv("NOTIFICATION_BACKEND", "log")  # log, resend
    NOTIFICATIONS_ASYNC: bool = _flag("NOTIFICATIONS_ASYNC", "true")
    RESEND_API_KEY: str = os.getenv("RESEND_API_KEY", "")
    MAILER_SENDER: str = os.getenv("MAILER_SENDER", "no-reply@localhost")

    # Federated identity
    GOOGLE_CLIENT_ID: str = os.getenv("GOOGLE_CLIENT_ID", "")
    GOOGLE_CLIENT_SECRET: str = os.getenv("GOOGLE_CLIENT_SECRET", "")
    GOOGLE_REDIRECT_URI: str = os.getenv("GOOGLE_REDIRECT_URI", "http://localhost:7000/api/auth/callback/google")

    def __init__(self) -> None:
        if not self.JWT_SECRET_KEY:
            self.JWT_SECRET_KEY = secrets.token_urlsafe(32)
            self._generated_secret = True
        else:
            self._generated_secret = False

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    def validate(self) -> list[str]:
        """Validate settings and return list of warnings."""
        errors = []
        if self._generated_secret:
            errors.append("JWT_SECRET_KEY is not set - using auto-generated key (not persistent across restarts)")
        if self.NOTIFICATION_BACKEND == "resend" and not self.RESEND_API_KEY:
            errors.append("NOTIFICATION_BACKEND is 'resend' but RESEND_API_KEY is not set")
        if self.GOOGLE_CLIENT_ID and not self.GOOGLE_CLIENT_SECRET:
            errors.append("GOOGLE_CLIENT_ID is set without GOOGLE_CLIENT_SECRET")
        if self.is_production and self.DEBUG:
            errors.append("DEBUG is enabled in production")
        if self.is_production and self.NOTIFICATION_BACKEND == "log":
            errors.append(
                "NOTIFICATION_BACKEND is 'log' in production - verification links and codes are written to the log"
            )
        return errors


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
