"""Error taxonomy for identity workflows.

Every workflow failure is an ``AuthError`` subclass with a stable HTTP status
code. The exception handlers in ``main`` turn these into the normalized
``{success, message, errors, trace?}`` response shape.
"""

from dataclasses import dataclass


@dataclass
class FieldError:
    """A single field-level problem."""

    field: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


class AuthError(Exception):
    """Base class for typed workflow failures."""

    status_code: int = 400
    default_message: str = "Request failed"

    def __init__(self, message: str | None = None, errors: list[FieldError] | None = None) -> None:
        self.message = message or self.default_message
        self.errors = errors or []
        super().__init__(self.message)


class ValidationError(AuthError):
    status_code = 400
    default_message = "Invalid request"

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(message, [FieldError(field, message)])


class InvalidCredentialError(AuthError):
    status_code = 401
    default_message = "Invalid email or password"


class InvalidTokenError(AuthError):
    status_code = 401
    default_message = "Invalid or expired token"


class InvalidOtpError(AuthError):
    status_code = 401
    default_message = "Invalid two-factor code"


class ChallengeExpiredError(AuthError):
    status_code = 401
    default_message = "Two-factor challenge expired. Please sign in again."


class UnverifiedEmailError(AuthError):
    status_code = 403
    default_message = "Email not verified"


class NotFoundError(AuthError):
    status_code = 404
    default_message = "Not found"


class ConflictError(AuthError):
    status_code = 409
    default_message = "Already exists"


class RateLimitedError(AuthError):
    status_code = 429
    default_message = "Rate limit exceeded. Try again later."

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class InternalError(AuthError):
    status_code = 500
    default_message = "Internal server error"
