"""Authentication dependencies for FastAPI routes."""

from dataclasses import dataclass

from fastapi import Depends, Request, Response
from sqlalchemy.orm import Session

from authgate.config import get_settings
from authgate.database import get_db
from authgate.errors import InvalidTokenError
from authgate.models.session import UserSession
from authgate.models.user import User
from authgate.services.auth import ClientInfo, IdentityService, get_identity_service

AUTH_COOKIE_NAME = "authgate_session"


@dataclass
class CurrentUser:
    """Authenticated user context."""

    user: User
    session: UserSession


def client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def get_bearer_token(request: Request) -> str | None:
    """Bearer token from the Authorization header, falling back to the session cookie."""
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:]
    return request.cookies.get(AUTH_COOKIE_NAME)


def get_current_user(
    request: Request,
    db: Session = Depends(get_db),
    service: IdentityService = Depends(get_identity_service),
) -> CurrentUser:
    """Resolve the caller's live session. Raises 401 if missing, expired or revoked."""
    token = get_bearer_token(request)
    if not token:
        raise InvalidTokenError("Not authenticated")

    session = service.authenticate_token(db, token)
    if session is None:
        raise InvalidTokenError("Invalid or expired session")

    return CurrentUser(user=session.user, session=session)


def set_auth_cookie(response: Response, token: str) -> None:
    """Set the session cookie."""
    settings = get_settings()
    response.set_cookie(
        key=AUTH_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.is_production,
        max_age=settings.SESSION_EXPIRE_MINUTES * 60,
    )


def clear_auth_cookie(response: Response) -> None:
    """Clear the session cookie."""
    response.delete_cookie(key=AUTH_COOKIE_NAME)
