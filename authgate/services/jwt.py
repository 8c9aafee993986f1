"""JWT session token service."""

from typing import Any

from jose import JWTError, jwt

from authgate.config import get_settings
from authgate.models.session import UserSession


class JWTService:
    """Signs session ids into bearer tokens and reads them back."""

    def __init__(self) -> None:
        settings = get_settings()
        self.secret_key = settings.JWT_SECRET_KEY
        self.algorithm = settings.JWT_ALGORITHM

    def create_token(self, session: UserSession) -> str:
        """Create a JWT naming the given session. It expires with the session."""
        payload = {
            "sub": session.user_id,
            "sid": session.id,
            "exp": session.expires_at,
        }
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def decode_token(self, token: str) -> dict[str, Any] | None:
        """Decode and validate a JWT token. Returns None if invalid."""
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError:
            return None
        if "sid" not in payload or "sub" not in payload:
            return None
        return payload


_jwt_service: JWTService | None = None


def get_jwt_service() -> JWTService:
    """Get singleton JWT service instance."""
    global _jwt_service
    if _jwt_service is None:
        _jwt_service = JWTService()
    return _jwt_service
