"""Session model."""

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship

from authgate.database import Base
from authgate.models.user import new_id


class UserSession(Base):
    """Authenticated, time-bounded grant. Valid only while unexpired and not revoked."""

    __tablename__ = "session"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    revoked_at = Column(DateTime, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)

    user = relationship("User", back_populates="sessions")

    def is_active(self, now: datetime | None = None) -> bool:
        now = now or datetime.utcnow()
        return self.revoked_at is None and self.expires_at > now
