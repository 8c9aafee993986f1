"""Two-factor secret and pending challenge models."""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from authgate.database import Base


class TwoFactorSecret(Base):
    """Shared TOTP secret. An enabled secret gates every sign-in behind a challenge."""

    __tablename__ = "two_factor"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("user.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)
    secret = Column(String(64), nullable=False)
    enabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    enabled_at = Column(DateTime, nullable=True)
    backup_codes = Column(Text, nullable=True)  # JSON list of SHA-256 digests
    last_used_step = Column(Integer, nullable=True)  # TOTP step of the last accepted code
    last_used_at = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="two_factor")


class TwoFactorChallenge(Base):
    """A sign-in that passed the first factor and waits for an OTP."""

    __tablename__ = "two_factor_challenge"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(36), ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    otp_hash = Column(String(64), nullable=True)  # emailed code, if one was sent
    attempts = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)

    user = relationship("User", back_populates="two_factor_challenges")
