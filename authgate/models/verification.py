"""Verification token model."""

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from authgate.database import Base

EMAIL_VERIFY = "email-verify"
PASSWORD_RESET = "password-reset"
DELETE_ACCOUNT = "delete-account"
EMAIL_CHANGE = "email-change"


class VerificationToken(Base):
    """Single-use, time-bound proof tied to a user and a purpose.

    Only the SHA-256 digest of the token is stored; the raw value lives in
    the notification sent to the user. The row is deleted when consumed.
    """

    __tablename__ = "verification"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    purpose = Column(String(32), nullable=False)
    token_hash = Column(String(64), nullable=False, unique=True, index=True)
    payload = Column(String(512), nullable=True)  # e.g. the pending address for email-change
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    user = relationship("User", back_populates="verifications")
