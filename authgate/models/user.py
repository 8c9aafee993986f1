"""User model."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, String
from sqlalchemy.orm import relationship

from authgate.database import Base


def new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    """Identity record. Email is stored lower-cased so uniqueness is case-insensitive."""

    __tablename__ = "user"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(256), unique=True, nullable=False, index=True)
    username = Column(String(64), unique=True, nullable=True, index=True)
    display_username = Column(String(64), nullable=True)
    name = Column(String(256), nullable=False, default="")
    image = Column(String(1024), nullable=True)
    email_verified = Column(Boolean, nullable=False, default=False)
    two_factor_enabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    accounts = relationship("Account", back_populates="user", cascade="all, delete-orphan")
    sessions = relationship("UserSession", back_populates="user", cascade="all, delete-orphan")
    verifications = relationship("VerificationToken", back_populates="user", cascade="all, delete-orphan")
    two_factor = relationship("TwoFactorSecret", back_populates="user", uselist=False, cascade="all, delete-orphan")
    two_factor_challenges = relationship("TwoFactorChallenge", back_populates="user", cascade="all, delete-orphan")
