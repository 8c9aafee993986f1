"""Account model: a credential binding owned by a user."""

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from authgate.database import Base

CREDENTIAL_PROVIDER = "credential"


class Account(Base):
    """Local password credential or federated provider identity."""

    __tablename__ = "account"
    __table_args__ = (UniqueConstraint("provider_id", "account_id", name="uq_account_provider_subject"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    provider_id = Column(String(64), nullable=False)  # "credential", "google", ...
    account_id = Column(String(256), nullable=False)  # external subject id
    password_hash = Column(String(256), nullable=True)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    access_token_expires_at = Column(DateTime, nullable=True)
    scope = Column(String(1024), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="accounts")
