"""ORM models. Importing this package registers every table with Base.metadata."""

from authgate.models.account import Account
from authgate.models.session import UserSession
from authgate.models.two_factor import TwoFactorChallenge, TwoFactorSecret
from authgate.models.user import User
from authgate.models.verification import VerificationToken

__all__ = ["Account", "TwoFactorChallenge", "TwoFactorSecret", "User", "UserSession", "VerificationToken"]
