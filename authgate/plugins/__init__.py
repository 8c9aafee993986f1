"""Optional auth capabilities registered into IdentityService."""

from authgate.plugins.base import AuthPlugin
from authgate.plugins.two_factor import TwoFactorPlugin
from authgate.plugins.username import UsernamePlugin

__all__ = ["AuthPlugin", "TwoFactorPlugin", "UsernamePlugin"]
