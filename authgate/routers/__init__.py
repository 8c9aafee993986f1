"""API routers."""

from authgate.routers.auth import router as auth_router
from authgate.routers.two_factor import router as two_factor_router

__all__ = ["auth_router", "two_factor_router"]
