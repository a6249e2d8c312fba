"""API routers."""

from mongogui.api.router import api_router

__all__ = ["api_router"]
