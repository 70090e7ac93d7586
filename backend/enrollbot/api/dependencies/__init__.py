"""
API Dependencies module.

Provides shared FastAPI dependencies for route handlers.
"""

from enrollbot.api.dependencies.app_auth import get_app_user

__all__ = ["get_app_user"]
