"""API module for HTTP routes.

This module exposes the FastAPI router for the edit-session engine.
"""

from api.routes import router

__all__ = ["router"]
