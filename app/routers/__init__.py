"""Router modules for API endpoints."""

from app.routers import cases

__all__ = ["cases"]
