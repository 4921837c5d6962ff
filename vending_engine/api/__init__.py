"""
HTTP layer - FastAPI application over the facade.
"""

from .http_app import create_app, status_for


__all__ = [
    "create_app",
    "status_for",
]
