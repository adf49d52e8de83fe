"""API package for the key pool proxy."""

from keypool.api.app import app, create_app
from keypool.api.routes import router

__all__ = ["app", "create_app", "router"]
