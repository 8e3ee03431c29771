"""Web application entry point for Subscout."""

from .app import create_app

__all__ = ["create_app"]
