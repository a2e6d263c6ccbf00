"""GM hub HTTP API over a running PatrolEngine."""

from .app import create_app

__all__ = ["create_app"]
