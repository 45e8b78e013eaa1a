"""Query API layer for EternalStash.

Exposes:
    create_app -- FastAPI application factory.
"""

from eternalstash.api.app import create_app

__all__ = ["create_app"]
