"""HTTP API."""

from pickleai.api.routes import create_app

__all__ = ["create_app"]
