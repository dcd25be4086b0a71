"""Social media backend: accounts, sessions and rotating refresh tokens."""

from .api import app
from .worker import celery_app

__all__ = ["app", "celery_app"]
