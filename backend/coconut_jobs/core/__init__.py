"""Core module for configuration and utilities."""

from coconut_jobs.core.config import settings
from coconut_jobs.core.database import Base, get_session
from coconut_jobs.core.events import dispatcher

__all__ = [
    "settings",
    "Base",
    "get_session",
    "dispatcher",
]
