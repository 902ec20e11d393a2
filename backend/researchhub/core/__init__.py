"""Core module for configuration and utilities."""

from researchhub.core.config import settings
from researchhub.core.database import Base, get_session, async_session_maker

__all__ = [
    "settings",
    "Base",
    "get_session",
    "async_session_maker",
]
