"""SQLAlchemy models."""

from shared.models.announcement import Announcement
from shared.models.base import Base
from shared.models.error_log import ErrorLog
from shared.models.platform import Platform
from shared.models.saga import Saga

__all__ = [
    "Announcement",
    "Base",
    "ErrorLog",
    "Platform",
    "Saga",
]
