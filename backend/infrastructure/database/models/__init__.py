"""
SQLAlchemy database models.
"""

from .base import Base, TimestampMixin
from .usage import USAGE_COLUMNS, AccountUsageRecord

__all__ = [
    "Base",
    "TimestampMixin",
    "AccountUsageRecord",
    "USAGE_COLUMNS",
]
