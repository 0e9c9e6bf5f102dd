"""Async database engine and session factory for the usage ledger."""

from .connection import async_session_maker, close_db, engine, init_db
from .models import AccountUsageRecord, Base

__all__ = [
    "AccountUsageRecord",
    "Base",
    "engine",
    "async_session_maker",
    "init_db",
    "close_db",
]
