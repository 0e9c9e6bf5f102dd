"""Storage adapters for usage counters."""

from .redis_usage_ledger import RedisUsageLedger

__all__ = ["RedisUsageLedger"]
