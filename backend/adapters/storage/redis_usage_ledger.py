"""
Usage ledger backed by Redis.

Each account is a hash holding the plan id, the reset date and one counter
field per metered feature. Conditional increments run as a Lua script, which
Redis executes atomically, so concurrent reservations for the same
account/feature pair serialize without client-side locks.
"""

import logging
from datetime import datetime
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from core.domain.subscription import (
    AccountAlreadyExists,
    AccountNotFound,
    AccountUsage,
    FeatureKind,
    LedgerUnavailable,
)
from core.interfaces.repositories import UsageLedger
from services.usage_ledger import next_reset_date

logger = logging.getLogger(__name__)

PLAN_FIELD = "plan_id"
RESET_FIELD = "usage_reset_date"

# KEYS[1] account hash; ARGV[1] counter field; ARGV[2] ceiling (-1 for none)
# Returns -1 if the account is missing, -2 if the ceiling is reached, else the new value
_INCREMENT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    return -1
end
local ceiling = tonumber(ARGV[2])
local current = tonumber(redis.call('HGET', KEYS[1], ARGV[1]) or '0')
if ceiling >= 0 and current >= ceiling then
    return -2
end
return redis.call('HINCRBY', KEYS[1], ARGV[1], 1)
"""

# KEYS[1] account hash; ARGV pairs of field/value to set when the hash exists
_UPDATE_IF_EXISTS_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    return 0
end
redis.call('HSET', KEYS[1], unpack(ARGV))
return 1
"""

# KEYS[1] account hash; ARGV pairs of field/value for a new record
# Returns 0 if the hash already exists, else 1
_CREATE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return 0
end
redis.call('HSET', KEYS[1], unpack(ARGV))
return 1
"""

_MISSING = -1
_CEILING_REACHED = -2


def _field_args(values: dict) -> list:
    """Flatten a mapping into HSET field/value arguments."""
    args = []
    for field_name, value in values.items():
        args.extend([field_name, value])
    return args


class RedisUsageLedger(UsageLedger):
    """Usage ledger stored in Redis hashes."""

    def __init__(self, client: redis.Redis, key_prefix: str = "entitlements"):
        """
        Args:
            client: redis.asyncio client created with decode_responses=True
            key_prefix: Namespace for account hashes
        """
        self.redis = client
        self.key_prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "entitlements") -> "RedisUsageLedger":
        client = redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
        )
        return cls(client, key_prefix=key_prefix)

    def _key(self, account_id: str) -> str:
        return f"{self.key_prefix}:usage:{account_id}"

    async def create_account(self, account_id: str, plan_id: str) -> AccountUsage:
        usage = AccountUsage(
            account_id=account_id,
            plan_id=plan_id,
            usage_reset_date=next_reset_date(),
        )
        mapping = {
            PLAN_FIELD: plan_id,
            RESET_FIELD: usage.usage_reset_date.isoformat(),
            **{feature.value: 0 for feature in FeatureKind},
        }
        try:
            created = await self.redis.eval(
                _CREATE_SCRIPT, 1, self._key(account_id), *_field_args(mapping)
            )
        except RedisError as e:
            raise self._unavailable("create account", account_id, e) from e
        if not int(created):
            raise AccountAlreadyExists(account_id)

        logger.info("Created usage record for account %s on plan %s", account_id, plan_id)
        return usage

    async def get_plan_id(self, account_id: str) -> str:
        try:
            plan_id = await self.redis.hget(self._key(account_id), PLAN_FIELD)
        except RedisError as e:
            raise self._unavailable("read plan", account_id, e) from e
        if plan_id is None:
            raise AccountNotFound(account_id)
        return plan_id

    async def set_plan(self, account_id: str, plan_id: str) -> AccountUsage:
        await self._update_if_exists(account_id, "change plan", {PLAN_FIELD: plan_id})
        logger.info("Moved account %s to plan %s", account_id, plan_id)
        return await self.get_account_usage(account_id)

    async def get_usage(self, account_id: str, feature: FeatureKind) -> int:
        feature = FeatureKind(feature)
        try:
            exists, value = await self.redis.hmget(
                self._key(account_id), [PLAN_FIELD, feature.value]
            )
        except RedisError as e:
            raise self._unavailable("read usage", account_id, e) from e
        if exists is None:
            raise AccountNotFound(account_id)
        return int(value or 0)

    async def get_account_usage(self, account_id: str) -> AccountUsage:
        try:
            data = await self.redis.hgetall(self._key(account_id))
        except RedisError as e:
            raise self._unavailable("read usage", account_id, e) from e
        if not data or PLAN_FIELD not in data:
            raise AccountNotFound(account_id)

        reset_date = data.get(RESET_FIELD)
        return AccountUsage(
            account_id=account_id,
            plan_id=data[PLAN_FIELD],
            counters={feature: int(data.get(feature.value, 0)) for feature in FeatureKind},
            usage_reset_date=datetime.fromisoformat(reset_date) if reset_date else None,
        )

    async def increment_usage(
        self,
        account_id: str,
        feature: FeatureKind,
        ceiling: Optional[int] = None,
    ) -> Optional[int]:
        feature = FeatureKind(feature)
        try:
            result = await self.redis.eval(
                _INCREMENT_SCRIPT,
                1,
                self._key(account_id),
                feature.value,
                -1 if ceiling is None else ceiling,
            )
        except RedisError as e:
            raise self._unavailable("increment usage", account_id, e) from e

        result = int(result)
        if result == _MISSING:
            raise AccountNotFound(account_id)
        if result == _CEILING_REACHED:
            logger.info(
                "Usage ceiling %s reached for account %s feature %s",
                ceiling,
                account_id,
                feature.value,
            )
            return None
        return result

    async def reset_usage(self, account_id: str) -> AccountUsage:
        values = {feature.value: 0 for feature in FeatureKind}
        values[RESET_FIELD] = next_reset_date().isoformat()
        await self._update_if_exists(account_id, "reset usage", values)
        logger.info("Reset usage counters for account %s", account_id)
        return await self.get_account_usage(account_id)

    async def delete_account(self, account_id: str) -> None:
        try:
            deleted = await self.redis.delete(self._key(account_id))
        except RedisError as e:
            raise self._unavailable("delete account", account_id, e) from e
        if not deleted:
            raise AccountNotFound(account_id)
        logger.info("Deleted usage record for account %s", account_id)

    async def ping(self) -> None:
        try:
            await self.redis.ping()
        except RedisError as e:
            logger.error("Redis usage ledger check failed: %s", e)
            raise LedgerUnavailable("Usage ledger Redis is unreachable") from e

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.redis.aclose()

    async def _update_if_exists(self, account_id: str, action: str, values: dict) -> None:
        try:
            updated = await self.redis.eval(
                _UPDATE_IF_EXISTS_SCRIPT, 1, self._key(account_id), *_field_args(values)
            )
        except RedisError as e:
            raise self._unavailable(action, account_id, e) from e
        if not int(updated):
            raise AccountNotFound(account_id)

    @staticmethod
    def _unavailable(action: str, account_id: str, error: Exception) -> LedgerUnavailable:
        logger.error("Redis usage ledger failed to %s for account %s: %s", action, account_id, error)
        return LedgerUnavailable(f"Usage ledger could not {action}", account_id=account_id)
