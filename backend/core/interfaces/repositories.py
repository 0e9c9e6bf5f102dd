"""Repository interfaces for data access."""

from abc import ABC, abstractmethod

from ..domain.subscription import AccountUsage, FeatureKind


class UsageLedger(ABC):
    """
    Abstract store of per-account, per-feature consumption counters.

    Every method raises AccountNotFound for an unknown account and
    LedgerUnavailable when the backing storage cannot complete the call.
    Implementations never cache across calls and never retry.
    """

    @abstractmethod
    async def create_account(self, account_id: str, plan_id: str) -> AccountUsage:
        """Create a usage record with all counters at zero."""
        ...

    @abstractmethod
    async def get_plan_id(self, account_id: str) -> str:
        """Get the plan id the account is subscribed to."""
        ...

    @abstractmethod
    async def set_plan(self, account_id: str, plan_id: str) -> AccountUsage:
        """Move the account to another plan, keeping its counters."""
        ...

    @abstractmethod
    async def get_usage(self, account_id: str, feature: FeatureKind) -> int:
        """Get the current counter for one feature."""
        ...

    @abstractmethod
    async def get_account_usage(self, account_id: str) -> AccountUsage:
        """Get a snapshot of every counter for the account."""
        ...

    @abstractmethod
    async def increment_usage(
        self,
        account_id: str,
        feature: FeatureKind,
        ceiling: int | None = None,
    ) -> int | None:
        """Atomically add one to a counter.

        When ``ceiling`` is given the increment only happens if the counter
        is below it, checked in the same atomic step; None is returned if it
        is not. Otherwise the new value is returned.
        """
        ...

    @abstractmethod
    async def reset_usage(self, account_id: str) -> AccountUsage:
        """Zero every counter at the start of a billing period."""
        ...

    @abstractmethod
    async def delete_account(self, account_id: str) -> None:
        """Remove the account's usage record."""
        ...

    @abstractmethod
    async def ping(self) -> None:
        """Check that the backing storage answers.

        Raises LedgerUnavailable when it does not.
        """
        ...
