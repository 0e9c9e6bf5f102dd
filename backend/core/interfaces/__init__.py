# Interfaces (Abstract Contracts)
# Ledger backends implement these interfaces
from .repositories import UsageLedger

__all__ = [
    "UsageLedger",
]
