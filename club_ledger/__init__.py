"""
Financial ledger and fee allocation engine for a sports club

This module provides:
- Fee issuance for matches, training, social events, cards and yearly subscriptions
- Eligibility and minutes-played discounts
- Payment allocation, oldest due first, with overpayment held as credit
- Refunds for cancelled events and deleted fees
- Overdue sweeps and other daily housekeeping
"""

from .errors import (
    ConflictError,
    GatewayDeclinedError,
    InvalidStateError,
    LedgerServiceError,
    NotFoundError,
)
from .models import (
    EntryKind,
    EntryStatus,
    FeeType,
    LedgerEntry,
    BalanceProjection,
)
from .service import LedgerService
from .storage import InMemoryStorage

__all__ = [
    "EntryKind",
    "EntryStatus",
    "FeeType",
    "LedgerEntry",
    "BalanceProjection",
    "LedgerService",
    "InMemoryStorage",
    "LedgerServiceError",
    "NotFoundError",
    "ConflictError",
    "InvalidStateError",
    "GatewayDeclinedError",
]
