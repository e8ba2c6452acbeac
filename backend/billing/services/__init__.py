"""Expose commonly used billing services."""

from .consumption import ConsumptionResult, consume, usage_summary
from .ledger import (
    ConcurrentModification,
    IdempotencyConflict,
    InsufficientFunds,
    LedgerError,
    LedgerResult,
    credit,
    debit,
    forfeit,
    get_balance,
)
from .quota import QuotaResult, try_consume_free
