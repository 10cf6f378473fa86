"""
Agent Commission Ledger

This package provides:
- Per-agent balances (available, pending, reserved) with a single writer
- Referral earnings: pending → confirmed / cancelled
- Payout lifecycle: requested → pending_review → approved → processing → completed
- Fund reservations that are released on rejection or cancellation
- Idempotent usage events, payout requests and completions
- Bulk admin actions with per-item failure reporting
"""

from .exceptions import (
    DuplicateReferenceError,
    InsufficientFundsError,
    InvalidStateTransitionError,
    LedgerError,
)
from .models import (
    Agent,
    AgentStatus,
    Earning,
    EarningStatus,
    Payout,
    PayoutMethod,
    PayoutStatus,
)
from .service import LedgerService

__all__ = [
    "Agent",
    "AgentStatus",
    "Earning",
    "EarningStatus",
    "Payout",
    "PayoutMethod",
    "PayoutStatus",
    "LedgerError",
    "InsufficientFundsError",
    "InvalidStateTransitionError",
    "DuplicateReferenceError",
    "LedgerService",
]
