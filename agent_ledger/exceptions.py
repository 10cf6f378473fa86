"""
Ledger exceptions.

Every error raised by the store, the earning engine or the payout state
machine derives from `LedgerError`. Raising one inside a ledger transaction
rolls the transaction back, so no partial balance mutation is ever visible.
"""
from typing import Optional
from uuid import UUID


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    message: str = "Ledger operation failed"

    def __init__(self, message: Optional[str] = None, **details):
        self.message = message or self.message
        self.details = details
        super().__init__(self.message)


class InsufficientFundsError(LedgerError):
    """Payout amount exceeds the available balance or is below the minimum."""
    message = "Insufficient available balance"


class InvalidStateTransitionError(LedgerError):
    """Transition attempted from a state that does not allow it."""
    message = "Invalid state transition"


class DuplicateReferenceError(LedgerError):
    """A reference id was already processed."""
    message = "Reference already processed"

    def __init__(self, reference_id: str, existing_id: Optional[UUID] = None, message: Optional[str] = None):
        self.reference_id = reference_id
        self.existing_id = existing_id
        super().__init__(
            message or f"Reference '{reference_id}' was already processed",
            reference_id=reference_id,
            existing_id=existing_id,
        )


class InvalidCodeError(LedgerError):
    """Referral code is unknown, inactive, expired or exhausted."""
    message = "Referral code is not usable"


class CommissionPeriodEndedError(LedgerError):
    """The referred customer is past the commission period of their first referral."""
    message = "Commission period has ended for this customer"


class AlreadyFinalizedError(LedgerError):
    """Earning is already confirmed or cancelled."""
    message = "Earning is already finalized"


class AgentNotActiveError(LedgerError):
    """Only active agents may request payouts or accrue confirmed earnings."""
    message = "Agent is not active"


class InvalidAmountError(LedgerError):
    message = "Invalid amount"


class NotFoundError(LedgerError):
    message = "Not found"


class AgentNotFoundError(NotFoundError):
    message = "Agent not found"


class PayoutNotFoundError(NotFoundError):
    message = "Payout not found"


class EarningNotFoundError(NotFoundError):
    message = "Earning not found"


class ConcurrencyConflictError(LedgerError):
    """Optimistic version check kept failing after all retries."""
    message = "Concurrent update conflict, please retry"
