"""
Payout State Machine service.

Each transition is one transaction guarded by the payout's current status, so
two admins acting on the same payout cannot both succeed.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, Optional
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from .exceptions import (
    AgentNotActiveError,
    DuplicateReferenceError,
    InvalidAmountError,
    PayoutNotFoundError,
)
from .models import (
    AgentStatus,
    AvailableBalance,
    CreatePayoutRequest,
    FeeQuote,
    Payout,
    PayoutMethod,
    PayoutStatus,
)
from .state_machine import get_transition_action, validate_transition
from .store import ZERO, LedgerStore, to_money
from .tables import PayoutRecord

logger = logging.getLogger(__name__)

TIMESTAMP_FIELDS: Dict[PayoutStatus, str] = {
    PayoutStatus.PENDING_REVIEW: "reviewed_at",
    PayoutStatus.APPROVED: "approved_at",
    PayoutStatus.PROCESSING: "processed_at",
    PayoutStatus.COMPLETED: "completed_at",
    PayoutStatus.REJECTED: "rejected_at",
    PayoutStatus.CANCELLED: "cancelled_at",
}


class PayoutService:
    def __init__(self, store: LedgerStore):
        self.store = store
        self.settings = store.settings

    # ----- helpers -----

    @staticmethod
    def _lock_payout(session: Session, payout_id: UUID) -> PayoutRecord:
        payout = session.scalars(
            select(PayoutRecord).where(PayoutRecord.id == payout_id).with_for_update()
        ).one_or_none()
        if payout is None:
            raise PayoutNotFoundError(f"Payout {payout_id} not found", payout_id=payout_id)
        return payout

    @staticmethod
    def _move(payout: PayoutRecord, target: PayoutStatus, notes: Optional[str] = None) -> PayoutStatus:
        current = PayoutStatus(payout.status)
        validate_transition(current, target)
        payout.status = target.value
        setattr(payout, TIMESTAMP_FIELDS[target], datetime.now(timezone.utc))
        if notes:
            payout.admin_notes = notes
        return current

    def _transition(
        self,
        payout_id: UUID,
        target: PayoutStatus,
        notes: Optional[str] = None,
        apply: Optional[Callable[[Session, PayoutRecord], None]] = None,
    ) -> Payout:
        def work(session):
            payout = self._lock_payout(session, payout_id)
            current = self._move(payout, target, notes)
            if apply is not None:
                apply(session, payout)
            session.flush()
            return current, Payout.model_validate(payout)

        previous, payout = self.store.atomic(work)
        logger.info(
            f"Payout {payout_id}: {get_transition_action(previous, target)} "
            f"({previous.value} -> {target.value})",
            extra={"payout_id": payout_id, "agent_id": payout.agent_id},
        )
        return payout

    # ----- transitions -----

    def request(self, agent_id: UUID, request: CreatePayoutRequest) -> Payout:
        """Create a payout in `requested` and reserve its amount from the available balance."""
        def work(session):
            if request.reference_id:
                existing = session.scalars(
                    select(PayoutRecord).where(PayoutRecord.reference_id == request.reference_id)
                ).one_or_none()
                if existing is not None:
                    if existing.agent_id != agent_id:
                        raise DuplicateReferenceError(request.reference_id, existing.id)
                    logger.warning(
                        f"Payout request replay for reference {request.reference_id}",
                        extra={"agent_id": agent_id, "payout_id": existing.id},
                    )
                    return Payout.model_validate(existing)

            agent = self.store.get_agent(session, agent_id, lock=True)
            if agent.status != AgentStatus.ACTIVE.value:
                raise AgentNotActiveError(
                    f"Agent {agent_id} is {agent.status} and cannot request payouts",
                    agent_id=agent_id,
                )

            amount = to_money(request.amount)
            payout = PayoutRecord(
                id=uuid4(),
                agent_id=agent_id,
                amount=amount,
                fees=ZERO,
                net_amount=amount,
                currency=self.settings.currency,
                method=request.method.value,
                status=PayoutStatus.REQUESTED.value,
                payment_details=request.payment_details.model_dump(mode="json", by_alias=True),
                description=request.description,
                reference_id=request.reference_id,
                requested_at=datetime.now(timezone.utc),
            )
            session.add(payout)
            session.flush()

            self.store.reserve_for_payout(
                session,
                agent_id,
                payout.id,
                amount,
                reference_id=request.reference_id or f"payout:{payout.id}",
            )
            return Payout.model_validate(payout)

        payout = self.store.atomic(work)
        logger.info(
            f"Payout {payout.id} requested: {payout.amount} via {payout.method.value}",
            extra={"agent_id": agent_id, "payout_id": payout.id},
        )
        return payout

    def approve(self, payout_id: UUID, notes: Optional[str] = None) -> Payout:
        return self._transition(payout_id, PayoutStatus.APPROVED, notes)

    def set_to_review(self, payout_id: UUID, review_message: str, notes: Optional[str] = None) -> Payout:
        def apply(session, payout):
            payout.review_message = review_message

        return self._transition(payout_id, PayoutStatus.PENDING_REVIEW, notes, apply)

    def reject(self, payout_id: UUID, reason: str, notes: Optional[str] = None) -> Payout:
        def apply(session, payout):
            payout.rejection_reason = reason
            self.store.release_reservation(session, payout.id)

        return self._transition(payout_id, PayoutStatus.REJECTED, notes, apply)

    def process(self, payout_id: UUID, notes: Optional[str] = None) -> Payout:
        # Only flags that the external payment workflow started
        return self._transition(payout_id, PayoutStatus.PROCESSING, notes)

    def complete(
        self,
        payout_id: UUID,
        transaction_id: str,
        fees: Optional[Decimal] = None,
        notes: Optional[str] = None,
    ) -> Payout:
        """
        Mark a processing payout as paid.

        `net_amount` is recomputed here from the final fees. Replaying the call
        with the transaction id already recorded on the payout returns it
        unchanged.
        """
        def work(session):
            payout = self._lock_payout(session, payout_id)
            if payout.status == PayoutStatus.COMPLETED.value and payout.transaction_id == transaction_id:
                return None, Payout.model_validate(payout)

            final_fees = to_money(fees if fees is not None else ZERO)
            if final_fees < ZERO or final_fees > payout.amount:
                raise InvalidAmountError(
                    f"Fees {final_fees} must be between 0 and the payout amount {payout.amount}",
                    payout_id=payout_id,
                )

            current = self._move(payout, PayoutStatus.COMPLETED, notes)

            other = session.scalars(
                select(PayoutRecord.id).where(
                    PayoutRecord.transaction_id == transaction_id,
                    PayoutRecord.id != payout_id,
                )
            ).first()
            if other is not None:
                raise DuplicateReferenceError(transaction_id, other)

            net_amount = self.store.settle_reservation(session, payout.id, final_fees)
            payout.fees = final_fees
            payout.net_amount = net_amount
            payout.transaction_id = transaction_id
            session.flush()
            return current, Payout.model_validate(payout)

        previous, payout = self.store.atomic(work)
        if previous is None:
            logger.warning(
                f"Payout {payout_id} completion replay for transaction {transaction_id}",
                extra={"payout_id": payout_id, "reference_id": transaction_id},
            )
        else:
            logger.info(
                f"Payout {payout_id} completed: net={payout.net_amount} fees={payout.fees}",
                extra={"payout_id": payout_id, "agent_id": payout.agent_id, "reference_id": transaction_id},
            )
        return payout

    def cancel(self, payout_id: UUID, agent_id: Optional[UUID] = None) -> Payout:
        """Agent-initiated cancellation, allowed until the payout is processing."""
        def work(session):
            payout = self._lock_payout(session, payout_id)
            if agent_id is not None and payout.agent_id != agent_id:
                raise PayoutNotFoundError(f"Payout {payout_id} not found", payout_id=payout_id)
            current = self._move(payout, PayoutStatus.CANCELLED)
            self.store.release_reservation(session, payout.id)
            session.flush()
            return current, Payout.model_validate(payout)

        previous, payout = self.store.atomic(work)
        logger.info(
            f"Payout {payout_id} cancelled by agent ({previous.value} -> cancelled)",
            extra={"payout_id": payout_id, "agent_id": payout.agent_id},
        )
        return payout

    # ----- reads -----

    def get(self, payout_id: UUID) -> Payout:
        def work(session):
            payout = session.get(PayoutRecord, payout_id)
            if payout is None:
                raise PayoutNotFoundError(f"Payout {payout_id} not found", payout_id=payout_id)
            return Payout.model_validate(payout)

        return self.store.atomic(work)

    def available_balance(self, agent_id: UUID) -> AvailableBalance:
        def work(session):
            agent = self.store.get_agent(session, agent_id)
            return AvailableBalance(
                agent_id=agent.id,
                available_balance=agent.available_balance,
                pending_balance=agent.pending_balance,
                reserved_balance=agent.reserved_balance,
                total_earnings=agent.total_earnings,
                currency=self.settings.currency,
            )

        return self.store.atomic(work)

    def calculate_fees(self, amount: Decimal, method: PayoutMethod, agent_id: Optional[UUID] = None) -> FeeQuote:
        """
        Quote the fees for a payout. Final fees are only fixed at completion.

        When `agent_id` is given the agent must exist (AgentNotFoundError).
        """
        if agent_id is not None:
            self.store.atomic(lambda session: self.store.get_agent(session, agent_id))
        amount = to_money(amount)
        rate = Decimal(str(self.settings.payout_fee_rates.get(method.value, ZERO)))
        flat = to_money(self.settings.payout_flat_fees.get(method.value, ZERO))
        percentage_fee = to_money(amount * rate / Decimal("100"))
        fees = min(percentage_fee + flat, amount)
        return FeeQuote(
            amount=amount,
            fees=fees,
            net_amount=amount - fees,
            fee_breakdown={"percentage": percentage_fee, "flat": flat},
        )
