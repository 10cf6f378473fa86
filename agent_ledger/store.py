"""
Ledger Store

The only place agent balances are written. Every method takes the session of
an open transaction; callers wrap a unit of work in `LedgerStore.atomic`, so a
domain error raised anywhere inside it rolls back every balance change made
so far.

Per-agent serialization uses `SELECT ... FOR UPDATE` on the agent row plus the
optimistic `version` column on `agents`. A version conflict retries the whole
unit of work.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .config import Settings, get_settings
from .database import Database
from .exceptions import (
    AgentNotActiveError,
    AgentNotFoundError,
    AlreadyFinalizedError,
    ConcurrencyConflictError,
    DuplicateReferenceError,
    EarningNotFoundError,
    InsufficientFundsError,
    InvalidStateTransitionError,
    PayoutNotFoundError,
)
from .models import (
    AgentStatus,
    EarningStatus,
    EarningType,
    ReservationStatus,
    ReservationToken,
)
from .state_machine import can_finalize_earning
from .tables import AgentRecord, EarningRecord, ReservationRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_money(amount) -> Decimal:
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class NewEarning:
    agent_id: UUID
    amount: Decimal
    type: EarningType
    reference_id: str
    currency: str = "USD"
    description: Optional[str] = None
    referral_code: Optional[str] = None
    referred_user: Optional[str] = None
    referral_usage_id: Optional[UUID] = None
    calculation: Optional[dict] = None


class LedgerStore:
    def __init__(self, database: Database, settings: Optional[Settings] = None):
        self.database = database
        self.settings = settings or get_settings()

    @property
    def minimum_payout_amount(self) -> Decimal:
        return to_money(self.settings.minimum_payout_amount)

    def atomic(self, work: Callable[[Session], T]) -> T:
        """Run `work` in one transaction, retrying on optimistic conflicts."""
        attempts = max(1, self.settings.max_transaction_retries)
        for attempt in range(1, attempts + 1):
            try:
                with self.database.session() as session:
                    return work(session)
            except (StaleDataError, IntegrityError) as e:
                logger.warning(
                    f"Ledger transaction conflict (attempt {attempt}/{attempts}): {e.__class__.__name__}"
                )
        raise ConcurrencyConflictError()

    # ----- agents -----

    def get_agent(self, session: Session, agent_id: UUID, lock: bool = False) -> AgentRecord:
        query = select(AgentRecord).where(AgentRecord.id == agent_id)
        if lock:
            query = query.with_for_update()
        agent = session.scalars(query).one_or_none()
        if agent is None:
            raise AgentNotFoundError(f"Agent {agent_id} not found", agent_id=agent_id)
        return agent

    def get_agent_by_code(self, session: Session, agent_code: str, lock: bool = False) -> AgentRecord:
        query = select(AgentRecord).where(AgentRecord.agent_code == agent_code)
        if lock:
            query = query.with_for_update()
        agent = session.scalars(query).one_or_none()
        if agent is None:
            raise AgentNotFoundError(f"Agent with code '{agent_code}' not found", agent_code=agent_code)
        return agent

    @staticmethod
    def _ensure_non_negative(agent: AgentRecord) -> None:
        for field in ("available_balance", "pending_balance", "reserved_balance", "total_earnings"):
            value = getattr(agent, field)
            if value < ZERO:
                raise InsufficientFundsError(
                    f"Operation would make {field} negative for agent {agent.id}",
                    agent_id=agent.id,
                    field=field,
                    value=value,
                )

    # ----- reservations -----

    def reserve_for_payout(
        self,
        session: Session,
        agent_id: UUID,
        payout_id: UUID,
        amount: Decimal,
        reference_id: str,
    ) -> ReservationToken:
        existing = session.scalars(
            select(ReservationRecord).where(ReservationRecord.reference_id == reference_id)
        ).one_or_none()
        if existing is not None:
            logger.warning(f"Reservation replay for reference {reference_id}")
            return ReservationToken.model_validate(existing)

        amount = to_money(amount)
        if amount < self.minimum_payout_amount:
            raise InsufficientFundsError(
                f"Minimum payout amount is {self.minimum_payout_amount}",
                amount=amount,
                minimum=self.minimum_payout_amount,
            )

        agent = self.get_agent(session, agent_id, lock=True)
        if agent.available_balance < amount:
            raise InsufficientFundsError(
                f"Requested {amount} exceeds available balance {agent.available_balance}",
                amount=amount,
                available=agent.available_balance,
            )

        agent.available_balance -= amount
        agent.reserved_balance += amount

        reservation = ReservationRecord(
            agent_id=agent_id,
            payout_id=payout_id,
            amount=amount,
            status=ReservationStatus.HELD.value,
            reference_id=reference_id,
        )
        session.add(reservation)
        session.flush()

        logger.info(
            f"Reserved {amount} for payout {payout_id}",
            extra={"agent_id": agent_id, "payout_id": payout_id, "reference_id": reference_id},
        )
        return ReservationToken.model_validate(reservation)

    def _get_reservation(self, session: Session, payout_id: UUID) -> ReservationRecord:
        reservation = session.scalars(
            select(ReservationRecord)
            .where(ReservationRecord.payout_id == payout_id)
            .with_for_update()
        ).one_or_none()
        if reservation is None:
            raise PayoutNotFoundError(f"No reservation for payout {payout_id}", payout_id=payout_id)
        return reservation

    def release_reservation(self, session: Session, payout_id: UUID) -> bool:
        """Return reserved funds to the available balance. False if already released."""
        reservation = self._get_reservation(session, payout_id)
        if reservation.status == ReservationStatus.RELEASED.value:
            logger.warning(f"Reservation for payout {payout_id} already released")
            return False
        if reservation.status == ReservationStatus.SETTLED.value:
            raise InvalidStateTransitionError(
                f"Reservation for payout {payout_id} is settled and cannot be released",
                payout_id=payout_id,
            )

        agent = self.get_agent(session, reservation.agent_id, lock=True)
        agent.available_balance += reservation.amount
        agent.reserved_balance -= reservation.amount
        self._ensure_non_negative(agent)

        reservation.status = ReservationStatus.RELEASED.value
        reservation.released_at = datetime.now(timezone.utc)

        logger.info(
            f"Released {reservation.amount} for payout {payout_id}",
            extra={"agent_id": agent.id, "payout_id": payout_id},
        )
        return True

    def settle_reservation(self, session: Session, payout_id: UUID, fees: Decimal = ZERO) -> Decimal:
        """Permanently spend the reserved funds; returns the net amount paid out."""
        reservation = self._get_reservation(session, payout_id)
        if reservation.status != ReservationStatus.HELD.value:
            raise InvalidStateTransitionError(
                f"Reservation for payout {payout_id} is {reservation.status}, not held",
                payout_id=payout_id,
            )

        fees = to_money(fees)
        net_amount = reservation.amount - fees

        agent = self.get_agent(session, reservation.agent_id, lock=True)
        agent.reserved_balance -= reservation.amount
        agent.total_paid_out += net_amount
        # fees are withheld from the payout, so they leave the agent's earnings
        agent.total_earnings -= fees
        self._ensure_non_negative(agent)

        reservation.status = ReservationStatus.SETTLED.value
        reservation.settled_at = datetime.now(timezone.utc)

        logger.info(
            f"Settled payout {payout_id}: amount={reservation.amount} fees={fees} net={net_amount}",
            extra={"agent_id": agent.id, "payout_id": payout_id},
        )
        return net_amount

    # ----- earnings -----

    def find_earning_by_reference(self, session: Session, reference_id: str) -> Optional[EarningRecord]:
        return session.scalars(
            select(EarningRecord).where(EarningRecord.reference_id == reference_id)
        ).one_or_none()

    def record_earning(self, session: Session, earning: NewEarning, status: EarningStatus) -> EarningRecord:
        existing = self.find_earning_by_reference(session, earning.reference_id)
        if existing is not None:
            raise DuplicateReferenceError(earning.reference_id, existing.id)

        amount = to_money(earning.amount)
        agent = self.get_agent(session, earning.agent_id, lock=True)
        now = datetime.now(timezone.utc)

        if status == EarningStatus.PENDING:
            agent.pending_balance += amount
        elif status == EarningStatus.CONFIRMED:
            if amount > ZERO and agent.status != AgentStatus.ACTIVE.value:
                raise AgentNotActiveError(
                    f"Agent {agent.id} is {agent.status} and cannot accrue confirmed earnings",
                    agent_id=agent.id,
                )
            agent.available_balance += amount
        else:
            raise ValueError(f"Earnings cannot be recorded as {status.value}")

        agent.total_earnings += amount
        self._ensure_non_negative(agent)

        record = EarningRecord(
            agent_id=agent.id,
            amount=amount,
            currency=earning.currency,
            type=earning.type.value,
            status=status.value,
            reference_id=earning.reference_id,
            description=earning.description,
            referral_code=earning.referral_code,
            referred_user=earning.referred_user,
            referral_usage_id=earning.referral_usage_id,
            calculation=earning.calculation,
            earned_at=now,
            confirmed_at=now if status == EarningStatus.CONFIRMED else None,
        )
        session.add(record)
        session.flush()

        logger.info(
            f"Recorded {status.value} {earning.type.value} earning of {amount}",
            extra={"agent_id": agent.id, "earning_id": record.id, "reference_id": earning.reference_id},
        )
        return record

    def _lock_for_finalize(self, session: Session, earning_id: UUID, target: EarningStatus) -> EarningRecord:
        earning = session.scalars(
            select(EarningRecord).where(EarningRecord.id == earning_id).with_for_update()
        ).one_or_none()
        if earning is None:
            raise EarningNotFoundError(f"Earning {earning_id} not found", earning_id=earning_id)
        if not can_finalize_earning(EarningStatus(earning.status), target):
            raise AlreadyFinalizedError(
                f"Earning {earning_id} is already {earning.status}",
                earning_id=earning_id,
                status=earning.status,
            )
        return earning

    def confirm_earning(self, session: Session, earning_id: UUID, notes: Optional[str] = None) -> EarningRecord:
        earning = self._lock_for_finalize(session, earning_id, EarningStatus.CONFIRMED)
        agent = self.get_agent(session, earning.agent_id, lock=True)
        if earning.amount > ZERO and agent.status != AgentStatus.ACTIVE.value:
            raise AgentNotActiveError(
                f"Agent {agent.id} is {agent.status} and cannot accrue confirmed earnings",
                agent_id=agent.id,
            )

        agent.pending_balance -= earning.amount
        agent.available_balance += earning.amount
        self._ensure_non_negative(agent)

        earning.status = EarningStatus.CONFIRMED.value
        earning.confirmed_at = datetime.now(timezone.utc)
        if notes:
            earning.admin_notes = notes

        logger.info(
            f"Confirmed earning {earning_id} ({earning.amount})",
            extra={"agent_id": agent.id, "earning_id": earning_id},
        )
        return earning

    def cancel_earning(
        self,
        session: Session,
        earning_id: UUID,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> EarningRecord:
        earning = self._lock_for_finalize(session, earning_id, EarningStatus.CANCELLED)
        agent = self.get_agent(session, earning.agent_id, lock=True)

        agent.pending_balance -= earning.amount
        agent.total_earnings -= earning.amount
        self._ensure_non_negative(agent)

        earning.status = EarningStatus.CANCELLED.value
        earning.cancelled_at = datetime.now(timezone.utc)
        earning.cancellation_reason = reason
        if notes:
            earning.admin_notes = notes

        logger.info(
            f"Cancelled earning {earning_id} ({earning.amount}): {reason}",
            extra={"agent_id": agent.id, "earning_id": earning_id},
        )
        return earning
