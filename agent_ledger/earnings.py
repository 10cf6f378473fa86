"""
Earning Engine

Turns referral-code usage events into pending commission earnings, and
confirms or cancels them. Admin adjustments are recorded as already
confirmed earnings.
"""
import calendar
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import func, or_, select

from .exceptions import (
    CommissionPeriodEndedError,
    DuplicateReferenceError,
    EarningNotFoundError,
    InvalidCodeError,
)
from .models import (
    AgentStatus,
    CommissionCalculation,
    CreateEarningAdjustmentRequest,
    Earning,
    EarningStatus,
    EarningType,
    EarningUploadRow,
    ReferralCodeStatus,
    ReferralUsage,
    ReferralUsageResponse,
    UseReferralCodeRequest,
    as_utc,
)
from .store import LedgerStore, NewEarning, to_money
from .tables import AgentRecord, EarningRecord, ReferralCodeRecord, ReferralUsageRecord

logger = logging.getLogger(__name__)


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    # Jan 31 + 1 month lands on the last day of February
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class EarningEngine:
    def __init__(self, store: LedgerStore):
        self.store = store
        self.settings = store.settings

    @staticmethod
    def calculate_commission(base_amount: Decimal, agent_rate: Decimal, bonus_rate: Decimal) -> CommissionCalculation:
        """
        Calculate the commission for a referral.

        Rates are percentages, so a 25.00 top-up at 10% + 2% bonus earns 3.00.
        """
        total_rate = agent_rate + bonus_rate
        return CommissionCalculation(
            base_amount=to_money(base_amount),
            agent_rate=agent_rate,
            bonus_rate=bonus_rate,
            total_rate=total_rate,
            final_amount=to_money(base_amount * total_rate / Decimal("100")),
        )

    def _resolve_code(self, session, code: str):
        referral_code = session.scalars(
            select(ReferralCodeRecord).where(ReferralCodeRecord.code == code).with_for_update()
        ).one_or_none()
        if referral_code is not None:
            return referral_code, self.store.get_agent(session, referral_code.agent_id, lock=True)

        # An agent's own code works as an unlimited standard referral code
        agent = session.scalars(
            select(AgentRecord).where(AgentRecord.agent_code == code).with_for_update()
        ).one_or_none()
        if agent is None:
            raise InvalidCodeError(f"Referral code '{code}' does not exist", code=code)
        return None, agent

    @staticmethod
    def _check_code_usable(code: str, referral_code: Optional[ReferralCodeRecord], agent: AgentRecord) -> None:
        if referral_code is not None:
            if referral_code.status != ReferralCodeStatus.ACTIVE.value:
                raise InvalidCodeError(f"Referral code '{code}' is {referral_code.status}", code=code)
            if referral_code.expires_at is not None and as_utc(referral_code.expires_at) <= datetime.now(timezone.utc):
                raise InvalidCodeError(f"Referral code '{code}' has expired", code=code)
            if referral_code.max_uses is not None and referral_code.current_uses >= referral_code.max_uses:
                raise InvalidCodeError(f"Referral code '{code}' has no uses left", code=code)
        if agent.status != AgentStatus.ACTIVE.value:
            raise InvalidCodeError(f"Referral code '{code}' belongs to an inactive agent", code=code)

    def _check_commission_period(self, session, agent: AgentRecord, event: UseReferralCodeRequest) -> None:
        """Commission stops once the customer's first referral by this agent is older than the period."""
        contacts = []
        if event.referred_user_email:
            contacts.append(ReferralUsageRecord.referred_user_email == event.referred_user_email)
        if event.referred_user_phone:
            contacts.append(ReferralUsageRecord.referred_user_phone == event.referred_user_phone)
        if not contacts:
            return

        first_used = session.scalar(
            select(func.min(ReferralUsageRecord.used_at)).where(
                ReferralUsageRecord.agent_id == agent.id, or_(*contacts)
            )
        )
        if first_used is None:
            return
        ends_at = add_months(as_utc(first_used), self.settings.commission_period_months)
        if ends_at <= datetime.now(timezone.utc):
            raise CommissionPeriodEndedError(
                f"Commission period for {event.referred_user_name} ended on {ends_at.date().isoformat()}",
                agent_id=agent.id,
                reference_id=event.reference_id,
            )

    def record_usage(self, code: str, event: UseReferralCodeRequest) -> ReferralUsageResponse:
        """
        Record a referral code redemption and create its pending earning.

        Raises InvalidCodeError if the code cannot be used, and
        DuplicateReferenceError if `event.reference_id` was already processed.
        """
        def work(session):
            existing = self.store.find_earning_by_reference(session, event.reference_id)
            if existing is not None:
                raise DuplicateReferenceError(event.reference_id, existing.id)

            referral_code, agent = self._resolve_code(session, code)
            self._check_code_usable(code, referral_code, agent)
            self._check_commission_period(session, agent, event)

            bonus_rate = self.settings.tier_bonus_rate(agent.tier)
            if referral_code is not None:
                bonus_rate += referral_code.bonus_commission_rate
            calculation = self.calculate_commission(
                event.resolved_base_amount(), agent.commission_rate, bonus_rate
            )

            usage = ReferralUsageRecord(
                agent_id=agent.id,
                referral_code_id=referral_code.id if referral_code is not None else None,
                code=code,
                reference_id=event.reference_id,
                referred_user_name=event.referred_user_name,
                referred_user_email=event.referred_user_email,
                referred_user_phone=event.referred_user_phone,
                metadata_=event.metadata,
            )
            session.add(usage)
            session.flush()

            if referral_code is not None:
                referral_code.current_uses += 1
            agent.total_referrals += 1

            earning = self.store.record_earning(
                session,
                NewEarning(
                    agent_id=agent.id,
                    amount=calculation.final_amount,
                    type=EarningType.REFERRAL_COMMISSION,
                    reference_id=event.reference_id,
                    currency=self.settings.currency,
                    description=f"Referral commission for {event.referred_user_name}",
                    referral_code=code,
                    referred_user=event.referred_user_name,
                    referral_usage_id=usage.id,
                    calculation=calculation.model_dump(mode="json"),
                ),
                EarningStatus.PENDING,
            )
            return ReferralUsageResponse(
                usage=ReferralUsage.model_validate(usage),
                earning=Earning.model_validate(earning),
                message="Referral recorded, commission pending confirmation",
            )

        return self.store.atomic(work)

    def find_usage(self, reference_id: str) -> Optional[ReferralUsageResponse]:
        """The usage and earning already recorded for `reference_id`, if any."""
        def work(session):
            usage = session.scalars(
                select(ReferralUsageRecord).where(ReferralUsageRecord.reference_id == reference_id)
            ).one_or_none()
            earning = self.store.find_earning_by_reference(session, reference_id)
            if usage is None or earning is None:
                return None
            return ReferralUsageResponse(
                usage=ReferralUsage.model_validate(usage),
                earning=Earning.model_validate(earning),
                message="Referral already recorded",
            )

        return self.store.atomic(work)

    def get_earning(self, earning_id: UUID) -> Earning:
        def work(session):
            earning = session.get(EarningRecord, earning_id)
            if earning is None:
                raise EarningNotFoundError(f"Earning {earning_id} not found", earning_id=earning_id)
            return Earning.model_validate(earning)

        return self.store.atomic(work)

    def get_earning_by_reference(self, reference_id: str) -> Optional[Earning]:
        def work(session):
            earning = self.store.find_earning_by_reference(session, reference_id)
            return Earning.model_validate(earning) if earning is not None else None

        return self.store.atomic(work)

    def confirm(self, earning_id: UUID, notes: Optional[str] = None) -> Earning:
        return self.store.atomic(
            lambda session: Earning.model_validate(self.store.confirm_earning(session, earning_id, notes))
        )

    def cancel(self, earning_id: UUID, reason: str, notes: Optional[str] = None) -> Earning:
        return self.store.atomic(
            lambda session: Earning.model_validate(
                self.store.cancel_earning(session, earning_id, reason, notes)
            )
        )

    def import_earning(self, row: EarningUploadRow, auto_confirm: bool = False) -> Earning:
        """
        Record one uploaded earning for the agent named by `row.agent_code`.

        Penalties are stored as negative amounts. Rows without a reference id
        get a generated one, so only rows that carry one are deduplicated.
        """
        earning_type = row.type
        amount = -row.amount if earning_type == EarningType.PENALTY else row.amount
        reference_id = row.reference_id or f"upload:{uuid4()}"
        status = EarningStatus.CONFIRMED if auto_confirm else EarningStatus.PENDING

        def work(session):
            agent = self.store.get_agent_by_code(session, row.agent_code, lock=True)
            return Earning.model_validate(
                self.store.record_earning(
                    session,
                    NewEarning(
                        agent_id=agent.id,
                        amount=amount,
                        type=earning_type,
                        reference_id=reference_id,
                        currency=self.settings.currency,
                        description=row.description,
                    ),
                    status,
                )
            )

        return self.store.atomic(work)

    def create_adjustment(self, agent_id: UUID, request: CreateEarningAdjustmentRequest) -> Earning:
        """Record an admin bonus, penalty or adjustment as a confirmed earning."""
        earning_type = EarningType(request.type)
        amount = -request.amount if earning_type == EarningType.PENALTY else request.amount
        description = request.reason if not request.notes else f"{request.reason} ({request.notes})"
        reference_id = request.reference_id or f"adjustment:{uuid4()}"

        return self.store.atomic(
            lambda session: Earning.model_validate(
                self.store.record_earning(
                    session,
                    NewEarning(
                        agent_id=agent_id,
                        amount=amount,
                        type=earning_type,
                        reference_id=reference_id,
                        currency=self.settings.currency,
                        description=description,
                    ),
                    EarningStatus.CONFIRMED,
                )
            )
        )
