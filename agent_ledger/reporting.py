"""Read-side queries: paginated listings, summaries, payout stats and CSV exports."""
import csv
import io
import math
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy import func, select

from .models import (
    Earning,
    EarningsSummary,
    EarningStatus,
    Page,
    Payout,
    PayoutMethod,
    PayoutStats,
    PayoutStatus,
    ReferralCodeStatus,
    as_utc,
)
from .state_machine import RESERVING_STATUSES
from .store import ZERO, LedgerStore, to_money
from .tables import AgentRecord, EarningRecord, PayoutRecord, ReferralCodeRecord

PAYOUT_CSV_COLUMNS = [
    "id",
    "agent_id",
    "amount",
    "fees",
    "net_amount",
    "currency",
    "method",
    "status",
    "transaction_id",
    "requested_at",
    "completed_at",
]

EARNING_CSV_COLUMNS = [
    "id",
    "agent_id",
    "agent_code",
    "amount",
    "currency",
    "type",
    "status",
    "reference_id",
    "description",
    "referral_code",
    "earned_at",
    "confirmed_at",
    "cancelled_at",
]


def _page(items, total: int, page: int, limit: int) -> Page:
    return Page(
        data=items,
        total=total,
        page=page,
        limit=limit,
        total_pages=math.ceil(total / limit) if limit else 0,
    )


def _timestamp(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


def _to_csv(columns: List[str], rows: Iterable[list]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(columns)
    writer.writerows(rows)
    return buffer.getvalue()


def _date_range(column, start_date: Optional[datetime], end_date: Optional[datetime]) -> list:
    # Timestamps are stored as UTC; SQLite keeps no offset, so bounds are compared in UTC too
    filters = []
    if start_date:
        filters.append(column >= as_utc(start_date))
    if end_date:
        filters.append(column <= as_utc(end_date))
    return filters


class LedgerReports:
    def __init__(self, store: LedgerStore):
        self.store = store

    @staticmethod
    def _payout_filters(
        status: Optional[str] = None,
        method: Optional[PayoutMethod] = None,
        agent_id: Optional[UUID] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> list:
        filters = []
        if status:
            filters.append(PayoutRecord.status == PayoutStatus.parse(status).value)
        if method:
            filters.append(PayoutRecord.method == method.value)
        if agent_id:
            filters.append(PayoutRecord.agent_id == agent_id)
        filters.extend(_date_range(PayoutRecord.requested_at, start_date, end_date))
        return filters

    def list_payouts(
        self,
        status: Optional[str] = None,
        method: Optional[PayoutMethod] = None,
        agent_id: Optional[UUID] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page[Payout]:
        """List payouts newest first. `status` also accepts "review"."""
        filters = self._payout_filters(status, method, agent_id, start_date, end_date)

        def work(session):
            total = session.scalar(select(func.count()).select_from(PayoutRecord).where(*filters))
            rows = session.scalars(
                select(PayoutRecord)
                .where(*filters)
                .order_by(PayoutRecord.requested_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            return _page([Payout.model_validate(r) for r in rows], total, page, limit)

        return self.store.atomic(work)

    def list_earnings(
        self,
        agent_id: UUID,
        status: Optional[EarningStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page[Earning]:
        filters = [EarningRecord.agent_id == agent_id]
        if status:
            filters.append(EarningRecord.status == status.value)

        def work(session):
            self.store.get_agent(session, agent_id)
            total = session.scalar(select(func.count()).select_from(EarningRecord).where(*filters))
            rows = session.scalars(
                select(EarningRecord)
                .where(*filters)
                .order_by(EarningRecord.earned_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            return _page([Earning.model_validate(r) for r in rows], total, page, limit)

        return self.store.atomic(work)

    def earnings_summary(self, agent_id: UUID) -> EarningsSummary:
        def work(session):
            agent = self.store.get_agent(session, agent_id)
            counts = dict(
                session.execute(
                    select(EarningRecord.status, func.count())
                    .where(EarningRecord.agent_id == agent_id)
                    .group_by(EarningRecord.status)
                ).all()
            )
            active_codes = session.scalar(
                select(func.count())
                .select_from(ReferralCodeRecord)
                .where(
                    ReferralCodeRecord.agent_id == agent_id,
                    ReferralCodeRecord.status == ReferralCodeStatus.ACTIVE.value,
                )
            )
            return EarningsSummary(
                agent_id=agent.id,
                total_earnings=agent.total_earnings,
                available_balance=agent.available_balance,
                pending_balance=agent.pending_balance,
                reserved_balance=agent.reserved_balance,
                total_paid_out=agent.total_paid_out,
                pending_count=counts.get(EarningStatus.PENDING.value, 0),
                confirmed_count=counts.get(EarningStatus.CONFIRMED.value, 0),
                cancelled_count=counts.get(EarningStatus.CANCELLED.value, 0),
                total_referrals=agent.total_referrals,
                active_referral_codes=active_codes,
            )

        return self.store.atomic(work)

    def payout_stats(
        self,
        agent_id: Optional[UUID] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> PayoutStats:
        filters = self._payout_filters(agent_id=agent_id, start_date=start_date, end_date=end_date)

        def work(session):
            by_status = {}
            amount_by_status = {}
            fees = ZERO
            for status, count, amount, status_fees in session.execute(
                select(
                    PayoutRecord.status,
                    func.count(),
                    func.coalesce(func.sum(PayoutRecord.amount), 0),
                    func.coalesce(func.sum(PayoutRecord.fees), 0),
                )
                .where(*filters)
                .group_by(PayoutRecord.status)
            ).all():
                by_status[status] = count
                amount_by_status[status] = Decimal(str(amount))
                fees += Decimal(str(status_fees))

            by_method = dict(
                session.execute(
                    select(PayoutRecord.method, func.count())
                    .where(*filters)
                    .group_by(PayoutRecord.method)
                ).all()
            )
            return by_status, amount_by_status, fees, by_method

        by_status, amount_by_status, fees, by_method = self.store.atomic(work)

        pending = [s.value for s in RESERVING_STATUSES]
        completed = PayoutStatus.COMPLETED.value
        total_count = sum(by_status.values())
        total_amount = sum(amount_by_status.values(), ZERO)
        return PayoutStats(
            total_payouts=total_count,
            pending_payouts=sum(by_status.get(s, 0) for s in pending),
            completed_payouts=by_status.get(completed, 0),
            total_payout_amount=to_money(total_amount),
            pending_payout_amount=to_money(sum((amount_by_status.get(s, ZERO) for s in pending), ZERO)),
            completed_payout_amount=to_money(amount_by_status.get(completed, ZERO)),
            average_payout_amount=to_money(total_amount / total_count) if total_count else to_money(ZERO),
            total_fees=to_money(fees),
            payouts_by_status=by_status,
            payouts_by_method=by_method,
        )

    def export_payouts_csv(
        self,
        status: Optional[str] = None,
        method: Optional[PayoutMethod] = None,
        agent_id: Optional[UUID] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> str:
        filters = self._payout_filters(status, method, agent_id, start_date, end_date)

        def work(session):
            return [
                Payout.model_validate(r)
                for r in session.scalars(
                    select(PayoutRecord).where(*filters).order_by(PayoutRecord.requested_at.desc())
                ).all()
            ]

        return _to_csv(
            PAYOUT_CSV_COLUMNS,
            (
                [
                    payout.id,
                    payout.agent_id,
                    payout.amount,
                    payout.fees,
                    payout.net_amount,
                    payout.currency,
                    payout.method.value,
                    payout.status.value,
                    payout.transaction_id or "",
                    _timestamp(payout.requested_at),
                    _timestamp(payout.completed_at),
                ]
                for payout in self.store.atomic(work)
            ),
        )

    def export_earnings_csv(
        self,
        agent_id: Optional[UUID] = None,
        status: Optional[EarningStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> str:
        """Earnings newest first, one row each, with the agent's code for reconciliation."""
        filters = _date_range(EarningRecord.earned_at, start_date, end_date)
        if agent_id:
            filters.append(EarningRecord.agent_id == agent_id)
        if status:
            filters.append(EarningRecord.status == status.value)

        def work(session):
            return [
                (Earning.model_validate(earning), agent_code)
                for earning, agent_code in session.execute(
                    select(EarningRecord, AgentRecord.agent_code)
                    .join(AgentRecord, AgentRecord.id == EarningRecord.agent_id)
                    .where(*filters)
                    .order_by(EarningRecord.earned_at.desc())
                ).all()
            ]

        return _to_csv(
            EARNING_CSV_COLUMNS,
            (
                [
                    earning.id,
                    earning.agent_id,
                    agent_code,
                    earning.amount,
                    earning.currency,
                    earning.type.value,
                    earning.status.value,
                    earning.reference_id,
                    earning.description or "",
                    earning.referral_code or "",
                    _timestamp(earning.earned_at),
                    _timestamp(earning.confirmed_at),
                    _timestamp(earning.cancelled_at),
                ]
                for earning, agent_code in self.store.atomic(work)
            ),
        )
