"""
Unit Tests for the Earning Engine

Tests cover:
1. Commission calculation and rounding
2. Referral code usage and idempotent replays
3. Code eligibility (unknown, expired, exhausted, inactive agent)
4. Commission period per referred customer
5. Confirm / cancel balance movements
6. Admin adjustments
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError
from sqlalchemy import update

from agent_ledger.exceptions import (
    AlreadyFinalizedError,
    CommissionPeriodEndedError,
    DuplicateReferenceError,
    InsufficientFundsError,
    InvalidCodeError,
)
from agent_ledger.earnings import EarningEngine, add_months
from agent_ledger.models import (
    AgentStatus,
    CreateEarningAdjustmentRequest,
    CreateReferralCodeRequest,
    EarningStatus,
    EarningType,
    UseReferralCodeRequest,
)
from agent_ledger.tables import ReferralUsageRecord


def usage_event(reference_id="topup-001", base_amount="25.00", **kwargs):
    return UseReferralCodeRequest(
        reference_id=reference_id,
        referred_user_name="Jane Customer",
        base_amount=Decimal(base_amount) if base_amount is not None else None,
        **kwargs,
    )


class TestCommissionCalculation:
    def test_rates_are_percentages(self):
        calc = EarningEngine.calculate_commission(Decimal("25.00"), Decimal("10"), Decimal("2"))
        assert calc.total_rate == Decimal("12")
        assert calc.final_amount == Decimal("3.00")

    def test_rounds_half_up(self):
        calc = EarningEngine.calculate_commission(Decimal("10.05"), Decimal("10"), Decimal("0"))
        assert calc.final_amount == Decimal("1.01")


class TestRecordUsage:
    """Tests for recording referral code usage."""

    def test_agent_code_creates_pending_earning(self, ledger, active_agent):
        response = ledger.earnings.record_usage("AGT001", usage_event())

        earning = response.earning
        assert earning.status == EarningStatus.PENDING
        assert earning.type == EarningType.REFERRAL_COMMISSION
        assert earning.amount == Decimal("2.50")
        assert earning.reference_id == "topup-001"
        assert response.usage.referral_code_id is None

        agent = ledger.agents.get_agent(active_agent.id)
        assert agent.pending_balance == Decimal("2.50")
        assert agent.available_balance == Decimal("0")
        assert agent.total_earnings == Decimal("2.50")
        assert agent.total_referrals == 1
        assert agent.balance_identity_holds()

    def test_issued_code_adds_bonus_and_counts_use(self, ledger, active_agent):
        ledger.agents.create_referral_code(
            active_agent.id,
            CreateReferralCodeRequest(code="SUMMER24", bonus_commission_rate=Decimal("5"), max_uses=10),
        )

        response = ledger.earnings.record_usage("SUMMER24", usage_event(base_amount="100.00"))

        assert response.earning.amount == Decimal("15.00")
        assert response.earning.calculation.bonus_rate == Decimal("5")
        codes = ledger.agents.list_referral_codes(active_agent.id)
        assert codes[0].current_uses == 1

    def test_base_amount_from_signup_metadata(self, ledger, active_agent):
        event = usage_event(base_amount=None, metadata={"signupAmount": 40})
        response = ledger.earnings.record_usage("AGT001", event)
        assert response.earning.amount == Decimal("4.00")
        assert response.usage.metadata == {"signupAmount": 40}

    def test_replayed_event_creates_one_earning(self, ledger, active_agent):
        first = ledger.earnings.record_usage("AGT001", usage_event(reference_id="evt-42"))

        with pytest.raises(DuplicateReferenceError) as exc:
            ledger.earnings.record_usage("AGT001", usage_event(reference_id="evt-42"))

        assert exc.value.existing_id == first.earning.id
        page = ledger.reports.list_earnings(active_agent.id)
        assert page.total == 1
        agent = ledger.agents.get_agent(active_agent.id)
        assert agent.pending_balance == Decimal("2.50")
        assert agent.total_referrals == 1

    def test_find_usage_returns_original(self, ledger, active_agent):
        first = ledger.earnings.record_usage("AGT001", usage_event(reference_id="evt-43"))
        replay = ledger.earnings.find_usage("evt-43")
        assert replay.earning.id == first.earning.id
        assert ledger.earnings.find_usage("unknown") is None

    def test_unknown_code(self, ledger, active_agent):
        with pytest.raises(InvalidCodeError):
            ledger.earnings.record_usage("NOPE", usage_event())

    def test_expired_code(self, ledger, active_agent):
        ledger.agents.create_referral_code(
            active_agent.id,
            CreateReferralCodeRequest(code="OLDCODE", expires_at=datetime.now(timezone.utc) - timedelta(days=1)),
        )
        with pytest.raises(InvalidCodeError):
            ledger.earnings.record_usage("OLDCODE", usage_event())

    def test_expiry_given_with_offset_is_compared_in_utc(self, ledger, active_agent):
        eastern = timezone(timedelta(hours=-5))
        expires_at = datetime.now(eastern) + timedelta(hours=1)
        code = ledger.agents.create_referral_code(
            active_agent.id,
            CreateReferralCodeRequest(code="PROMO-TZ", expires_at=expires_at),
        )

        response = ledger.earnings.record_usage("PROMO-TZ", usage_event())

        assert response.earning.status == EarningStatus.PENDING
        stored = code.expires_at if code.expires_at.tzinfo else code.expires_at.replace(tzinfo=timezone.utc)
        assert stored == expires_at

    def test_reference_id_longer_than_column_is_rejected(self):
        with pytest.raises(ValidationError):
            usage_event(reference_id="x" * 129)
        assert usage_event(reference_id="x" * 128).reference_id == "x" * 128

    def test_exhausted_code_has_no_side_effects(self, ledger, active_agent):
        ledger.agents.create_referral_code(active_agent.id, CreateReferralCodeRequest(code="ONCE", max_uses=1))
        ledger.earnings.record_usage("ONCE", usage_event(reference_id="once-1"))

        with pytest.raises(InvalidCodeError):
            ledger.earnings.record_usage("ONCE", usage_event(reference_id="once-2"))

        agent = ledger.agents.get_agent(active_agent.id)
        assert agent.total_referrals == 1
        assert ledger.earnings.get_earning_by_reference("once-2") is None

    def test_suspended_agent_code_is_rejected(self, ledger, active_agent):
        ledger.agents.suspend(active_agent.id, "Fraud review")
        with pytest.raises(InvalidCodeError):
            ledger.earnings.record_usage("AGT001", usage_event())

    def test_onboarding_agent_code_is_rejected(self, ledger, make_agent):
        make_agent(ledger, agent_code="NEW001", status=AgentStatus.APPLICATION_APPROVED)
        with pytest.raises(InvalidCodeError):
            ledger.earnings.record_usage("NEW001", usage_event())


class TestCommissionPeriod:
    """Commission stops once a customer's first referral is older than the period."""

    def backdate_first_referral(self, ledger, months):
        with ledger.database.session() as session:
            session.execute(
                update(ReferralUsageRecord)
                .where(ReferralUsageRecord.referred_user_email == "jane@example.com")
                .values(used_at=add_months(datetime.now(timezone.utc), -months))
            )

    def test_repeat_customer_within_period_earns(self, ledger, active_agent):
        ledger.earnings.record_usage("AGT001", usage_event("topup-1", referred_user_email="jane@example.com"))
        self.backdate_first_referral(ledger, 23)

        response = ledger.earnings.record_usage(
            "AGT001", usage_event("topup-2", referred_user_email="jane@example.com")
        )

        assert response.earning.amount == Decimal("2.50")

    def test_repeat_customer_after_period_earns_nothing(self, ledger, active_agent):
        ledger.earnings.record_usage("AGT001", usage_event("topup-1", referred_user_email="jane@example.com"))
        self.backdate_first_referral(ledger, 25)

        with pytest.raises(CommissionPeriodEndedError):
            ledger.earnings.record_usage("AGT001", usage_event("topup-2", referred_user_email="jane@example.com"))

        agent = ledger.agents.get_agent(active_agent.id)
        assert agent.pending_balance == Decimal("2.50")
        assert agent.total_referrals == 1
        # a different customer still earns
        ledger.earnings.record_usage("AGT001", usage_event("topup-3", referred_user_email="sam@example.com"))

    def test_add_months_clamps_to_month_end(self):
        start = datetime(2024, 1, 31, tzinfo=timezone.utc)
        assert add_months(start, 1) == datetime(2024, 2, 29, tzinfo=timezone.utc)
        assert add_months(start, 24) == datetime(2026, 1, 31, tzinfo=timezone.utc)


class TestFinalizeEarnings:
    """Tests for confirming and cancelling pending earnings."""

    def test_confirm_moves_pending_to_available(self, ledger, active_agent):
        earning = ledger.earnings.record_usage("AGT001", usage_event()).earning

        confirmed = ledger.earnings.confirm(earning.id)

        assert confirmed.status == EarningStatus.CONFIRMED
        assert confirmed.confirmed_at is not None
        agent = ledger.agents.get_agent(active_agent.id)
        assert agent.pending_balance == Decimal("0")
        assert agent.available_balance == Decimal("2.50")
        assert agent.total_earnings == Decimal("2.50")

    def test_cancel_removes_from_pending_and_total(self, ledger, active_agent):
        earning = ledger.earnings.record_usage("AGT001", usage_event()).earning

        cancelled = ledger.earnings.cancel(earning.id, "Top-up refunded")

        assert cancelled.status == EarningStatus.CANCELLED
        assert cancelled.cancellation_reason == "Top-up refunded"
        agent = ledger.agents.get_agent(active_agent.id)
        assert agent.pending_balance == Decimal("0")
        assert agent.total_earnings == Decimal("0")
        assert agent.balance_identity_holds()

    def test_finalized_earning_cannot_change(self, ledger, active_agent):
        earning = ledger.earnings.record_usage("AGT001", usage_event()).earning
        ledger.earnings.confirm(earning.id)

        with pytest.raises(AlreadyFinalizedError):
            ledger.earnings.confirm(earning.id)
        with pytest.raises(AlreadyFinalizedError) as exc:
            ledger.earnings.cancel(earning.id, "too late")

        assert exc.value.details["status"] == "confirmed"
        agent = ledger.agents.get_agent(active_agent.id)
        assert agent.available_balance == Decimal("2.50")

    def test_admin_notes_are_kept(self, ledger, active_agent):
        first = ledger.earnings.record_usage("AGT001", usage_event("evt-a")).earning
        second = ledger.earnings.record_usage("AGT001", usage_event("evt-b")).earning

        confirmed = ledger.earnings.confirm(first.id, notes="Top-up settled")
        cancelled = ledger.earnings.cancel(second.id, "Top-up refunded", notes="Refund #4411")

        assert confirmed.admin_notes == "Top-up settled"
        assert cancelled.admin_notes == "Refund #4411"
        assert ledger.earnings.get_earning(second.id).cancellation_reason == "Top-up refunded"


class TestAdjustments:
    def test_bonus_is_immediately_available(self, ledger, active_agent):
        earning = ledger.earnings.create_adjustment(
            active_agent.id,
            CreateEarningAdjustmentRequest(amount=Decimal("20.00"), type="bonus", reason="Top performer"),
        )

        assert earning.status == EarningStatus.CONFIRMED
        assert earning.reference_id.startswith("adjustment:")
        agent = ledger.agents.get_agent(active_agent.id)
        assert agent.available_balance == Decimal("20.00")
        assert agent.total_earnings == Decimal("20.00")

    def test_penalty_reduces_available(self, ledger, funded_agent):
        earning = ledger.earnings.create_adjustment(
            funded_agent.id,
            CreateEarningAdjustmentRequest(amount=Decimal("15.00"), type="penalty", reason="Chargeback"),
        )

        assert earning.amount == Decimal("-15.00")
        agent = ledger.agents.get_agent(funded_agent.id)
        assert agent.available_balance == Decimal("85.00")
        assert agent.balance_identity_holds()

    def test_penalty_cannot_overdraw(self, ledger, funded_agent):
        with pytest.raises(InsufficientFundsError):
            ledger.earnings.create_adjustment(
                funded_agent.id,
                CreateEarningAdjustmentRequest(amount=Decimal("100.01"), type="penalty", reason="Chargeback"),
            )

        agent = ledger.agents.get_agent(funded_agent.id)
        assert agent.available_balance == Decimal("100.00")
