"""Tests for listings, date filters and CSV exports."""

import csv
import io
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from agent_ledger.models import EarningStatus, UseReferralCodeRequest

EASTERN = timezone(timedelta(hours=-5))


def read_csv(content):
    return list(csv.DictReader(io.StringIO(content)))


class TestPayoutDateFilters:
    def test_bounds_with_offset_are_compared_in_utc(self, ledger, funded_agent, payout_request):
        payout = ledger.payouts.request(funded_agent.id, payout_request("20.00"))
        in_a_minute = datetime.now(EASTERN) + timedelta(minutes=1)

        page = ledger.reports.list_payouts(end_date=in_a_minute)
        assert [p.id for p in page.data] == [payout.id]

        page = ledger.reports.list_payouts(start_date=datetime.now(EASTERN) + timedelta(hours=1))
        assert page.total == 0

    def test_stats_use_the_same_bounds(self, ledger, funded_agent, payout_request):
        ledger.payouts.request(funded_agent.id, payout_request("20.00"))

        stats = ledger.reports.payout_stats(
            start_date=datetime.now(EASTERN) - timedelta(minutes=5),
            end_date=datetime.now(EASTERN) + timedelta(minutes=5),
        )

        assert stats.total_payouts == 1
        assert stats.pending_payout_amount == Decimal("20.00")


class TestEarningsExport:
    def record(self, ledger, reference_id):
        return ledger.earnings.record_usage(
            "AGT001",
            UseReferralCodeRequest(reference_id=reference_id, referred_user_name="Jane", base_amount=Decimal("50")),
        ).earning

    def test_one_row_per_earning_with_agent_code(self, ledger, funded_agent):
        pending = self.record(ledger, "evt-1")

        rows = read_csv(ledger.reports.export_earnings_csv())

        assert len(rows) == 2
        by_reference = {row["reference_id"]: row for row in rows}
        assert by_reference["evt-1"]["id"] == str(pending.id)
        assert by_reference["evt-1"]["agent_code"] == "AGT001"
        assert by_reference["evt-1"]["status"] == "pending"
        assert by_reference["evt-1"]["referral_code"] == "AGT001"
        assert Decimal(by_reference["funding-001"]["amount"]) == Decimal("100.00")
        assert by_reference["funding-001"]["confirmed_at"] != ""

    def test_filters_by_status_and_agent(self, ledger, funded_agent, make_agent):
        other = make_agent(ledger, agent_code="AGT002")
        self.record(ledger, "evt-1")

        confirmed = read_csv(ledger.reports.export_earnings_csv(status=EarningStatus.CONFIRMED))
        assert [row["reference_id"] for row in confirmed] == ["funding-001"]

        assert read_csv(ledger.reports.export_earnings_csv(agent_id=other.id)) == []
