"""Tests for bulk payout and earning actions."""

from decimal import Decimal
from uuid import uuid4

import pytest

from agent_ledger.models import (
    BulkEarningAction,
    BulkEarningUploadRequest,
    BulkPayoutAction,
    EarningStatus,
    PayoutStatus,
    UseReferralCodeRequest,
)


class TestBulkPayouts:
    def test_partial_failure_is_reported(self, ledger, funded_agent, payout_request):
        first = ledger.payouts.request(funded_agent.id, payout_request("20.00"))
        second = ledger.payouts.request(funded_agent.id, payout_request("20.00"))
        third = ledger.payouts.request(funded_agent.id, payout_request("20.00"))
        ledger.payouts.reject(second.id, "Duplicate request")

        result = ledger.bulk.bulk_process([first.id, second.id, third.id], BulkPayoutAction.APPROVE)

        assert result.success == 2
        assert result.failed == 1
        assert result.successful_payouts == [first.id, third.id]
        assert result.errors[0].payout_id == second.id
        assert "rejected" in result.errors[0].error
        assert ledger.payouts.get(first.id).status == PayoutStatus.APPROVED
        assert ledger.payouts.get(third.id).status == PayoutStatus.APPROVED

    def test_unknown_payout_does_not_abort_batch(self, ledger, funded_agent, payout_request):
        payout = ledger.payouts.request(funded_agent.id, payout_request("20.00"))
        missing = uuid4()

        result = ledger.bulk.bulk_process([missing, payout.id], BulkPayoutAction.REVIEW, reason="Need ID")

        assert result.success == 1
        assert result.failed == 1
        assert result.errors[0].payout_id == missing
        assert ledger.payouts.get(payout.id).review_message == "Need ID"

    def test_bulk_reject_releases_each_reservation(self, ledger, funded_agent, payout_request):
        ids = [ledger.payouts.request(funded_agent.id, payout_request("25.00")).id for _ in range(2)]

        result = ledger.bulk.bulk_process(ids, BulkPayoutAction.REJECT, reason="Batch rejected")

        assert result.success == 2
        balance = ledger.payouts.available_balance(funded_agent.id)
        assert balance.available_balance == Decimal("100.00")
        assert balance.reserved_balance == Decimal("0")

    def test_bulk_complete_pairs_transaction_ids(self, ledger, funded_agent, payout_request):
        ids = []
        for _ in range(2):
            payout = ledger.payouts.request(funded_agent.id, payout_request("10.00"))
            ledger.payouts.approve(payout.id)
            ledger.payouts.process(payout.id)
            ids.append(payout.id)

        result = ledger.bulk.bulk_process(ids, BulkPayoutAction.COMPLETE, transaction_ids=["TX-A", "TX-B"])

        assert result.success == 2
        assert ledger.payouts.get(ids[0]).transaction_id == "TX-A"
        assert ledger.payouts.get(ids[1]).transaction_id == "TX-B"
        assert ledger.agents.get_agent(funded_agent.id).total_paid_out == Decimal("20.00")

    def test_reason_required_for_reject(self, ledger):
        with pytest.raises(ValueError):
            ledger.bulk.bulk_process([uuid4()], BulkPayoutAction.REJECT)

    def test_complete_requires_one_transaction_per_payout(self, ledger):
        with pytest.raises(ValueError):
            ledger.bulk.bulk_process([uuid4(), uuid4()], BulkPayoutAction.COMPLETE, transaction_ids=["TX-A"])

    def test_empty_complete_batch_is_a_no_op(self, ledger):
        result = ledger.bulk.bulk_process([], BulkPayoutAction.COMPLETE)

        assert result.success == 0
        assert result.failed == 0
        assert result.errors == []

    def test_review_uses_individual_messages(self, ledger, funded_agent, payout_request):
        first = ledger.payouts.request(funded_agent.id, payout_request("20.00"))
        second = ledger.payouts.request(funded_agent.id, payout_request("20.00"))

        result = ledger.bulk.bulk_process(
            [first.id, second.id],
            BulkPayoutAction.REVIEW,
            reason="Please confirm your details",
            individual_messages={first.id: "Account name does not match ID"},
        )

        assert result.success == 2
        assert ledger.payouts.get(first.id).review_message == "Account name does not match ID"
        assert ledger.payouts.get(second.id).review_message == "Please confirm your details"

    def test_review_without_reason_needs_a_message_per_payout(self, ledger, funded_agent, payout_request):
        first = ledger.payouts.request(funded_agent.id, payout_request("20.00"))
        second = ledger.payouts.request(funded_agent.id, payout_request("20.00"))

        with pytest.raises(ValueError):
            ledger.bulk.bulk_process(
                [first.id, second.id], BulkPayoutAction.REVIEW, individual_messages={first.id: "Need ID"}
            )

        result = ledger.bulk.bulk_process(
            [first.id, second.id],
            BulkPayoutAction.REVIEW,
            individual_messages={first.id: "Need ID", second.id: "Need bank letter"},
        )
        assert result.success == 2
        assert ledger.payouts.get(second.id).status == PayoutStatus.PENDING_REVIEW


class TestBulkEarnings:
    def record(self, ledger, reference_id):
        return ledger.earnings.record_usage(
            "AGT001",
            UseReferralCodeRequest(reference_id=reference_id, referred_user_name="Jane", base_amount=Decimal("50")),
        ).earning

    def test_confirm_with_one_already_final(self, ledger, active_agent):
        earnings = [self.record(ledger, f"evt-{i}") for i in range(3)]
        ledger.earnings.cancel(earnings[1].id, "Refunded")

        result = ledger.bulk.bulk_finalize_earnings([e.id for e in earnings], BulkEarningAction.CONFIRM)

        assert result.success == 2
        assert result.failed == 1
        assert result.errors[0].earning_id == earnings[1].id
        assert result.summary == "2 earnings confirmed, 1 failed"
        agent = ledger.agents.get_agent(active_agent.id)
        assert agent.available_balance == Decimal("10.00")
        assert agent.pending_balance == Decimal("0")

    def test_cancel_requires_reason(self, ledger):
        with pytest.raises(ValueError):
            ledger.bulk.bulk_finalize_earnings([uuid4()], BulkEarningAction.CANCEL)

    def test_cancel_batch(self, ledger, active_agent):
        earnings = [self.record(ledger, f"cxl-{i}") for i in range(2)]

        result = ledger.bulk.bulk_finalize_earnings(
            [e.id for e in earnings], BulkEarningAction.CANCEL, reason="Fraud"
        )

        assert result.success == 2
        assert all(ledger.earnings.get_earning(e.id).status == EarningStatus.CANCELLED for e in earnings)

    def test_notes_are_kept_on_each_earning(self, ledger, active_agent):
        earnings = [self.record(ledger, f"note-{i}") for i in range(2)]

        ledger.bulk.bulk_finalize_earnings([e.id for e in earnings], BulkEarningAction.CONFIRM, notes="March batch")

        assert all(ledger.earnings.get_earning(e.id).admin_notes == "March batch" for e in earnings)


class TestBulkUpload:
    """Tests for uploading a batch of earnings by agent code."""

    def upload(self, ledger, rows, auto_confirm=False):
        return ledger.bulk.bulk_upload_earnings(
            BulkEarningUploadRequest(earnings=rows, auto_confirm=auto_confirm, batch_description="March campaign")
        )

    def test_rows_become_pending_earnings(self, ledger, active_agent):
        result = self.upload(ledger, [
            {"agentCode": "AGT001", "amount": "12.50", "type": "promotion_bonus",
             "description": "March campaign", "referenceId": "mar-AGT001"},
            {"agentCode": "AGT001", "amount": "7.50", "type": "bonus", "description": "Top seller"},
        ])

        assert result.total_processed == 2
        assert result.successful == 2
        assert result.total_amount == Decimal("20.00")
        assert result.updated_agents == ["AGT001"]
        assert [d.status for d in result.details] == ["success", "success"]
        agent = ledger.agents.get_agent(active_agent.id)
        assert agent.pending_balance == Decimal("20.00")
        assert agent.available_balance == Decimal("0")
        assert agent.balance_identity_holds()

    def test_auto_confirm_credits_available_balance(self, ledger, active_agent):
        result = self.upload(
            ledger,
            [{"agentCode": "AGT001", "amount": "30.00", "type": "adjustment", "description": "Q1 true-up"}],
            auto_confirm=True,
        )

        assert result.details[0].message == "Earning confirmed"
        assert ledger.agents.get_agent(active_agent.id).available_balance == Decimal("30.00")

    def test_duplicates_are_skipped_and_bad_codes_fail(self, ledger, active_agent):
        row = {"agentCode": "AGT001", "amount": "10.00", "type": "bonus",
               "description": "Bonus", "referenceId": "bonus-001"}
        first = self.upload(ledger, [row])

        result = self.upload(ledger, [
            row,
            {"agentCode": "NOBODY", "amount": "5.00", "type": "bonus", "description": "Bonus"},
            {"agentCode": "AGT001", "amount": "15.00", "type": "penalty", "description": "Chargeback"},
        ])

        assert result.successful == 0
        assert result.skipped == 1
        assert result.failed == 2
        assert result.details[0].earning_id == first.details[0].earning_id
        assert result.error_summary.duplicate_references == ["bonus-001"]
        assert result.error_summary.invalid_agent_codes == ["NOBODY"]
        # a pending penalty larger than the pending balance is refused
        assert result.error_summary.other_errors[0].startswith("Row 3 (AGT001)")
        agent = ledger.agents.get_agent(active_agent.id)
        assert agent.pending_balance == Decimal("10.00")
