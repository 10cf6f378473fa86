"""Bulk admin actions. Each item runs in its own transaction and never aborts the batch."""
import logging
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from .earnings import EarningEngine
from .exceptions import AgentNotFoundError, DuplicateReferenceError, LedgerError
from .models import (
    BulkEarningAction,
    BulkEarningError,
    BulkEarningsResult,
    BulkEarningUploadRequest,
    BulkEarningUploadResult,
    BulkPayoutAction,
    BulkPayoutError,
    BulkPayoutResult,
    EarningUploadDetail,
)
from .payouts import PayoutService
from .store import to_money

logger = logging.getLogger(__name__)


class BulkActionCoordinator:
    def __init__(self, payouts: PayoutService, earnings: EarningEngine):
        self.payouts = payouts
        self.earnings = earnings

    def _apply_payout_action(
        self,
        payout_id: UUID,
        action: BulkPayoutAction,
        reason: Optional[str],
        transaction_id: Optional[str],
        admin_notes: Optional[str],
    ) -> None:
        if action == BulkPayoutAction.APPROVE:
            self.payouts.approve(payout_id, admin_notes)
        elif action == BulkPayoutAction.REJECT:
            self.payouts.reject(payout_id, reason, admin_notes)
        elif action == BulkPayoutAction.REVIEW:
            self.payouts.set_to_review(payout_id, reason, admin_notes)
        elif action == BulkPayoutAction.PROCESS:
            self.payouts.process(payout_id, admin_notes)
        elif action == BulkPayoutAction.COMPLETE:
            self.payouts.complete(payout_id, transaction_id, notes=admin_notes)

    def bulk_process(
        self,
        payout_ids: List[UUID],
        action: BulkPayoutAction,
        reason: Optional[str] = None,
        transaction_ids: Optional[List[str]] = None,
        admin_notes: Optional[str] = None,
        individual_messages: Optional[Dict[UUID, str]] = None,
    ) -> BulkPayoutResult:
        """
        Apply one action to many payouts in input order.

        Failures are collected per payout; a failed item is not retried and
        does not roll back the items before it. For `review`, a payout's entry
        in `individual_messages` replaces the shared `reason`.
        """
        individual_messages = individual_messages or {}
        if action == BulkPayoutAction.REJECT and not reason:
            raise ValueError("reason is required for bulk reject")
        if action == BulkPayoutAction.REVIEW and not reason:
            if any(payout_id not in individual_messages for payout_id in payout_ids):
                raise ValueError("review requires a reason or an individual message for every payout")
        if action == BulkPayoutAction.COMPLETE and len(transaction_ids or []) != len(payout_ids):
            raise ValueError("complete requires one transaction id per payout")

        result = BulkPayoutResult()
        for index, payout_id in enumerate(payout_ids):
            transaction_id = transaction_ids[index] if transaction_ids else None
            message = individual_messages.get(payout_id, reason)
            try:
                self._apply_payout_action(payout_id, action, message, transaction_id, admin_notes)
            except (LedgerError, SQLAlchemyError) as e:
                result.failed += 1
                result.errors.append(BulkPayoutError(payout_id=payout_id, error=str(e)))
                logger.warning(
                    f"Bulk {action.value} failed for payout {payout_id}: {e}",
                    extra={"payout_id": payout_id, "action": action.value},
                )
            else:
                result.success += 1
                result.successful_payouts.append(payout_id)

        logger.info(
            f"Bulk {action.value}: {result.success} succeeded, {result.failed} failed",
            extra={"action": action.value},
        )
        return result

    def bulk_finalize_earnings(
        self,
        earning_ids: List[UUID],
        action: BulkEarningAction,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> BulkEarningsResult:
        if action == BulkEarningAction.CANCEL and not reason:
            raise ValueError("reason is required to cancel earnings")

        result = BulkEarningsResult()
        for earning_id in earning_ids:
            try:
                if action == BulkEarningAction.CONFIRM:
                    self.earnings.confirm(earning_id, notes)
                else:
                    self.earnings.cancel(earning_id, reason, notes)
            except (LedgerError, SQLAlchemyError) as e:
                result.failed += 1
                result.errors.append(BulkEarningError(earning_id=earning_id, error=str(e)))
                logger.warning(
                    f"Bulk {action.value} failed for earning {earning_id}: {e}",
                    extra={"earning_id": earning_id, "action": action.value},
                )
            else:
                result.success += 1

        verb = "confirmed" if action == BulkEarningAction.CONFIRM else "cancelled"
        result.summary = f"{result.success} earnings {verb}, {result.failed} failed"
        logger.info(f"Bulk {action.value}: {result.summary}", extra={"action": action.value})
        return result

    def bulk_upload_earnings(self, request: BulkEarningUploadRequest) -> BulkEarningUploadResult:
        """
        Record uploaded earnings row by row.

        A row whose reference id was already processed is skipped, not failed,
        so re-uploading the same file is harmless.
        """
        result = BulkEarningUploadResult()
        summary = result.error_summary
        updated_agents = set()

        for row_number, row in enumerate(request.earnings, start=1):
            result.total_processed += 1
            detail = EarningUploadDetail(
                row=row_number, agent_code=row.agent_code, status="success", amount=row.amount
            )
            try:
                earning = self.earnings.import_earning(row, request.auto_confirm)
            except DuplicateReferenceError as e:
                result.skipped += 1
                detail.status = "skipped"
                detail.earning_id = e.existing_id
                detail.message = str(e)
                summary.duplicate_references.append(e.reference_id)
            except AgentNotFoundError as e:
                result.failed += 1
                detail.status = "failed"
                detail.error = str(e)
                if row.agent_code not in summary.invalid_agent_codes:
                    summary.invalid_agent_codes.append(row.agent_code)
            except (LedgerError, SQLAlchemyError) as e:
                result.failed += 1
                detail.status = "failed"
                detail.error = str(e)
                summary.other_errors.append(f"Row {row_number} ({row.agent_code}): {e}")
            else:
                result.successful += 1
                result.total_amount += earning.amount
                detail.earning_id = earning.id
                detail.amount = earning.amount
                detail.message = f"Earning {earning.status.value}"
                updated_agents.add(row.agent_code)
            result.details.append(detail)

        result.total_amount = to_money(result.total_amount)
        result.updated_agents = sorted(updated_agents)
        logger.info(
            f"Earnings upload: {result.successful} recorded, {result.skipped} skipped, {result.failed} failed"
            + (f" ({request.batch_description})" if request.batch_description else ""),
            extra={"action": "bulk_upload"},
        )
        return result
