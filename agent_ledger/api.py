from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, get_settings
from .exceptions import (
    AlreadyFinalizedError,
    ConcurrencyConflictError,
    DuplicateReferenceError,
    InvalidStateTransitionError,
    LedgerError,
    NotFoundError,
)
from .logging_config import setup_logging
from .models import (
    Agent,
    AgentStatusReasonRequest,
    ApproveEarningRequest,
    ApprovePayoutRequest,
    AvailableBalance,
    BulkEarningAction,
    BulkEarningsActionRequest,
    BulkEarningsResult,
    BulkEarningUploadRequest,
    BulkEarningUploadResult,
    BulkPayoutActionRequest,
    BulkPayoutResult,
    CompletePayoutRequest,
    CreateAgentRequest,
    CreateEarningAdjustmentRequest,
    CreatePayoutRequest,
    CreateReferralCodeRequest,
    Earning,
    EarningsSummary,
    EarningStatus,
    FeeQuote,
    FeeQuoteRequest,
    Page,
    Payout,
    PayoutMethod,
    PayoutStats,
    ProcessPayoutRequest,
    ReferralCode,
    ReferralUsageResponse,
    RejectEarningRequest,
    RejectPayoutRequest,
    ReviewPayoutRequest,
    UpdateAgentStatusRequest,
    UseReferralCodeRequest,
)
from .service import LedgerService

CONFLICT_ERRORS = (
    InvalidStateTransitionError,
    ConcurrencyConflictError,
    AlreadyFinalizedError,
    DuplicateReferenceError,
)


def ledger_http_error(e: Exception) -> HTTPException:
    """Map a ledger or argument error onto an HTTP error response."""
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, CONFLICT_ERRORS):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def get_ledger(request: Request) -> LedgerService:
    return request.app.state.ledger


def create_app(
    service: Optional[LedgerService] = None,
    settings: Optional[Settings] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or (service.settings if service else get_settings())
    ledger = service or LedgerService(settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings)
        ledger.create_tables()
        yield
        ledger.close()

    app = FastAPI(
        title=settings.app_name,
        description="Agent commission ledger: referral earnings, balances and payouts",
        version="1.0.0",
        root_path=root_path,
        lifespan=lifespan,
    )
    app.state.ledger = ledger

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "agent-ledger"}

    # ----- Agents -----

    @app.post("/admin/agents", response_model=Agent, status_code=status.HTTP_201_CREATED, tags=["Agents"])
    def create_agent(request: CreateAgentRequest, ledger: LedgerService = Depends(get_ledger)):
        try:
            return ledger.agents.create_agent(request)
        except LedgerError as e:
            raise ledger_http_error(e)

    @app.get("/agents/{agent_id}", response_model=Agent, tags=["Agents"])
    def get_agent(agent_id: UUID, ledger: LedgerService = Depends(get_ledger)):
        try:
            return ledger.agents.get_agent(agent_id)
        except LedgerError as e:
            raise ledger_http_error(e)

    @app.post("/admin/agents/{agent_id}/status", response_model=Agent, tags=["Agents"])
    def update_agent_status(
        agent_id: UUID, request: UpdateAgentStatusRequest, ledger: LedgerService = Depends(get_ledger)
    ):
        try:
            return ledger.agents.update_status(agent_id, request.status, request.reason)
        except LedgerError as e:
            raise ledger_http_error(e)

    @app.post("/admin/agents/{agent_id}/suspend-earnings", response_model=Agent, tags=["Agents"])
    def suspend_agent(
        agent_id: UUID, request: AgentStatusReasonRequest, ledger: LedgerService = Depends(get_ledger)
    ):
        try:
            return ledger.agents.suspend(agent_id, request.reason)
        except LedgerError as e:
            raise ledger_http_error(e)

    @app.post("/admin/agents/{agent_id}/resume-earnings", response_model=Agent, tags=["Agents"])
    def resume_agent(
        agent_id: UUID, request: AgentStatusReasonRequest, ledger: LedgerService = Depends(get_ledger)
    ):
        try:
            return ledger.agents.resume(agent_id, request.reason)
        except LedgerError as e:
            raise ledger_http_error(e)

    # ----- Referral codes -----

    @app.post(
        "/agents/{agent_id}/referral-codes",
        response_model=ReferralCode,
        status_code=status.HTTP_201_CREATED,
        tags=["Referral Codes"],
    )
    def create_referral_code(
        agent_id: UUID, request: CreateReferralCodeRequest, ledger: LedgerService = Depends(get_ledger)
    ):
        try:
            return ledger.agents.create_referral_code(agent_id, request)
        except LedgerError as e:
            raise ledger_http_error(e)

    @app.get("/agents/{agent_id}/referral-codes", response_model=list[ReferralCode], tags=["Referral Codes"])
    def list_referral_codes(agent_id: UUID, ledger: LedgerService = Depends(get_ledger)):
        try:
            return ledger.agents.list_referral_codes(agent_id)
        except LedgerError as e:
            raise ledger_http_error(e)

    @app.post(
        "/referral-codes/{code}/use",
        response_model=ReferralUsageResponse,
        status_code=status.HTTP_201_CREATED,
        tags=["Referral Codes"],
    )
    def use_referral_code(
        code: str,
        request: UseReferralCodeRequest,
        response: Response,
        ledger: LedgerService = Depends(get_ledger),
    ):
        try:
            return ledger.earnings.record_usage(code, request)
        except DuplicateReferenceError as e:
            # A replayed event is a success; hand back what was recorded the first time
            existing = ledger.earnings.find_usage(request.reference_id)
            if existing is None:
                raise ledger_http_error(e)
            response.status_code = status.HTTP_200_OK
            return existing
        except LedgerError as e:
            raise ledger_http_error(e)

    # ----- Earnings -----

    @app.get("/agents/{agent_id}/earnings", response_model=Page[Earning], tags=["Earnings"])
    def list_earnings(
        agent_id: UUID,
        status_filter: Optional[EarningStatus] = Query(None, alias="status"),
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        ledger: LedgerService = Depends(get_ledger),
    ):
        try:
            return ledger.reports.list_earnings(agent_id, status_filter, page, limit)
        except LedgerError as e:
            raise ledger_http_error(e)

    @app.get("/agents/{agent_id}/earnings/summary", response_model=EarningsSummary, tags=["Earnings"])
    def earnings_summary(agent_id: UUID, ledger: LedgerService = Depends(get_ledger)):
        try:
            return ledger.reports.earnings_summary(agent_id)
        except LedgerError as e:
            raise ledger_http_error(e)

    @app.post("/admin/earnings/bulk-approve", response_model=BulkEarningsResult, tags=["Earnings"])
    def bulk_approve_earnings(request: BulkEarningsActionRequest, ledger: LedgerService = Depends(get_ledger)):
        return ledger.bulk.bulk_finalize_earnings(
            request.earning_ids, BulkEarningAction.CONFIRM, notes=request.notes
        )

    @app.post("/admin/earnings/bulk-reject", response_model=BulkEarningsResult, tags=["Earnings"])
    def bulk_reject_earnings(request: BulkEarningsActionRequest, ledger: LedgerService = Depends(get_ledger)):
        try:
            return ledger.bulk.bulk_finalize_earnings(
                request.earning_ids, BulkEarningAction.CANCEL, request.reason, request.notes
            )
        except ValueError as e:
            raise ledger_http_error(e)

    @app.post("/admin/earnings/bulk-upload", response_model=BulkEarningUploadResult, tags=["Earnings"])
    def bulk_upload_earnings(request: BulkEarningUploadRequest, ledger: LedgerService = Depends(get_ledger)):
        return ledger.bulk.bulk_upload_earnings(request)

    @app.get("/admin/earnings/export", tags=["Earnings"])
    def export_earnings(
        agent_id: Optional[UUID] = Query(None, alias="agentId"),
        status_filter: Optional[EarningStatus] = Query(None, alias="status"),
        start_date: Optional[datetime] = Query(None, alias="startDate"),
        end_date: Optional[datetime] = Query(None, alias="endDate"),
        ledger: LedgerService = Depends(get_ledger),
    ):
        return Response(
            content=ledger.reports.export_earnings_csv(agent_id, status_filter, start_date, end_date),
            media_type="text/csv",
            headers={"Content-Disposition": "attachment; filename=earnings.csv"},
        )

    @app.post("/admin/earnings/{earning_id}/approve", response_model=Earning, tags=["Earnings"])
    def approve_earning(
        earning_id: UUID,
        request: Optional[ApproveEarningRequest] = None,
        ledger: LedgerService = Depends(get_ledger),
    ):
        try:
            return ledger.earnings.confirm(earning_id, request.notes if request else None)
        except LedgerError as e:
            raise ledger_http_error(e)

    @app.post("/admin/earnings/{earning_id}/reject", response_model=Earning, tags=["Earnings"])
    def reject_earning(
        earning_id: UUID, request: RejectEarningRequest, ledger: LedgerService = Depends(get_ledger)
    ):
        try:
            return ledger.earnings.cancel(earning_id, request.reason, request.notes)
        except LedgerError as e:
            raise ledger_http_error(e)

    @app.post(
        "/admin/agents/{agent_id}/earnings/adjust",
        response_model=Earning,
        status_code=status.HTTP_201_CREATED,
        tags=["Earnings"],
    )
    def adjust_earnings(
        agent_id: UUID, request: CreateEarningAdjustmentRequest, ledger: LedgerService = Depends(get_ledger)
    ):
        try:
            return ledger.earnings.create_adjustment(agent_id, request)
        except LedgerError as e:
            raise ledger_http_error(e)

    # ----- Agent payouts -----

    @app.post(
        "/agents/{agent_id}/payouts",
        response_model=Payout,
        status_code=status.HTTP_201_CREATED,
        tags=["Payouts"],
    )
    def request_payout(agent_id: UUID, request: CreatePayoutRequest, ledger: LedgerService = Depends(get_ledger)):
        try:
            return ledger.payouts.request(agent_id, request)
        except LedgerError as e:
            raise ledger_http_error(e)

    @app.get("/agents/{agent_id}/payouts", response_model=Page[Payout], tags=["Payouts"])
    def list_agent_payouts(
        agent_id: UUID,
        status_filter: Optional[str] = Query(None, alias="status"),
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        ledger: LedgerService = Depends(get_ledger),
    ):
        try:
            return ledger.reports.list_payouts(status=status_filter, agent_id=agent_id, page=page, limit=limit)
        except ValueError as e:
            raise ledger_http_error(e)

    @app.get("/agents/{agent_id}/payouts/available-balance", response_model=AvailableBalance, tags=["Payouts"])
    def available_balance(agent_id: UUID, ledger: LedgerService = Depends(get_ledger)):
        try:
            return ledger.payouts.available_balance(agent_id)
        except LedgerError as e:
            raise ledger_http_error(e)

    @app.post("/agents/{agent_id}/payouts/calculate-fees", response_model=FeeQuote, tags=["Payouts"])
    def calculate_fees(agent_id: UUID, request: FeeQuoteRequest, ledger: LedgerService = Depends(get_ledger)):
        try:
            return ledger.payouts.calculate_fees(request.amount, request.method, agent_id)
        except LedgerError as e:
            raise ledger_http_error(e)

    @app.delete("/agents/payouts/{payout_id}", response_model=Payout, tags=["Payouts"])
    def cancel_payout(
        payout_id: UUID,
        agent_id: Optional[UUID] = Query(None, alias="agentId"),
        ledger: LedgerService = Depends(get_ledger),
    ):
        try:
            return ledger.payouts.cancel(payout_id, agent_id)
        except LedgerError as e:
            raise ledger_http_error(e)

    # ----- Admin payouts -----

    @app.get("/admin/payouts", response_model=Page[Payout], tags=["Admin Payouts"])
    def list_payouts(
        status_filter: Optional[str] = Query(None, alias="status"),
        method: Optional[PayoutMethod] = None,
        agent_id: Optional[UUID] = Query(None, alias="agentId"),
        start_date: Optional[datetime] = Query(None, alias="startDate"),
        end_date: Optional[datetime] = Query(None, alias="endDate"),
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        ledger: LedgerService = Depends(get_ledger),
    ):
        try:
            return ledger.reports.list_payouts(status_filter, method, agent_id, start_date, end_date, page, limit)
        except ValueError as e:
            raise ledger_http_error(e)

    @app.get("/admin/payouts/stats", response_model=PayoutStats, tags=["Admin Payouts"])
    def payout_stats(
        agent_id: Optional[UUID] = Query(None, alias="agentId"),
        start_date: Optional[datetime] = Query(None, alias="startDate"),
        end_date: Optional[datetime] = Query(None, alias="endDate"),
        ledger: LedgerService = Depends(get_ledger),
    ):
        return ledger.reports.payout_stats(agent_id, start_date, end_date)

    @app.get("/admin/payouts/export", tags=["Admin Payouts"])
    def export_payouts(
        status_filter: Optional[str] = Query(None, alias="status"),
        method: Optional[PayoutMethod] = None,
        agent_id: Optional[UUID] = Query(None, alias="agentId"),
        start_date: Optional[datetime] = Query(None, alias="startDate"),
        end_date: Optional[datetime] = Query(None, alias="endDate"),
        ledger: LedgerService = Depends(get_ledger),
    ):
        try:
            content = ledger.reports.export_payouts_csv(status_filter, method, agent_id, start_date, end_date)
        except ValueError as e:
            raise ledger_http_error(e)
        return Response(
            content=content,
            media_type="text/csv",
            headers={"Content-Disposition": "attachment; filename=payouts.csv"},
        )

    @app.post("/admin/payouts/bulk-process", response_model=BulkPayoutResult, tags=["Admin Payouts"])
    def bulk_process_payouts(request: BulkPayoutActionRequest, ledger: LedgerService = Depends(get_ledger)):
        try:
            return ledger.bulk.bulk_process(
                request.payout_ids,
                request.action,
                reason=request.reason,
                transaction_ids=request.transaction_ids,
                admin_notes=request.admin_notes,
                individual_messages=request.messages_by_payout(),
            )
        except ValueError as e:
            raise ledger_http_error(e)

    @app.get("/admin/payouts/{payout_id}", response_model=Payout, tags=["Admin Payouts"])
    def get_payout(payout_id: UUID, ledger: LedgerService = Depends(get_ledger)):
        try:
            return ledger.payouts.get(payout_id)
        except LedgerError as e:
            raise ledger_http_error(e)

    @app.post("/admin/payouts/{payout_id}/approve", response_model=Payout, tags=["Admin Payouts"])
    def approve_payout(
        payout_id: UUID,
        request: Optional[ApprovePayoutRequest] = None,
        ledger: LedgerService = Depends(get_ledger),
    ):
        try:
            return ledger.payouts.approve(payout_id, request.admin_notes if request else None)
        except LedgerError as e:
            raise ledger_http_error(e)

    @app.post("/admin/payouts/{payout_id}/review", response_model=Payout, tags=["Admin Payouts"])
    def review_payout(payout_id: UUID, request: ReviewPayoutRequest, ledger: LedgerService = Depends(get_ledger)):
        try:
            return ledger.payouts.set_to_review(payout_id, request.review_message, request.admin_notes)
        except LedgerError as e:
            raise ledger_http_error(e)

    @app.post("/admin/payouts/{payout_id}/reject", response_model=Payout, tags=["Admin Payouts"])
    def reject_payout(payout_id: UUID, request: RejectPayoutRequest, ledger: LedgerService = Depends(get_ledger)):
        try:
            return ledger.payouts.reject(payout_id, request.rejection_reason, request.admin_notes)
        except LedgerError as e:
            raise ledger_http_error(e)

    @app.post("/admin/payouts/{payout_id}/process", response_model=Payout, tags=["Admin Payouts"])
    def process_payout(
        payout_id: UUID,
        request: Optional[ProcessPayoutRequest] = None,
        ledger: LedgerService = Depends(get_ledger),
    ):
        try:
            return ledger.payouts.process(payout_id, request.admin_notes if request else None)
        except LedgerError as e:
            raise ledger_http_error(e)

    @app.post("/admin/payouts/{payout_id}/complete", response_model=Payout, tags=["Admin Payouts"])
    def complete_payout(
        payout_id: UUID, request: CompletePayoutRequest, ledger: LedgerService = Depends(get_ledger)
    ):
        try:
            return ledger.payouts.complete(payout_id, request.transaction_id, request.fees, request.admin_notes)
        except LedgerError as e:
            raise ledger_http_error(e)

    return app


if __name__ == "__main__":
    import uvicorn
    # Built by uvicorn on startup; importing this module creates no app or database
    uvicorn.run("agent_ledger.api:create_app", factory=True, host="0.0.0.0", port=8000)
