from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, Generic, Literal, Optional, TypeVar, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

T = TypeVar("T")

MoneyAmount = Annotated[Decimal, Field(gt=0, max_digits=14, decimal_places=2)]

# Reference and transaction ids are stored in String(128) columns
ReferenceId = Annotated[str, Field(min_length=1, max_length=128)]


def as_utc(value: datetime) -> datetime:
    """Return `value` as an aware UTC datetime. Naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class AgentStatus(str, Enum):
    PENDING_APPLICATION = "pending_application"
    APPLICATION_APPROVED = "application_approved"
    CODE_GENERATED = "code_generated"
    CREDENTIALS_SENT = "credentials_sent"
    ACTIVE = "active"
    SUSPENDED = "suspended"


class AgentTier(str, Enum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"


class EarningType(str, Enum):
    REFERRAL_COMMISSION = "referral_commission"
    BONUS = "bonus"
    PENALTY = "penalty"
    ADJUSTMENT = "adjustment"
    PROMOTION_BONUS = "promotion_bonus"


class EarningStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class PayoutStatus(str, Enum):
    REQUESTED = "requested"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: str) -> "PayoutStatus":
        # Older clients filter on "review" for payouts awaiting more information
        if value == "review":
            return cls.PENDING_REVIEW
        return cls(value)


class PayoutMethod(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    AIRTIME_TOPUP = "airtime_topup"
    PAYPAL = "paypal"
    CHECK = "check"
    CRYPTO = "crypto"


class ReservationStatus(str, Enum):
    HELD = "held"
    RELEASED = "released"
    SETTLED = "settled"


class ReferralCodeType(str, Enum):
    STANDARD = "standard"
    PROMOTIONAL = "promotional"


class ReferralCodeStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"


class BulkPayoutAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    REVIEW = "review"
    PROCESS = "process"
    COMPLETE = "complete"


class BulkEarningAction(str, Enum):
    CONFIRM = "confirm"
    CANCEL = "cancel"


# ----- Payment details (one shape per payout method) -----

class DetailsModel(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class BankAccount(DetailsModel):
    account_number: str = Field(..., min_length=4, max_length=34)
    routing_number: str = Field(..., min_length=4, max_length=34)
    account_name: str = Field(..., min_length=1)
    bank_name: str = Field(..., min_length=1)


class AirtimeTopup(DetailsModel):
    phone_number: str = Field(..., pattern=r"^\+?[0-9]{7,15}$")
    account_name: Optional[str] = None


class BankTransferDetails(DetailsModel):
    method: Literal["bank_transfer"] = "bank_transfer"
    bank_account: BankAccount


class AirtimeTopupDetails(DetailsModel):
    method: Literal["airtime_topup"] = "airtime_topup"
    airtime_topup: AirtimeTopup


class PaypalDetails(DetailsModel):
    method: Literal["paypal"] = "paypal"
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class CheckDetails(DetailsModel):
    method: Literal["check"] = "check"
    payee_name: str = Field(..., min_length=1)
    mailing_address: str = Field(..., min_length=1)


class CryptoDetails(DetailsModel):
    method: Literal["crypto"] = "crypto"
    wallet_address: str = Field(..., min_length=10)
    network: str = Field(..., min_length=1)


PaymentDetails = Annotated[
    Union[BankTransferDetails, AirtimeTopupDetails, PaypalDetails, CheckDetails, CryptoDetails],
    Field(discriminator="method"),
]


# ----- Requests -----

class CreateAgentRequest(CamelModel):
    agent_code: str = Field(..., min_length=3, max_length=32)
    user_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    tier: AgentTier = AgentTier.BRONZE
    commission_rate: Optional[Decimal] = Field(default=None, ge=0, le=100)


class UpdateAgentStatusRequest(CamelModel):
    status: AgentStatus
    reason: Optional[str] = None


class AgentStatusReasonRequest(CamelModel):
    reason: Optional[str] = None


class CreateReferralCodeRequest(CamelModel):
    code: str = Field(..., min_length=3, max_length=64)
    type: ReferralCodeType = ReferralCodeType.STANDARD
    description: Optional[str] = None
    bonus_commission_rate: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    max_uses: Optional[int] = Field(default=None, gt=0)
    expires_at: Optional[datetime] = None

    @field_validator("expires_at")
    @classmethod
    def expires_at_in_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Stored without an offset on SQLite, so it must already be UTC
        return as_utc(value) if value is not None else None


class UseReferralCodeRequest(CamelModel):
    reference_id: str = Field(
        ..., min_length=1, max_length=128, description="External event id, used for idempotency"
    )
    referred_user_name: str = Field(..., min_length=1)
    referred_user_email: Optional[str] = None
    referred_user_phone: Optional[str] = None
    base_amount: Optional[Decimal] = Field(default=None, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "referenceId": "topup-8831-2024",
            "referredUserName": "Jane Customer",
            "referredUserEmail": "jane@example.com",
            "referredUserPhone": "+15555550100",
            "metadata": {"signupAmount": 25.00, "source": "sms"}
        }
    })

    def resolved_base_amount(self) -> Decimal:
        if self.base_amount is not None:
            return self.base_amount
        signup_amount = self.metadata.get("signupAmount")
        if signup_amount is None:
            return Decimal("0")
        return Decimal(str(signup_amount))


class CreateEarningAdjustmentRequest(CamelModel):
    amount: MoneyAmount
    type: Literal["bonus", "penalty", "adjustment", "promotion_bonus"]
    reason: str = Field(..., min_length=1)
    notes: Optional[str] = None
    reference_id: Optional[ReferenceId] = None


class ApproveEarningRequest(CamelModel):
    notes: Optional[str] = None


class RejectEarningRequest(CamelModel):
    reason: str = Field(..., min_length=1)
    notes: Optional[str] = None


class BulkEarningsActionRequest(CamelModel):
    earning_ids: list[UUID] = Field(..., min_length=1)
    notes: Optional[str] = None
    reason: Optional[str] = None


class EarningUploadRow(CamelModel):
    agent_code: str = Field(..., min_length=1)
    amount: MoneyAmount
    type: EarningType
    description: str = Field(..., min_length=1)
    reference_id: Optional[ReferenceId] = None


class BulkEarningUploadRequest(CamelModel):
    earnings: list[EarningUploadRow] = Field(..., min_length=1)
    auto_confirm: bool = False
    batch_description: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "earnings": [
                {
                    "agentCode": "AGT001",
                    "amount": 12.50,
                    "type": "promotion_bonus",
                    "description": "March campaign",
                    "referenceId": "campaign-2024-03-AGT001"
                }
            ],
            "autoConfirm": True
        }
    })


class CreatePayoutRequest(CamelModel):
    amount: MoneyAmount
    method: PayoutMethod
    payment_details: PaymentDetails
    description: Optional[str] = None
    reference_id: Optional[str] = Field(default=None, max_length=128, description="Client idempotency key")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount": 60.00,
            "method": "bank_transfer",
            "paymentDetails": {
                "bankAccount": {
                    "accountNumber": "000123456789",
                    "routingNumber": "110000000",
                    "accountName": "John Agent",
                    "bankName": "First Bank"
                }
            }
        }
    })

    @model_validator(mode="before")
    @classmethod
    def tag_payment_details(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        key = "paymentDetails" if "paymentDetails" in data else "payment_details"
        details = data.get(key)
        method = data.get("method")
        if isinstance(details, dict) and "method" not in details and method is not None:
            data = {**data, key: {**details, "method": getattr(method, "value", method)}}
        return data

    @model_validator(mode="after")
    def check_details_match_method(self) -> "CreatePayoutRequest":
        if self.payment_details.method != self.method.value:
            raise ValueError(
                f"paymentDetails are for '{self.payment_details.method}' but method is '{self.method.value}'"
            )
        return self


class ApprovePayoutRequest(CamelModel):
    admin_notes: Optional[str] = None


class ReviewPayoutRequest(CamelModel):
    review_message: str = Field(..., min_length=1)
    admin_notes: Optional[str] = None


class RejectPayoutRequest(CamelModel):
    rejection_reason: str = Field(..., min_length=1)
    admin_notes: Optional[str] = None


class ProcessPayoutRequest(CamelModel):
    admin_notes: Optional[str] = None


class CompletePayoutRequest(CamelModel):
    transaction_id: ReferenceId
    fees: Optional[Decimal] = Field(default=None, ge=0, max_digits=14, decimal_places=2)
    admin_notes: Optional[str] = None


class IndividualReviewMessage(CamelModel):
    payout_id: UUID
    review_message: str = Field(..., min_length=1)


class BulkPayoutActionRequest(CamelModel):
    payout_ids: list[UUID] = Field(..., min_length=1)
    action: BulkPayoutAction
    reason: Optional[str] = None
    admin_notes: Optional[str] = None
    transaction_ids: Optional[list[ReferenceId]] = None
    individual_messages: Optional[list[IndividualReviewMessage]] = None

    @model_validator(mode="after")
    def check_action_arguments(self) -> "BulkPayoutActionRequest":
        if self.action == BulkPayoutAction.REJECT and not self.reason:
            raise ValueError("reason is required for bulk reject")
        if self.action == BulkPayoutAction.REVIEW and not self.reason:
            missing = set(self.payout_ids) - set(self.messages_by_payout())
            if missing:
                raise ValueError("review requires a reason or an individual message for every payout")
        if self.action == BulkPayoutAction.COMPLETE:
            if len(self.transaction_ids or []) != len(self.payout_ids):
                raise ValueError("complete requires one transactionId per payoutId")
        return self

    def messages_by_payout(self) -> Dict[UUID, str]:
        return {m.payout_id: m.review_message for m in self.individual_messages or []}


class FeeQuoteRequest(CamelModel):
    amount: MoneyAmount
    method: PayoutMethod


# ----- Read models -----

class Agent(CamelModel):
    id: UUID
    agent_code: str
    user_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    status: AgentStatus
    tier: AgentTier
    commission_rate: Decimal
    available_balance: Decimal
    pending_balance: Decimal
    reserved_balance: Decimal
    total_earnings: Decimal
    total_paid_out: Decimal
    total_referrals: int
    activated_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    def balance_identity_holds(self) -> bool:
        return self.total_earnings == (
            self.available_balance + self.pending_balance + self.reserved_balance + self.total_paid_out
        )


class ReferralCode(CamelModel):
    id: UUID
    code: str
    agent_id: UUID
    type: ReferralCodeType
    description: Optional[str] = None
    bonus_commission_rate: Decimal
    max_uses: Optional[int] = None
    current_uses: int
    status: ReferralCodeStatus
    expires_at: Optional[datetime] = None
    created_at: datetime


class ReferralUsage(CamelModel):
    id: UUID
    agent_id: UUID
    referral_code_id: Optional[UUID] = None
    code: str
    reference_id: str
    referred_user_name: str
    referred_user_email: Optional[str] = None
    referred_user_phone: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_")
    used_at: datetime


class CommissionCalculation(CamelModel):
    base_amount: Decimal
    agent_rate: Decimal
    bonus_rate: Decimal
    total_rate: Decimal
    final_amount: Decimal


class Earning(CamelModel):
    id: UUID
    agent_id: UUID
    amount: Decimal
    currency: str
    type: EarningType
    status: EarningStatus
    reference_id: str
    description: Optional[str] = None
    referral_code: Optional[str] = None
    referred_user: Optional[str] = None
    calculation: Optional[CommissionCalculation] = None
    cancellation_reason: Optional[str] = None
    admin_notes: Optional[str] = None
    earned_at: datetime
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class Payout(CamelModel):
    id: UUID
    agent_id: UUID
    amount: Decimal
    fees: Decimal
    net_amount: Decimal
    currency: str
    method: PayoutMethod
    status: PayoutStatus
    payment_details: dict[str, Any]
    description: Optional[str] = None
    reference_id: Optional[str] = None
    transaction_id: Optional[str] = None
    review_message: Optional[str] = None
    admin_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    requested_at: datetime
    reviewed_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class ReservationToken(CamelModel):
    id: UUID
    agent_id: UUID
    payout_id: UUID
    amount: Decimal
    status: ReservationStatus
    reference_id: str


class ReferralUsageResponse(CamelModel):
    usage: ReferralUsage
    earning: Earning
    message: str


class AvailableBalance(CamelModel):
    agent_id: UUID
    available_balance: Decimal
    pending_balance: Decimal
    reserved_balance: Decimal
    total_earnings: Decimal
    currency: str


class EarningsSummary(CamelModel):
    agent_id: UUID
    total_earnings: Decimal
    available_balance: Decimal
    pending_balance: Decimal
    reserved_balance: Decimal
    total_paid_out: Decimal
    pending_count: int
    confirmed_count: int
    cancelled_count: int
    total_referrals: int
    active_referral_codes: int


class FeeQuote(CamelModel):
    amount: Decimal
    fees: Decimal
    net_amount: Decimal
    fee_breakdown: dict[str, Decimal]


class PayoutStats(CamelModel):
    total_payouts: int
    pending_payouts: int
    completed_payouts: int
    total_payout_amount: Decimal
    pending_payout_amount: Decimal
    completed_payout_amount: Decimal
    average_payout_amount: Decimal
    total_fees: Decimal
    payouts_by_status: dict[str, int]
    payouts_by_method: dict[str, int]


class BulkPayoutError(CamelModel):
    payout_id: UUID
    error: str


class BulkPayoutResult(CamelModel):
    success: int = 0
    failed: int = 0
    errors: list[BulkPayoutError] = Field(default_factory=list)
    successful_payouts: list[UUID] = Field(default_factory=list)


class BulkEarningError(CamelModel):
    earning_id: UUID
    error: str


class BulkEarningsResult(CamelModel):
    success: int = 0
    failed: int = 0
    errors: list[BulkEarningError] = Field(default_factory=list)
    summary: str = ""


class EarningUploadDetail(CamelModel):
    row: int
    agent_code: str
    status: Literal["success", "failed", "skipped"]
    amount: Decimal
    earning_id: Optional[UUID] = None
    message: Optional[str] = None
    error: Optional[str] = None


class UploadErrorSummary(CamelModel):
    invalid_agent_codes: list[str] = Field(default_factory=list)
    duplicate_references: list[str] = Field(default_factory=list)
    other_errors: list[str] = Field(default_factory=list)


class BulkEarningUploadResult(CamelModel):
    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    total_amount: Decimal = Decimal("0")
    updated_agents: list[str] = Field(default_factory=list)
    details: list[EarningUploadDetail] = Field(default_factory=list)
    error_summary: UploadErrorSummary = Field(default_factory=UploadErrorSummary)


class Page(CamelModel, Generic[T]):
    data: list[T]
    total: int
    page: int
    limit: int
    total_pages: int
