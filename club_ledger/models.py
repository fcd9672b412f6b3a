from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Annotated, Optional
from uuid import UUID
from pydantic import AfterValidator, BaseModel, Field, ConfigDict


ZERO = Decimal("0.00")
CENT = Decimal("0.01")


def money(value) -> Decimal:
    """Quantize any numeric value to two decimal places."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC; aware ones are converted to it."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class EntryKind(str, Enum):
    FEE = "FEE"
    CREDIT = "CREDIT"
    ADJUSTMENT = "ADJUSTMENT"
    REFUND = "REFUND"


class FeeType(str, Enum):
    MATCH = "MATCH"
    TRAINING = "TRAINING"
    SOCIAL_EVENT = "SOCIAL_EVENT"
    YELLOW_CARD = "YELLOW_CARD"
    RED_CARD = "RED_CARD"
    YEARLY_SUBS = "YEARLY_SUBS"


class EntryStatus(str, Enum):
    DUE = "DUE"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    OVERDUE = "OVERDUE"


OUTSTANDING_STATUSES = (EntryStatus.DUE, EntryStatus.PARTIAL, EntryStatus.OVERDUE)


class PaymentMethod(str, Enum):
    MANUAL = "MANUAL"
    CARD = "CARD"
    CASH = "CASH"
    BANK_TRANSFER = "BANK_TRANSFER"
    CREDIT_ALLOCATION = "CREDIT_ALLOCATION"


class SelectionType(str, Enum):
    STARTING = "STARTING"
    SUBSTITUTE = "SUBSTITUTE"


class DiscountType(str, Enum):
    UNEMPLOYED = "UNEMPLOYED"
    STUDENT = "STUDENT"
    OTHER = "OTHER"


HALF_PRICE_DISCOUNTS = (DiscountType.UNEMPLOYED, DiscountType.STUDENT)


class DiscountReason(str, Enum):
    ELIGIBILITY = "ELIGIBILITY"
    MINUTES_PLAYED = "MINUTES_PLAYED"


class EventType(str, Enum):
    TRAINING = "TRAINING"
    SOCIAL = "SOCIAL"
    MATCH = "MATCH"
    OTHER = "OTHER"


class RsvpStatus(str, Enum):
    YES = "YES"
    NO = "NO"
    MAYBE = "MAYBE"


class MatchEventType(str, Enum):
    GOAL = "GOAL"
    ASSIST = "ASSIST"
    CARD = "CARD"
    SUBSTITUTION = "SUBSTITUTION"


class CardType(str, Enum):
    YELLOW = "YELLOW"
    RED = "RED"


def derive_status(final_amount: Decimal, paid_amount: Decimal, due_date: datetime,
                  now: datetime, overdue_days: int = 30) -> EntryStatus:
    if paid_amount >= final_amount:
        return EntryStatus.PAID
    if paid_amount > 0:
        return EntryStatus.PARTIAL
    if due_date < now - timedelta(days=overdue_days):
        return EntryStatus.OVERDUE
    return EntryStatus.DUE


class FeeLinks(BaseModel):
    event_id: Optional[str] = None
    fixture_id: Optional[int] = None
    match_event_id: Optional[str] = None
    selection_type: Optional[SelectionType] = None
    season: Optional[str] = None


class LedgerEntry(BaseModel):
    id: UUID
    member_id: int
    kind: EntryKind
    fee_type: Optional[FeeType] = None
    base_amount: Decimal
    discount_amount: Decimal = ZERO
    final_amount: Decimal
    paid_amount: Decimal = ZERO
    status: EntryStatus
    due_date: UtcDatetime
    paid_date: Optional[UtcDatetime] = None
    event_id: Optional[str] = None
    fixture_id: Optional[int] = None
    match_event_id: Optional[str] = None
    selection_type: Optional[SelectionType] = None
    season: Optional[str] = None
    minutes_played: Optional[int] = None
    discount_reason: Optional[DiscountReason] = None
    payment_method: PaymentMethod = PaymentMethod.MANUAL
    external_payment_id: Optional[str] = None
    refund_of: Optional[UUID] = None
    notes: str = ""
    marked_by: Optional[int] = None
    sequence: int
    created_at: UtcDatetime
    updated_at: UtcDatetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_obligation(self) -> bool:
        return counts_as_obligation(self.kind, self.base_amount)

    @property
    def is_credit(self) -> bool:
        return not self.is_obligation

    @property
    def outstanding(self) -> Decimal:
        if not self.is_obligation:
            return ZERO
        return max(self.final_amount - self.paid_amount, ZERO)


def counts_as_obligation(kind: EntryKind, base_amount: Decimal) -> bool:
    """Fees and debit adjustments are owed; everything else carries credit."""
    if kind == EntryKind.FEE:
        return True
    return kind == EntryKind.ADJUSTMENT and base_amount > 0


class BalanceProjection(BaseModel):
    member_id: int
    current_balance: Decimal
    last_updated: UtcDatetime

    model_config = ConfigDict(from_attributes=True)


class DiscountEligibility(BaseModel):
    id: UUID
    member_id: int
    discount_type: DiscountType
    is_active: bool = True
    start_date: UtcDatetime
    end_date: Optional[UtcDatetime] = None
    verified_by: Optional[int] = None
    created_at: UtcDatetime

    model_config = ConfigDict(from_attributes=True)

    def applies_at(self, when: datetime) -> bool:
        if not self.is_active or self.start_date > when:
            return False
        return self.end_date is None or self.end_date > when


class FeeConfiguration(BaseModel):
    fee_type: FeeType
    amount: Decimal
    is_active: bool = True

    model_config = ConfigDict(from_attributes=True)


# Trigger-side records written by the surrounding club application.

class ClubEvent(BaseModel):
    id: str
    title: str
    event_type: EventType
    start_at: UtcDatetime
    cost: Optional[Decimal] = None
    is_active: bool = True


class Rsvp(BaseModel):
    event_id: str
    member_id: int
    status: RsvpStatus


class Fixture(BaseModel):
    id: int
    opponent: str
    kick_off: UtcDatetime


class MatchEvent(BaseModel):
    id: str
    fixture_id: int
    event_type: MatchEventType
    minute: int = Field(..., ge=0)
    member_id: int
    substituted_for_id: Optional[int] = None
    card_type: Optional[CardType] = None


class TeamSelection(BaseModel):
    starting: list[int] = Field(default_factory=list)
    substitutes: list[int] = Field(default_factory=list)

    def members(self) -> list[tuple[int, SelectionType]]:
        seen: dict[int, SelectionType] = {}
        for member_id in self.starting:
            seen.setdefault(member_id, SelectionType.STARTING)
        for member_id in self.substitutes:
            seen.setdefault(member_id, SelectionType.SUBSTITUTE)
        return list(seen.items())


# Requests

class IssueFeeRequest(BaseModel):
    member_id: int
    fee_type: FeeType
    base_amount: Decimal = Field(..., ge=0)
    due_date: UtcDatetime
    links: FeeLinks = Field(default_factory=FeeLinks)
    notes: str = ""


class AttendanceMark(BaseModel):
    member_id: int
    event_id: str
    due_date: UtcDatetime


class MatchResult(BaseModel):
    fixture: Fixture
    events: list[MatchEvent] = Field(default_factory=list)
    selection: Optional[TeamSelection] = None


class YearlySubscriptionRequest(BaseModel):
    member_ids: list[int] = Field(..., min_length=1)
    season: str = Field(..., min_length=1)
    amount: Optional[Decimal] = Field(default=None, gt=0)

    model_config = ConfigDict(json_schema_extra={
        "example": {"member_ids": [7, 9, 12], "season": "2025/26", "amount": 70.00}
    })


class BalancePaymentRequest(BaseModel):
    source_token: str = Field(..., description="Card nonce from the payment form")
    amount: Decimal = Field(..., gt=0)
    currency: Optional[str] = None


class RecordPaymentRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    payment_method: PaymentMethod = PaymentMethod.CASH
    external_payment_id: Optional[str] = None


class AdjustBalanceRequest(BaseModel):
    amount: Decimal
    reason: str = Field(..., min_length=1)
    performed_by: Optional[int] = None


class MarkPaidRequest(BaseModel):
    payment_method: PaymentMethod = PaymentMethod.MANUAL
    external_payment_id: Optional[str] = None
    notes: Optional[str] = None
    marked_by: Optional[int] = None


class BulkMarkPaidRequest(MarkPaidRequest):
    entry_ids: list[UUID] = Field(..., min_length=1)


class CreateDiscountRequest(BaseModel):
    discount_type: DiscountType
    is_active: bool = True
    end_date: Optional[UtcDatetime] = None
    verified_by: Optional[int] = None


class UpdateDiscountRequest(BaseModel):
    is_active: Optional[bool] = None
    end_date: Optional[UtcDatetime] = None


class UpdateFeeConfigRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, ge=0)
    is_active: Optional[bool] = None


class FixtureSelection(BaseModel):
    fixture: Fixture
    selection: TeamSelection


class EntryFilters(BaseModel):
    member_id: Optional[int] = None
    kind: Optional[EntryKind] = None
    fee_type: Optional[FeeType] = None
    status: Optional[EntryStatus] = None
    due_from: Optional[UtcDatetime] = None
    due_to: Optional[UtcDatetime] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=25, ge=1, le=500)


# Responses

class EntryAllocation(BaseModel):
    entry_id: UUID
    amount_paid: Decimal
    status: EntryStatus
    remaining: Decimal


class AllocationResult(BaseModel):
    member_id: int
    amount: Decimal
    debt_paid: Decimal
    credit_added: Decimal
    allocations: list[EntryAllocation] = Field(default_factory=list)
    credit_entry: Optional[LedgerEntry] = None


class CreditConsumption(BaseModel):
    entry_id: UUID
    consumed: Decimal
    remaining_credit: Decimal


class BalanceSummary(BaseModel):
    member_id: int
    current_balance: Decimal
    total_due: Decimal
    available_credit: Decimal
    due_entries: list[LedgerEntry]
    can_pay_balance: bool


class BalancePaymentResult(BaseModel):
    payment_id: str
    receipt_url: Optional[str] = None
    total_paid: Decimal
    debt_paid: Decimal
    credit_added: Decimal
    new_balance: Decimal
    allocations: list[EntryAllocation] = Field(default_factory=list)


class Pagination(BaseModel):
    page: int
    limit: int
    total_count: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool


class LedgerPage(BaseModel):
    entries: list[LedgerEntry]
    pagination: Pagination


class EntryDeletionResult(BaseModel):
    entry_id: UUID
    refund: Optional[LedgerEntry] = None


class LedgerHistoryResponse(BaseModel):
    member_id: int
    entries: list[LedgerEntry]
    total_count: int
    current_balance: Decimal


class YearlySubscriptionResult(BaseModel):
    season: str
    amount: Decimal
    created: list[LedgerEntry] = Field(default_factory=list)
    skipped_member_ids: list[int] = Field(default_factory=list)


class SeasonSummary(BaseModel):
    season: str
    total_subscriptions: int
    status_counts: dict[EntryStatus, int]
    total_amount: Decimal
    paid_amount: Decimal
    outstanding_amount: Decimal


class MemberDebt(BaseModel):
    member_id: int
    current_balance: Decimal
    total_due: Decimal
    overdue_amount: Decimal
    fee_count: int


class FeeTypeTotal(BaseModel):
    count: int
    total: Decimal


class FinancialOverview(BaseModel):
    total_club_due: Decimal
    total_overdue: Decimal
    total_credit: Decimal
    top_debtors: list[MemberDebt]
    fee_type_breakdown: dict[FeeType, FeeTypeTotal]


class DailyJobReport(BaseModel):
    run_at: UtcDatetime
    overdue_marked: int
    social_events_processed: int
    discounts_deactivated: int
    previous_run: Optional[UtcDatetime] = None
