from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware

from .config import configure_logging, get_settings
from .errors import (
    ConflictError,
    GatewayDeclinedError,
    LedgerServiceError,
    NotFoundError,
)
from .models import (
    AdjustBalanceRequest,
    AllocationResult,
    AttendanceMark,
    BalancePaymentRequest,
    BalancePaymentResult,
    BalanceProjection,
    BalanceSummary,
    BulkMarkPaidRequest,
    ClubEvent,
    CreateDiscountRequest,
    DailyJobReport,
    DiscountEligibility,
    EntryDeletionResult,
    EntryFilters,
    EntryKind,
    EntryStatus,
    FeeConfiguration,
    FeeType,
    FinancialOverview,
    FixtureSelection,
    IssueFeeRequest,
    LedgerEntry,
    LedgerHistoryResponse,
    LedgerPage,
    MarkPaidRequest,
    MatchResult,
    RecordPaymentRequest,
    Rsvp,
    SeasonSummary,
    UpdateDiscountRequest,
    UpdateFeeConfigRequest,
    YearlySubscriptionRequest,
    YearlySubscriptionResult,
)
from .scheduler import DailyScheduler
from .service import LedgerService

configure_logging(get_settings().log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = None
    if ledger_service.storage.settings.run_scheduler:
        scheduler = DailyScheduler(ledger_service.jobs)
        scheduler.start()
    app.state.scheduler = scheduler
    yield
    if scheduler is not None:
        scheduler.stop()


app = FastAPI(
    title="Club Ledger API",
    description="Member fees, payments, credit and refunds for a sports club",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ledger_service = LedgerService()


def _http_error(e: LedgerServiceError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, ConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, GatewayDeclinedError):
        return HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED,
                             detail={"message": e.message, "code": e.code})
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "club-ledger"}


# Members

@app.get("/members/{member_id}/balance", response_model=BalanceProjection, tags=["Members"])
def get_member_balance(member_id: int) -> BalanceProjection:
    return ledger_service.get_balance(member_id)


@app.post("/members/{member_id}/balance/recompute", response_model=BalanceProjection, tags=["Members"])
def recompute_member_balance(member_id: int) -> BalanceProjection:
    ledger_service.recompute_balance(member_id)
    return ledger_service.get_balance(member_id)


@app.get("/members/{member_id}/balance/summary", response_model=BalanceSummary, tags=["Members"])
def get_member_balance_summary(member_id: int) -> BalanceSummary:
    return ledger_service.get_balance_summary(member_id)


@app.get("/members/{member_id}/ledger", response_model=LedgerHistoryResponse, tags=["Members"])
def get_member_ledger(member_id: int, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
    return ledger_service.get_ledger_history(member_id, limit, offset)


@app.post("/members/{member_id}/payments", response_model=BalancePaymentResult,
          status_code=status.HTTP_201_CREATED, tags=["Payments"])
def pay_member_balance(member_id: int, request: BalancePaymentRequest) -> BalancePaymentResult:
    try:
        return ledger_service.process_balance_payment(member_id, request.source_token, request.amount,
                                                      request.currency)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/members/{member_id}/payments/manual", response_model=AllocationResult,
          status_code=status.HTTP_201_CREATED, tags=["Payments"])
def record_manual_payment(member_id: int, request: RecordPaymentRequest) -> AllocationResult:
    try:
        return ledger_service.record_payment(member_id, request.amount, request.external_payment_id,
                                             request.payment_method)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/members/{member_id}/adjustments", response_model=BalanceProjection, tags=["Members"])
def adjust_member_balance(member_id: int, request: AdjustBalanceRequest) -> BalanceProjection:
    try:
        return ledger_service.adjust_balance(member_id, request.amount, request.reason, request.performed_by)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/members/{member_id}/discounts", response_model=list[DiscountEligibility], tags=["Discounts"])
def get_member_discounts(member_id: int) -> list[DiscountEligibility]:
    return ledger_service.discounts.find_by_member(member_id)


@app.post("/members/{member_id}/discounts", response_model=DiscountEligibility,
          status_code=status.HTTP_201_CREATED, tags=["Discounts"])
def create_member_discount(member_id: int, request: CreateDiscountRequest) -> DiscountEligibility:
    try:
        return ledger_service.discounts.create(member_id, request)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.patch("/discounts/{eligibility_id}", response_model=DiscountEligibility, tags=["Discounts"])
def update_discount(eligibility_id: UUID, request: UpdateDiscountRequest) -> DiscountEligibility:
    try:
        return ledger_service.discounts.update(eligibility_id, request)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.delete("/discounts/{eligibility_id}", response_model=DiscountEligibility, tags=["Discounts"])
def deactivate_discount(eligibility_id: UUID) -> DiscountEligibility:
    try:
        return ledger_service.discounts.deactivate(eligibility_id)
    except LedgerServiceError as e:
        raise _http_error(e)


# Entries

@app.get("/entries", response_model=LedgerPage, tags=["Entries"])
def list_entries(
    member_id: Optional[int] = None,
    kind: Optional[EntryKind] = None,
    fee_type: Optional[FeeType] = None,
    entry_status: Optional[EntryStatus] = Query(default=None, alias="status"),
    due_from: Optional[datetime] = None,
    due_to: Optional[datetime] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=25, ge=1, le=500),
) -> LedgerPage:
    filters = EntryFilters(member_id=member_id, kind=kind, fee_type=fee_type, status=entry_status,
                           due_from=due_from, due_to=due_to, page=page, limit=limit)
    return ledger_service.list_entries(filters)


@app.post("/entries", response_model=LedgerEntry, status_code=status.HTTP_201_CREATED, tags=["Entries"])
def issue_fee(request: IssueFeeRequest) -> LedgerEntry:
    try:
        return ledger_service.issuance.issue(request)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/entries/bulk-mark-paid", response_model=list[LedgerEntry], tags=["Entries"])
def bulk_mark_paid(request: BulkMarkPaidRequest) -> list[LedgerEntry]:
    try:
        return ledger_service.bulk_mark_paid(request)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/entries/{entry_id}", response_model=LedgerEntry, tags=["Entries"])
def get_entry(entry_id: UUID) -> LedgerEntry:
    try:
        return ledger_service.get_entry(entry_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/entries/{entry_id}/mark-paid", response_model=LedgerEntry, tags=["Entries"])
def mark_entry_paid(entry_id: UUID, request: MarkPaidRequest) -> LedgerEntry:
    try:
        return ledger_service.mark_paid(entry_id, request)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.delete("/entries/{entry_id}", response_model=EntryDeletionResult, tags=["Entries"])
def delete_entry(entry_id: UUID) -> EntryDeletionResult:
    try:
        refund = ledger_service.delete_entry(entry_id)
    except LedgerServiceError as e:
        raise _http_error(e)
    return EntryDeletionResult(entry_id=entry_id, refund=refund)


# Fee configuration

@app.get("/fee-configs", response_model=list[FeeConfiguration], tags=["Configuration"])
def list_fee_configs() -> list[FeeConfiguration]:
    return ledger_service.fee_config.find_all()


@app.patch("/fee-configs/{fee_type}", response_model=FeeConfiguration, tags=["Configuration"])
def update_fee_config(fee_type: FeeType, request: UpdateFeeConfigRequest) -> FeeConfiguration:
    try:
        return ledger_service.fee_config.update(fee_type, request.amount, request.is_active)
    except LedgerServiceError as e:
        raise _http_error(e)


# Triggers from the rest of the club application

@app.put("/triggers/events", response_model=ClubEvent, tags=["Triggers"])
def save_event(event: ClubEvent) -> ClubEvent:
    ledger_service.triggers.on_event_saved(event)
    return event


@app.post("/triggers/attendance", response_model=Optional[LedgerEntry], tags=["Triggers"])
def attendance_marked(mark: AttendanceMark) -> Optional[LedgerEntry]:
    return ledger_service.triggers.on_attendance_marked(mark)


@app.put("/triggers/rsvps", response_model=Rsvp, tags=["Triggers"])
def save_rsvp(rsvp: Rsvp) -> Rsvp:
    ledger_service.triggers.on_rsvp(rsvp)
    return rsvp


@app.post("/triggers/events/{event_id}/social-fees", response_model=list[LedgerEntry], tags=["Triggers"])
def create_social_event_fees(event_id: str) -> list[LedgerEntry]:
    try:
        return ledger_service.issuance.create_social_event_fees(event_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/triggers/events/{event_id}/cancel", response_model=list[LedgerEntry], tags=["Triggers"])
def event_cancelled(event_id: str) -> list[LedgerEntry]:
    return ledger_service.triggers.on_event_cancelled(event_id)


@app.post("/triggers/selections", response_model=list[LedgerEntry], tags=["Triggers"])
def team_selected(request: FixtureSelection) -> list[LedgerEntry]:
    return ledger_service.triggers.on_team_selected(request.fixture, request.selection)


@app.put("/triggers/selections", response_model=list[LedgerEntry], tags=["Triggers"])
def team_selection_changed(request: FixtureSelection) -> list[LedgerEntry]:
    return ledger_service.triggers.on_team_selection_changed(request.fixture, request.selection)


@app.post("/triggers/match-results", response_model=list[LedgerEntry], tags=["Triggers"])
def match_result_saved(result: MatchResult) -> list[LedgerEntry]:
    try:
        return ledger_service.triggers.on_match_result_saved(result)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.delete("/triggers/match-events/{match_event_id}", response_model=Optional[LedgerEntry], tags=["Triggers"])
def match_event_deleted(match_event_id: str) -> Optional[LedgerEntry]:
    return ledger_service.triggers.on_match_event_deleted(match_event_id)


# Subscriptions

@app.post("/subscriptions", response_model=YearlySubscriptionResult,
          status_code=status.HTTP_201_CREATED, tags=["Subscriptions"])
def create_subscriptions(request: YearlySubscriptionRequest) -> YearlySubscriptionResult:
    try:
        return ledger_service.triggers.on_subscription_request(request)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/subscriptions/summary", response_model=SeasonSummary, tags=["Subscriptions"])
def subscription_summary(season: str) -> SeasonSummary:
    return ledger_service.issuance.season_summary(season)


# Club-wide

@app.get("/overview", response_model=FinancialOverview, tags=["Reports"])
def financial_overview(top: int = Query(default=10, ge=1, le=100)) -> FinancialOverview:
    return ledger_service.financial_overview(top)


@app.post("/jobs/daily", response_model=DailyJobReport, tags=["Jobs"])
def run_daily_jobs() -> DailyJobReport:
    return ledger_service.run_daily_jobs()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
