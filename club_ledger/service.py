import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from .allocation import PaymentAllocationEngine, append_note
from .balance import BalanceService
from .config import Settings
from .discounts import DiscountEligibilityRegistry
from .errors import InvalidStateError, NotFoundError
from .fee_config import FeeConfigService
from .gateway import PaymentGateway, StubPaymentGateway
from .issuance import FeeIssuanceEngine
from .minutes import MinutesDiscountCalculator
from .models import (
    AllocationResult,
    BalancePaymentResult,
    BalanceProjection,
    BalanceSummary,
    BulkMarkPaidRequest,
    DailyJobReport,
    EntryFilters,
    EntryStatus,
    FinancialOverview,
    LedgerEntry,
    LedgerHistoryResponse,
    LedgerPage,
    MarkPaidRequest,
    PaymentMethod,
    counts_as_obligation,
)
from .overdue import OverdueSweeper
from .payments import BalancePaymentService
from .refunds import RefundHandler
from .scheduler import ScheduledJobs
from .square_gateway import SquarePaymentGateway
from .storage import InMemoryStorage
from .triggers import TriggerHandlers

logger = logging.getLogger(__name__)


def build_gateway(settings: Settings) -> Optional[PaymentGateway]:
    """Pick the card processor named by ``payment_gateway``. No name means card payments are off."""
    name = settings.payment_gateway
    if name == "square":
        return SquarePaymentGateway(settings.square_access_token, settings.square_location_id,
                                    settings.square_environment)
    if name == "stub":
        logger.warning("Stub payment gateway in use, card payments are not really charged")
        return StubPaymentGateway()
    if name:
        raise ValueError(f"Unknown payment gateway: {name}")
    logger.warning("No payment gateway configured, card payments are disabled")
    return None


class LedgerService:
    """
    Wires the ledger components over one storage and exposes the admin
    operations the HTTP layer calls.
    """

    def __init__(self, storage: Optional[InMemoryStorage] = None,
                 gateway: Optional[PaymentGateway] = None):
        self.storage = storage or InMemoryStorage()
        self.gateway = gateway if gateway is not None else build_gateway(self.storage.settings)

        self.fee_config = FeeConfigService(self.storage)
        self.discounts = DiscountEligibilityRegistry(self.storage)
        self.allocation = PaymentAllocationEngine(self.storage)
        self.refunds = RefundHandler(self.storage)
        self.issuance = FeeIssuanceEngine(self.storage, self.fee_config, self.discounts,
                                          self.allocation, self.refunds)
        self.minutes = MinutesDiscountCalculator(self.storage)
        self.overdue = OverdueSweeper(self.storage)
        self.balance = BalanceService(self.storage, self.allocation)
        self.payments = BalancePaymentService(self.storage, self.allocation, self.balance, self.gateway)
        self.triggers = TriggerHandlers(self.storage, self.issuance, self.minutes, self.refunds)
        self.jobs = ScheduledJobs(self.storage, self.overdue, self.issuance, self.discounts)

    # Entries

    def get_entry(self, entry_id: UUID) -> LedgerEntry:
        entry = self.storage.get_entry(entry_id)
        if not entry:
            raise NotFoundError(f"Ledger entry {entry_id} not found")
        return LedgerEntry(**entry)

    def list_entries(self, filters: EntryFilters) -> LedgerPage:
        return self.balance.list_entries(filters)

    def delete_entry(self, entry_id: UUID) -> Optional[LedgerEntry]:
        return self.refunds.delete_entry(entry_id)

    def mark_paid(self, entry_id: UUID, request: MarkPaidRequest) -> LedgerEntry:
        entry = self.get_entry(entry_id)
        with self.storage.transaction(entry.member_id):
            data = self.storage.get_entry(entry_id)
            if not data:
                raise NotFoundError(f"Ledger entry {entry_id} not found")
            if data["status"] == EntryStatus.PAID:
                raise InvalidStateError(f"Ledger entry {entry_id} is already marked as paid")
            if not counts_as_obligation(data["kind"], data["base_amount"]):
                raise InvalidStateError(f"Ledger entry {entry_id} is not an obligation")

            updated = self.storage.update_entry(
                entry_id,
                status=EntryStatus.PAID,
                paid_amount=data["final_amount"],
                paid_date=self.storage.now(),
                payment_method=request.payment_method,
                external_payment_id=request.external_payment_id or data["external_payment_id"],
                marked_by=request.marked_by,
                notes=append_note(data["notes"], request.notes or ""),
            )

        logger.info("Entry %s marked as paid via %s", entry_id, request.payment_method.value)
        return LedgerEntry(**updated)

    def bulk_mark_paid(self, request: BulkMarkPaidRequest) -> list[LedgerEntry]:
        entries = [self.storage.get_entry(entry_id) for entry_id in request.entry_ids]
        missing = [str(i) for i, e in zip(request.entry_ids, entries) if e is None]
        if missing:
            raise NotFoundError(f"Ledger entries not found: {', '.join(missing)}")
        already_paid = [str(e["id"]) for e in entries if e["status"] == EntryStatus.PAID]
        if already_paid:
            raise InvalidStateError(f"Ledger entries already marked as paid: {', '.join(already_paid)}")

        single = MarkPaidRequest(**request.model_dump(exclude={"entry_ids"}))
        return [self.mark_paid(entry_id, single) for entry_id in dict.fromkeys(request.entry_ids)]

    # Balances

    def get_balance(self, member_id: int) -> BalanceProjection:
        return self.balance.get_balance(member_id)

    def recompute_balance(self, member_id: int) -> Decimal:
        return self.balance.recompute_balance(member_id)

    def get_balance_summary(self, member_id: int) -> BalanceSummary:
        return self.balance.get_balance_summary(member_id)

    def adjust_balance(self, member_id: int, amount: Decimal, reason: str,
                       performed_by: Optional[int] = None) -> BalanceProjection:
        return self.balance.adjust_balance(member_id, amount, reason, performed_by)

    def get_ledger_history(self, member_id: int, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        return self.balance.get_ledger_history(member_id, limit, offset)

    def financial_overview(self, top: int = 10) -> FinancialOverview:
        return self.balance.financial_overview(top)

    # Payments

    def record_payment(self, member_id: int, amount: Decimal, external_payment_id: Optional[str] = None,
                       method: PaymentMethod = PaymentMethod.MANUAL) -> AllocationResult:
        return self.allocation.allocate_payment(member_id, amount, external_payment_id, method)

    def process_balance_payment(self, member_id: int, token: str, amount: Decimal,
                                currency: Optional[str] = None) -> BalancePaymentResult:
        return self.payments.process_balance_payment(member_id, token, amount, currency)

    # Jobs

    def run_daily_jobs(self, now: Optional[datetime] = None) -> DailyJobReport:
        return self.jobs.run_daily(now)
