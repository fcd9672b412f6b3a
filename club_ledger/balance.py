import logging
import math
from decimal import Decimal
from typing import Optional

from .allocation import PaymentAllocationEngine
from .errors import InvalidStateError
from .models import (
    ZERO,
    BalanceProjection,
    BalanceSummary,
    EntryFilters,
    EntryKind,
    EntryStatus,
    FeeTypeTotal,
    FinancialOverview,
    LedgerEntry,
    LedgerHistoryResponse,
    LedgerPage,
    MemberDebt,
    Pagination,
    money,
)
from .storage import InMemoryStorage, replay_balance

logger = logging.getLogger(__name__)


class BalanceService:
    def __init__(self, storage: InMemoryStorage, allocation: PaymentAllocationEngine):
        self.storage = storage
        self.allocation = allocation

    def get_balance(self, member_id: int) -> BalanceProjection:
        return BalanceProjection(**self.storage.get_balance(member_id))

    def recompute_balance(self, member_id: int) -> Decimal:
        """Replay the member's ledger and overwrite the cached projection."""
        with self.storage.transaction(member_id):
            cached = self.storage.balances.get(member_id)
            replayed = replay_balance(self.storage.entries_for_member(member_id))
            if cached is not None and cached["current_balance"] != replayed:
                logger.warning("Balance projection for member %s was %s, ledger replay gives %s",
                               member_id, cached["current_balance"], replayed)
        return self.storage.get_balance(member_id)["current_balance"]

    def get_balance_summary(self, member_id: int) -> BalanceSummary:
        due_entries = [LedgerEntry(**e) for e in self.allocation.outstanding_entries(member_id)]
        total_due = self.allocation.total_due(member_id)
        return BalanceSummary(
            member_id=member_id,
            current_balance=self.get_balance(member_id).current_balance,
            total_due=total_due,
            available_credit=self.allocation.available_credit(member_id),
            due_entries=due_entries,
            can_pay_balance=total_due > 0,
        )

    def adjust_balance(self, member_id: int, amount: Decimal, reason: str,
                       performed_by: Optional[int] = None) -> BalanceProjection:
        amount = money(amount)
        if amount == 0:
            raise InvalidStateError("Adjustment amount cannot be zero")

        with self.storage.transaction(member_id):
            now = self.storage.now()
            if amount > 0:
                self.storage.new_entry(
                    member_id,
                    EntryKind.ADJUSTMENT,
                    base_amount=ZERO,
                    final_amount=amount,
                    status=EntryStatus.PAID,
                    due_date=now,
                    paid_amount=amount,
                    paid_date=now,
                    marked_by=performed_by,
                    notes=reason,
                )
            else:
                entry = self.storage.new_entry(
                    member_id,
                    EntryKind.ADJUSTMENT,
                    base_amount=-amount,
                    final_amount=-amount,
                    status=EntryStatus.DUE,
                    due_date=now,
                    marked_by=performed_by,
                    notes=reason,
                )
                self.allocation.consume_credit(member_id, entry["id"])

        logger.info("Adjusted balance for member %s by %s: %s", member_id, amount, reason)
        return self.get_balance(member_id)

    def get_ledger_history(self, member_id: int, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        all_entries = [LedgerEntry(**e) for e in self.storage.entries_for_member(member_id)]
        all_entries.sort(key=lambda e: e.sequence, reverse=True)
        return LedgerHistoryResponse(
            member_id=member_id,
            entries=all_entries[offset:offset + limit],
            total_count=len(all_entries),
            current_balance=self.get_balance(member_id).current_balance,
        )

    def list_entries(self, filters: EntryFilters) -> LedgerPage:
        entries = self.storage.all_entries()
        if filters.member_id is not None:
            entries = [e for e in entries if e["member_id"] == filters.member_id]
        if filters.kind is not None:
            entries = [e for e in entries if e["kind"] == filters.kind]
        if filters.fee_type is not None:
            entries = [e for e in entries if e["fee_type"] == filters.fee_type]
        if filters.status is not None:
            entries = [e for e in entries if e["status"] == filters.status]
        if filters.due_from is not None:
            entries = [e for e in entries if e["due_date"] >= filters.due_from]
        if filters.due_to is not None:
            entries = [e for e in entries if e["due_date"] <= filters.due_to]

        # due date ascending, newest first within a day
        entries.sort(key=lambda e: (e["created_at"], e["sequence"]), reverse=True)
        entries.sort(key=lambda e: e["due_date"])

        total_count = len(entries)
        total_pages = math.ceil(total_count / filters.limit) if total_count else 0
        start = (filters.page - 1) * filters.limit
        return LedgerPage(
            entries=[LedgerEntry(**e) for e in entries[start:start + filters.limit]],
            pagination=Pagination(
                page=filters.page,
                limit=filters.limit,
                total_count=total_count,
                total_pages=total_pages,
                has_next_page=filters.page < total_pages,
                has_previous_page=filters.page > 1,
            ),
        )

    def financial_overview(self, top: int = 10) -> FinancialOverview:
        debts = []
        total_credit = ZERO
        for member_id in self.storage.member_ids():
            outstanding = self.allocation.outstanding_entries(member_id)
            overdue = sum(
                (e["final_amount"] - e["paid_amount"] for e in outstanding if e["status"] == EntryStatus.OVERDUE),
                ZERO,
            )
            total_credit += self.allocation.available_credit(member_id)
            debts.append(MemberDebt(
                member_id=member_id,
                current_balance=self.get_balance(member_id).current_balance,
                total_due=self.allocation.total_due(member_id),
                overdue_amount=money(overdue),
                fee_count=len(outstanding),
            ))

        breakdown: dict = {}
        for entry in self.storage.all_entries():
            if entry["kind"] != EntryKind.FEE:
                continue
            bucket = breakdown.setdefault(entry["fee_type"], {"count": 0, "total": ZERO})
            bucket["count"] += 1
            bucket["total"] += entry["final_amount"]

        top_debtors = sorted((d for d in debts if d.total_due > 0), key=lambda d: d.total_due, reverse=True)
        return FinancialOverview(
            total_club_due=money(sum((d.total_due for d in debts), ZERO)),
            total_overdue=money(sum((d.overdue_amount for d in debts), ZERO)),
            total_credit=money(total_credit),
            top_debtors=top_debtors[:top],
            fee_type_breakdown={k: FeeTypeTotal(**v) for k, v in breakdown.items()},
        )
