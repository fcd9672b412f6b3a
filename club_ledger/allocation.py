import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID

from .errors import InvalidStateError, NotFoundError
from .models import (
    OUTSTANDING_STATUSES,
    ZERO,
    AllocationResult,
    CreditConsumption,
    EntryAllocation,
    EntryKind,
    EntryStatus,
    LedgerEntry,
    PaymentMethod,
    counts_as_obligation,
    money,
)
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


def _is_obligation(entry: dict) -> bool:
    return counts_as_obligation(entry["kind"], entry["base_amount"])


class PaymentAllocationEngine:
    """
    Applies incoming payments and banked credit to outstanding obligations.

    Debt is settled oldest due date first, ties broken by creation order.
    Whatever exceeds the member's total due is banked as one credit entry.
    """

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def outstanding_entries(self, member_id: int) -> list[dict]:
        entries = [
            e for e in self.storage.entries_for_member(member_id)
            if _is_obligation(e)
            and e["status"] in OUTSTANDING_STATUSES
            and e["final_amount"] - e["paid_amount"] > 0
        ]
        entries.sort(key=lambda e: (e["due_date"], e["sequence"]))
        return entries

    def total_due(self, member_id: int) -> Decimal:
        return money(sum(
            (e["final_amount"] - e["paid_amount"] for e in self.outstanding_entries(member_id)),
            ZERO,
        ))

    def credit_entries(self, member_id: int) -> list[dict]:
        return [e for e in self.storage.entries_for_member(member_id) if not _is_obligation(e)]

    def available_credit(self, member_id: int) -> Decimal:
        return money(sum((e["paid_amount"] for e in self.credit_entries(member_id)), ZERO))

    def allocate_payment(self, member_id: int, amount: Decimal, external_payment_id: Optional[str] = None,
                         method: PaymentMethod = PaymentMethod.CARD) -> AllocationResult:
        amount = money(amount)
        if amount <= 0:
            raise InvalidStateError("Payment amount must be greater than zero")

        with self.storage.transaction(member_id):
            total_due = self.total_due(member_id)
            debt_amount = min(amount, total_due)
            credit_amount = amount - debt_amount

            logger.info(
                "Allocating payment of %s for member %s: %s to debt, %s to credit",
                amount, member_id, debt_amount, credit_amount,
            )

            allocations = self._allocate_to_entries(member_id, debt_amount, external_payment_id, method)

            credit_entry = None
            if credit_amount > 0:
                credit_entry = self._bank_credit(member_id, credit_amount, external_payment_id, method)

        return AllocationResult(
            member_id=member_id,
            amount=amount,
            debt_paid=debt_amount,
            credit_added=credit_amount,
            allocations=allocations,
            credit_entry=credit_entry,
        )

    def _allocate_to_entries(self, member_id: int, debt_amount: Decimal, external_payment_id: Optional[str],
                             method: PaymentMethod) -> list[EntryAllocation]:
        remaining = debt_amount
        allocations = []
        now = self.storage.now()

        for entry in self.outstanding_entries(member_id):
            if remaining <= 0:
                break

            remaining_on_entry = entry["final_amount"] - entry["paid_amount"]
            amount_to_pay = min(remaining, remaining_on_entry)
            new_paid = entry["paid_amount"] + amount_to_pay
            is_full = new_paid >= entry["final_amount"]
            status = EntryStatus.PAID if is_full else EntryStatus.PARTIAL

            self.storage.update_entry(
                entry["id"],
                paid_amount=new_paid,
                status=status,
                paid_date=now if is_full else entry["paid_date"],
                payment_method=method,
                external_payment_id=external_payment_id,
                notes=append_note(entry["notes"], f"Balance payment allocation: {amount_to_pay} (total paid: {new_paid})"),
            )
            allocations.append(EntryAllocation(
                entry_id=entry["id"],
                amount_paid=amount_to_pay,
                status=status,
                remaining=remaining_on_entry - amount_to_pay,
            ))
            remaining -= amount_to_pay

        logger.info("Allocated %s across %d entries for member %s",
                    debt_amount - remaining, len(allocations), member_id)
        return allocations

    def _bank_credit(self, member_id: int, credit_amount: Decimal, external_payment_id: Optional[str],
                     method: PaymentMethod) -> LedgerEntry:
        now = self.storage.now()
        entry = self.storage.new_entry(
            member_id,
            EntryKind.CREDIT,
            base_amount=ZERO,
            final_amount=credit_amount,
            status=EntryStatus.PAID,
            due_date=now,
            paid_amount=credit_amount,
            paid_date=now,
            payment_method=method,
            external_payment_id=external_payment_id,
            notes=f"Balance payment credit: {credit_amount}",
        )
        logger.info("Banked credit of %s for member %s", credit_amount, member_id)
        return LedgerEntry(**entry)

    def consume_credit(self, member_id: int, entry_id: UUID) -> Optional[CreditConsumption]:
        """Spend banked credit on a freshly issued obligation."""
        with self.storage.transaction(member_id):
            entry = self.storage.get_entry(entry_id)
            if not entry or entry["member_id"] != member_id:
                raise NotFoundError(f"Ledger entry {entry_id} not found for member {member_id}")
            if not _is_obligation(entry) or entry["status"] not in (EntryStatus.DUE, EntryStatus.OVERDUE):
                return None

            available = self.available_credit(member_id)
            if available <= 0:
                return None

            amount = min(available, entry["final_amount"])
            if amount <= 0:
                return None
            is_full = amount >= entry["final_amount"]
            now = self.storage.now()

            self.storage.update_entry(
                entry_id,
                paid_amount=entry["paid_amount"] + amount,
                status=EntryStatus.PAID if is_full else EntryStatus.PARTIAL,
                paid_date=now if is_full else None,
                payment_method=PaymentMethod.CREDIT_ALLOCATION,
                notes=append_note(entry["notes"], f"Automatic credit allocation: {amount}"),
            )
            self._reduce_credit_entries(member_id, amount)

        logger.info("Allocated %s of credit to entry %s for member %s", amount, entry_id, member_id)
        return CreditConsumption(entry_id=entry_id, consumed=amount, remaining_credit=available - amount)

    def _reduce_credit_entries(self, member_id: int, amount: Decimal):
        remaining = amount
        for credit in self.credit_entries(member_id):
            if remaining <= 0:
                break
            reduce_by = min(remaining, credit["paid_amount"])
            if reduce_by <= 0:
                continue
            left = credit["paid_amount"] - reduce_by
            self.storage.update_entry(
                credit["id"],
                paid_amount=left,
                notes=append_note(credit["notes"], f"reduced by {reduce_by}, {left} left"),
            )
            remaining -= reduce_by


def append_note(notes: str, extra: str) -> str:
    if not notes:
        return extra
    if not extra:
        return notes
    return f"{notes} | {extra}"
