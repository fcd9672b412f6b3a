"""
Unit Tests for Payment Allocation

Tests cover:
1. Oldest-due-first allocation
2. Overpayment banked as a single credit entry
3. Money conservation
4. Concurrent writers on one member
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

import pytest

from club_ledger.errors import InvalidStateError
from club_ledger.models import CardType, EntryKind, EntryStatus, FeeLinks, FeeType, PaymentMethod
from club_ledger.storage import replay_balance
from club_ledger.tests.conftest import NOW


MEMBER = 7


def _issue(service, event_id, amount, days_ago):
    return service.issuance.issue_fee(MEMBER, FeeType.TRAINING, Decimal(amount), NOW - timedelta(days=days_ago),
                                      FeeLinks(event_id=event_id))


class TestAllocatePayment:
    """Tests for allocating a payment across outstanding fees."""

    def test_partial_payment_pays_oldest_first(self, service):
        """Paying less than owed settles the oldest fee first and banks nothing."""
        older = _issue(service, "t1", "6.00", 10)
        newer = _issue(service, "t2", "12.00", 5)
        balance_before = service.get_balance(MEMBER).current_balance

        result = service.allocation.allocate_payment(MEMBER, Decimal("10.00"), "pay-1")

        assert result.debt_paid == Decimal("10.00")
        assert result.credit_added == Decimal("0.00")
        assert result.credit_entry is None
        assert [a.entry_id for a in result.allocations] == [older.id, newer.id]
        assert service.get_entry(older.id).status == EntryStatus.PAID
        assert service.get_entry(newer.id).status == EntryStatus.PARTIAL
        assert service.get_entry(newer.id).paid_amount == Decimal("4.00")
        assert service.allocation.total_due(MEMBER) == Decimal("8.00")
        assert service.get_balance(MEMBER).current_balance == balance_before + Decimal("10.00")
        assert service.allocation.credit_entries(MEMBER) == []

    def test_same_due_date_pays_first_created(self, service):
        """Ties on due date fall back to creation order."""
        first = _issue(service, "t1", "6.00", 3)
        second = _issue(service, "t2", "6.00", 3)

        service.allocation.allocate_payment(MEMBER, Decimal("6.00"))

        assert service.get_entry(first.id).status == EntryStatus.PAID
        assert service.get_entry(second.id).status == EntryStatus.DUE

    def test_overpayment_creates_one_credit(self, service):
        """Paying more than owed settles everything and banks the rest once."""
        first = _issue(service, "t1", "6.00", 10)
        second = _issue(service, "t2", "12.00", 5)

        result = service.allocation.allocate_payment(MEMBER, Decimal("20.00"), "pay-1")

        assert result.debt_paid == Decimal("18.00")
        assert result.credit_added == Decimal("2.00")
        assert service.get_entry(first.id).status == EntryStatus.PAID
        assert service.get_entry(second.id).status == EntryStatus.PAID
        credits = service.allocation.credit_entries(MEMBER)
        assert len(credits) == 1
        assert credits[0]["kind"] == EntryKind.CREDIT
        assert credits[0]["paid_amount"] == Decimal("2.00")
        assert credits[0]["external_payment_id"] == "pay-1"
        assert service.get_balance(MEMBER).current_balance == Decimal("2.00")

    def test_nothing_due_banks_everything(self, service):
        """With no debt the whole payment becomes credit."""
        result = service.allocation.allocate_payment(MEMBER, Decimal("5.00"))

        assert result.debt_paid == Decimal("0.00")
        assert result.credit_added == Decimal("5.00")
        assert service.allocation.available_credit(MEMBER) == Decimal("5.00")

    def test_overdue_fees_are_included(self, service):
        """Overdue fees are still collected."""
        entry = _issue(service, "t1", "6.00", 40)
        service.overdue.update_overdue_status(NOW)
        assert service.get_entry(entry.id).status == EntryStatus.OVERDUE

        service.allocation.allocate_payment(MEMBER, Decimal("6.00"))

        assert service.get_entry(entry.id).status == EntryStatus.PAID

    def test_payment_details_recorded(self, service):
        """The method and external reference land on the paid entry."""
        entry = _issue(service, "t1", "6.00", 1)

        service.allocation.allocate_payment(MEMBER, Decimal("6.00"), "bank-ref", PaymentMethod.BANK_TRANSFER)

        paid = service.get_entry(entry.id)
        assert paid.payment_method == PaymentMethod.BANK_TRANSFER
        assert paid.external_payment_id == "bank-ref"
        assert paid.paid_date == NOW

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5.00")])
    def test_non_positive_amount_rejected(self, service, amount):
        """Only positive payments are accepted."""
        with pytest.raises(InvalidStateError):
            service.allocation.allocate_payment(MEMBER, amount)

    def test_naive_and_aware_due_dates_mix(self, service):
        """A naive due date is read as UTC and ordered alongside aware ones."""
        naive = service.issuance.issue_fee(MEMBER, FeeType.TRAINING, Decimal("6.00"),
                                           (NOW - timedelta(days=20)).replace(tzinfo=None),
                                           FeeLinks(event_id="t1"))
        aware = service.issuance.create_card_fee(MEMBER, "card-1", CardType.YELLOW, 1)

        result = service.allocation.allocate_payment(MEMBER, Decimal("3.00"))

        assert naive.due_date == NOW - timedelta(days=20)
        assert [a.entry_id for a in result.allocations] == [naive.id]
        assert service.get_entry(aware.id).status == EntryStatus.DUE


class TestConcurrentWriters:
    """Tests for writers racing on one member's ledger."""

    def test_concurrent_issuance_spends_credit_once(self, service):
        """Fees issued in parallel never spend the same credit twice."""
        service.record_payment(MEMBER, Decimal("10.00"))

        with ThreadPoolExecutor(max_workers=8) as pool:
            entries = list(pool.map(
                lambda i: service.issuance.create_training_fee(MEMBER, f"t{i}", NOW),
                range(8),
            ))

        fees = [service.get_entry(e.id) for e in entries]
        assert sum((f.paid_amount for f in fees), Decimal("0.00")) == Decimal("10.00")
        assert service.allocation.available_credit(MEMBER) == Decimal("0.00")
        assert service.get_balance(MEMBER).current_balance == Decimal("-38.00")
        assert replay_balance(service.storage.entries_for_member(MEMBER)) == Decimal("-38.00")

    def test_concurrent_payments_keep_oldest_first(self, service):
        """Two payments racing for one member still settle the oldest fees first."""
        oldest = _issue(service, "t1", "6.00", 10)
        middle = _issue(service, "t2", "6.00", 5)
        newest = _issue(service, "t3", "6.00", 1)
        barrier = threading.Barrier(2)

        def pay(reference):
            barrier.wait()
            return service.allocation.allocate_payment(MEMBER, Decimal("6.00"), reference)

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(pay, ["pay-1", "pay-2"]))

        assert all(r.debt_paid == Decimal("6.00") for r in results)
        assert service.get_entry(oldest.id).status == EntryStatus.PAID
        assert service.get_entry(middle.id).status == EntryStatus.PAID
        assert service.get_entry(newest.id).status == EntryStatus.DUE
        assert service.allocation.total_due(MEMBER) == Decimal("6.00")
        assert service.allocation.credit_entries(MEMBER) == []
