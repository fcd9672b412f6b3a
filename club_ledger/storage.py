import itertools
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable, Iterator, Optional
from uuid import UUID, uuid4

from .config import Settings, get_settings
from .models import (
    ZERO,
    EntryKind,
    EntryStatus,
    FeeType,
    PaymentMethod,
    as_utc,
    counts_as_obligation,
    money,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def replay_balance(entries: Iterable[dict]) -> Decimal:
    """Sum of everything paid minus everything owed, credit entries included."""
    paid = ZERO
    owed = ZERO
    for entry in entries:
        paid += entry["paid_amount"]
        if counts_as_obligation(entry["kind"], entry["base_amount"]):
            owed += entry["final_amount"]
    return money(paid - owed)


class InMemoryStorage:
    """
    Ledger store, balance projection cache and the trigger-side records the
    fee engine reads.

    Every ledger write must happen inside ``transaction(member_id)``. The
    transaction serializes writers per member, rolls the member's entries back
    if an exception escapes and refreshes the balance projection on commit.
    """

    def __init__(self, settings: Optional[Settings] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        self.ledger_entries: dict[UUID, dict] = {}
        self.balances: dict[int, dict] = {}
        self.discount_eligibilities: dict[UUID, dict] = {}
        self.fee_configs: dict[FeeType, dict] = {}
        self.events: dict[str, dict] = {}
        self.rsvps: dict[tuple[str, int], dict] = {}
        self.fixtures: dict[int, dict] = {}
        self.match_events: dict[str, dict] = {}
        self.job_runs: dict[str, datetime] = {}
        self._sequence = itertools.count(1)
        self._sequence_guard = threading.Lock()
        self._locks: dict[int, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._open: dict[int, dict[UUID, dict]] = {}
        self._seed_fee_configs()

    def _seed_fee_configs(self):
        for name, amount in self.settings.fee_amounts.items():
            fee_type = FeeType(name)
            self.fee_configs[fee_type] = {
                "fee_type": fee_type,
                "amount": money(amount),
                "is_active": True,
            }

    def now(self) -> datetime:
        return as_utc(self.clock())

    def next_sequence(self) -> int:
        with self._sequence_guard:
            return next(self._sequence)

    # Transactions

    def _member_lock(self, member_id: int) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(member_id)
            if lock is None:
                lock = self._locks[member_id] = threading.RLock()
            return lock

    @contextmanager
    def transaction(self, member_id: int) -> Iterator[None]:
        with self._member_lock(member_id):
            outermost = member_id not in self._open
            if outermost:
                self._open[member_id] = {
                    entry_id: dict(entry)
                    for entry_id, entry in self.ledger_entries.items()
                    if entry["member_id"] == member_id
                }
            try:
                yield
            except BaseException:
                if outermost:
                    self._rollback(member_id)
                raise
            else:
                if outermost:
                    self.refresh_balance(member_id)
            finally:
                if outermost:
                    self._open.pop(member_id, None)

    def _rollback(self, member_id: int):
        snapshot = self._open[member_id]
        for entry_id in [i for i, e in self.ledger_entries.items() if e["member_id"] == member_id]:
            del self.ledger_entries[entry_id]
        self.ledger_entries.update(snapshot)
        logger.warning("Rolled back ledger changes for member %s", member_id)

    def _require_transaction(self, member_id: int):
        if member_id not in self._open:
            raise RuntimeError(f"Ledger write for member {member_id} outside a transaction")

    # Ledger entries

    def new_entry(self, member_id: int, kind: EntryKind, base_amount: Decimal,
                  final_amount: Decimal, status: EntryStatus,
                  due_date: Optional[datetime] = None, **fields) -> dict:
        """Build and insert an entry with every column set."""
        now = self.now()
        entry = {
            "id": uuid4(),
            "member_id": member_id,
            "kind": kind,
            "fee_type": None,
            "base_amount": money(base_amount),
            "discount_amount": ZERO,
            "final_amount": money(final_amount),
            "paid_amount": ZERO,
            "status": status,
            "due_date": as_utc(due_date) if due_date else now,
            "paid_date": None,
            "event_id": None,
            "fixture_id": None,
            "match_event_id": None,
            "selection_type": None,
            "season": None,
            "minutes_played": None,
            "discount_reason": None,
            "payment_method": PaymentMethod.MANUAL,
            "external_payment_id": None,
            "refund_of": None,
            "notes": "",
            "marked_by": None,
            "sequence": self.next_sequence(),
            "created_at": now,
            "updated_at": now,
        }
        unknown = set(fields) - set(entry)
        if unknown:
            raise ValueError(f"Unknown ledger entry fields: {sorted(unknown)}")
        entry.update(fields)
        return self.insert_entry(entry)

    def insert_entry(self, entry: dict) -> dict:
        self._require_transaction(entry["member_id"])
        self.ledger_entries[entry["id"]] = entry
        return entry

    def update_entry(self, entry_id: UUID, **changes) -> dict:
        entry = self.ledger_entries[entry_id]
        self._require_transaction(entry["member_id"])
        entry.update(changes)
        entry["updated_at"] = self.now()
        return entry

    def delete_entry(self, entry_id: UUID) -> dict:
        entry = self.ledger_entries[entry_id]
        self._require_transaction(entry["member_id"])
        return self.ledger_entries.pop(entry_id)

    def get_entry(self, entry_id: UUID) -> Optional[dict]:
        return self.ledger_entries.get(entry_id)

    def entries_for_member(self, member_id: int) -> list[dict]:
        entries = [e for e in self.ledger_entries.values() if e["member_id"] == member_id]
        entries.sort(key=lambda e: e["sequence"])
        return entries

    def all_entries(self) -> list[dict]:
        return sorted(self.ledger_entries.values(), key=lambda e: e["sequence"])

    def member_ids(self) -> list[int]:
        return sorted({e["member_id"] for e in self.ledger_entries.values()} | set(self.balances))

    # Balance projection

    def refresh_balance(self, member_id: int) -> dict:
        balance = replay_balance(self.entries_for_member(member_id))
        projection = {
            "member_id": member_id,
            "current_balance": balance,
            "last_updated": self.now(),
        }
        self.balances[member_id] = projection
        return projection

    def get_balance(self, member_id: int) -> dict:
        projection = self.balances.get(member_id)
        if projection is None:
            projection = self.refresh_balance(member_id)
        return projection

    # Trigger-side records

    def upsert_event(self, event: dict):
        self.events[event["id"]] = event

    def get_event(self, event_id: str) -> Optional[dict]:
        return self.events.get(event_id)

    def set_rsvp(self, rsvp: dict):
        self.rsvps[(rsvp["event_id"], rsvp["member_id"])] = rsvp

    def rsvps_for_event(self, event_id: str) -> list[dict]:
        return [r for (e, _), r in self.rsvps.items() if e == event_id]

    def upsert_fixture(self, fixture: dict):
        self.fixtures[fixture["id"]] = fixture

    def get_fixture(self, fixture_id: int) -> Optional[dict]:
        return self.fixtures.get(fixture_id)

    def match_events_for_fixture(self, fixture_id: int) -> list[dict]:
        events = [e for e in self.match_events.values() if e["fixture_id"] == fixture_id]
        events.sort(key=lambda e: e["minute"])
        return events

    def replace_match_events(self, fixture_id: int, events: list[dict]) -> list[dict]:
        """Swap a fixture's match events in one step and return the old ones."""
        previous = self.match_events_for_fixture(fixture_id)
        staged = dict(self.match_events)
        for old in previous:
            staged.pop(old["id"], None)
        for event in events:
            if event["fixture_id"] != fixture_id:
                raise ValueError(f"Match event {event['id']} belongs to fixture {event['fixture_id']}")
            staged[event["id"]] = event
        self.match_events = staged
        return previous

    def delete_match_event(self, match_event_id: str) -> Optional[dict]:
        return self.match_events.pop(match_event_id, None)
