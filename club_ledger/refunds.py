import logging
from typing import Optional
from uuid import UUID

from .errors import InvalidStateError, NotFoundError
from .models import (
    ZERO,
    EntryKind,
    EntryStatus,
    FeeType,
    LedgerEntry,
    counts_as_obligation,
)
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


class RefundHandler:
    """
    Reverses obligations whose triggering event went away.

    Every path goes through ``refund``: whatever the member already paid on the
    entry is turned into a refund credit entry, then the entry is deleted.
    """

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def refund(self, entry_id: UUID, reason: str) -> Optional[LedgerEntry]:
        entry = self.storage.get_entry(entry_id)
        if not entry:
            raise NotFoundError(f"Ledger entry {entry_id} not found")
        member_id = entry["member_id"]

        with self.storage.transaction(member_id):
            entry = self.storage.get_entry(entry_id)
            if not entry:
                raise NotFoundError(f"Ledger entry {entry_id} not found")
            if not counts_as_obligation(entry["kind"], entry["base_amount"]):
                raise InvalidStateError(f"Ledger entry {entry_id} holds credit and cannot be refunded")

            refund_entry = None
            paid = entry["paid_amount"]
            if paid > 0:
                now = self.storage.now()
                label = entry["fee_type"].value if entry["fee_type"] else entry["kind"].value
                refund_entry = self.storage.new_entry(
                    member_id,
                    EntryKind.REFUND,
                    base_amount=ZERO,
                    final_amount=paid,
                    status=EntryStatus.PAID,
                    due_date=now,
                    paid_amount=paid,
                    paid_date=now,
                    fee_type=entry["fee_type"],
                    event_id=entry["event_id"],
                    fixture_id=entry["fixture_id"],
                    match_event_id=entry["match_event_id"],
                    season=entry["season"],
                    refund_of=entry_id,
                    marked_by=entry["marked_by"],
                    notes=f"{reason} - {label} ({entry_id})",
                )
            self.storage.delete_entry(entry_id)

        if refund_entry:
            logger.info("Refunded %s to member %s for deleted entry %s", paid, member_id, entry_id)
            return LedgerEntry(**refund_entry)
        logger.info("Deleted unpaid entry %s for member %s", entry_id, member_id)
        return None

    def delete_entry(self, entry_id: UUID) -> Optional[LedgerEntry]:
        return self.refund(entry_id, "Fee deletion refund")

    def cancel_event(self, event_id: str) -> list[LedgerEntry]:
        linked = [
            e for e in self.storage.all_entries()
            if e["event_id"] == event_id and counts_as_obligation(e["kind"], e["base_amount"])
        ]
        logger.info("Handling cancellation for event %s: %d ledger entries found", event_id, len(linked))

        refunds = []
        for entry in linked:
            try:
                refund_entry = self.refund(entry["id"], f"Event cancellation refund {event_id}")
            except Exception:
                logger.exception("Failed to reverse entry %s for cancelled event %s", entry["id"], event_id)
                continue
            if refund_entry:
                refunds.append(refund_entry)
        return refunds

    def delete_card_fee(self, match_event_id: str) -> Optional[LedgerEntry]:
        fee = next((
            e for e in self.storage.all_entries()
            if e["kind"] == EntryKind.FEE
            and e["match_event_id"] == match_event_id
            and e["fee_type"] in (FeeType.YELLOW_CARD, FeeType.RED_CARD)
        ), None)
        if not fee:
            logger.info("No card fee found for match event %s", match_event_id)
            return None
        return self.refund(fee["id"], f"Card fee refund for deleted match event {match_event_id}")

    def remove_match_fees(self, fixture_id: int) -> list[LedgerEntry]:
        fees = [
            e for e in self.storage.all_entries()
            if e["kind"] == EntryKind.FEE and e["fee_type"] == FeeType.MATCH and e["fixture_id"] == fixture_id
        ]
        refunds = []
        for fee in fees:
            refund_entry = self.refund(fee["id"], f"Match fee reissue for fixture {fixture_id}")
            if refund_entry:
                refunds.append(refund_entry)
        return refunds
