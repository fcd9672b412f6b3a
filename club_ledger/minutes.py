import logging
from typing import Iterable, Optional

from .errors import NotFoundError
from .models import (
    ZERO,
    DiscountReason,
    EntryKind,
    EntryStatus,
    FeeType,
    LedgerEntry,
    MatchEvent,
    MatchEventType,
    derive_status,
    money,
)
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


def minutes_for_member(member_id: int, events: Iterable[MatchEvent], full_match: int = 90) -> int:
    substitutions = [e for e in events if e.event_type == MatchEventType.SUBSTITUTION]
    subbed_off = next((e for e in substitutions if e.member_id == member_id), None)
    if subbed_off:
        return subbed_off.minute
    subbed_on = next((e for e in substitutions if e.substituted_for_id == member_id), None)
    if subbed_on:
        return max(full_match - subbed_on.minute, 0)
    return full_match


class MinutesDiscountCalculator:
    """Halves match fees for members who played under the minutes threshold."""

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def apply_for_fixture(self, fixture_id: int, events: Optional[list[MatchEvent]] = None) -> list[LedgerEntry]:
        if events is None:
            events = [MatchEvent(**e) for e in self.storage.match_events_for_fixture(fixture_id)]
        events = sorted(events, key=lambda e: e.minute)
        settings = self.storage.settings

        match_fees = [
            e for e in self.storage.all_entries()
            if e["kind"] == EntryKind.FEE and e["fee_type"] == FeeType.MATCH and e["fixture_id"] == fixture_id
        ]
        logger.info("Processing %d match fees for fixture %s with %d match events",
                    len(match_fees), fixture_id, len(events))

        discounted = []
        for fee in match_fees:
            minutes = minutes_for_member(fee["member_id"], events, settings.full_match_minutes)
            if minutes >= settings.minutes_threshold:
                logger.debug("No discount for member %s - played %d minutes", fee["member_id"], minutes)
                continue
            discounted.append(self.apply_discount(fee["id"], minutes))
        return discounted

    def apply_discount(self, entry_id, minutes_played: int) -> LedgerEntry:
        """Overwrite the entry's discount with half of its base amount."""
        entry = self.storage.get_entry(entry_id)
        if not entry or entry["fee_type"] != FeeType.MATCH:
            raise NotFoundError(f"Match fee entry {entry_id} not found")
        settings = self.storage.settings

        with self.storage.transaction(entry["member_id"]):
            entry = self.storage.get_entry(entry_id)
            discount = money(entry["base_amount"] * settings.discount_rate)
            final_amount = entry["base_amount"] - discount
            paid = entry["paid_amount"]
            excess = paid - final_amount if paid > final_amount else ZERO
            now = self.storage.now()

            notes = entry["notes"]
            if entry["minutes_played"] is None:
                notes = f"{notes} (50% discount - played {minutes_played} minutes)".strip()

            if excess > 0:
                paid = final_amount
                self.storage.new_entry(
                    entry["member_id"],
                    EntryKind.CREDIT,
                    base_amount=ZERO,
                    final_amount=excess,
                    status=EntryStatus.PAID,
                    due_date=now,
                    paid_amount=excess,
                    paid_date=now,
                    fixture_id=entry["fixture_id"],
                    notes=f"Match fee discount overpayment credit: {excess}",
                )

            status = entry["status"]
            if paid > 0 or final_amount == 0:
                status = derive_status(final_amount, paid, entry["due_date"], now, settings.overdue_days)

            updated = self.storage.update_entry(
                entry_id,
                discount_amount=discount,
                final_amount=final_amount,
                paid_amount=paid,
                status=status,
                paid_date=entry["paid_date"] or (now if status == EntryStatus.PAID else None),
                minutes_played=minutes_played,
                discount_reason=DiscountReason.MINUTES_PLAYED,
                notes=notes,
            )

        logger.info("Applied minutes discount to entry %s for member %s: played %d minutes, final %s",
                    entry_id, entry["member_id"], minutes_played, final_amount)
        return LedgerEntry(**updated)
