import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from .allocation import PaymentAllocationEngine
from .discounts import DiscountEligibilityRegistry
from .errors import InvalidStateError, NotFoundError
from .fee_config import FeeConfigService
from .models import (
    ZERO,
    CardType,
    DiscountReason,
    EntryKind,
    EntryStatus,
    EventType,
    FeeLinks,
    FeeType,
    IssueFeeRequest,
    LedgerEntry,
    RsvpStatus,
    SeasonSummary,
    TeamSelection,
    YearlySubscriptionResult,
    as_utc,
    derive_status,
    money,
)
from .refunds import RefundHandler
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

CARD_FEE_TYPES = {CardType.YELLOW: FeeType.YELLOW_CARD, CardType.RED: FeeType.RED_CARD}


class FeeIssuanceEngine:
    """
    Creates fee entries in response to club activity.

    Every fee gets the member's eligibility discount and then soaks up any
    banked credit. Issuing the same fee twice for one triggering event is a
    no-op that hands back the entry already on the ledger.
    """

    def __init__(self, storage: InMemoryStorage, fee_config: FeeConfigService,
                 discounts: DiscountEligibilityRegistry, allocation: PaymentAllocationEngine,
                 refunds: Optional[RefundHandler] = None):
        self.storage = storage
        self.fee_config = fee_config
        self.discounts = discounts
        self.allocation = allocation
        self.refunds = refunds or RefundHandler(storage)

    def issue_fee(self, member_id: int, fee_type: FeeType, base_amount: Decimal, due_date: datetime,
                  links: Optional[FeeLinks] = None, notes: str = "") -> LedgerEntry:
        links = links or FeeLinks()
        base_amount = money(base_amount)
        due_date = as_utc(due_date)

        with self.storage.transaction(member_id):
            existing = self.find_existing_fee(member_id, fee_type, links)
            if existing:
                logger.info("%s fee already exists for member %s (entry %s)",
                            fee_type.value, member_id, existing["id"])
                return LedgerEntry(**existing)

            discount = self.discounts.discount_for(member_id, base_amount, self.storage.now())
            final_amount = base_amount - discount
            if final_amount < 0:
                raise InvalidStateError("Final amount cannot be negative")

            entry = self.storage.new_entry(
                member_id,
                EntryKind.FEE,
                base_amount=base_amount,
                final_amount=final_amount,
                status=derive_status(final_amount, ZERO, due_date, self.storage.now(),
                                     self.storage.settings.overdue_days),
                due_date=due_date,
                fee_type=fee_type,
                discount_amount=discount,
                discount_reason=DiscountReason.ELIGIBILITY if discount > 0 else None,
                notes=notes,
                **links.model_dump(),
            )
            self.allocation.consume_credit(member_id, entry["id"])
            entry = self.storage.get_entry(entry["id"])

        logger.info("Created %s fee of %s for member %s (entry %s)",
                    fee_type.value, entry["final_amount"], member_id, entry["id"])
        return LedgerEntry(**entry)

    def issue(self, request: IssueFeeRequest) -> LedgerEntry:
        return self.issue_fee(request.member_id, request.fee_type, request.base_amount,
                              request.due_date, request.links, request.notes)

    def find_existing_fee(self, member_id: int, fee_type: FeeType, links: FeeLinks) -> Optional[dict]:
        for entry in self.storage.entries_for_member(member_id):
            if entry["kind"] != EntryKind.FEE or entry["fee_type"] != fee_type:
                continue
            if fee_type in (FeeType.TRAINING, FeeType.SOCIAL_EVENT):
                if links.event_id is not None and entry["event_id"] == links.event_id:
                    return entry
            elif fee_type == FeeType.MATCH:
                if links.fixture_id is not None and entry["fixture_id"] == links.fixture_id:
                    return entry
            elif fee_type in (FeeType.YELLOW_CARD, FeeType.RED_CARD):
                if links.match_event_id is not None and entry["match_event_id"] == links.match_event_id:
                    return entry
            elif fee_type == FeeType.YEARLY_SUBS:
                if links.season is not None and entry["season"] == links.season:
                    return entry
        return None

    # Match fees

    def create_match_fees(self, fixture_id: int, selection: TeamSelection) -> list[LedgerEntry]:
        fixture = self.storage.get_fixture(fixture_id)
        if not fixture:
            raise NotFoundError(f"Fixture {fixture_id} not found")

        amount = self.fee_config.amount_for(FeeType.MATCH)
        members = selection.members()
        logger.info("Creating match fees for fixture %s: %d players selected", fixture_id, len(members))

        created = []
        try:
            for member_id, selection_type in members:
                created.append(self.issue_fee(
                    member_id,
                    FeeType.MATCH,
                    amount,
                    fixture["kick_off"],
                    FeeLinks(fixture_id=fixture_id, selection_type=selection_type),
                    f"Match fee vs {fixture['opponent']} ({selection_type.value})",
                ))
        except Exception:
            logger.error("Failed to create match fees for fixture %s", fixture_id)
            raise
        return created

    def update_match_fees(self, fixture_id: int, selection: TeamSelection) -> list[LedgerEntry]:
        """Drop the fixture's match fees and issue them again for the new selection."""
        removed = self.refunds.remove_match_fees(fixture_id)
        logger.info("Re-issuing match fees for fixture %s (%d paid fees refunded)", fixture_id, len(removed))
        return self.create_match_fees(fixture_id, selection)

    # Training fees

    def create_training_fee(self, member_id: int, event_id: str, due_date: datetime) -> LedgerEntry:
        amount = self.fee_config.amount_for(FeeType.TRAINING)
        event = self.storage.get_event(event_id)
        notes = f"Training session fee - {event['title']}" if event else "Training session fee"
        return self.issue_fee(member_id, FeeType.TRAINING, amount, due_date,
                              FeeLinks(event_id=event_id), notes)

    def training_fee_exists(self, member_id: int, event_id: str) -> bool:
        return self.find_existing_fee(member_id, FeeType.TRAINING, FeeLinks(event_id=event_id)) is not None

    # Social event fees

    def create_social_event_fee(self, member_id: int, event_id: str, cost: Decimal,
                                due_date: datetime) -> LedgerEntry:
        event = self.storage.get_event(event_id)
        notes = f"Social event fee - {event['title']}" if event else "Social event fee"
        return self.issue_fee(member_id, FeeType.SOCIAL_EVENT, cost, due_date,
                              FeeLinks(event_id=event_id), notes)

    def create_social_event_fees(self, event_id: str) -> list[LedgerEntry]:
        event = self.storage.get_event(event_id)
        if not event:
            raise NotFoundError(f"Event {event_id} not found")
        if not event["cost"]:
            logger.info("Event %s has no cost, skipping fee creation", event_id)
            return []
        if event["event_type"] != EventType.SOCIAL:
            logger.info("Event %s is not a social event, skipping fee creation", event_id)
            return []

        attending = [r for r in self.storage.rsvps_for_event(event_id) if r["status"] == RsvpStatus.YES]
        logger.info("Creating social event fees for event %s: %d members RSVP'd YES", event_id, len(attending))

        created = []
        for rsvp in attending:
            try:
                created.append(self.create_social_event_fee(
                    rsvp["member_id"], event_id, event["cost"], event["start_at"],
                ))
            except Exception:
                logger.exception("Failed to create fee for member %s and event %s", rsvp["member_id"], event_id)
        return created

    def process_social_event_window(self, now: Optional[datetime] = None) -> int:
        """Issue social fees for events starting within the window either side of now."""
        now = as_utc(now) if now else self.storage.now()
        window = timedelta(hours=self.storage.settings.social_window_hours)
        events = [
            e for e in self.storage.events.values()
            if e["event_type"] == EventType.SOCIAL
            and e["is_active"]
            and e["cost"]
            and now - window <= e["start_at"] <= now + window
        ]
        logger.info("Found %d social events within %s of %s", len(events), window, now.isoformat())

        for event in events:
            try:
                self.create_social_event_fees(event["id"])
            except Exception:
                logger.exception("Failed to create fees for event %s", event["id"])
        return len(events)

    # Card fees

    def create_card_fee(self, member_id: int, match_event_id: str, card_type: CardType,
                        fixture_id: Optional[int] = None) -> LedgerEntry:
        fee_type = CARD_FEE_TYPES[card_type]
        amount = self.fee_config.amount_for(fee_type)
        fixture = self.storage.get_fixture(fixture_id) if fixture_id is not None else None
        notes = f"{card_type.value} card fee" + (f" - {fixture['opponent']}" if fixture else "")
        return self.issue_fee(member_id, fee_type, amount, self.storage.now(),
                              FeeLinks(match_event_id=match_event_id, fixture_id=fixture_id), notes)

    # Yearly subscriptions

    def create_yearly_subscriptions(self, member_ids: list[int], season: str,
                                    amount: Optional[Decimal] = None) -> YearlySubscriptionResult:
        if not season or not member_ids:
            raise InvalidStateError("Season and member ids are required")

        if amount is None:
            amount = self.fee_config.amount_for(FeeType.YEARLY_SUBS,
                                                fallback=self.storage.settings.yearly_subs_fallback)
        amount = money(amount)

        links = FeeLinks(season=season)
        skipped = [m for m in member_ids if self.find_existing_fee(m, FeeType.YEARLY_SUBS, links)]
        to_create = [m for m in dict.fromkeys(member_ids) if m not in skipped]
        logger.info("Creating yearly subscriptions for %d members for season %s (%d already subscribed)",
                    len(to_create), season, len(skipped))

        created = [
            self.issue_fee(member_id, FeeType.YEARLY_SUBS, amount, self.storage.now(), links,
                           f"Yearly subscription fee - {season}")
            for member_id in to_create
        ]
        return YearlySubscriptionResult(season=season, amount=amount, created=created,
                                        skipped_member_ids=sorted(set(skipped)))

    def season_summary(self, season: str) -> SeasonSummary:
        subs = [
            e for e in self.storage.all_entries()
            if e["kind"] == EntryKind.FEE and e["fee_type"] == FeeType.YEARLY_SUBS and e["season"] == season
        ]
        counts = {status: 0 for status in EntryStatus}
        for sub in subs:
            counts[sub["status"]] += 1
        total = money(sum((s["final_amount"] for s in subs), ZERO))
        paid = money(sum((s["paid_amount"] for s in subs), ZERO))
        return SeasonSummary(
            season=season,
            total_subscriptions=len(subs),
            status_counts=counts,
            total_amount=total,
            paid_amount=paid,
            outstanding_amount=total - paid,
        )
