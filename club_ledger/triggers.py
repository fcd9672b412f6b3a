import logging
from typing import Optional

from .errors import InvalidStateError
from .issuance import FeeIssuanceEngine
from .minutes import MinutesDiscountCalculator
from .models import (
    AttendanceMark,
    ClubEvent,
    Fixture,
    LedgerEntry,
    MatchEventType,
    MatchResult,
    Rsvp,
    TeamSelection,
    YearlySubscriptionRequest,
    YearlySubscriptionResult,
)
from .refunds import RefundHandler
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


def _is_card(event: dict) -> bool:
    return event["event_type"] == MatchEventType.CARD and event.get("card_type") is not None


class TriggerHandlers:
    """
    Entry points the rest of the club application calls when something
    fee-relevant happens.

    The originating action (saving attendance, a team sheet, a result) has
    already succeeded by the time these run, so fee failures are logged and
    swallowed rather than surfaced to the caller.
    """

    def __init__(self, storage: InMemoryStorage, issuance: FeeIssuanceEngine,
                 minutes: MinutesDiscountCalculator, refunds: RefundHandler):
        self.storage = storage
        self.issuance = issuance
        self.minutes = minutes
        self.refunds = refunds

    # Events and attendance

    def on_event_saved(self, event: ClubEvent):
        self.storage.upsert_event(event.model_dump())

    def on_attendance_marked(self, mark: AttendanceMark) -> Optional[LedgerEntry]:
        try:
            return self.issuance.create_training_fee(mark.member_id, mark.event_id, mark.due_date)
        except Exception:
            logger.exception("Failed to create training fee for member %s and event %s",
                             mark.member_id, mark.event_id)
            return None

    def on_rsvp(self, rsvp: Rsvp):
        self.storage.set_rsvp(rsvp.model_dump())

    def on_event_cancelled(self, event_id: str) -> list[LedgerEntry]:
        event = self.storage.get_event(event_id)
        if event:
            self.storage.upsert_event({**event, "is_active": False})
        try:
            return self.refunds.cancel_event(event_id)
        except Exception:
            logger.exception("Failed to reverse fees for cancelled event %s", event_id)
            return []

    # Fixtures

    def on_team_selected(self, fixture: Fixture, selection: TeamSelection) -> list[LedgerEntry]:
        self.storage.upsert_fixture(fixture.model_dump())
        try:
            return self.issuance.create_match_fees(fixture.id, selection)
        except Exception:
            logger.exception("Failed to create match fees for fixture %s", fixture.id)
            return []

    def on_team_selection_changed(self, fixture: Fixture, selection: TeamSelection) -> list[LedgerEntry]:
        self.storage.upsert_fixture(fixture.model_dump())
        try:
            return self.issuance.update_match_fees(fixture.id, selection)
        except Exception:
            logger.exception("Failed to update match fees for fixture %s", fixture.id)
            return []

    def on_match_result_saved(self, result: MatchResult) -> list[LedgerEntry]:
        """
        Store the fixture's match events, then bring card fees, match fees and
        minutes discounts in line with them. Returns the fees touched.
        """
        fixture = result.fixture
        stray = [e.id for e in result.events if e.fixture_id != fixture.id]
        if stray:
            raise InvalidStateError(f"Match events {stray} do not belong to fixture {fixture.id}")
        self.storage.upsert_fixture(fixture.model_dump())
        new_events = {e.id: e.model_dump() for e in result.events}
        previous = self.storage.replace_match_events(fixture.id, list(new_events.values()))

        for old in previous:
            if not _is_card(old):
                continue
            current = new_events.get(old["id"])
            unchanged = (
                current is not None
                and _is_card(current)
                and current["card_type"] == old["card_type"]
                and current["member_id"] == old["member_id"]
            )
            if not unchanged:
                try:
                    self.refunds.delete_card_fee(old["id"])
                except Exception:
                    logger.exception("Failed to remove card fee for match event %s", old["id"])

        touched = []
        for event in result.events:
            if event.event_type != MatchEventType.CARD or event.card_type is None:
                continue
            try:
                touched.append(self.issuance.create_card_fee(event.member_id, event.id, event.card_type, fixture.id))
            except Exception:
                logger.exception("Failed to create card fee for match event %s", event.id)

        if result.selection is not None:
            try:
                touched.extend(self.issuance.create_match_fees(fixture.id, result.selection))
            except Exception:
                logger.exception("Failed to create match fees for fixture %s", fixture.id)

        try:
            touched.extend(self.minutes.apply_for_fixture(fixture.id, result.events))
        except Exception:
            logger.exception("Failed to apply minutes discounts for fixture %s", fixture.id)

        return touched

    def on_match_event_deleted(self, match_event_id: str) -> Optional[LedgerEntry]:
        event = self.storage.delete_match_event(match_event_id)
        if event is None or not _is_card(event):
            return None
        try:
            return self.refunds.delete_card_fee(match_event_id)
        except Exception:
            logger.exception("Failed to remove card fee for match event %s", match_event_id)
            return None

    # Subscriptions

    def on_subscription_request(self, request: YearlySubscriptionRequest) -> YearlySubscriptionResult:
        # an explicit admin action, so errors reach the caller
        return self.issuance.create_yearly_subscriptions(request.member_ids, request.season, request.amount)
