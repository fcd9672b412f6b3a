"""
Unit Tests for Trigger Handlers
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from club_ledger.errors import InvalidStateError
from club_ledger.models import (
    AttendanceMark,
    CardType,
    ClubEvent,
    EntryKind,
    EventType,
    FeeType,
    Fixture,
    MatchEvent,
    MatchEventType,
    MatchResult,
    Rsvp,
    RsvpStatus,
    SelectionType,
    TeamSelection,
    YearlySubscriptionRequest,
)
from club_ledger.tests.conftest import NOW


FIXTURE = Fixture(id=1, opponent="Rovers", kick_off=NOW)


def _fees(service, fee_type, member_id=None):
    return [
        e for e in service.storage.all_entries()
        if e["kind"] == EntryKind.FEE and e["fee_type"] == fee_type
        and (member_id is None or e["member_id"] == member_id)
    ]


def _card(event_id, member_id, card_type=CardType.YELLOW, minute=30):
    return MatchEvent(id=event_id, fixture_id=FIXTURE.id, event_type=MatchEventType.CARD,
                      minute=minute, member_id=member_id, card_type=card_type)


class TestAttendance:
    """Tests for attendance triggers."""

    def test_attendance_charges_once(self, service):
        """Re-marking attendance does not double charge."""
        mark = AttendanceMark(member_id=7, event_id="t1", due_date=NOW)

        service.triggers.on_attendance_marked(mark)
        service.triggers.on_attendance_marked(mark)

        assert len(_fees(service, FeeType.TRAINING)) == 1

    def test_failure_is_swallowed(self, service):
        """A fee failure never breaks the attendance save."""
        service.fee_config.deactivate(FeeType.TRAINING)

        result = service.triggers.on_attendance_marked(AttendanceMark(member_id=7, event_id="t1", due_date=NOW))

        assert result is None
        assert _fees(service, FeeType.TRAINING) == []


class TestSelections:
    """Tests for team selection triggers."""

    def test_selection_charges_each_player_once(self, service):
        """A player listed twice is charged once as a starter."""
        fees = service.triggers.on_team_selected(FIXTURE, TeamSelection(starting=[7, 8], substitutes=[8, 20]))

        assert sorted(f.member_id for f in fees) == [7, 8, 20]
        by_member = {f.member_id: f for f in fees}
        assert by_member[8].selection_type == SelectionType.STARTING
        assert by_member[20].selection_type == SelectionType.SUBSTITUTE
        assert by_member[7].due_date == NOW
        assert by_member[7].final_amount == Decimal("12.00")

    def test_selection_change_reissues(self, service):
        """Dropped players lose their fee, new players gain one."""
        service.triggers.on_team_selected(FIXTURE, TeamSelection(starting=[7, 8]))

        service.triggers.on_team_selection_changed(FIXTURE, TeamSelection(starting=[7, 9]))

        assert sorted(e["member_id"] for e in _fees(service, FeeType.MATCH)) == [7, 9]
        assert service.get_balance(8).current_balance == Decimal("0.00")

    def test_selection_change_keeps_paid_money(self, service):
        """A dropped player who had paid keeps it as credit."""
        service.triggers.on_team_selected(FIXTURE, TeamSelection(starting=[8]))
        service.record_payment(8, Decimal("12.00"))

        service.triggers.on_team_selection_changed(FIXTURE, TeamSelection(starting=[9]))

        assert service.allocation.available_credit(8) == Decimal("12.00")
        assert service.get_balance(8).current_balance == Decimal("12.00")


class TestMatchResults:
    """Tests for saving match results."""

    def test_result_charges_cards_and_discounts_minutes(self, service):
        """Cards are fined and short appearances halved."""
        substitution = MatchEvent(id="sub-1", fixture_id=FIXTURE.id, event_type=MatchEventType.SUBSTITUTION,
                                  minute=70, member_id=7, substituted_for_id=20)
        result = MatchResult(
            fixture=FIXTURE,
            events=[_card("card-1", 8), _card("card-2", 9, CardType.RED), substitution],
            selection=TeamSelection(starting=[7, 8, 9], substitutes=[20]),
        )

        service.triggers.on_match_result_saved(result)

        assert _fees(service, FeeType.YELLOW_CARD, 8)[0]["final_amount"] == Decimal("5.00")
        assert _fees(service, FeeType.RED_CARD, 9)[0]["final_amount"] == Decimal("25.00")
        assert _fees(service, FeeType.MATCH, 7)[0]["final_amount"] == Decimal("12.00")
        assert _fees(service, FeeType.MATCH, 20)[0]["final_amount"] == Decimal("6.00")

    def test_resave_removes_dropped_cards(self, service):
        """A card taken off the result loses its fee."""
        service.triggers.on_match_result_saved(MatchResult(fixture=FIXTURE, events=[_card("card-1", 8)]))

        service.triggers.on_match_result_saved(MatchResult(fixture=FIXTURE, events=[]))

        assert _fees(service, FeeType.YELLOW_CARD) == []
        assert service.storage.match_events_for_fixture(FIXTURE.id) == []

    def test_resave_with_changed_card_type(self, service):
        """A yellow upgraded to red is refined."""
        service.triggers.on_match_result_saved(MatchResult(fixture=FIXTURE, events=[_card("card-1", 8)]))

        service.triggers.on_match_result_saved(
            MatchResult(fixture=FIXTURE, events=[_card("card-1", 8, CardType.RED)]),
        )

        assert _fees(service, FeeType.YELLOW_CARD) == []
        assert len(_fees(service, FeeType.RED_CARD, 8)) == 1

    def test_resave_is_idempotent(self, service):
        """Saving the same result twice charges once."""
        result = MatchResult(fixture=FIXTURE, events=[_card("card-1", 8)],
                             selection=TeamSelection(starting=[8]))

        service.triggers.on_match_result_saved(result)
        service.triggers.on_match_result_saved(result)

        assert len(_fees(service, FeeType.YELLOW_CARD)) == 1
        assert len(_fees(service, FeeType.MATCH)) == 1
        assert service.allocation.total_due(8) == Decimal("17.00")

    def test_event_for_other_fixture_rejected(self, service):
        """Events must belong to the fixture being saved."""
        stray = MatchEvent(id="x", fixture_id=2, event_type=MatchEventType.GOAL, minute=5, member_id=7)

        with pytest.raises(InvalidStateError):
            service.triggers.on_match_result_saved(MatchResult(fixture=FIXTURE, events=[stray]))

    def test_deleting_card_event_removes_fee(self, service):
        """Deleting a booking reverses its fine."""
        service.triggers.on_match_result_saved(MatchResult(fixture=FIXTURE, events=[_card("card-1", 8)]))

        service.triggers.on_match_event_deleted("card-1")

        assert _fees(service, FeeType.YELLOW_CARD) == []

    def test_deleting_unknown_event(self, service):
        """Unknown match events are ignored."""
        assert service.triggers.on_match_event_deleted("nope") is None


class TestEvents:
    """Tests for club event triggers."""

    def test_cancellation_deactivates_and_refunds(self, service):
        """Cancelling an event reverses its fees and marks it inactive."""
        service.triggers.on_event_saved(ClubEvent(
            id="social-1", title="Race night", event_type=EventType.SOCIAL,
            start_at=NOW + timedelta(hours=3), cost=Decimal("8.00"),
        ))
        service.triggers.on_rsvp(Rsvp(event_id="social-1", member_id=7, status=RsvpStatus.YES))
        service.issuance.create_social_event_fees("social-1")
        service.record_payment(7, Decimal("8.00"))

        refunds = service.triggers.on_event_cancelled("social-1")

        assert len(refunds) == 1
        assert service.storage.get_event("social-1")["is_active"] is False
        assert service.get_balance(7).current_balance == Decimal("8.00")

    def test_non_social_event_has_no_social_fees(self, service):
        """Only social events are charged per RSVP."""
        service.triggers.on_event_saved(ClubEvent(
            id="train-1", title="Tuesday training", event_type=EventType.TRAINING,
            start_at=NOW, cost=Decimal("6.00"),
        ))
        service.triggers.on_rsvp(Rsvp(event_id="train-1", member_id=7, status=RsvpStatus.YES))

        assert service.issuance.create_social_event_fees("train-1") == []


class TestSubscriptions:
    """Tests for subscription requests."""

    def test_subscription_request(self, service):
        """A request charges every listed member."""
        result = service.triggers.on_subscription_request(
            YearlySubscriptionRequest(member_ids=[7, 8], season="2025/26"),
        )

        assert len(result.created) == 2
        assert all(e.season == "2025/26" for e in result.created)
