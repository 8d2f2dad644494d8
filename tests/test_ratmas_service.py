"""
Ratmas Service Test Suite

Event creation, pairing generation gating, timing, and the two end-to-end
lifecycle runs (happy path with 4 rats, rejected match with 2).

Run: python -m pytest tests/test_ratmas_service.py -v
"""

import asyncio
import datetime as dt
import sys
from dataclasses import replace
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from cogs.ratmas_errors import (
    ActiveEventExists,
    DerangementFailed,
    InsufficientParticipants,
    InvalidEventConfig,
    NotFound,
    StatusConflict,
)
from cogs.ratmas_models import EventStatus
from tests.ratmas_fakes import GUILD_ID, FakeGateway, event_options, make_service, open_event_with

UTC = dt.timezone.utc


class TestCreateEvent:
    def test_opens_event(self):
        service = make_service()
        event = service.create_event(event_options())

        assert event.status == EventStatus.OPEN
        assert event.guild_id == GUILD_ID
        assert event.config.timezone == "America/New_York"
        assert event.config.event_start_date == dt.datetime(2025, 12, 1, 5, tzinfo=UTC)
        assert service.get_active_event(GUILD_ID).id == event.id

    def test_second_active_event_rejected(self):
        service = make_service()
        first = service.create_event(event_options())
        service.lock_event(first.id)
        try:
            service.create_event(event_options())
            assert False, "Should have raised ActiveEventExists"
        except ActiveEventExists as e:
            assert e.status == EventStatus.LOCKED

    def test_date_order_enforced(self):
        service = make_service()
        options = event_options()
        bad = [
            replace(options, purchase_deadline=options.event_start_date),
            replace(options, reveal_date=options.purchase_deadline - dt.timedelta(days=1)),
            replace(options, event_end_date=options.reveal_date - dt.timedelta(days=1)),
        ]
        for opts in bad:
            try:
                service.create_event(opts)
                assert False, "Should have raised InvalidEventConfig"
            except InvalidEventConfig:
                pass
        assert service.get_active_event(GUILD_ID) is None

    def test_bad_timezone(self):
        service = make_service()
        try:
            service.create_event(replace(event_options(), timezone="Atlantis/Capital"))
            assert False, "Should have raised InvalidEventConfig"
        except InvalidEventConfig:
            pass

    def test_unknown_event(self):
        service = make_service()
        try:
            service.get_event("nope")
            assert False, "Should have raised NotFound"
        except NotFound as e:
            assert e.kind == "Event"


class TestGeneratePairings:
    def test_only_legal_when_locked(self):
        # Status changes made directly, so no pairings exist for any of them
        paths = {
            EventStatus.OPEN: [],
            EventStatus.MATCHED: [EventStatus.LOCKED, EventStatus.MATCHED],
            EventStatus.NOTIFIED: [EventStatus.LOCKED, EventStatus.MATCHED, EventStatus.NOTIFIED],
            EventStatus.COMPLETED: [EventStatus.LOCKED, EventStatus.MATCHED, EventStatus.NOTIFIED,
                                    EventStatus.COMPLETED],
            EventStatus.CANCELLED: [EventStatus.CANCELLED],
        }
        for status, steps in paths.items():
            service = make_service()
            event = open_event_with(service, ["1", "2", "3"])
            for step in steps:
                service.update_event_status(event.id, step)

            result = service.generate_pairings(event.id)

            assert not result.success
            assert isinstance(result.failure, StatusConflict)
            assert result.error == f"Cannot generate pairings for event with status: {status.value}"
            assert service.repository.list_pairings_for_event(event.id) == []
            assert service.get_event(event.id).status == status

    def test_matched_event_keeps_pairings(self):
        service = make_service()
        event = open_event_with(service, ["1", "2", "3"])
        service.lock_event(event.id)
        service.generate_pairings(event.id)
        before = service.repository.list_pairings_for_event(event.id)

        result = service.generate_pairings(event.id)

        assert not result.success
        assert service.repository.list_pairings_for_event(event.id) == before

    def test_derangement_failure_is_a_result(self):
        service = make_service()
        service.max_shuffle_attempts = 1

        class Stuck:
            def randrange(self, stop):
                return stop - 1

        service.rng = Stuck()
        event = open_event_with(service, ["1", "2", "3"])
        service.lock_event(event.id)

        result = service.generate_pairings(event.id)

        assert not result.success
        assert isinstance(result.failure, DerangementFailed)
        assert service.get_event(event.id).status == EventStatus.LOCKED

    def test_unknown_event_is_a_result(self):
        result = make_service().generate_pairings("missing")
        assert not result.success
        assert isinstance(result.failure, NotFound)

    def test_lookups(self):
        service = make_service()
        event = open_event_with(service, ["1", "2", "3"])
        service.lock_event(event.id)
        service.generate_pairings(event.id)

        for user_id in ("1", "2", "3"):
            recipient = service.get_recipient_for_santa(event.id, user_id)
            assert recipient.user_id != user_id
            assert service.get_santa_for_recipient(event.id, recipient.user_id).user_id == user_id
        assert service.get_pairing_for_santa(event.id, "404") is None


class TestEventTiming:
    def test_before_deadline(self):
        service = make_service()
        event = service.create_event(event_options(timezone="UTC"))
        now = dt.datetime(2025, 12, 10, 12, tzinfo=UTC)

        timing = service.get_event_timing(event.id, now=now)

        assert timing.is_active
        assert not timing.is_purchase_deadline_passed
        assert timing.days_until_purchase_deadline == 6
        assert timing.days_until_reveal == 14
        assert timing.days_until_end == 22
        assert timing.current_time_in_timezone.utcoffset() == dt.timedelta(0)

    def test_after_deadline(self):
        service = make_service()
        event = service.create_event(event_options(timezone="UTC"))
        now = dt.datetime(2025, 12, 20, tzinfo=UTC)

        timing = service.get_event_timing(event.id, now=now)

        assert timing.is_purchase_deadline_passed
        assert timing.days_until_purchase_deadline == -3  # ceil of -3.99 days
        assert timing.days_until_reveal == 4

    def test_not_active_before_start(self):
        service = make_service()
        event = service.create_event(event_options(timezone="UTC"))
        timing = service.get_event_timing(event.id, now=dt.datetime(2025, 11, 1, tzinfo=UTC))
        assert not timing.is_active

    def test_local_time(self):
        service = make_service()
        event = service.create_event(event_options())
        timing = service.get_event_timing(event.id, now=dt.datetime(2025, 12, 10, 12, tzinfo=UTC))
        assert timing.current_time_in_timezone.hour == 7


class TestEndToEnd:
    def test_four_rats_full_lifecycle(self):
        gateway = FakeGateway()
        service = make_service(gateway=gateway)
        event = open_event_with(service, ["A", "B", "C", "D"])

        service.lock_event(event.id)
        result = service.generate_pairings(event.id)

        assert result.success
        assert result.pairings_created == 4
        pairings = service.repository.list_pairings_for_event(event.id)
        assert all(p.santa_id != p.recipient_id for p in pairings)
        assert service.get_event(event.id).status == EventStatus.MATCHED

        sent = asyncio.run(service.notify_pairings(event.id))

        assert sent == 4
        assert all(p.notified_at for p in service.repository.list_pairings_for_event(event.id))
        assert service.get_event(event.id).status == EventStatus.NOTIFIED

        service.complete_event(event.id)
        assert service.get_active_event(GUILD_ID) is None

    def test_two_rats_cannot_match(self):
        service = make_service()
        event = open_event_with(service, ["A", "B"])

        service.lock_event(event.id)
        result = service.generate_pairings(event.id)

        assert not result.success
        assert isinstance(result.failure, InsufficientParticipants)
        assert result.error == "Need at least 3 participants, found 2"
        assert service.repository.list_pairings_for_event(event.id) == []
        assert service.get_event(event.id).status == EventStatus.LOCKED

    def test_reopen_join_then_match(self):
        service = make_service()
        event = open_event_with(service, ["A", "B"])
        service.lock_event(event.id)
        assert not service.generate_pairings(event.id).success

        service.reopen_event(event.id)
        service.add_participant(event.id, "C", "Rat C")
        service.lock_event(event.id)

        assert service.generate_pairings(event.id).pairings_created == 3

    def test_cancel_then_new_event(self):
        service = make_service()
        event = open_event_with(service, ["A", "B", "C"])
        service.cancel_event(event.id)

        assert service.get_active_event(GUILD_ID) is None
        fresh = service.create_event(event_options())
        assert fresh.id != event.id
        assert service.list_participants(fresh.id) == []
