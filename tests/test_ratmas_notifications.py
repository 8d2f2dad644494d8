"""
Ratmas notification orchestrator: idempotence, partial failure and retry

Run: python -m pytest tests/test_ratmas_notifications.py -v
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from cogs.ratmas_errors import StatusConflict
from cogs.ratmas_messages import NO_WISHLIST
from cogs.ratmas_models import EventStatus
from tests.ratmas_fakes import FakeGateway, make_service, matched_event_with, open_event_with

USERS = ["1", "2", "3", "4", "5"]


class TestNotifyPairings:
    def test_all_delivered_advances_to_notified(self):
        gateway = FakeGateway()
        service = make_service(gateway=gateway)
        event = matched_event_with(service, USERS)

        report = asyncio.run(service.run_notifications(event.id))

        assert report.sent == 5
        assert report.failed == []
        assert report.outstanding == 0
        assert report.completed
        assert service.get_event(event.id).status == EventStatus.NOTIFIED
        assert sorted(uid for uid, _ in gateway.dms) == USERS
        assert all(p.notified_at for p in service.repository.list_pairings_for_event(event.id))

    def test_message_names_the_recipient(self):
        gateway = FakeGateway()
        service = make_service(gateway=gateway)
        event = matched_event_with(service, USERS)

        asyncio.run(service.notify_pairings(event.id))

        for user_id in USERS:
            recipient = service.get_recipient_for_santa(event.id, user_id)
            (text,) = gateway.dms_to(user_id)
            assert f"You are the Secret Santa for: **{recipient.display_name}**" in text
            assert NO_WISHLIST in text
            assert "America/New_York" in text

    def test_second_run_sends_nothing(self):
        gateway = FakeGateway(unreachable={"3"})
        service = make_service(gateway=gateway)
        event = matched_event_with(service, USERS)

        first = asyncio.run(service.run_notifications(event.id))
        assert first.sent == 4

        second = asyncio.run(service.run_notifications(event.id))
        assert second.sent == 0
        assert len(gateway.dms) == 4, "already-notified Santas must not be DM'd again"

    def test_one_failure_in_five_keeps_matched(self):
        gateway = FakeGateway(unreachable={"4"})
        service = make_service(gateway=gateway)
        event = matched_event_with(service, USERS)

        report = asyncio.run(service.run_notifications(event.id))

        assert report.sent == 4
        assert [f.user_id for f in report.failed] == ["4"]
        assert report.outstanding == 1
        assert not report.completed
        assert service.get_event(event.id).status == EventStatus.MATCHED

        unmarked = [p for p in service.repository.list_pairings_for_event(event.id) if p.notified_at is None]
        santa = service.get_participant(event.id, "4")
        assert [p.santa_id for p in unmarked] == [santa.id]
        assert service.get_notification_progress(event.id) == (4, 5)

    def test_retry_completes_remainder(self):
        gateway = FakeGateway(unreachable={"4"})
        service = make_service(gateway=gateway)
        event = matched_event_with(service, USERS)
        asyncio.run(service.run_notifications(event.id))

        gateway.unreachable.clear()
        report = asyncio.run(service.run_notifications(event.id))

        assert report.sent == 1
        assert report.completed
        assert gateway.dms_to("4")
        assert service.get_event(event.id).status == EventStatus.NOTIFIED

    def test_raising_gateway_is_recorded(self):
        gateway = FakeGateway(raising={"2"})
        service = make_service(gateway=gateway)
        event = matched_event_with(service, USERS)

        report = asyncio.run(service.run_notifications(event.id))

        assert report.sent == 4
        assert report.failed[0].user_id == "2"
        assert "gateway exploded" in report.failed[0].reason
        assert service.get_event(event.id).status == EventStatus.MATCHED

    def test_notified_at_not_overwritten(self):
        gateway = FakeGateway(unreachable={"5"})
        service = make_service(gateway=gateway)
        event = matched_event_with(service, USERS)
        asyncio.run(service.run_notifications(event.id))
        before = {p.id: p.notified_at for p in service.repository.list_pairings_for_event(event.id)}

        gateway.unreachable.clear()
        asyncio.run(service.run_notifications(event.id))
        after = {p.id: p.notified_at for p in service.repository.list_pairings_for_event(event.id)}

        for pairing_id, stamp in before.items():
            if stamp is not None:
                assert after[pairing_id] == stamp

    def test_missing_participant_skips_its_pairings(self):
        gateway = FakeGateway()
        service = make_service(gateway=gateway)
        event = matched_event_with(service, ["A", "B", "C", "D"])
        gone = service.get_participant(event.id, "A")

        # Same effect as a malformed record dropped on load
        del service.repository._participants[gone.id]

        pairings = service.repository.list_pairings_for_event(event.id)
        dangling = {p.id for p in pairings if gone.id in (p.santa_id, p.recipient_id)}
        reachable = [p for p in pairings if p.id not in dangling]
        participants = {p.id: p for p in service.list_participants(event.id)}

        report = asyncio.run(service.run_notifications(event.id))

        assert len(dangling) == 2
        assert set(report.skipped) == dangling
        assert report.sent == len(reachable) == 2
        assert sorted(uid for uid, _ in gateway.dms) == sorted(participants[p.santa_id].user_id for p in reachable)
        assert not gateway.dms_to("A")
        assert report.outstanding == 2
        assert not report.completed
        assert service.get_event(event.id).status == EventStatus.MATCHED

    def test_only_legal_while_matched(self):
        service = make_service()
        event = open_event_with(service, USERS)
        try:
            asyncio.run(service.notify_pairings(event.id))
            assert False, "Should have raised StatusConflict"
        except StatusConflict as e:
            assert "notify pairings" in str(e)

    def test_notified_event_rejects_rerun(self):
        service = make_service()
        event = matched_event_with(service, USERS)
        asyncio.run(service.notify_pairings(event.id))
        try:
            asyncio.run(service.notify_pairings(event.id))
            assert False, "Should have raised StatusConflict"
        except StatusConflict:
            pass
