"""
Ratmas storage: repository contract, JSON persistence, backup fallback, rollback

Run: python -m pytest tests/test_ratmas_storage.py -v
"""

import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from cogs.ratmas_errors import ActiveEventExists, NotFound, StorageError
from cogs.ratmas_models import EventStatus, Pairing, utcnow
from cogs.ratmas_storage import (
    InMemoryRatmasRepository,
    JsonRatmasRepository,
    get_default_state,
    load_json,
    save_json,
    validate_state_structure,
)
from tests.ratmas_fakes import FlakyRepository, make_service, matched_event_with, open_event_with


class TestInMemoryRepository:
    def test_returns_copies(self):
        service = make_service()
        event = open_event_with(service, ["1"])

        fetched = service.repository.find_event_by_id(event.id)
        fetched.status = EventStatus.CANCELLED
        assert service.repository.find_event_by_id(event.id).status == EventStatus.OPEN

        participant = service.list_participants(event.id)[0]
        participant.display_name = "Mutated"
        assert service.list_participants(event.id)[0].display_name == "Rat 1"

    def test_one_active_event_per_guild(self):
        service = make_service()
        open_event_with(service, [])
        try:
            open_event_with(service, [])
            assert False, "Should have raised ActiveEventExists"
        except ActiveEventExists as e:
            assert "active event" in str(e)

    def test_active_event_guard_in_repository(self):
        repo = InMemoryRatmasRepository()
        service = make_service(repository=repo)
        event = open_event_with(service, [])
        duplicate = repo.find_event_by_id(event.id)
        duplicate.id = "other"
        try:
            repo.create_event(duplicate)
            assert False, "Should have raised ActiveEventExists"
        except ActiveEventExists:
            pass

    def test_new_event_after_terminal(self):
        service = make_service()
        first = open_event_with(service, [])
        service.cancel_event(first.id)

        second = open_event_with(service, [])
        assert service.get_active_event(second.guild_id).id == second.id

    def test_guilds_are_independent(self):
        service = make_service()
        a = open_event_with(service, [], guild_id="A")
        b = open_event_with(service, [], guild_id="B")
        assert service.get_active_event("A").id == a.id
        assert service.get_active_event("B").id == b.id

    def test_replace_pairings_swaps_whole_set(self):
        service = make_service()
        event = matched_event_with(service, ["1", "2", "3"])
        repo = service.repository
        old_ids = {p.id for p in repo.list_pairings_for_event(event.id)}

        participants = repo.list_participants(event.id)
        new = [
            Pairing(id=f"new{i}", event_id=event.id, santa_id=p.id,
                    recipient_id=participants[(i + 1) % 3].id)
            for i, p in enumerate(participants)
        ]
        repo.replace_pairings(event.id, new)

        ids = {p.id for p in repo.list_pairings_for_event(event.id)}
        assert ids == {"new0", "new1", "new2"}
        assert not ids & old_ids

    def test_replace_pairings_rejects_foreign_event(self):
        service = make_service()
        event = open_event_with(service, [])
        try:
            service.repository.replace_pairings(event.id, [
                Pairing(id="x", event_id="elsewhere", santa_id="a", recipient_id="b")
            ])
            assert False, "Should have raised ValueError"
        except ValueError:
            pass

    def test_mark_unknown_pairing(self):
        repo = InMemoryRatmasRepository()
        try:
            repo.mark_pairings_notified([("missing", utcnow())])
            assert False, "Should have raised NotFound"
        except NotFound:
            pass

    def test_purge_removes_everything(self):
        service = make_service()
        event = matched_event_with(service, ["1", "2", "3"])
        service.purge_event(event.id)

        repo = service.repository
        assert repo.find_event_by_id(event.id) is None
        assert repo.list_participants(event.id) == []
        assert repo.list_pairings_for_event(event.id) == []


class TestRollback:
    def test_failed_commit_restores_tables(self):
        repo = FlakyRepository()
        service = make_service(repository=repo)
        event = open_event_with(service, ["1", "2"])

        repo.fail_commits = 1
        try:
            service.add_participant(event.id, "3", "Rat 3")
            assert False, "Should have raised StorageError"
        except StorageError:
            pass

        assert [p.user_id for p in service.list_participants(event.id)] == ["1", "2"]

    def test_failed_match_write_leaves_event_unmatched(self):
        repo = FlakyRepository()
        service = make_service(repository=repo)
        event = open_event_with(service, ["1", "2", "3"])
        service.lock_event(event.id)

        repo.fail_commits = 2
        try:
            service.generate_pairings(event.id)
            assert False, "Should have raised StorageError"
        except StorageError:
            pass

        assert repo.list_pairings_for_event(event.id) == []
        assert service.get_event(event.id).status == EventStatus.LOCKED
        assert service.get_recipient_for_santa(event.id, "1") is None

        # The write that failed never happened, so a retry goes through cleanly
        repo.fail_commits = 0
        assert service.generate_pairings(event.id).pairings_created == 3

    def test_pairings_and_status_written_together(self, tmp_path):
        path = tmp_path / "ratmas_state.json"
        repo = JsonRatmasRepository(path)
        service = make_service(repository=repo)
        event = open_event_with(service, ["1", "2", "3"])
        service.lock_event(event.id)
        commits = []
        original = repo._commit

        def counting_commit():
            commits.append(1)
            original()

        repo._commit = counting_commit
        service.generate_pairings(event.id)

        assert len(commits) == 1
        on_disk = json.loads(path.read_text(encoding="utf-8"))
        assert on_disk["events"][0]["status"] == "matched"
        assert len(on_disk["pairings"]) == 3


class TestJsonHelpers:
    def test_save_and_load(self, tmp_path):
        path = tmp_path / "state.json"
        save_json(path, {"a": 1})
        assert load_json(path) == {"a": 1}
        assert not path.with_suffix(".tmp").exists()

    def test_corrupt_file_gives_default(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json", encoding="utf-8")
        assert load_json(path, {"x": 0}) == {"x": 0}

    def test_validate_structure_repairs(self):
        state = validate_state_structure({"events": "nope", "participants": []})
        assert state["events"] == []
        assert state["pairings"] == []
        assert validate_state_structure(["bad"]) == get_default_state()


class TestJsonRepository:
    def test_state_survives_restart(self, tmp_path):
        path = tmp_path / "ratmas_state.json"
        service = make_service(repository=JsonRatmasRepository(path))
        event = matched_event_with(service, ["1", "2", "3", "4"])
        pairs = {p.santa_id: p.recipient_id for p in service.repository.list_pairings_for_event(event.id)}

        reloaded = make_service(repository=JsonRatmasRepository(path))
        again = reloaded.get_active_event(event.guild_id)

        assert again.id == event.id
        assert again.status == EventStatus.MATCHED
        assert again.config == event.config
        assert [p.user_id for p in reloaded.list_participants(event.id)] == ["1", "2", "3", "4"]
        assert {p.santa_id: p.recipient_id for p in reloaded.repository.list_pairings_for_event(event.id)} == pairs

    def test_backup_fallback(self, tmp_path):
        path = tmp_path / "ratmas_state.json"
        repo = JsonRatmasRepository(path)
        service = make_service(repository=repo)
        event = open_event_with(service, ["1"])
        assert repo.backup()

        path.write_text("garbage", encoding="utf-8")

        restored = JsonRatmasRepository(path)
        assert restored.find_event_by_id(event.id) is not None

    def test_missing_files_give_clean_state(self, tmp_path):
        repo = JsonRatmasRepository(tmp_path / "nested" / "ratmas_state.json")
        assert repo.to_state() == get_default_state()

    def test_malformed_records_dropped(self, tmp_path):
        path = tmp_path / "ratmas_state.json"
        service = make_service(repository=JsonRatmasRepository(path))
        event = open_event_with(service, ["1", "2"])

        state = json.loads(path.read_text(encoding="utf-8"))
        del state["participants"][0]["user_id"]
        path.write_text(json.dumps(state), encoding="utf-8")

        repo = JsonRatmasRepository(path)
        assert [p.user_id for p in repo.list_participants(event.id)] == ["2"]

    def test_failed_save_keeps_memory_in_sync(self, tmp_path):
        path = tmp_path / "ratmas_state.json"
        repo = JsonRatmasRepository(path)
        service = make_service(repository=repo)
        event = open_event_with(service, ["1"])

        # A directory where the temp file should go makes the write fail
        path.with_suffix(".tmp").mkdir()
        try:
            service.add_participant(event.id, "2", "Rat 2")
            assert False, "Should have raised StorageError"
        except StorageError:
            pass

        assert [p.user_id for p in repo.list_participants(event.id)] == ["1"]
        on_disk = json.loads(path.read_text(encoding="utf-8"))
        assert len(on_disk["participants"]) == 1
