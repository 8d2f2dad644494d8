"""
Ratmas Storage Module - Repository contract and stores

RESPONSIBILITIES:
- RatmasRepository: the storage contract the engine depends on
- InMemoryRatmasRepository: dict-backed store (tests, dry runs)
- JsonRatmasRepository: the in-memory store persisted to one JSON file
  (atomic writes, backup fallback on load, rollback on failed save)

INVARIANTS ENFORCED HERE:
- At most one non-terminal event per guild
- (event, user) unique among participants
- replace_pairings() swaps the whole set for an event in one step
"""

from __future__ import annotations

import copy
import datetime as dt
import json
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .ratmas_errors import ActiveEventExists, AlreadyParticipant, NotFound, StorageError
from .ratmas_models import Event, EventStatus, Pairing, Participant, utcnow
from .ratmas_state import ACTIVE_STATUSES

logger = logging.getLogger("bot.ratmas.storage")

SCHEMA_VERSION = 1

_UNSET = object()


class RatmasRepository(ABC):
    """
    Storage contract for the Ratmas engine.

    Records go in and come out by value: mutating a returned object never
    changes what is stored. Multi-row writes (replace_pairings,
    replace_pairings_and_set_status, mark_pairings_notified, purge_event)
    are all-or-nothing.
    """

    # Events
    @abstractmethod
    def create_event(self, event: Event) -> Event:
        pass

    @abstractmethod
    def find_event_by_id(self, event_id: str) -> Optional[Event]:
        pass

    @abstractmethod
    def find_active_event_by_guild(self, guild_id: str) -> Optional[Event]:
        pass

    @abstractmethod
    def update_event_status(self, event_id: str, status: EventStatus) -> Event:
        pass

    @abstractmethod
    def purge_event(self, event_id: str) -> None:
        """Delete an event with its participants and pairings"""
        pass

    # Participants
    @abstractmethod
    def create_participant(self, participant: Participant) -> Participant:
        pass

    @abstractmethod
    def delete_participant(self, participant_id: str) -> None:
        pass

    @abstractmethod
    def update_participant(self, participant_id: str, display_name: Any = _UNSET, wishlist_url: Any = _UNSET) -> Participant:
        pass

    @abstractmethod
    def find_participant_by_id(self, participant_id: str) -> Optional[Participant]:
        pass

    @abstractmethod
    def find_participant_by_event_and_user(self, event_id: str, user_id: str) -> Optional[Participant]:
        pass

    @abstractmethod
    def list_participants(self, event_id: str) -> List[Participant]:
        """Participants of an event, oldest join first"""
        pass

    # Pairings
    @abstractmethod
    def replace_pairings(self, event_id: str, pairings: Sequence[Pairing]) -> None:
        pass

    @abstractmethod
    def replace_pairings_and_set_status(self, event_id: str, pairings: Sequence[Pairing], status: EventStatus) -> Event:
        """Swap the pairing set and move the event to status in one write"""
        pass

    @abstractmethod
    def list_pairings_for_event(self, event_id: str) -> List[Pairing]:
        pass

    @abstractmethod
    def find_pairing_for_santa(self, event_id: str, santa_participant_id: str) -> Optional[Pairing]:
        pass

    @abstractmethod
    def find_pairing_for_recipient(self, event_id: str, recipient_participant_id: str) -> Optional[Pairing]:
        pass

    @abstractmethod
    def mark_pairings_notified(self, updates: Sequence[Tuple[str, dt.datetime]]) -> None:
        """Batch of (pairing_id, notified_at)"""
        pass


class InMemoryRatmasRepository(RatmasRepository):
    """Dict-backed store. Subclasses persist by overriding _commit()."""

    def __init__(self):
        self._events: Dict[str, Event] = {}
        self._participants: Dict[str, Participant] = {}
        self._pairings: Dict[str, Pairing] = {}

    @contextmanager
    def _write(self):
        # Records are only ever replaced, never mutated in place, so shallow
        # copies of the three tables are a complete snapshot.
        snapshot = (dict(self._events), dict(self._participants), dict(self._pairings))
        try:
            yield
            self._commit()
        except Exception:
            self._events, self._participants, self._pairings = snapshot
            raise

    def _commit(self) -> None:
        pass

    # ============ EVENTS ============

    def create_event(self, event: Event) -> Event:
        existing = self.find_active_event_by_guild(event.guild_id)
        if existing and event.status in ACTIVE_STATUSES:
            raise ActiveEventExists(event.guild_id, existing.status)

        with self._write():
            self._events[event.id] = copy.deepcopy(event)
        return copy.deepcopy(event)

    def find_event_by_id(self, event_id: str) -> Optional[Event]:
        event = self._events.get(event_id)
        return copy.deepcopy(event) if event else None

    def find_active_event_by_guild(self, guild_id: str) -> Optional[Event]:
        active = [
            e for e in self._events.values()
            if e.guild_id == str(guild_id) and e.status in ACTIVE_STATUSES
        ]
        if not active:
            return None
        return copy.deepcopy(max(active, key=lambda e: e.created_at))

    def update_event_status(self, event_id: str, status: EventStatus) -> Event:
        event = self._events.get(event_id)
        if not event:
            raise NotFound("Event", event_id)

        updated = replace(event, status=EventStatus(status), updated_at=utcnow())
        with self._write():
            self._events[event_id] = updated
        return copy.deepcopy(updated)

    def purge_event(self, event_id: str) -> None:
        if event_id not in self._events:
            raise NotFound("Event", event_id)

        with self._write():
            del self._events[event_id]
            self._participants = {k: p for k, p in self._participants.items() if p.event_id != event_id}
            self._pairings = {k: p for k, p in self._pairings.items() if p.event_id != event_id}

    # ============ PARTICIPANTS ============

    def create_participant(self, participant: Participant) -> Participant:
        if participant.event_id not in self._events:
            raise NotFound("Event", participant.event_id)
        if self.find_participant_by_event_and_user(participant.event_id, participant.user_id):
            raise AlreadyParticipant(participant.user_id)

        with self._write():
            self._participants[participant.id] = copy.deepcopy(participant)
        return copy.deepcopy(participant)

    def delete_participant(self, participant_id: str) -> None:
        if participant_id not in self._participants:
            raise NotFound("Participant", participant_id)

        with self._write():
            del self._participants[participant_id]

    def update_participant(self, participant_id: str, display_name: Any = _UNSET, wishlist_url: Any = _UNSET) -> Participant:
        participant = self._participants.get(participant_id)
        if not participant:
            raise NotFound("Participant", participant_id)

        changes: Dict[str, Any] = {"updated_at": utcnow()}
        if display_name is not _UNSET:
            changes["display_name"] = display_name
        if wishlist_url is not _UNSET:
            changes["wishlist_url"] = wishlist_url or None

        updated = replace(participant, **changes)
        with self._write():
            self._participants[participant_id] = updated
        return copy.deepcopy(updated)

    def find_participant_by_id(self, participant_id: str) -> Optional[Participant]:
        participant = self._participants.get(participant_id)
        return copy.deepcopy(participant) if participant else None

    def find_participant_by_event_and_user(self, event_id: str, user_id: str) -> Optional[Participant]:
        for participant in self._participants.values():
            if participant.event_id == event_id and participant.user_id == str(user_id):
                return copy.deepcopy(participant)
        return None

    def list_participants(self, event_id: str) -> List[Participant]:
        found = [p for p in self._participants.values() if p.event_id == event_id]
        found.sort(key=lambda p: p.joined_at)
        return copy.deepcopy(found)

    # ============ PAIRINGS ============

    def _pairings_replaced(self, event_id: str, pairings: Sequence[Pairing]) -> Dict[str, Pairing]:
        if event_id not in self._events:
            raise NotFound("Event", event_id)
        for pairing in pairings:
            if pairing.event_id != event_id:
                raise ValueError(f"Pairing {pairing.id} belongs to event {pairing.event_id}, not {event_id}")

        kept = {k: p for k, p in self._pairings.items() if p.event_id != event_id}
        kept.update({p.id: copy.deepcopy(p) for p in pairings})
        return kept

    def replace_pairings(self, event_id: str, pairings: Sequence[Pairing]) -> None:
        kept = self._pairings_replaced(event_id, pairings)
        with self._write():
            self._pairings = kept

    def replace_pairings_and_set_status(self, event_id: str, pairings: Sequence[Pairing], status: EventStatus) -> Event:
        kept = self._pairings_replaced(event_id, pairings)
        updated = replace(self._events[event_id], status=EventStatus(status), updated_at=utcnow())

        with self._write():
            self._pairings = kept
            self._events[event_id] = updated
        return copy.deepcopy(updated)

    def list_pairings_for_event(self, event_id: str) -> List[Pairing]:
        found = [p for p in self._pairings.values() if p.event_id == event_id]
        found.sort(key=lambda p: p.created_at)
        return copy.deepcopy(found)

    def find_pairing_for_santa(self, event_id: str, santa_participant_id: str) -> Optional[Pairing]:
        for pairing in self._pairings.values():
            if pairing.event_id == event_id and pairing.santa_id == santa_participant_id:
                return copy.deepcopy(pairing)
        return None

    def find_pairing_for_recipient(self, event_id: str, recipient_participant_id: str) -> Optional[Pairing]:
        for pairing in self._pairings.values():
            if pairing.event_id == event_id and pairing.recipient_id == recipient_participant_id:
                return copy.deepcopy(pairing)
        return None

    def mark_pairings_notified(self, updates: Sequence[Tuple[str, dt.datetime]]) -> None:
        if not updates:
            return

        for pairing_id, _ in updates:
            if pairing_id not in self._pairings:
                raise NotFound("Pairing", pairing_id)

        with self._write():
            for pairing_id, notified_at in updates:
                self._pairings[pairing_id] = replace(self._pairings[pairing_id], notified_at=notified_at)

    # ============ SERIALISATION ============

    def to_state(self) -> Dict[str, Any]:
        return {
            "version": SCHEMA_VERSION,
            "events": [e.to_dict() for e in self._events.values()],
            "participants": [p.to_dict() for p in self._participants.values()],
            "pairings": [p.to_dict() for p in self._pairings.values()],
        }

    def load_state(self, state: Dict[str, Any]) -> None:
        self._events = {e.id: e for e in _load_records(state.get("events"), Event)}
        self._participants = {p.id: p for p in _load_records(state.get("participants"), Participant)}
        self._pairings = {p.id: p for p in _load_records(state.get("pairings"), Pairing)}


def _load_records(raw: Optional[Iterable[Dict[str, Any]]], record_type) -> List[Any]:
    """Decode a list of records, dropping (and logging) malformed ones"""
    records = []
    for item in raw or []:
        try:
            records.append(record_type.from_dict(item))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Dropping malformed {record_type.__name__} record: {e}")
    return records


# ============ JSON FILE STORE ============

def load_json(path: Path, default: Any = None) -> Any:
    """Load JSON with error handling (cross-platform compatible)"""
    if path.exists():
        try:
            text = path.read_text(encoding="utf-8").strip()
            return json.loads(text) if text else (default or {})
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read {path}: {e}")
    return default or {}


def save_json(path: Path, data: Any) -> None:
    """Save JSON atomically (temp file + rename)"""
    temp = path.with_suffix(".tmp")
    try:
        temp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        temp.replace(path)
    except Exception:
        if temp.exists():
            try:
                temp.unlink()
            except OSError:
                pass
        raise


def get_default_state() -> Dict[str, Any]:
    return {"version": SCHEMA_VERSION, "events": [], "participants": [], "pairings": []}


def validate_state_structure(state: Any) -> Dict[str, Any]:
    """Repair a loaded state so every table is a list"""
    if not isinstance(state, dict):
        logger.error("State is not a dict, using defaults")
        return get_default_state()

    for table in ("events", "participants", "pairings"):
        if not isinstance(state.get(table), list):
            if table in state:
                logger.error(f"Invalid state - {table} is not a list, resetting it")
            state[table] = []
    state.setdefault("version", SCHEMA_VERSION)
    return state


class JsonRatmasRepository(InMemoryRatmasRepository):
    """
    In-memory store persisted to a single JSON file after every write.

    Fallback chain on load:
    1. Main file
    2. <file>.backup (written by backup())
    3. Clean defaults

    A failed save restores the previous in-memory tables and raises
    StorageError, so memory never runs ahead of disk.
    """

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)
        self.backup_path = self.path.with_suffix(".backup")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.load_state(self._load_with_fallback())

    def _load_with_fallback(self) -> Dict[str, Any]:
        if self.path.exists():
            state = load_json(self.path, None)
            if state:
                logger.info(f"Ratmas state loaded from {self.path}")
                return validate_state_structure(state)
            logger.error(f"Ratmas state file {self.path} unreadable, trying backup")

        if self.backup_path.exists():
            state = load_json(self.backup_path, None)
            if state:
                logger.warning(f"Ratmas state loaded from backup {self.backup_path}")
                return validate_state_structure(state)
            logger.error("Backup load also failed")

        logger.info("Using clean default Ratmas state")
        return get_default_state()

    def _commit(self) -> None:
        try:
            save_json(self.path, self.to_state())
        except Exception as e:
            logger.error(f"CRITICAL: Failed to save Ratmas state: {e}", exc_info=True)
            raise StorageError(f"Failed to save Ratmas state: {e}") from e

    def backup(self) -> bool:
        """Write a copy of the current state next to the main file"""
        try:
            save_json(self.backup_path, self.to_state())
            return True
        except OSError as e:
            logger.error(f"Ratmas backup failed: {e}")
            return False
