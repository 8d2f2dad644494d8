"""
Ratmas Models - Event, Participant and Pairing records

RESPONSIBILITIES:
- Closed EventStatus enumeration
- Plain dataclass records shared by storage, engine and cog
- Dict (de)serialisation for the JSON store

ISOLATION:
- No Discord dependencies
- No storage assumptions (records are passed by value)
"""

from __future__ import annotations

import datetime as dt
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class EventStatus(str, Enum):
    OPEN = "open"  # Accepting participants
    LOCKED = "locked"  # Signups closed, not yet matched
    MATCHED = "matched"  # Pairings generated
    NOTIFIED = "notified"  # Every Santa has been DM'd
    COMPLETED = "completed"
    CANCELLED = "cancelled"


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def new_id() -> str:
    """Opaque record id"""
    return secrets.token_hex(8)


def _dump_dt(value: Optional[dt.datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _load_dt(value: Optional[str]) -> Optional[dt.datetime]:
    if not value:
        return None
    parsed = dt.datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


@dataclass
class EventConfig:
    role_id: str  # Link-role: members holding it form the participant pool
    event_start_date: dt.datetime
    purchase_deadline: dt.datetime
    reveal_date: dt.datetime
    timezone: str  # IANA name, e.g. "America/New_York"
    event_end_date: Optional[dt.datetime] = None
    announcement_channel_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role_id": self.role_id,
            "event_start_date": _dump_dt(self.event_start_date),
            "purchase_deadline": _dump_dt(self.purchase_deadline),
            "reveal_date": _dump_dt(self.reveal_date),
            "timezone": self.timezone,
            "event_end_date": _dump_dt(self.event_end_date),
            "announcement_channel_id": self.announcement_channel_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventConfig":
        return cls(
            role_id=str(data["role_id"]),
            event_start_date=_load_dt(data["event_start_date"]),
            purchase_deadline=_load_dt(data["purchase_deadline"]),
            reveal_date=_load_dt(data["reveal_date"]),
            timezone=data["timezone"],
            event_end_date=_load_dt(data.get("event_end_date")),
            announcement_channel_id=data.get("announcement_channel_id"),
        )


@dataclass
class Event:
    id: str
    guild_id: str
    status: EventStatus
    config: EventConfig
    created_at: dt.datetime = field(default_factory=utcnow)
    updated_at: dt.datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "guild_id": self.guild_id,
            "status": self.status.value,
            "config": self.config.to_dict(),
            "created_at": _dump_dt(self.created_at),
            "updated_at": _dump_dt(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        return cls(
            id=data["id"],
            guild_id=str(data["guild_id"]),
            status=EventStatus(data["status"]),
            config=EventConfig.from_dict(data["config"]),
            created_at=_load_dt(data.get("created_at")) or utcnow(),
            updated_at=_load_dt(data.get("updated_at")) or utcnow(),
        )


@dataclass
class Participant:
    id: str
    event_id: str
    user_id: str
    guild_id: str
    display_name: str  # Captured at join time
    wishlist_url: Optional[str] = None
    joined_at: dt.datetime = field(default_factory=utcnow)
    updated_at: dt.datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "user_id": self.user_id,
            "guild_id": self.guild_id,
            "display_name": self.display_name,
            "wishlist_url": self.wishlist_url,
            "joined_at": _dump_dt(self.joined_at),
            "updated_at": _dump_dt(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Participant":
        return cls(
            id=data["id"],
            event_id=data["event_id"],
            user_id=str(data["user_id"]),
            guild_id=str(data["guild_id"]),
            display_name=data["display_name"],
            wishlist_url=data.get("wishlist_url"),
            joined_at=_load_dt(data.get("joined_at")) or utcnow(),
            updated_at=_load_dt(data.get("updated_at")) or utcnow(),
        )


@dataclass
class Pairing:
    id: str
    event_id: str
    santa_id: str  # Participant.id of the giver
    recipient_id: str  # Participant.id of the receiver
    created_at: dt.datetime = field(default_factory=utcnow)
    notified_at: Optional[dt.datetime] = None  # Set once, when the Santa's DM succeeds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "santa_id": self.santa_id,
            "recipient_id": self.recipient_id,
            "created_at": _dump_dt(self.created_at),
            "notified_at": _dump_dt(self.notified_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pairing":
        return cls(
            id=data["id"],
            event_id=data["event_id"],
            santa_id=data["santa_id"],
            recipient_id=data["recipient_id"],
            created_at=_load_dt(data.get("created_at")) or utcnow(),
            notified_at=_load_dt(data.get("notified_at")),
        )


# ============ VALUE OBJECTS ============

@dataclass
class CreateEventOptions:
    guild_id: str
    role_id: str
    event_start_date: dt.datetime
    purchase_deadline: dt.datetime
    reveal_date: dt.datetime
    timezone: str
    event_end_date: Optional[dt.datetime] = None
    announcement_channel_id: Optional[str] = None


@dataclass
class PairingResult:
    success: bool
    pairings_created: int = 0
    failure: Optional[Exception] = None

    @property
    def error(self) -> Optional[str]:
        return str(self.failure) if self.failure else None


@dataclass
class NotificationReport:
    """Outcome of one notification run (counts are for this run only)"""
    sent: int = 0
    failed: List[Any] = field(default_factory=list)  # DeliveryFailed entries
    skipped: List[str] = field(default_factory=list)  # Pairing ids with dangling references
    outstanding: int = 0
    completed: bool = False


@dataclass
class SyncReport:
    added: int = 0
    already_enrolled: int = 0
    failed: List[str] = field(default_factory=list)  # User ids that could not be added


@dataclass
class EventTiming:
    is_active: bool
    is_purchase_deadline_passed: bool
    days_until_purchase_deadline: int
    days_until_reveal: int
    current_time_in_timezone: dt.datetime
    days_until_end: Optional[int] = None


@dataclass
class MemberInfo:
    user_id: str
    display_name: str
    bot: bool = False


@dataclass
class DeliveryResult:
    success: bool
    error: Optional[str] = None
