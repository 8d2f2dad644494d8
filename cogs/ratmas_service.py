"""
Ratmas Service - Single entry point for command handlers

Composes the state machine, participant registry, pairing builder and
notification orchestrator over an injected RatmasRepository and
RatmasGateway. Holds no event state of its own between calls.

COMMAND FLOW:
1. Load the event from the repository
2. Check legality (status gate / transition table)
3. Mutate through the registry, pairing builder or orchestrator
4. Persist through the repository
"""

from __future__ import annotations

import logging
import math
import random
from typing import List, Optional, Tuple

from . import ratmas_registry as registry
from .ratmas_errors import (
    ActiveEventExists,
    InvalidEventConfig,
    NotAParticipant,
    NotFound,
    RatmasError,
    StorageError,
)
from .ratmas_gateway import RatmasGateway
from .ratmas_matching import DEFAULT_MAX_ATTEMPTS, MIN_PARTICIPANTS, build_pairings
from .ratmas_models import (
    CreateEventOptions,
    Event,
    EventConfig,
    EventStatus,
    EventTiming,
    NotificationReport,
    Pairing,
    PairingResult,
    Participant,
    new_id,
    utcnow,
)
from .ratmas_notifications import count_outstanding, notify_pairings
from .ratmas_state import require_status, transition
from .ratmas_storage import RatmasRepository
from .ratmas_validators import get_zone

SECONDS_PER_DAY = 60 * 60 * 24


class RatmasService:
    """Ratmas (Secret Santa) event lifecycle"""

    def __init__(
        self,
        repository: RatmasRepository,
        gateway: RatmasGateway,
        min_participants: int = MIN_PARTICIPANTS,
        max_shuffle_attempts: int = DEFAULT_MAX_ATTEMPTS,
        rng: Optional[random.Random] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.repository = repository
        self.gateway = gateway
        self.min_participants = min_participants
        self.max_shuffle_attempts = max_shuffle_attempts
        self.rng = rng
        self.logger = logger or logging.getLogger("bot.ratmas.service")

    # ==================== EVENT LIFECYCLE ====================

    def create_event(self, options: CreateEventOptions) -> Event:
        existing = self.get_active_event(options.guild_id)
        if existing:
            raise ActiveEventExists(str(options.guild_id), existing.status)

        get_zone(options.timezone)
        if options.purchase_deadline <= options.event_start_date:
            raise InvalidEventConfig("Purchase deadline must be after event start date")
        if options.reveal_date <= options.purchase_deadline:
            raise InvalidEventConfig("Reveal date must be after purchase deadline")
        if options.event_end_date and options.event_end_date < options.reveal_date:
            raise InvalidEventConfig("Event end date must not be before reveal date")

        now = utcnow()
        event = Event(
            id=new_id(),
            guild_id=str(options.guild_id),
            status=EventStatus.OPEN,
            config=EventConfig(
                role_id=str(options.role_id),
                event_start_date=options.event_start_date,
                purchase_deadline=options.purchase_deadline,
                reveal_date=options.reveal_date,
                timezone=options.timezone.strip(),
                event_end_date=options.event_end_date,
                announcement_channel_id=(
                    str(options.announcement_channel_id) if options.announcement_channel_id else None
                ),
            ),
            created_at=now,
            updated_at=now,
        )

        created = self.repository.create_event(event)
        self.logger.info(f"Created Ratmas event {created.id} for guild {created.guild_id}")
        return created

    def get_active_event(self, guild_id: str) -> Optional[Event]:
        return self.repository.find_active_event_by_guild(str(guild_id))

    def get_event(self, event_id: str) -> Event:
        event = self.repository.find_event_by_id(event_id)
        if not event:
            raise NotFound("Event", event_id)
        return event

    def update_event_status(self, event_id: str, new_status: EventStatus) -> Event:
        event = self.get_event(event_id)
        next_status = transition(event.status, new_status)
        updated = self.repository.update_event_status(event_id, next_status)
        self.logger.info(f"Event {event_id}: {event.status.value} -> {next_status.value}")
        return updated

    def lock_event(self, event_id: str) -> Event:
        return self.update_event_status(event_id, EventStatus.LOCKED)

    def reopen_event(self, event_id: str) -> Event:
        return self.update_event_status(event_id, EventStatus.OPEN)

    def complete_event(self, event_id: str) -> Event:
        return self.update_event_status(event_id, EventStatus.COMPLETED)

    def cancel_event(self, event_id: str) -> Event:
        return self.update_event_status(event_id, EventStatus.CANCELLED)

    def purge_event(self, event_id: str) -> None:
        """Hard-delete an event with its participants and pairings"""
        self.get_event(event_id)
        self.repository.purge_event(event_id)
        self.logger.warning(f"Purged Ratmas event {event_id}")

    # ==================== PARTICIPANTS ====================

    def add_participant(self, event_id: str, user_id: str, display_name: str, wishlist_url: Optional[str] = None) -> Participant:
        return registry.add_participant(self.repository, self.get_event(event_id), user_id, display_name, wishlist_url)

    def remove_participant(self, event_id: str, user_id: str) -> None:
        registry.remove_participant(self.repository, self.get_event(event_id), user_id)

    def update_participant(self, participant_id: str, display_name: Optional[str] = None, wishlist_url: Optional[str] = None) -> Participant:
        return registry.update_participant(self.repository, participant_id, display_name, wishlist_url)

    def update_participant_for_user(
        self,
        event_id: str,
        user_id: str,
        display_name: Optional[str] = None,
        wishlist_url: Optional[str] = None,
    ) -> Participant:
        participant = self.get_participant(event_id, user_id)
        if not participant:
            raise NotAParticipant(str(user_id))
        return self.update_participant(participant.id, display_name, wishlist_url)

    def list_participants(self, event_id: str) -> List[Participant]:
        return self.repository.list_participants(event_id)

    def get_participant(self, event_id: str, user_id: str) -> Optional[Participant]:
        return self.repository.find_participant_by_event_and_user(event_id, str(user_id))

    def is_participant(self, event_id: str, user_id: str) -> bool:
        return self.get_participant(event_id, user_id) is not None

    async def sync_participants_from_role(self, event_id: str) -> int:
        report = await registry.sync_from_role(self.repository, self.gateway, self.get_event(event_id))
        return report.added

    async def has_ratmas_role(self, event_id: str, user_id: str) -> bool:
        event = self.repository.find_event_by_id(event_id)
        if not event:
            return False
        members = await self.gateway.fetch_members_with_role(event.guild_id, event.config.role_id, exclude_bots=False)
        return any(m.user_id == str(user_id) for m in members)

    # ==================== PAIRING ====================

    def generate_pairings(self, event_id: str) -> PairingResult:
        """
        Match a LOCKED event and move it to MATCHED.

        Caller mistakes (wrong status, too few participants) and an exhausted
        shuffle bound come back as a failed PairingResult; the status and any
        prior pairing set are left untouched. Storage failures propagate.
        """
        try:
            event = self.get_event(event_id)
            require_status(event, EventStatus.LOCKED, "generate pairings")
            next_status = transition(event.status, EventStatus.MATCHED)

            participants = self.repository.list_participants(event_id)
            pairings = build_pairings(
                event_id,
                participants,
                min_participants=self.min_participants,
                max_attempts=self.max_shuffle_attempts,
                rng=self.rng,
            )
        except StorageError:
            raise
        except RatmasError as e:
            self.logger.warning(f"Pairing generation failed for event {event_id}: {e}")
            return PairingResult(success=False, pairings_created=0, failure=e)

        # Pairings and MATCHED land in one write, never one without the other
        self.repository.replace_pairings_and_set_status(event_id, pairings, next_status)

        self.logger.info(f"Event {event_id}: {len(pairings)} pairings created")
        return PairingResult(success=True, pairings_created=len(pairings))

    def get_pairing_for_santa(self, event_id: str, user_id: str) -> Optional[Pairing]:
        participant = self.get_participant(event_id, user_id)
        if not participant:
            return None
        return self.repository.find_pairing_for_santa(event_id, participant.id)

    def get_recipient_for_santa(self, event_id: str, user_id: str) -> Optional[Participant]:
        pairing = self.get_pairing_for_santa(event_id, user_id)
        if not pairing:
            return None
        return self.repository.find_participant_by_id(pairing.recipient_id)

    def get_santa_for_recipient(self, event_id: str, user_id: str) -> Optional[Participant]:
        participant = self.get_participant(event_id, user_id)
        if not participant:
            return None
        pairing = self.repository.find_pairing_for_recipient(event_id, participant.id)
        if not pairing:
            return None
        return self.repository.find_participant_by_id(pairing.santa_id)

    # ==================== NOTIFICATION ====================

    async def run_notifications(self, event_id: str) -> NotificationReport:
        return await notify_pairings(self.get_event(event_id), self.repository, self.gateway)

    async def notify_pairings(self, event_id: str) -> int:
        """DMs successfully sent by this run (not the cumulative total)"""
        report = await self.run_notifications(event_id)
        return report.sent

    def get_notification_progress(self, event_id: str) -> Tuple[int, int]:
        """(notified pairings, total pairings)"""
        outstanding, total = count_outstanding(self.repository, event_id)
        return total - outstanding, total

    # ==================== TIMING ====================

    def get_event_timing(self, event_id: str, now=None) -> EventTiming:
        event = self.get_event(event_id)
        config = event.config
        now = now or utcnow()

        def days_until(target) -> int:
            return math.ceil((target - now).total_seconds() / SECONDS_PER_DAY)

        return EventTiming(
            is_active=config.event_start_date <= now <= config.reveal_date,
            is_purchase_deadline_passed=now > config.purchase_deadline,
            days_until_purchase_deadline=days_until(config.purchase_deadline),
            days_until_reveal=days_until(config.reveal_date),
            current_time_in_timezone=now.astimezone(get_zone(config.timezone)),
            days_until_end=days_until(config.event_end_date) if config.event_end_date else None,
        )
