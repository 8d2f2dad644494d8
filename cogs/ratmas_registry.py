"""
Ratmas Participant Registry - Status-gated enrollment

Adds and removes are only legal while the event is OPEN. Updates carry no
status gate. Role sync is best-effort: each member is added independently and
a failure is logged and skipped.
"""

from __future__ import annotations

import logging
from typing import Optional

from .ratmas_errors import NotAParticipant
from .ratmas_gateway import RatmasGateway
from .ratmas_models import Event, EventStatus, Participant, SyncReport, new_id
from .ratmas_state import require_status
from .ratmas_storage import RatmasRepository
from .ratmas_validators import normalize_wishlist_url

logger = logging.getLogger("bot.ratmas.registry")


def add_participant(
    repository: RatmasRepository,
    event: Event,
    user_id: str,
    display_name: str,
    wishlist_url: Optional[str] = None,
) -> Participant:
    require_status(event, EventStatus.OPEN, "add participants")

    participant = Participant(
        id=new_id(),
        event_id=event.id,
        user_id=str(user_id),
        guild_id=event.guild_id,
        display_name=display_name,
        wishlist_url=normalize_wishlist_url(wishlist_url),
    )
    # Storage enforces (event, user) uniqueness and raises AlreadyParticipant
    created = repository.create_participant(participant)
    logger.info(f"User {user_id} joined event {event.id}")
    return created


def remove_participant(repository: RatmasRepository, event: Event, user_id: str) -> None:
    require_status(event, EventStatus.OPEN, "remove participants")

    participant = repository.find_participant_by_event_and_user(event.id, str(user_id))
    if not participant:
        raise NotAParticipant(str(user_id))

    repository.delete_participant(participant.id)
    logger.info(f"User {user_id} left event {event.id}")


def update_participant(
    repository: RatmasRepository,
    participant_id: str,
    display_name: Optional[str] = None,
    wishlist_url: Optional[str] = None,
) -> Participant:
    """Apply only the supplied fields. An empty wishlist_url clears it."""
    changes = {}
    if display_name is not None:
        changes["display_name"] = display_name
    if wishlist_url is not None:
        changes["wishlist_url"] = normalize_wishlist_url(wishlist_url)

    return repository.update_participant(participant_id, **changes)


async def sync_from_role(repository: RatmasRepository, gateway: RatmasGateway, event: Event) -> SyncReport:
    """Enroll every non-bot member holding the event's link-role"""
    require_status(event, EventStatus.OPEN, "sync participants")

    members = await gateway.fetch_members_with_role(event.guild_id, event.config.role_id, exclude_bots=True)
    enrolled = {p.user_id for p in repository.list_participants(event.id)}
    report = SyncReport()

    for member in members:
        if member.user_id in enrolled:
            report.already_enrolled += 1
            continue

        try:
            add_participant(repository, event, member.user_id, member.display_name)
        except Exception as e:
            logger.warning(f"Failed to add participant {member.user_id}: {e}", exc_info=True)
            report.failed.append(member.user_id)
            continue

        enrolled.add(member.user_id)
        report.added += 1

    logger.info(
        f"Role sync for event {event.id}: {report.added} added, "
        f"{report.already_enrolled} already enrolled, {len(report.failed)} failed"
    )
    return report
