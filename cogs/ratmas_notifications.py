"""
Ratmas Notification Orchestrator - Assignment DMs with idempotent retry

RESPONSIBILITIES:
- DM every Santa whose pairing has no notified_at yet
- Record successes in one batched write per run
- Advance the event to NOTIFIED once nothing is outstanding

RETRY MECHANICS:
- Only pairings whose DM succeeded get a notified_at timestamp
- Failed pairings stay unmarked and are picked up by the next run
- A crash mid-run loses at most this run's unsaved successes; those
  Santas get a second DM on the retry, nobody is skipped
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import List, Tuple

from .ratmas_errors import DeliveryFailed
from .ratmas_gateway import RatmasGateway
from .ratmas_messages import build_pairing_message
from .ratmas_models import Event, EventStatus, NotificationReport, utcnow
from .ratmas_state import require_status, transition
from .ratmas_storage import RatmasRepository

logger = logging.getLogger("bot.ratmas.notify")


def count_outstanding(repository: RatmasRepository, event_id: str) -> Tuple[int, int]:
    """(pairings still lacking notified_at, total pairings)"""
    pairings = repository.list_pairings_for_event(event_id)
    return sum(1 for p in pairings if p.notified_at is None), len(pairings)


async def notify_pairings(event: Event, repository: RatmasRepository, gateway: RatmasGateway) -> NotificationReport:
    """
    Deliver outstanding assignment DMs for a MATCHED event.

    Each delivery is independent: a failed or raising send is recorded in
    the report and the loop moves on.

    Returns:
        NotificationReport with counts for this run only
    """
    require_status(event, EventStatus.MATCHED, "notify pairings")

    report = NotificationReport()
    participants = {p.id: p for p in repository.list_participants(event.id)}
    pending = [p for p in repository.list_pairings_for_event(event.id) if p.notified_at is None]

    logger.info(f"Notifying {len(pending)} outstanding pairings for event {event.id}")

    delivered: List[Tuple[str, dt.datetime]] = []

    for pairing in pending:
        santa = participants.get(pairing.santa_id)
        recipient = participants.get(pairing.recipient_id)
        if not santa or not recipient:
            logger.warning(f"Skipping pairing {pairing.id}: dangling participant reference")
            report.skipped.append(pairing.id)
            continue

        message = build_pairing_message(event, santa, recipient)
        try:
            result = await gateway.send_direct_message(santa.user_id, message)
        except Exception as e:
            logger.warning(f"DM to Santa {santa.user_id} raised: {e}", exc_info=True)
            report.failed.append(DeliveryFailed(santa.user_id, str(e), pairing.id))
            continue

        if result.success:
            delivered.append((pairing.id, utcnow()))
            report.sent += 1
        else:
            report.failed.append(DeliveryFailed(santa.user_id, result.error, pairing.id))

    if delivered:
        repository.mark_pairings_notified(delivered)

    report.outstanding, total = count_outstanding(repository, event.id)

    if report.outstanding == 0 and total > 0:
        repository.update_event_status(event.id, transition(event.status, EventStatus.NOTIFIED))
        report.completed = True
        logger.info(f"Event {event.id}: all {total} Santas notified")
    else:
        logger.info(
            f"Event {event.id}: sent {report.sent}, failed {len(report.failed)}, "
            f"skipped {len(report.skipped)}, outstanding {report.outstanding}/{total}"
        )

    return report
