"""
Ratmas DM Relay - Anonymous Santa <-> giftee messages

A DM from a Santa is forwarded to their recipient without the sender's name.
A DM starting with "!reply" from a recipient goes back to their Santa.
Both directions are rate-limited per author.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Dict, Optional

from .ratmas_gateway import RatmasGateway
from .ratmas_messages import RELAY_REPLY_PREFIX, dm_disabled, relay_to_recipient, relay_to_santa
from .ratmas_models import EventStatus
from .ratmas_service import RatmasService

logger = logging.getLogger("bot.ratmas.relay")

MAX_RELAY_LENGTH = 1800

# Pairings only exist from MATCHED on
RELAY_STATUSES = frozenset({EventStatus.MATCHED, EventStatus.NOTIFIED})


class RateLimiter:
    """
    Sliding-window rate limiter with O(1) operations.

    Uses a deque of timestamps per key. Keys whose newest request has left
    the window are dropped on the next check, so idle authors cost nothing.
    """

    def __init__(self, limit: int, window: int):
        self.limit = limit
        self.window = window
        self.tokens: Dict[str, Deque[float]] = {}
        self._lock = asyncio.Lock()

    def _prune(self, now: float):
        idle = [k for k, d in self.tokens.items() if not d or now - d[-1] >= self.window]
        for k in idle:
            del self.tokens[k]

    async def check(self, key: str) -> bool:
        """True if the request is allowed (and counts it)"""
        async with self._lock:
            now = time.monotonic()
            self._prune(now)
            token_deque = self.tokens.setdefault(key, deque())

            while token_deque and now - token_deque[0] >= self.window:
                token_deque.popleft()

            if len(token_deque) < self.limit:
                token_deque.append(now)
                return True
            return False


class RelayOutcome(str, Enum):
    IGNORED = "ignored"  # No event, not paired, or empty message
    RATE_LIMITED = "rate_limited"
    TOO_LONG = "too_long"
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass
class RelayRoute:
    target_user_id: str
    text: str
    to_santa: bool


def resolve_route(service: RatmasService, guild_id: str, author_id: str, content: str) -> Optional[RelayRoute]:
    """Who a DM from author_id should be forwarded to, if anyone"""
    text = (content or "").strip()
    if not text:
        return None

    event = service.get_active_event(guild_id)
    if not event or event.status not in RELAY_STATUSES:
        return None

    if text.lower().startswith(RELAY_REPLY_PREFIX):
        body = text[len(RELAY_REPLY_PREFIX):].strip()
        santa = service.get_santa_for_recipient(event.id, author_id)
        if not santa or not body:
            return None
        return RelayRoute(target_user_id=santa.user_id, text=body, to_santa=True)

    recipient = service.get_recipient_for_santa(event.id, author_id)
    if not recipient:
        return None
    return RelayRoute(target_user_id=recipient.user_id, text=text, to_santa=False)


async def relay_direct_message(
    service: RatmasService,
    gateway: RatmasGateway,
    limiter: RateLimiter,
    guild_id: str,
    author_id: str,
    content: str,
) -> RelayOutcome:
    route = resolve_route(service, guild_id, str(author_id), content)
    if not route:
        return RelayOutcome.IGNORED

    if len(route.text) > MAX_RELAY_LENGTH:
        return RelayOutcome.TOO_LONG

    if not await limiter.check(str(author_id)):
        return RelayOutcome.RATE_LIMITED

    message = relay_to_santa(route.text) if route.to_santa else relay_to_recipient(route.text)
    result = await gateway.send_direct_message(route.target_user_id, message)
    if result.success:
        return RelayOutcome.DELIVERED

    logger.warning(f"Relay to {route.target_user_id} failed: {result.error}")

    # Recipients with DMs closed get a public nudge; Santas are never named
    event = service.get_active_event(guild_id)
    channel_id = event.config.announcement_channel_id if event else None
    if channel_id and not route.to_santa:
        await gateway.send_channel_message(channel_id, dm_disabled(f"<@{route.target_user_id}>"))
    return RelayOutcome.FAILED
