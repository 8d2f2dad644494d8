"""
Ratmas Matching Module - Derangement and Pairing Builder

RESPONSIBILITIES:
- Fisher-Yates shuffle
- Derangement by repeated shuffle-and-check (bounded retries)
- Pairing record construction and integrity validation

ISOLATION:
- Pure algorithm logic (no Discord dependencies, no storage)
- Can be tested independently with a seeded RNG
"""

from __future__ import annotations

import random
import secrets
from typing import List, Optional, Sequence, TypeVar

from .ratmas_errors import DerangementFailed, InsufficientParticipants
from .ratmas_models import Pairing, Participant, new_id, utcnow

T = TypeVar("T")

MIN_PARTICIPANTS = 3
DEFAULT_MAX_ATTEMPTS = 1000


def shuffle(items: Sequence[T], rng: random.Random) -> List[T]:
    """Uniform random permutation (Fisher-Yates). Returns a new list."""
    shuffled = list(items)
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randrange(i + 1)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def has_fixed_point(original: Sequence[T], shuffled: Sequence[T]) -> bool:
    return any(a == b for a, b in zip(original, shuffled))


def derangement(
    items: Sequence[T],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    rng: Optional[random.Random] = None,
) -> List[T]:
    """
    Permutation of items in which no element keeps its position.

    ALGORITHM MECHANICS:
    1. Shuffle a copy of the list (Fisher-Yates)
    2. Compare element-by-element with the original order
    3. Any fixed point → shuffle again, up to max_attempts

    About 1/e of uniform permutations are derangements, so the expected
    number of shuffles is ~2.7 for large N. The bound only guards against
    a broken RNG.

    RANDOMNESS:
    Defaults to secrets.SystemRandom() (OS entropy, no seeding). Tests pass a
    seeded random.Random for reproducibility.

    Raises:
        InsufficientParticipants: fewer than 2 items (no derangement exists)
        DerangementFailed: bound exhausted
    """
    if len(items) <= 1:
        raise InsufficientParticipants(2, len(items))
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    rng = rng or secrets.SystemRandom()

    for _ in range(max_attempts):
        candidate = shuffle(items, rng)
        if not has_fixed_point(items, candidate):
            return candidate

    raise DerangementFailed(max_attempts, len(items))


def validate_pairings(pairings: Sequence[Pairing], participants: Sequence[Participant]) -> None:
    """
    Final safety net before pairings are persisted.

    Checks:
    1. Exactly one pairing per participant
    2. Every participant is a Santa exactly once
    3. Every participant is a Recipient exactly once
    4. Nobody gives to themselves

    Raises:
        ValueError: If any integrity check fails
    """
    if not pairings:
        raise ValueError("No pairings provided")

    if len(pairings) != len(participants):
        raise ValueError(f"Pairing count mismatch: {len(pairings)} pairings for {len(participants)} participants")

    expected = {p.id for p in participants}
    santas = [p.santa_id for p in pairings]
    recipients = [p.recipient_id for p in pairings]

    if set(santas) != expected or len(set(santas)) != len(santas):
        raise ValueError(f"Santa mismatch: missing {expected - set(santas)}, extra {set(santas) - expected}")

    if set(recipients) != expected or len(set(recipients)) != len(recipients):
        duplicates = {r for r in recipients if recipients.count(r) > 1}
        raise ValueError(f"Recipient mismatch: missing {expected - set(recipients)}, duplicates {duplicates}")

    for pairing in pairings:
        if pairing.santa_id == pairing.recipient_id:
            raise ValueError(f"Self-pairing detected: {pairing.santa_id}")


def build_pairings(
    event_id: str,
    participants: Sequence[Participant],
    min_participants: int = MIN_PARTICIPANTS,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    rng: Optional[random.Random] = None,
) -> List[Pairing]:
    """
    One Pairing per participant: Santa = participants[i], Recipient = deranged[i].

    All records share one created_at and are meant to be written together with
    a single replace_pairings_and_set_status() call.
    """
    if len(participants) < min_participants:
        raise InsufficientParticipants(min_participants, len(participants))

    recipients = derangement(participants, max_attempts=max_attempts, rng=rng)
    now = utcnow()

    pairings = [
        Pairing(
            id=new_id(),
            event_id=event_id,
            santa_id=santa.id,
            recipient_id=recipient.id,
            created_at=now,
        )
        for santa, recipient in zip(participants, recipients)
    ]

    validate_pairings(pairings, participants)
    return pairings
