"""Retry schedule for outbound deliveries.

A failed attempt ``k`` (1-indexed) is retried after ``min(2**k, 60)`` minutes
plus up to 30 seconds of jitter. The sixth failure dead-letters the event.
"""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

from src.domain.ledger import DeliveryStatus


MAX_ATTEMPTS = 6
MAX_DELAY_MINUTES = 60
MAX_JITTER_SECONDS = 30.0


def backoff_delay(attempt_count: int, rng: random.Random | None = None) -> timedelta:
    minutes = min(2 ** attempt_count, MAX_DELAY_MINUTES)
    jitter = (rng or random).uniform(0, MAX_JITTER_SECONDS)
    # uniform() may return the upper bound; keep jitter in [0, 30).
    if jitter >= MAX_JITTER_SECONDS:
        jitter = 0.0
    return timedelta(minutes=minutes, seconds=jitter)


def next_state(
    prior_attempt_count: int,
    success: bool,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> tuple[DeliveryStatus, datetime]:
    current = now or datetime.now(timezone.utc)
    attempt_count = prior_attempt_count + 1
    if success:
        return DeliveryStatus.SENT, current
    if attempt_count >= MAX_ATTEMPTS:
        return DeliveryStatus.DEAD, current
    return DeliveryStatus.FAILED, current + backoff_delay(attempt_count, rng)
