from __future__ import annotations

import email.utils
import random
from dataclasses import dataclass
from datetime import datetime, timezone


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with jitter for queue-level retries.

    attempt=1 -> base_s, attempt=2 -> 2 * base_s, ... capped at max_s.
    A small jitter (up to 25% of the delay, at most 1s) avoids retry storms
    when many jobs fail together against the same provider.
    """

    base_s: float = 1.0
    max_s: float = 60.0
    jitter: bool = True

    def delay(self, attempt: int, *, retry_after: float | None = None) -> float:
        delay_s = min(self.max_s, self.base_s * (2 ** (max(1, attempt) - 1)))
        if retry_after is not None:
            # Provider hints raise the floor but never exceed the cap.
            delay_s = min(self.max_s, max(delay_s, float(retry_after)))
        if self.jitter and delay_s > 0:
            delay_s += random.uniform(0.0, min(1.0, 0.25 * delay_s))
        return delay_s


def retry_after_seconds(value: str | None) -> float | None:
    """Parse a Retry-After header value (delta-seconds or HTTP-date)."""
    if not value:
        return None

    v = value.strip()
    if v.isdigit():
        return float(int(v))

    try:
        dt = email.utils.parsedate_to_datetime(v)
    except (TypeError, ValueError):
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    now = datetime.now(timezone.utc)
    return max(0.0, (dt - now).total_seconds())
