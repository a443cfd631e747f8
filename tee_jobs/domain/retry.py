import random
from datetime import datetime, timedelta, timezone
from typing import Optional


def calculate_next_run(
    retry_count: int,
    base_delay_seconds: int = 60,
    backoff: bool = False,
    max_delay_seconds: int = 3600,
    jitter: bool = True,
    now: Optional[datetime] = None,
) -> datetime:
    """
    Calculates when a failed queue entry becomes eligible again.

    Without backoff the delay is simply ``base_delay_seconds``. With backoff:

        delay = min(base * (2 ^ retry_count), max_delay)
        if jitter:
            delay = delay + random_uniform(0, 0.1 * delay)

    Args:
        retry_count: Retries already scheduled for the entry (0 for the first retry).
        base_delay_seconds: The configured retry delay.
        backoff: Whether to grow the delay exponentially.

    Returns:
        datetime: The timezone-aware (UTC) timestamp of the next delivery.
    """
    now = now or datetime.now(timezone.utc)
    if base_delay_seconds <= 0:
        return now

    if not backoff:
        return now + timedelta(seconds=base_delay_seconds)

    # 2^20 seconds is ~11 days, well past any sane max_delay.
    safe_count = min(max(retry_count, 0), 20)
    delay = min(base_delay_seconds * (2 ** safe_count), max_delay_seconds)

    if jitter:
        # Up to 10% jitter to avoid a thundering herd of retries
        delay += random.uniform(0, delay * 0.1)

    return now + timedelta(seconds=delay)
