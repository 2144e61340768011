from datetime import datetime, timedelta

from pricehub.db.base_class import utcnow


def compute_backoff_delay_ms(attempts: int, initial_delay_ms: int = 1000, multiplier: float = 2.0,
                             max_delay_ms: int = 60000) -> int:
    """
    Delay before the next delivery attempt after `attempts` failures.

    The first retry waits `initial_delay_ms`; every later one is multiplied
    until capped at `max_delay_ms`.
    """
    if attempts < 1:
        return 0
    delay = initial_delay_ms * (multiplier ** (attempts - 1))
    return int(min(delay, max_delay_ms))


def next_attempt_at(attempts: int, initial_delay_ms: int = 1000, multiplier: float = 2.0,
                    max_delay_ms: int = 60000, now: datetime | None = None) -> datetime:
    delay_ms = compute_backoff_delay_ms(attempts, initial_delay_ms, multiplier, max_delay_ms)
    return (now or utcnow()) + timedelta(milliseconds=delay_ms)


def should_dead_letter(attempts: int, max_retries: int) -> bool:
    return attempts >= max_retries
