import asyncio
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable

from foodbridge.models.donation import Actor, Donation, as_utc

CANCEL_WINDOW = timedelta(minutes=15)


def is_within_window(now: datetime, requested_at: datetime, window: timedelta = CANCEL_WINDOW) -> bool:
    # Strict: exactly W after the request is already too late
    return as_utc(now) - as_utc(requested_at) < window

def window_cutoff(now: datetime, window: timedelta = CANCEL_WINDOW) -> datetime:
    """Requests made strictly after this instant are still cancellable."""
    return as_utc(now) - window

def time_remaining(now: datetime, requested_at: datetime, window: timedelta = CANCEL_WINDOW) -> timedelta:
    left = window - (as_utc(now) - as_utc(requested_at))
    return max(left, timedelta(0))

def format_countdown(remaining: timedelta) -> str:
    total_seconds = max(int(remaining.total_seconds()), 0)
    minutes, seconds = divmod(total_seconds, 60)
    return f"{minutes}:{seconds:02d}"

def can_cancel_request(donation: Donation, actor: Actor, now: datetime) -> bool:
    """
    Whether `actor` may send the donation back to the pool right now.
    Always recomputed from `now`; never cache the answer.
    """
    if donation.status != "requested":
        return False
    if actor.actor_id not in (donation.requested_by, donation.donor_id):
        return False
    return is_within_window(now, donation.requested_at)


async def countdown(
    requested_at: datetime,
    clock: Callable[[], datetime],
    interval: float = 1.0,
    window: timedelta = CANCEL_WINDOW,
) -> AsyncIterator[str]:
    """
    Yields the remaining cancel time as m:ss every `interval` seconds.
    The last value is always 0:00, emitted as soon as the window has closed.
    """
    while True:
        now = clock()
        if not is_within_window(now, requested_at, window):
            yield format_countdown(timedelta(0))
            return
        yield format_countdown(time_remaining(now, requested_at, window))
        await asyncio.sleep(interval)
