from datetime import datetime, timedelta

from shareaudit.errors import InvalidDuration
from shareaudit.models import LinkState, SharedLink

MIN_DAYS = 1
MAX_DAYS = 30


def compute_expiry(
    issued_at: datetime,
    days: int,
    *,
    min_days: int = MIN_DAYS,
    max_days: int = MAX_DAYS,
) -> datetime:
    """Return the absolute expiry for a link issued at ``issued_at``.

    Out-of-range durations are rejected, never clamped.
    """
    if isinstance(days, bool) or not isinstance(days, int):
        raise InvalidDuration(days, min_days, max_days)
    if days < min_days or days > max_days:
        raise InvalidDuration(days, min_days, max_days)
    return issued_at + timedelta(days=days)


def is_active(link: SharedLink, now: datetime) -> bool:
    # A link stops being usable exactly at expires_at.
    return link.revoked_at is None and now < link.expires_at


def classify(link: SharedLink, now: datetime) -> LinkState:
    if link.revoked_at is not None:
        return LinkState.REVOKED
    if now >= link.expires_at:
        return LinkState.EXPIRED
    return LinkState.ACTIVE
