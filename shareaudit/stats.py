from collections import Counter
from typing import Iterable, Sequence

from shareaudit.models import AccessEvent, AccessStats, AccessStatus

UNKNOWN_COUNTRY = "unknown"


def view_count(events: Iterable[AccessEvent]) -> int:
    return sum(1 for event in events if not event.is_download)


def download_count(events: Iterable[AccessEvent]) -> int:
    return sum(1 for event in events if event.is_download)


def unique_visitors(events: Iterable[AccessEvent]) -> int:
    return len({event.ip_address for event in events})


def denied_count(events: Iterable[AccessEvent]) -> int:
    return sum(1 for event in events if event.status is not AccessStatus.GRANTED)


def by_country(events: Iterable[AccessEvent]) -> dict[str, int]:
    return dict(Counter(event.geo.country or UNKNOWN_COUNTRY for event in events))


def by_referrer(events: Iterable[AccessEvent]) -> dict[str, int]:
    return dict(Counter(event.referrer for event in events))


def summarize(events: Sequence[AccessEvent]) -> AccessStats:
    """Aggregate a resource's events, recomputed on every call."""
    return AccessStats(
        view_count=view_count(events),
        download_count=download_count(events),
        unique_visitors=unique_visitors(events),
        denied_count=denied_count(events),
        by_country=by_country(events),
        by_referrer=by_referrer(events),
        first_access_at=min((event.occurred_at for event in events), default=None),
        last_access_at=max((event.occurred_at for event in events), default=None),
    )
