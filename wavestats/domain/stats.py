from __future__ import annotations

import math
from datetime import date, datetime, timezone
from typing import Iterable, List, Optional

from .entities import Artist, GenreStat

PLATFORM_OWNER_ID = "spotify"


def count_genres(artists: Iterable[Artist]) -> List[GenreStat]:
    """Tally genres across artists, most frequent first.

    Ties keep the order in which a genre was first seen.
    """
    counts = {}
    for artist in artists:
        for genre in artist.genres:
            counts[genre] = counts.get(genre, 0) + 1

    # sorted() is stable and dicts keep insertion order
    ordered = sorted(counts.items(), key=lambda item: item[1], reverse=True)
    return [GenreStat(genre=genre, count=count) for genre, count in ordered]


def day_of_year(today: date) -> int:
    return today.timetuple().tm_yday


def estimate_hours_listened(durations_ms: Iterable[int], today: Optional[date] = None) -> int:
    """Extrapolate a recent listening window to a full-year estimate.

    The recent total is scaled by 365 / elapsed days of the current year and
    floored. Returns 0 when there is nothing to extrapolate from.
    """
    durations = [max(0, int(d or 0)) for d in durations_ms]
    if not durations:
        return 0

    today = today or date.today()
    recent_hours = sum(durations) / 1000 / 60 / 60
    return int(math.floor(recent_hours * 365 / day_of_year(today)))


def parse_snapshot_year(snapshot: Optional[str]) -> Optional[int]:
    """Year encoded in a playlist snapshot marker, if it is a timestamp.

    Snapshot ids are usually opaque; only ISO dates or epoch timestamps
    yield a year.
    """
    if not snapshot:
        return None

    value = snapshot.strip()
    # Digits are an epoch; fromisoformat would read some of them as compact dates
    if value.isdigit():
        seconds = int(value)
        if seconds > 10 ** 11:
            seconds //= 1000
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).year
        except (OverflowError, OSError, ValueError):
            return None

    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).year
    except ValueError:
        return None


def is_created_in_year(owner_id: Optional[str], snapshot: Optional[str], year: int) -> bool:
    """A playlist counts when it is user-owned and its snapshot falls in year."""
    if not owner_id or owner_id == PLATFORM_OWNER_ID:
        return False
    return parse_snapshot_year(snapshot) == year
