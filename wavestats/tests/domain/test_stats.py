from datetime import date

import pytest

from wavestats.domain.entities import Artist, GenreStat
from wavestats.domain.stats import (
    count_genres, day_of_year, estimate_hours_listened, is_created_in_year, parse_snapshot_year,
)

HOUR_MS = 60 * 60 * 1000


def _artist(artist_id: str, *genres: str) -> Artist:
    return Artist(id=artist_id, name=artist_id.upper(), genres=list(genres))


class TestCountGenres:
    """Tests for the genre tally."""

    def test_orders_by_descending_count(self):
        artists = [
            _artist('a', 'rock', 'pop'),
            _artist('b', 'pop', 'jazz'),
            _artist('c', 'rock', 'pop'),
        ]

        stats = count_genres(artists)

        assert stats == [
            GenreStat(genre='pop', count=3),
            GenreStat(genre='rock', count=2),
            GenreStat(genre='jazz', count=1),
        ]

    def test_ties_keep_first_seen_order(self):
        artists = [
            _artist('a', 'shoegaze', 'dream pop'),
            _artist('b', 'ambient'),
            _artist('c', 'ambient', 'shoegaze'),
        ]

        stats = count_genres(artists)

        assert [s.genre for s in stats] == ['shoegaze', 'ambient', 'dream pop']
        assert [s.count for s in stats] == [2, 2, 1]

    def test_artists_without_genres(self):
        assert count_genres([_artist('a'), _artist('b')]) == []
        assert count_genres([]) == []


class TestHoursListened:
    """Tests for the yearly listening estimate."""

    def test_no_plays_is_zero(self):
        assert estimate_hours_listened([], date(2024, 3, 1)) == 0

    def test_scales_recent_hours_to_full_year(self):
        # 2 hours over 2 elapsed days -> 365 hours
        assert estimate_hours_listened([HOUR_MS, HOUR_MS], date(2024, 1, 2)) == 365

    def test_result_is_floored(self):
        # 1 hour * 365 / 366 < 1
        assert estimate_hours_listened([HOUR_MS], date(2024, 12, 31)) == 0

    def test_monotonic_in_recent_plays(self):
        today = date(2024, 5, 20)
        durations = []
        previous = 0
        for minutes in [3, 4, 60, 180, 1]:
            durations.append(minutes * 60 * 1000)
            current = estimate_hours_listened(durations, today)
            assert current >= previous
            previous = current

    def test_missing_durations_count_as_zero(self):
        assert estimate_hours_listened([None, 0], date(2024, 1, 1)) == 0

    def test_day_of_year(self):
        assert day_of_year(date(2024, 1, 1)) == 1
        assert day_of_year(date(2024, 12, 31)) == 366


class TestSnapshotYear:
    """Tests for playlist snapshot parsing."""

    @pytest.mark.parametrize('snapshot,year', [
        ('2023-05-01T10:00:00Z', 2023),
        ('2024-02-29', 2024),
        ('1700000000', 2023),
        ('1700000000000', 2023),
    ])
    def test_timestamps(self, snapshot, year):
        assert parse_snapshot_year(snapshot) == year

    @pytest.mark.parametrize('snapshot', [None, '', 'MTY4ODc0NjE2Nywx', 'not-a-date'])
    def test_opaque_snapshots(self, snapshot):
        assert parse_snapshot_year(snapshot) is None

    def test_platform_owned_playlists_never_count(self):
        assert is_created_in_year('spotify', '2024-01-10', 2024) is False

    def test_missing_owner_never_counts(self):
        assert is_created_in_year(None, '2024-01-10', 2024) is False

    def test_user_playlist_in_year(self):
        assert is_created_in_year('alice', '2024-01-10', 2024) is True
        assert is_created_in_year('alice', '2023-01-10', 2024) is False
        assert is_created_in_year('alice', 'MTY4ODc0NjE2Nywx', 2024) is False
