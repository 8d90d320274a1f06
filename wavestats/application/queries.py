from __future__ import annotations

import contextvars
import functools
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from wavestats.application.session import RequestContext, ResilientInvoker
from wavestats.crosscutting.logging import CorrelationContext, log_error, log_query_complete, log_query_start
from wavestats.crosscutting.metrics import MetricsCollector
from wavestats.domain.entities import (
    Artist, AudioFeatures, FollowedArtists, GenreStat, Playlist, RandomTrack, Track,
    UserProfile, UserStat,
)
from wavestats.domain.errors import (
    FailureKind, InternalError, InvalidArgument, NotFound, QueryError, Unauthenticated,
    UpstreamAuthError, UpstreamFailure,
)
from wavestats.domain.ports import ProfileStore, TokenExchanger
from wavestats.infrastructure.persistence.profile_store import ProfileStoreError
from wavestats.infrastructure.providers.spotify import SpotifyWebClient

logger = logging.getLogger(__name__)

T = TypeVar('T')

TIME_RANGES = ('short_term', 'medium_term', 'long_term')
MAX_PAGE_LIMIT = 50
USER_STATS_FANOUT = 4


@dataclass(frozen=True)
class QueryResult(Generic[T]):
    """Answer of a logical query and the access token it ended with."""

    data: T
    token: Optional[str] = None
    token_rotated: bool = False


def _check_limit(limit: int) -> int:
    if not isinstance(limit, int) or isinstance(limit, bool) or not 1 <= limit <= MAX_PAGE_LIMIT:
        raise InvalidArgument(f"limit must be between 1 and {MAX_PAGE_LIMIT}")
    return limit


def _check_time_range(time_range: str) -> str:
    if time_range not in TIME_RANGES:
        raise InvalidArgument(f"timeRange must be one of {', '.join(TIME_RANGES)}")
    return time_range


def _to_query_error(error: Exception, message: str) -> QueryError:
    """Convert a propagated failure into one of the taxonomy kinds."""
    if isinstance(error, QueryError):
        return error
    if isinstance(error, UpstreamFailure) and error.kind is FailureKind.NOT_FOUND:
        return NotFound(message)
    if isinstance(error, UpstreamFailure) and error.is_auth_expired:
        return UpstreamAuthError("Spotify rejected the access token")
    return InternalError(message)


def _submit(executor: ThreadPoolExecutor, fn: Callable[..., T], *args: Any):
    """Submit fn carrying the caller's logging correlation context."""
    return executor.submit(contextvars.copy_context().run, fn, *args)


def query(name: str, failure_message: str):
    """Decorate a StatsService entry point.

    Opens a correlation context, checks the authentication precondition
    before any upstream call, times the query and converts failures.
    """
    def decorator(method):
        @functools.wraps(method)
        def wrapper(self, context: RequestContext, *args, **kwargs):
            start = time.monotonic()
            with CorrelationContext(request_id=context.request_id, query=name):
                log_query_start(logger, name)
                with self.metrics.time_query(name) as outcome:
                    if not context.is_authenticated:
                        raise Unauthenticated("Not authenticated")
                    invoker = ResilientInvoker(context, self.exchanger, self.metrics)
                    try:
                        data = method(self, invoker, *args, **kwargs)
                    except Exception as e:
                        error = _to_query_error(e, failure_message)
                        if error is not e:
                            log_error(logger, f"Error in {name} query", e)
                            raise error from e
                        raise
                    outcome['degraded'] = invoker.degraded
                    log_query_complete(logger, name, int((time.monotonic() - start) * 1000),
                                       outcome='degraded' if invoker.degraded else 'ok',
                                       refreshes=invoker.refresh_count)
                    return QueryResult(data, invoker.access_token, invoker.token_rotated)
        return wrapper
    return decorator


class StatsService:
    """Query layer composing upstream reads into the answers the front end needs."""

    def __init__(self,
                 client: SpotifyWebClient,
                 exchanger: TokenExchanger,
                 profile_store: ProfileStore,
                 metrics: Optional[MetricsCollector] = None,
                 today: Optional[Callable[[], date]] = None):
        self.client = client
        self.exchanger = exchanger
        self.profile_store = profile_store
        self.metrics = metrics or MetricsCollector()
        self._today = today or date.today

    def _remember_profile(self, profile: UserProfile, top_tracks: Optional[List[Track]] = None) -> None:
        """Best-effort profile cache upsert; failures are logged, never raised."""
        patch: Dict[str, Any] = {
            'display_name': profile.display_name,
            'followers': profile.followers,
            'image': profile.image,
        }
        if top_tracks is not None:
            patch['topTracks'] = [track.to_dict() for track in top_tracks]
        try:
            self.profile_store.upsert(profile.id, patch)
        except ProfileStoreError as e:
            self.metrics.record_cache_write_failure()
            logger.warning(f"Profile cache write failed for user {profile.id}: {e}")

    @query('me', 'Failed to fetch user profile')
    def me(self, invoker: ResilientInvoker) -> UserProfile:
        profile = invoker.invoke(self.client.get_user_profile).result
        with CorrelationContext(user_id=profile.id):
            self._remember_profile(profile)
        return profile

    @query('topTracks', 'Failed to fetch top tracks')
    def top_tracks(self, invoker: ResilientInvoker, limit: int = 20,
                   time_range: str = 'medium_term') -> List[Track]:
        """Top tracks of the user; degrades to an empty list on failure."""
        _check_limit(limit)
        _check_time_range(time_range)
        try:
            profile = invoker.invoke(self.client.get_user_profile).result
            tracks = invoker.invoke(self.client.get_top_tracks, limit, time_range).result
        except Exception as e:
            log_error(logger, "Error in topTracks query, returning no tracks", e)
            invoker.degraded = True
            return []

        with CorrelationContext(user_id=profile.id):
            self._remember_profile(profile, tracks)
        return tracks

    @query('topArtists', 'Failed to fetch top artists')
    def top_artists(self, invoker: ResilientInvoker, limit: int = 20,
                    time_range: str = 'medium_term') -> List[Artist]:
        _check_limit(limit)
        _check_time_range(time_range)
        return invoker.invoke(self.client.get_top_artists, limit, time_range).result

    @query('analyzeTrack', 'Failed to analyze track')
    def analyze_track(self, invoker: ResilientInvoker, track_id: str) -> AudioFeatures:
        if not track_id:
            raise InvalidArgument("id is required")
        return invoker.invoke(self.client.get_audio_features, track_id).result

    @query('genreStats', 'Failed to fetch genre stats')
    def genre_stats(self, invoker: ResilientInvoker, time_range: str = 'medium_term',
                    limit: int = 20) -> List[GenreStat]:
        _check_limit(limit)
        _check_time_range(time_range)
        return invoker.invoke(self.client.get_genre_stats, limit, time_range).result

    @query('userStats', 'Failed to fetch user stats')
    def user_stats(self, invoker: ResilientInvoker, year: Optional[int] = None) -> UserStat:
        """Four derived metrics fetched concurrently; any failure fails the query."""
        today = self._today()
        year = year or today.year

        with ThreadPoolExecutor(max_workers=USER_STATS_FANOUT) as executor:
            hours = _submit(executor, invoker.invoke, self.client.get_hours_listened, today)
            discovered = _submit(executor, invoker.invoke, self.client.get_artists_discovered)
            library = _submit(executor, invoker.invoke, self.client.get_library_tracks_count)
            playlists = _submit(executor, invoker.invoke, self.client.get_playlists_created_in_year, year)

            return UserStat(
                hours_listened=hours.result().result,
                artists_discovered=discovered.result().result,
                songs_in_library=library.result().result,
                playlists_created=playlists.result().result,
            )

    @query('playlistsStats', 'Failed to fetch playlists')
    def playlists_stats(self, invoker: ResilientInvoker, limit: int = 20,
                        offset: int = 0) -> List[Playlist]:
        _check_limit(limit)
        if offset < 0:
            raise InvalidArgument("offset must not be negative")
        return invoker.invoke(self.client.get_user_playlists, limit, offset).result

    @query('followedArtists', 'Failed to fetch followed artists')
    def followed_artists(self, invoker: ResilientInvoker, limit: int = 20,
                         after: Optional[str] = None) -> FollowedArtists:
        _check_limit(limit)
        return invoker.invoke(self.client.get_followed_artists, limit, after).result

    @query('randomRecommendedTracks', 'Failed to fetch recommended tracks')
    def random_recommended_tracks(self, invoker: ResilientInvoker,
                                  time_range: str = 'medium_term') -> List[RandomTrack]:
        _check_time_range(time_range)
        return invoker.invoke(self.client.get_random_tracks, time_range).result
