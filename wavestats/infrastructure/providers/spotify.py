import logging
import random
import re
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from typing import Any, Callable, Dict, List, Optional

import requests
import spotipy
from urllib3.exceptions import ReadTimeoutError

from wavestats.crosscutting.config import Settings
from wavestats.domain.entities import (
    Album, Artist, ArtistRef, AudioFeatures, AUDIO_FEATURE_METRICS, FollowedArtists,
    GenreStat, Image, Playlist, RandomTrack, Track, UserProfile,
)
from wavestats.domain.errors import FailureKind, InvalidResponseFormat, NotFound, UpstreamFailure
from wavestats.domain.stats import count_genres, estimate_hours_listened, is_created_in_year

logger = logging.getLogger(__name__)

# urllib3 reason spotipy attaches when status retries run out
RETRY_REASON = re.compile(r"too many (\d{3}) error responses")

RECENTLY_PLAYED_LIMIT = 50
PLAYLIST_SCAN_LIMIT = 50
DISCOVERY_LIMIT = 50
RANDOM_ARTIST_POOL = 20
RANDOM_ARTIST_SAMPLE = 5
RANDOM_TRACK_COUNT = 5


def translate_error(error: Exception, operation: str) -> UpstreamFailure:
    """Map a spotipy/requests exception to an UpstreamFailure."""
    if isinstance(error, (requests.exceptions.Timeout, ReadTimeoutError)):
        return UpstreamFailure(FailureKind.TIMEOUT, f"{operation} timed out")

    status = getattr(error, 'http_status', None)
    if isinstance(error, spotipy.SpotifyException) and "Max Retries" in str(error.msg):
        # spotipy reports exhausted retries as 429 whatever the last status was
        match = RETRY_REASON.search(str(error.reason or ""))
        status = int(match.group(1)) if match else None
    if status is None:
        return UpstreamFailure(FailureKind.TRANSIENT, f"{operation} failed: {error}")
    if status == 401:
        kind = FailureKind.AUTH_EXPIRED
    elif status == 404:
        kind = FailureKind.NOT_FOUND
    elif status == 429:
        kind = FailureKind.RATE_LIMITED
    elif status >= 500:
        kind = FailureKind.TRANSIENT
    else:
        kind = FailureKind.REJECTED
    return UpstreamFailure(kind, f"{operation} failed with HTTP {status}", status=status)


def map_image(data: Dict[str, Any]) -> Image:
    return Image(url=data['url'], height=data.get('height') or None, width=data.get('width') or None)


def map_images(items: Optional[List[Dict[str, Any]]]) -> List[Image]:
    return [map_image(image) for image in items or [] if image and image.get('url')]


def map_album(data: Optional[Dict[str, Any]]) -> Optional[Album]:
    if not data:
        return None
    return Album(
        name=data.get('name') or None,
        release_date=data.get('release_date') or None,
        album_type=data.get('album_type') or None,
        images=map_images(data.get('images')),
    )


def map_track(data: Dict[str, Any]) -> Track:
    """Convert a Spotify track object to the canonical Track."""
    return Track(
        id=data['id'],
        name=data['name'],
        artists=[artist['name'] for artist in data.get('artists') or [] if artist.get('name')],
        album=map_album(data.get('album')),
        external_url=(data.get('external_urls') or {}).get('spotify') or '',
        preview_url=data.get('preview_url'),
    )


def map_artist(data: Dict[str, Any]) -> Artist:
    """Convert a Spotify artist object to the canonical Artist."""
    return Artist(
        id=data['id'],
        name=data['name'],
        genres=list(data.get('genres') or []),
        popularity=data.get('popularity'),
        images=map_images(data.get('images')),
        external_url=(data.get('external_urls') or {}).get('spotify') or '',
    )


def map_playlist(data: Dict[str, Any]) -> Playlist:
    owner = data.get('owner') or {}
    return Playlist(
        id=data['id'],
        name=data['name'],
        description=data.get('description') or None,
        owner=owner.get('display_name') or 'Unknown',
        total_tracks=(data.get('tracks') or {}).get('total') or 0,
        public=bool(data.get('public')),
        images=map_images(data.get('images')),
    )


def map_random_track(data: Dict[str, Any]) -> RandomTrack:
    album = data.get('album') or {}
    images = album.get('images') or []
    return RandomTrack(
        id=data['id'],
        name=data['name'],
        duration_ms=data.get('duration_ms'),
        preview_url=data.get('preview_url'),
        album_name=album.get('name'),
        album_image_url=images[0].get('url') if images else None,
        artists=[ArtistRef(id=a.get('id') or '', name=a.get('name') or '')
                 for a in data.get('artists') or []],
    )


def map_audio_features(data: Dict[str, Any]) -> AudioFeatures:
    values = {name: data.get(name) for name in AUDIO_FEATURE_METRICS}
    return AudioFeatures(duration_ms=data.get('duration_ms'), **values)


class SpotifyWebClient:
    """Read-only Spotify Web API client.

    Every public method takes the access token as its first argument and
    holds no per-user state, so one instance serves all requests. Each
    method issues one upstream read unless documented otherwise.
    """

    def __init__(self,
                 settings: Optional[Settings] = None,
                 client_factory: Optional[Callable[[str], Any]] = None,
                 on_call: Optional[Callable[[], None]] = None,
                 rng: Optional[random.Random] = None):
        """Initialize client.

        Args:
            settings: timeouts, retries and market
            client_factory: builds a spotipy-compatible client for a token
            on_call: hook invoked before every upstream read
            rng: random source for recommendations
        """
        self.settings = settings or Settings()
        self._client_factory = client_factory or self._default_client
        self._on_call = on_call
        self._rng = rng or random.Random()

    def _default_client(self, token: str) -> spotipy.Spotify:
        return spotipy.Spotify(
            auth=token,
            requests_timeout=self.settings.upstream_timeout,
            retries=self.settings.upstream_retries,
            status_retries=self.settings.upstream_retries,
        )

    def _fetch(self, token: str, operation: str, method: str, *args, **kwargs) -> Any:
        """Issue one upstream read, translating transport errors."""
        if self._on_call:
            self._on_call()
        client = self._client_factory(token)
        try:
            return getattr(client, method)(*args, **kwargs)
        except (spotipy.SpotifyException, requests.exceptions.RequestException, ReadTimeoutError) as e:
            failure = translate_error(e, operation)
            logger.warning(f"Spotify {operation} failed: {failure} (kind={failure.kind.value})")
            raise failure from e

    @staticmethod
    def _map(operation: str, mapper: Callable[[Any], Any], payload: Any) -> Any:
        try:
            return mapper(payload)
        except (KeyError, TypeError, AttributeError, IndexError) as e:
            logger.error(f"Unexpected {operation} payload: {type(e).__name__}: {e}")
            raise InvalidResponseFormat(f"Unexpected {operation} response") from e

    @staticmethod
    def _items(payload: Any) -> List[Dict[str, Any]]:
        if not isinstance(payload, dict):
            raise TypeError("response is not an object")
        return [item for item in payload.get('items') or [] if item]

    def get_user_profile(self, token: str) -> UserProfile:
        data = self._fetch(token, 'profile', 'current_user')

        def mapper(payload):
            images = payload.get('images') or []
            return UserProfile(
                id=payload['id'],
                display_name=payload.get('display_name'),
                followers=(payload.get('followers') or {}).get('total') or 0,
                image=images[0].get('url') or '' if images else '',
            )

        return self._map('profile', mapper, data)

    def get_top_tracks(self, token: str, limit: int = 20,
                       time_range: str = 'medium_term') -> List[Track]:
        data = self._fetch(token, 'top tracks', 'current_user_top_tracks',
                           limit=limit, offset=0, time_range=time_range)
        return self._map('top tracks', lambda p: [map_track(t) for t in self._items(p)], data)

    def get_top_artists(self, token: str, limit: int = 20,
                        time_range: str = 'medium_term') -> List[Artist]:
        data = self._fetch(token, 'top artists', 'current_user_top_artists',
                           limit=limit, offset=0, time_range=time_range)
        return self._map('top artists', lambda p: [map_artist(a) for a in self._items(p)], data)

    def get_audio_features(self, token: str, track_id: str) -> AudioFeatures:
        """Audio features of one track.

        Raises:
            NotFound: the upstream has no features for the track.
        """
        data = self._fetch(token, 'audio features', 'audio_features', [track_id])
        features = data[0] if isinstance(data, list) and data else None
        if not features:
            raise NotFound(f"No audio features for track {track_id}")
        return self._map('audio features', map_audio_features, features)

    def get_library_tracks_count(self, token: str) -> int:
        data = self._fetch(token, 'saved tracks', 'current_user_saved_tracks', limit=1)
        return self._map('saved tracks', lambda p: int(p['total']), data)

    def get_user_playlists(self, token: str, limit: int = 20, offset: int = 0) -> List[Playlist]:
        data = self._fetch(token, 'playlists', 'current_user_playlists', limit=limit, offset=offset)
        return self._map('playlists', lambda p: [map_playlist(pl) for pl in self._items(p)], data)

    def get_followed_artists(self, token: str, limit: int = 20,
                             after: Optional[str] = None) -> FollowedArtists:
        data = self._fetch(token, 'followed artists', 'current_user_followed_artists',
                           limit=limit, after=after)

        def mapper(payload):
            artists = payload['artists']
            return FollowedArtists(
                total=artists.get('total') or 0,
                items=[map_artist(a) for a in self._items(artists)],
                next_after=(artists.get('cursors') or {}).get('after'),
            )

        return self._map('followed artists', mapper, data)

    def get_recently_played_durations(self, token: str,
                                      limit: int = RECENTLY_PLAYED_LIMIT) -> List[int]:
        """Durations in milliseconds of the most recently played tracks."""
        data = self._fetch(token, 'recently played', 'current_user_recently_played', limit=limit)
        return self._map(
            'recently played',
            lambda p: [(item.get('track') or {}).get('duration_ms') or 0 for item in self._items(p)],
            data,
        )

    def get_genre_stats(self, token: str, limit: int = 20,
                        time_range: str = 'medium_term') -> List[GenreStat]:
        return count_genres(self.get_top_artists(token, limit, time_range))

    def get_hours_listened(self, token: str, today: Optional[date] = None) -> int:
        """Estimated hours listened this year, extrapolated from recent plays."""
        return estimate_hours_listened(self.get_recently_played_durations(token), today)

    def get_artists_discovered(self, token: str) -> int:
        return len(self.get_top_artists(token, DISCOVERY_LIMIT, 'long_term'))

    def get_playlists_created_in_year(self, token: str, year: int) -> int:
        """Count user-owned playlists whose snapshot falls in year."""
        data = self._fetch(token, 'playlists', 'current_user_playlists', limit=PLAYLIST_SCAN_LIMIT)

        def mapper(payload):
            return sum(
                1 for p in self._items(payload)
                if is_created_in_year((p.get('owner') or {}).get('id'), p.get('snapshot_id'), year)
            )

        return self._map('playlists', mapper, data)

    def get_artist_top_tracks(self, token: str, artist_id: str) -> List[RandomTrack]:
        data = self._fetch(token, 'artist top tracks', 'artist_top_tracks',
                           artist_id, country=self.settings.market)
        return self._map(
            'artist top tracks',
            lambda p: [map_random_track(t) for t in p.get('tracks') or [] if t],
            data,
        )

    def get_random_tracks(self, token: str, time_range: str = 'medium_term') -> List[RandomTrack]:
        """Random picks from the top tracks of a few of the user's top artists.

        Issues one top-artists read and then one read per sampled artist,
        concurrently. A failed artist lookup is skipped.
        """
        artists = self.get_top_artists(token, RANDOM_ARTIST_POOL, time_range)
        if not artists:
            return []

        sampled = self._rng.sample(artists, min(RANDOM_ARTIST_SAMPLE, len(artists)))
        pool: List[RandomTrack] = []
        with ThreadPoolExecutor(max_workers=len(sampled)) as executor:
            futures = [(artist, executor.submit(self.get_artist_top_tracks, token, artist.id))
                       for artist in sampled]
            for artist, future in futures:
                try:
                    pool.extend(future.result())
                except (UpstreamFailure, InvalidResponseFormat) as e:
                    logger.warning(f"Failed fetching recommended tracks for artist {artist.name}: {e}")

        self._rng.shuffle(pool)
        return pool[:RANDOM_TRACK_COUNT]
