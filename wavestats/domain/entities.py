from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class CredentialPair:
    """Access/refresh token pair issued by the upstream token endpoint."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None


@dataclass(frozen=True)
class Image:
    url: str
    height: Optional[int] = None
    width: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "height": self.height, "width": self.width}


@dataclass(frozen=True)
class Album:
    name: Optional[str] = None
    release_date: Optional[str] = None
    album_type: Optional[str] = None
    images: List[Image] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "release_date": self.release_date,
            "album_type": self.album_type,
            "images": [image.to_dict() for image in self.images],
        }


@dataclass(frozen=True)
class Track:
    """Canonical track independent of the upstream payload."""

    id: str
    name: str
    artists: List[str] = field(default_factory=list)
    album: Optional[Album] = None
    external_url: str = ""
    preview_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "artists": list(self.artists),
            "album": self.album.to_dict() if self.album else None,
            "external_urls": {"spotify": self.external_url},
            "previewUrl": self.preview_url,
        }


@dataclass(frozen=True)
class Artist:
    id: str
    name: str
    genres: List[str] = field(default_factory=list)
    popularity: Optional[int] = None
    images: List[Image] = field(default_factory=list)
    external_url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "genres": list(self.genres),
            "popularity": self.popularity,
            "images": [image.to_dict() for image in self.images],
            "external_urls": {"spotify": self.external_url},
        }


AUDIO_FEATURE_METRICS = (
    "danceability",
    "energy",
    "tempo",
    "valence",
    "speechiness",
    "acousticness",
    "instrumentalness",
    "liveness",
)


@dataclass(frozen=True)
class AudioFeatures:
    danceability: Optional[float] = None
    energy: Optional[float] = None
    tempo: Optional[float] = None
    valence: Optional[float] = None
    speechiness: Optional[float] = None
    acousticness: Optional[float] = None
    instrumentalness: Optional[float] = None
    liveness: Optional[float] = None
    duration_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {name: getattr(self, name) for name in AUDIO_FEATURE_METRICS}
        data["duration_ms"] = self.duration_ms
        return data


@dataclass(frozen=True)
class GenreStat:
    genre: str
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"genre": self.genre, "count": self.count}


@dataclass(frozen=True)
class UserStat:
    """Listening statistics derived per request, never cached."""

    hours_listened: int
    artists_discovered: int
    songs_in_library: int
    playlists_created: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hoursListened": self.hours_listened,
            "artistsDiscovered": self.artists_discovered,
            "songsInLibrary": self.songs_in_library,
            "playlistsCreated": self.playlists_created,
        }


@dataclass(frozen=True)
class UserProfile:
    id: str
    display_name: Optional[str] = None
    followers: int = 0
    image: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "followers": self.followers,
            "image": self.image,
        }


@dataclass(frozen=True)
class Playlist:
    id: str
    name: str
    owner: str = "Unknown"
    description: Optional[str] = None
    total_tracks: int = 0
    public: bool = False
    images: List[Image] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "owner": self.owner,
            "totalTracks": self.total_tracks,
            "public": self.public,
            "images": [image.to_dict() for image in self.images],
        }


@dataclass(frozen=True)
class FollowedArtists:
    total: int
    items: List[Artist] = field(default_factory=list)
    next_after: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "items": [artist.to_dict() for artist in self.items],
            "next_after": self.next_after,
        }


@dataclass(frozen=True)
class ArtistRef:
    id: str
    name: str


@dataclass(frozen=True)
class RandomTrack:
    """Slim track shape used by random recommendations."""

    id: str
    name: str
    duration_ms: Optional[int] = None
    preview_url: Optional[str] = None
    album_name: Optional[str] = None
    album_image_url: Optional[str] = None
    artists: List[ArtistRef] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "durationMs": self.duration_ms,
            "previewUrl": self.preview_url,
            "album": {"name": self.album_name, "imageUrl": self.album_image_url},
            "artists": [{"id": a.id, "name": a.name} for a in self.artists],
        }


@dataclass
class CachedUser:
    """Last-seen profile and top tracks of a user, kept by the profile store."""

    id: str
    display_name: Optional[str] = None
    followers: int = 0
    image: str = ""
    top_tracks: List[Dict[str, Any]] = field(default_factory=list)

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "followers": self.followers,
            "image": self.image,
            "topTracks": list(self.top_tracks),
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "CachedUser":
        return cls(
            id=data["id"],
            display_name=data.get("display_name"),
            followers=data.get("followers", 0),
            image=data.get("image", ""),
            top_tracks=list(data.get("topTracks") or []),
        )
