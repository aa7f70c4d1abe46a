from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ItemKind(str, Enum):
    """Variant of a playlist entry."""

    TRACK = "track"
    EPISODE = "episode"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class PlaylistItem:
    """Normalized playlist entry as seen by the planners."""

    index: int
    kind: ItemKind = ItemKind.UNKNOWN
    uri: Optional[str] = None
    id: Optional[str] = None
    name: Optional[str] = None
    artists: Optional[List[str]] = None
    added_at: Optional[str] = None
    popularity: Optional[int] = None
    duration_ms: Optional[int] = None
    is_local: bool = False
    is_playable: Optional[bool] = None
    available_markets: Optional[List[str]] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "kind": self.kind.value,
            "uri": self.uri,
            "id": self.id,
            "name": self.name,
            "artists": self.artists,
            "added_at": self.added_at,
            "popularity": self.popularity,
            "is_playable": self.is_playable,
            "is_local": self.is_local,
        }


@dataclass(frozen=True)
class PlanResult:
    """Desired track URI order computed by a planner."""

    uris: List[str]
    dropped_episodes: int = 0
    dropped_unknown: int = 0


@dataclass(frozen=True)
class PlaylistMeta:
    """Playlist metadata, including the snapshot token used by the apply guard."""

    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    snapshot_id: Optional[str] = None
    public: Optional[bool] = None
    collaborative: Optional[bool] = None
    owner_id: Optional[str] = None
    owner_name: Optional[str] = None
    followers: Optional[int] = None
    total_tracks: Optional[int] = None
    images: List[Dict[str, Any]] = field(default_factory=list)
    spotify_url: Optional[str] = None


@dataclass(frozen=True)
class LoadedItems:
    """Result of paging through a playlist's items."""

    items: List[PlaylistItem]
    total: int = 0
    next: Optional[str] = None


class ApplyState(str, Enum):
    """States of one guarded apply invocation."""

    PLANNED = "planned"
    PREVIEW_ONLY = "preview_only"
    GUARD_FAILED = "guard_failed"
    APPLYING = "applying"
    APPLIED = "applied"


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of a guarded mutation, identical in shape for preview and apply."""

    action: str
    playlist_id: str
    before_count: int
    after_count: int
    removed: int
    dropped_episodes: int
    changed: bool
    applied: bool = False
    snapshot_id: Optional[str] = None
    state: ApplyState = ApplyState.PREVIEW_ONLY

    def to_json(self) -> Dict[str, Any]:
        payload = {
            "action": self.action,
            "playlist_id": self.playlist_id,
            "before_count": self.before_count,
            "after_count": self.after_count,
            "removed": self.removed,
            "dropped_episodes": self.dropped_episodes,
            "changed": self.changed,
            "applied": self.applied,
            "state": self.state.value,
        }
        if self.snapshot_id is not None:
            payload["snapshot_id"] = self.snapshot_id
        return payload


@dataclass(frozen=True)
class RecommendationTrack:
    """Candidate returned by the recommendation source."""

    uri: str
    id: str
    name: Optional[str] = None
    popularity: Optional[float] = None
    duration_ms: Optional[float] = None
    is_playable: Optional[bool] = None
    available_markets: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class RecommendationRequest:
    """Query for one round of candidate fetching."""

    seed_track_uris: List[str]
    limit: int
    min_popularity: int
    max_duration_ms: int
    market: Optional[str] = None
    seed_profile_query: Optional[Dict[str, float]] = None


@dataclass(frozen=True)
class RecommendationBatch:
    """Candidates plus any non-fatal warnings from the source."""

    tracks: List[RecommendationTrack] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class AudioFeatures:
    """Per-track audio attributes. Only `key` is used outside seed profiling."""

    uri: str
    key: Optional[int] = None
    acousticness: Optional[float] = None
    danceability: Optional[float] = None
    energy: Optional[float] = None
    instrumentalness: Optional[float] = None
    liveness: Optional[float] = None
    speechiness: Optional[float] = None
    valence: Optional[float] = None
    tempo: Optional[float] = None
    loudness: Optional[float] = None


@dataclass(frozen=True)
class TrackSummary:
    """Minimal track record used for seed popularity."""

    uri: str
    name: Optional[str] = None
    popularity: Optional[float] = None


@dataclass
class SourceFilterStats:
    dropped_noname: int = 0
    dropped_excluded: int = 0
    dropped_unplayable: int = 0
    dropped_market: int = 0
    dropped_popularity: int = 0
    dropped_duration: int = 0

    def total(self) -> int:
        return (self.dropped_noname + self.dropped_excluded + self.dropped_unplayable
                + self.dropped_market + self.dropped_popularity + self.dropped_duration)


@dataclass
class KeyDiversityStats:
    enabled: bool = False
    dropped_by_key: int = 0
    key_cap: int = 0
    disabled_by_api: bool = False


@dataclass
class SeedProfileStats:
    enabled: bool = False
    used: bool = False


@dataclass
class FilterStats:
    """Drop counters and feature flags for one generation run. Observational only."""

    source_filter: SourceFilterStats = field(default_factory=SourceFilterStats)
    key_diversity: KeyDiversityStats = field(default_factory=KeyDiversityStats)
    seed_profile: SeedProfileStats = field(default_factory=SeedProfileStats)
    stagnation_by_filters: int = 0

    def to_json(self) -> Dict[str, Any]:
        return {
            "source_filter": {
                "dropped_noname": self.source_filter.dropped_noname,
                "dropped_excluded": self.source_filter.dropped_excluded,
                "dropped_unplayable": self.source_filter.dropped_unplayable,
                "dropped_market": self.source_filter.dropped_market,
                "dropped_popularity": self.source_filter.dropped_popularity,
                "dropped_duration": self.source_filter.dropped_duration,
            },
            "key_diversity": {
                "enabled": self.key_diversity.enabled,
                "dropped_by_key": self.key_diversity.dropped_by_key,
                "key_cap": self.key_diversity.key_cap,
                "disabled_by_api": self.key_diversity.disabled_by_api,
            },
            "seed_profile": {
                "enabled": self.seed_profile.enabled,
                "used": self.seed_profile.used,
            },
            "stagnation_by_filters": self.stagnation_by_filters,
        }


@dataclass(frozen=True)
class GenerateResult:
    """Result of recommendation pool generation."""

    seed_count: int
    generated_count: int
    shortfall: int
    track_uris: List[str]
    warnings: List[str]
    filtered_count: int
    filter_stats: FilterStats
