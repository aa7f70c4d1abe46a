from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

from spm.crosscutting.logging import log_generation_summary
from spm.domain.entities import (
    FilterStats,
    GenerateResult,
    RecommendationRequest,
    RecommendationTrack,
)
from spm.domain.errors import EndpointUnavailable, FeatureUnavailable, UsageError
from spm.domain.ports import RecommendationSource


logger = logging.getLogger(__name__)

DEFAULT_MAX_KEY_SHARE_PERCENT = 25
MAX_SEEDS_PER_REQUEST = 5

PROFILE_FEATURES = (
    "acousticness",
    "danceability",
    "energy",
    "instrumentalness",
    "liveness",
    "speechiness",
    "valence",
    "tempo",
    "loudness",
)


@dataclass(frozen=True)
class GenerationConfig:
    """Tunables for one generation run.

    Defaults: target_size=100, min_popularity=30, max_duration_ms=240000 (4 min),
    max_key_share_percent=25, seed_profile and diversify_keys on, at most 8
    rounds, stop after 2 consecutive rounds without growth, 100 candidates per
    request, no market filter, nothing excluded.
    """

    target_size: int = 100
    min_popularity: int = 30
    max_duration_ms: int = 240000
    max_key_share_percent: int = DEFAULT_MAX_KEY_SHARE_PERCENT
    seed_profile: bool = True
    diversify_keys: bool = True
    max_rounds: int = 8
    stagnation_limit: int = 2
    batch_limit: int = 100
    market: Optional[str] = None
    exclude_track_uris: Tuple[str, ...] = ()


@dataclass
class TrackPoolState:
    """Accumulator owned by one generation call."""

    accepted: List[str] = field(default_factory=list)
    seen: Set[str] = field(default_factory=set)
    key_counts: Dict[int, int] = field(default_factory=dict)
    key_by_uri: Dict[str, int] = field(default_factory=dict)

    def accept(self, uri: str) -> None:
        self.seen.add(uri)
        self.accepted.append(uri)


@dataclass(frozen=True)
class SeedProfile:
    query: Dict[str, float]
    used: bool
    warnings: List[str]


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def unique_ordered(values: Sequence[str]) -> List[str]:
    seen = set()
    out = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


def validate_generation_config(config: GenerationConfig, seed_track_uris: Sequence[str]) -> List[str]:
    """Validate parameters before any network call.

    Returns:
        Unique seeds in original order

    Raises:
        UsageError: If any parameter is out of range
    """
    if not _is_int(config.target_size) or not 1 <= config.target_size <= 100:
        raise UsageError("--target-size must be an integer between 1 and 100.")
    if not _is_int(config.min_popularity) or not 0 <= config.min_popularity <= 100:
        raise UsageError("--min-popularity must be an integer between 0 and 100.")
    if not _is_int(config.max_duration_ms) or config.max_duration_ms <= 0:
        raise UsageError("--max-duration-ms must be a positive integer.")
    if not _is_int(config.max_key_share_percent) or not 1 <= config.max_key_share_percent <= 100:
        raise UsageError("--max-key-share must be an integer between 1 and 100.")
    if not config.diversify_keys and config.max_key_share_percent != DEFAULT_MAX_KEY_SHARE_PERCENT:
        raise UsageError("--max-key-share is only applicable with --diversify-keys.")
    if len(seed_track_uris) < 3 or len(seed_track_uris) > 5:
        raise UsageError("Provide 3 to 5 seed tracks.")
    unique_seeds = unique_ordered(seed_track_uris)
    if len(unique_seeds) < 3:
        raise UsageError("Provide at least 3 unique seed tracks.")
    return unique_seeds


def resolve_seed_profile(source: RecommendationSource, seed_track_uris: Sequence[str],
                         min_popularity: int) -> SeedProfile:
    """Derive target_* attributes from the seed tracks.

    Popularity and audio features are fetched concurrently. If either
    endpoint is unavailable the profile is not used.
    """
    seeds = unique_ordered(seed_track_uris)[:MAX_SEEDS_PER_REQUEST]
    if not seeds:
        return SeedProfile(query={}, used=False, warnings=["Seed profile disabled: no valid seed tracks."])

    with ThreadPoolExecutor(max_workers=2) as executor:
        tracks_future = executor.submit(source.fetch_tracks, seeds)
        features_future = executor.submit(source.fetch_audio_features, seeds)
        try:
            tracks = tracks_future.result()
            features = features_future.result()
        except EndpointUnavailable as e:
            logger.info(f"Seed profile unavailable: {e.message}")
            return SeedProfile(query={}, used=False,
                               warnings=["Seed profile is unavailable from Spotify profile endpoints."])

    query: Dict[str, float] = {}
    popularity_values = [t.popularity for t in tracks if _is_number(t.popularity)]
    if popularity_values:
        avg = sum(popularity_values) / len(popularity_values)
        query["target_popularity"] = int(math.floor(max(0.0, min(100.0, avg)) + 0.5))
    else:
        query["target_popularity"] = min_popularity

    for name in PROFILE_FEATURES:
        values = [getattr(f, name) for f in features.values() if _is_number(getattr(f, name))]
        if values:
            query[f"target_{name}"] = round(sum(values) / len(values), 6)

    return SeedProfile(query=query, used=True, warnings=[])


class TrackPoolGenerator:
    """Grows a pool of recommended tracks from a small set of seeds."""

    def __init__(self, source: RecommendationSource, config: GenerationConfig):
        """Initialize the generator.

        Args:
            source: Recommendation source (e.g., Spotify)
            config: Generation tunables
        """
        self.source = source
        self.config = config
        self.warnings: List[str] = []
        self.stats = FilterStats()
        self.state = TrackPoolState()
        self.key_cap = max(1, math.ceil(config.target_size * config.max_key_share_percent / 100))
        self._exclude = set(config.exclude_track_uris)
        self._market = config.market.strip().upper() if config.market else None

    def _disable_key_diversity(self) -> None:
        self.stats.key_diversity.enabled = False
        self.stats.key_diversity.disabled_by_api = True
        self.warnings.append("key_diversity: disabled because audio-features is unavailable.")

    def _init_key_counts(self, seeds: Sequence[str]) -> None:
        try:
            features = self.source.fetch_audio_features(list(seeds))
        except EndpointUnavailable:
            self._disable_key_diversity()
            return
        for uri in seeds:
            feature = features.get(uri)
            if feature is not None and _is_int(feature.key):
                self.state.key_by_uri[uri] = feature.key
                self.state.key_counts[feature.key] = self.state.key_counts.get(feature.key, 0) + 1
        if self.state.key_counts:
            self.warnings.append("key_diversity: initialized from seed key profile.")

    def _passes_source_filter(self, candidate: RecommendationTrack) -> bool:
        counters = self.stats.source_filter
        if not candidate.name or not candidate.name.strip():
            counters.dropped_noname += 1
            return False
        if candidate.uri in self._exclude:
            counters.dropped_excluded += 1
            return False
        if candidate.is_playable is False:
            counters.dropped_unplayable += 1
            return False
        if _is_number(candidate.popularity) and candidate.popularity < self.config.min_popularity:
            counters.dropped_popularity += 1
            return False
        if _is_number(candidate.duration_ms) and candidate.duration_ms > self.config.max_duration_ms:
            counters.dropped_duration += 1
            return False
        if self._market and candidate.available_markets and self._market not in candidate.available_markets:
            counters.dropped_market += 1
            return False
        return True

    def _apply_key_cap(self, candidates: List[RecommendationTrack]) -> List[RecommendationTrack]:
        missing = unique_ordered([c.uri for c in candidates if c.uri not in self.state.key_by_uri])
        if missing:
            try:
                features = self.source.fetch_audio_features(missing)
            except EndpointUnavailable:
                self._disable_key_diversity()
                features = {}
            for uri in missing:
                feature = features.get(uri)
                if feature is not None and _is_int(feature.key):
                    self.state.key_by_uri[uri] = feature.key

        accepted: List[RecommendationTrack] = []
        for candidate in candidates:
            key = self.state.key_by_uri.get(candidate.uri)
            if key is not None:
                current = self.state.key_counts.get(key, 0)
                if current >= self.key_cap:
                    self.stats.key_diversity.dropped_by_key += 1
                    continue
                self.state.key_counts[key] = current + 1
            accepted.append(candidate)
            if len(accepted) + len(self.state.accepted) >= self.config.target_size:
                break
        return accepted

    def _fetch_round(self, round_seeds: List[str], profile_query: Optional[Dict[str, float]]):
        request = RecommendationRequest(
            seed_track_uris=round_seeds,
            limit=self.config.batch_limit,
            min_popularity=self.config.min_popularity,
            max_duration_ms=self.config.max_duration_ms,
            market=self.config.market,
            seed_profile_query=profile_query,
        )
        try:
            return self.source.fetch_recommendations(request)
        except EndpointUnavailable as e:
            raise FeatureUnavailable(
                "Spotify recommendations endpoint is unavailable.",
                hint="Use an app in Extended quota mode to access /recommendations.",
            ) from e

    def _finish(self, unique_seeds: List[str], stale_rounds: int) -> GenerateResult:
        config = self.config
        stats = self.stats
        stats.stagnation_by_filters = min(config.stagnation_limit, stale_rounds)
        accepted = self.state.accepted
        shortfall = max(0, config.target_size - len(accepted))
        if shortfall > 0:
            self.warnings.append(
                f"Generated {len(accepted)}/{config.target_size} tracks; Spotify recommendations exhausted."
            )
        if stale_rounds >= config.stagnation_limit:
            stats.stagnation_by_filters = stale_rounds
            self.warnings.append(f"stagnation_by_filters: no growth in {stale_rounds} consecutive rounds.")

        counters = stats.source_filter
        for name in ("dropped_noname", "dropped_excluded", "dropped_unplayable",
                     "dropped_market", "dropped_popularity", "dropped_duration"):
            value = getattr(counters, name)
            if value > 0:
                self.warnings.append(f"source_filter: {name}={value}")
        if stats.key_diversity.dropped_by_key > 0:
            self.warnings.append(f"key_diversity: dropped_by_key={stats.key_diversity.dropped_by_key}")

        return GenerateResult(
            seed_count=len(unique_seeds),
            generated_count=len(accepted),
            shortfall=shortfall,
            track_uris=list(accepted),
            warnings=self.warnings,
            filtered_count=counters.total() + stats.key_diversity.dropped_by_key,
            filter_stats=stats,
        )

    def generate(self, seed_track_uris: Sequence[str]) -> GenerateResult:
        """Run the rounds until the target size, the round limit or stagnation is reached.

        Args:
            seed_track_uris: 3 to 5 seed track URIs

        Returns:
            GenerateResult with accepted URIs (seeds first), warnings and filter stats

        Raises:
            UsageError: If parameters are invalid
            FeatureUnavailable: If the recommendations endpoint is unavailable
        """
        config = self.config
        unique_seeds = validate_generation_config(config, seed_track_uris)

        duplicates = len(seed_track_uris) - len(unique_seeds)
        if duplicates > 0:
            self.warnings.append(f"Dropped {duplicates} duplicate seed track(s).")
        if self._exclude:
            self.warnings.append(f"Exclude list size: {len(self._exclude)}")

        self.stats.key_diversity.enabled = config.diversify_keys
        self.stats.key_diversity.key_cap = self.key_cap
        self.stats.seed_profile.enabled = config.seed_profile

        for uri in unique_seeds[:config.target_size]:
            self.state.accept(uri)

        profile_query: Optional[Dict[str, float]] = None
        if config.seed_profile:
            profile = resolve_seed_profile(self.source, unique_seeds, config.min_popularity)
            self.stats.seed_profile.used = profile.used
            if not profile.used:
                self.warnings.append("seed_profile: disabled fallback; using quality filters only.")
            self.warnings.extend(profile.warnings)
            profile_query = profile.query

        if config.diversify_keys:
            self._init_key_counts(unique_seeds)

        round_seeds = unique_seeds[:MAX_SEEDS_PER_REQUEST]
        stale_rounds = 0

        for round_index in range(config.max_rounds):
            if len(self.state.accepted) >= config.target_size:
                break

            batch = self._fetch_round(round_seeds, profile_query)
            self.warnings.extend(f"recommendation: {line}" for line in batch.warnings)

            filtered = [c for c in batch.tracks
                        if c.uri not in self.state.seen and self._passes_source_filter(c)]
            logger.debug(f"Round {round_index}: {len(batch.tracks)} candidates, {len(filtered)} after filters")

            if not filtered:
                stale_rounds += 1
                if stale_rounds >= config.stagnation_limit:
                    break
                continue

            if self.stats.key_diversity.enabled:
                candidates = self._apply_key_cap(filtered)
            else:
                candidates = filtered

            new_tracks: List[str] = []
            for candidate in candidates:
                if len(self.state.accepted) >= config.target_size:
                    break
                if candidate.uri in self.state.seen:
                    continue
                self.state.accept(candidate.uri)
                new_tracks.append(candidate.uri)

            if not new_tracks:
                stale_rounds += 1
                if stale_rounds >= config.stagnation_limit:
                    break
                continue

            stale_rounds = 0
            round_seeds = new_tracks[:MAX_SEEDS_PER_REQUEST]

        result = self._finish(unique_seeds, stale_rounds)
        log_generation_summary(logger, result)
        return result


def generate_track_pool(seed_track_uris: Sequence[str], config: GenerationConfig,
                        source: RecommendationSource) -> GenerateResult:
    """Generate a recommendation pool of up to config.target_size tracks."""
    return TrackPoolGenerator(source, config).generate(seed_track_uris)
