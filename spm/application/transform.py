from __future__ import annotations

import logging
import math
import random
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

from spm.domain.entities import ItemKind, PlanResult, PlaylistItem


logger = logging.getLogger(__name__)

_MASK32 = 0xFFFFFFFF


def _imul(a: int, b: int) -> int:
    return (a * b) & _MASK32


def mulberry32(seed: int) -> Callable[[], float]:
    """Return a portable 32-bit PRNG producing floats in [0, 1).

    Same seed yields the same sequence on every platform and interpreter.
    """
    state = seed & _MASK32

    def _next() -> float:
        nonlocal state
        state = (state + 0x6D2B79F5) & _MASK32
        t = state
        t = _imul(t ^ (t >> 15), t | 1)
        t ^= (t + _imul(t ^ (t >> 7), t | 61)) & _MASK32
        t &= _MASK32
        return ((t ^ (t >> 14)) & _MASK32) / 4294967296

    return _next


def fisher_yates(values: List[str], rand: Callable[[], float]) -> None:
    """Shuffle values in place with backward Fisher-Yates."""
    for i in range(len(values) - 1, 0, -1):
        j = int(math.floor(rand() * (i + 1)))
        values[i], values[j] = values[j], values[i]


def chunk_by_size(values: Sequence[str], size: int) -> List[List[str]]:
    return [list(values[i:i + size]) for i in range(0, len(values), size)]


def chunk_by_count(values: Sequence[str], count: int) -> List[List[str]]:
    """Split values into ``count`` chunks whose sizes differ by at most one.

    Earlier chunks take the remainder; empty chunks are skipped.
    """
    if count <= 1:
        return [list(values)]
    base, remainder = divmod(len(values), count)
    chunks: List[List[str]] = []
    start = 0
    for i in range(count):
        size = base + (1 if i < remainder else 0)
        if size == 0:
            continue
        chunks.append(list(values[start:start + size]))
        start += size
    return chunks or [list(values)]


def split_tracks(items: Sequence[PlaylistItem]) -> Tuple[List[PlaylistItem], int, int]:
    """Separate resolvable tracks from episodes and unknown items.

    Returns:
        Tuple of (tracks, dropped_episodes, dropped_unknown)
    """
    tracks: List[PlaylistItem] = []
    dropped_episodes = 0
    dropped_unknown = 0
    for item in items:
        if item.kind is ItemKind.EPISODE:
            dropped_episodes += 1
        elif item.kind is not ItemKind.TRACK or not item.uri:
            dropped_unknown += 1
        else:
            tracks.append(item)
    return tracks, dropped_episodes, dropped_unknown


def uris_changed(before: Sequence[str], after: Sequence[str]) -> bool:
    if len(before) != len(after):
        return True
    return any(a != b for a, b in zip(before, after))


def plan_shuffle(items: Sequence[PlaylistItem], group_size: Optional[int] = None,
                 groups: Optional[int] = None, seed: Optional[int] = None) -> PlanResult:
    """Shuffle track order, optionally inside consecutive groups.

    Args:
        items: Normalized playlist items
        group_size: Shuffle within consecutive chunks of this size (takes precedence)
        groups: Shuffle within exactly this many near-equal chunks
        seed: Optional integer seed for a reproducible order

    Returns:
        PlanResult with the shuffled URIs
    """
    tracks, dropped_episodes, dropped_unknown = split_tracks(items)
    uris = [t.uri for t in tracks]
    if len(uris) <= 1:
        return PlanResult(uris=uris, dropped_episodes=dropped_episodes, dropped_unknown=dropped_unknown)

    rand = mulberry32(seed) if seed is not None else random.random

    if group_size is not None and group_size > 0:
        chunks = chunk_by_size(uris, group_size)
    elif groups is not None and groups > 0:
        chunks = chunk_by_count(uris, groups)
    else:
        chunks = [uris]

    shuffled: List[str] = []
    for chunk in chunks:
        fisher_yates(chunk, rand)
        shuffled.extend(chunk)

    logger.debug(f"Shuffled {len(shuffled)} tracks in {len(chunks)} group(s)")
    return PlanResult(uris=shuffled, dropped_episodes=dropped_episodes, dropped_unknown=dropped_unknown)


def plan_dedup(items: Sequence[PlaylistItem], keep: str = "first") -> PlanResult:
    tracks, dropped_episodes, dropped_unknown = split_tracks(items)
    seen = set()
    result: List[str] = []
    ordered = tracks if keep != "last" else list(reversed(tracks))
    for track in ordered:
        if track.uri in seen:
            continue
        seen.add(track.uri)
        result.append(track.uri)
    if keep == "last":
        result.reverse()
    return PlanResult(uris=result, dropped_episodes=dropped_episodes, dropped_unknown=dropped_unknown)


def plan_cleanup(items: Sequence[PlaylistItem], market: Optional[str] = None) -> PlanResult:
    """Drop episodes, unknown items, unplayable tracks and tracks unavailable in market."""
    tracks, dropped_episodes, dropped_unknown = split_tracks(items)
    market_code = market.upper() if market else None
    result: List[str] = []
    for track in tracks:
        if track.is_playable is False:
            continue
        if market_code and track.available_markets and market_code not in track.available_markets:
            continue
        result.append(track.uri)
    return PlanResult(uris=result, dropped_episodes=dropped_episodes, dropped_unknown=dropped_unknown)


def _added_at_timestamp(value: Optional[str]) -> float:
    if not value:
        return 0.0
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


def plan_sort(items: Sequence[PlaylistItem], by: str = "added_at", order: str = "asc") -> PlanResult:
    """Stable sort by added_at or popularity. Missing values sort as lowest."""
    tracks, dropped_episodes, dropped_unknown = split_tracks(items)
    if by == "popularity":
        def key(item: PlaylistItem) -> float:
            return item.popularity if item.popularity is not None else -1
    else:
        def key(item: PlaylistItem) -> float:
            return _added_at_timestamp(item.added_at)

    # ties keep load order in both directions
    ordered = sorted(tracks, key=key, reverse=(order == "desc"))
    return PlanResult(uris=[t.uri for t in ordered], dropped_episodes=dropped_episodes,
                      dropped_unknown=dropped_unknown)


def plan_trim(items: Sequence[PlaylistItem], keep: int, from_: str = "start") -> PlanResult:
    tracks, dropped_episodes, dropped_unknown = split_tracks(items)
    uris = [t.uri for t in tracks]
    n = max(0, int(math.floor(keep)))
    if n == 0:
        kept: List[str] = []
    elif from_ == "end":
        kept = uris[-n:]
    else:
        kept = uris[:n]
    return PlanResult(uris=kept, dropped_episodes=dropped_episodes, dropped_unknown=dropped_unknown)


def plan_reverse(items: Sequence[PlaylistItem]) -> PlanResult:
    tracks, dropped_episodes, dropped_unknown = split_tracks(items)
    return PlanResult(uris=[t.uri for t in reversed(tracks)], dropped_episodes=dropped_episodes,
                      dropped_unknown=dropped_unknown)
