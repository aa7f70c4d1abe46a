from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Optional, TextIO
from urllib.parse import urlparse

from .entities import ItemKind, PlaylistItem
from .errors import UsageError


_SPLIT_REFS_PATTERN = re.compile(r"[\s,]+")
_URI_PREFIX = "spotify:"
_OPEN_HOSTS = {"open.spotify.com", "play.spotify.com"}


def _str_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _int_or_none(value: Any) -> Optional[int]:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _bool_or_none(value: Any) -> Optional[bool]:
    return value if isinstance(value, bool) else None


def _string_list(value: Any) -> Optional[List[str]]:
    if not isinstance(value, list):
        return None
    return [v for v in value if isinstance(v, str)]


def normalize_item(raw: Dict[str, Any], index: int) -> PlaylistItem:
    """Convert one raw playlist item object into a PlaylistItem.

    Args:
        raw: Item object as returned by the playlist items endpoint
        index: Zero-based position of the item in the playlist

    Returns:
        Normalized PlaylistItem. A missing track object yields kind ``unknown``.
    """
    raw = raw or {}
    added_at = _str_or_none(raw.get("added_at"))
    track = raw.get("track")
    if not isinstance(track, dict):
        return PlaylistItem(index=index, kind=ItemKind.UNKNOWN, added_at=added_at)

    type_ = track.get("type")
    if type_ == "track":
        kind = ItemKind.TRACK
    elif type_ == "episode":
        kind = ItemKind.EPISODE
    else:
        kind = ItemKind.UNKNOWN

    artists_raw = track.get("artists")
    artists = None
    if isinstance(artists_raw, list):
        artists = [a["name"] for a in artists_raw if isinstance(a, dict) and isinstance(a.get("name"), str)]

    return PlaylistItem(
        index=index,
        kind=kind,
        uri=_str_or_none(track.get("uri")),
        id=_str_or_none(track.get("id")),
        name=_str_or_none(track.get("name")),
        artists=artists,
        added_at=added_at,
        popularity=_int_or_none(track.get("popularity")),
        duration_ms=_int_or_none(track.get("duration_ms")),
        is_local=bool(raw.get("is_local") or track.get("is_local")),
        is_playable=_bool_or_none(track.get("is_playable")),
        available_markets=_string_list(track.get("available_markets")),
    )


def normalize_items(raw_items: Iterable[Dict[str, Any]], start_index: int = 0) -> List[PlaylistItem]:
    return [normalize_item(raw, start_index + i) for i, raw in enumerate(raw_items)]


def parse_spotify_ref(text: str) -> Dict[str, Optional[str]]:
    """Parse a URI, open.spotify.com URL or raw id.

    Returns a dict with ``type`` (None for raw ids) and ``id``.
    """
    value = (text or "").strip()
    if not value:
        raise UsageError("Missing Spotify ID/URL/URI.")

    if value.startswith(_URI_PREFIX):
        parts = value.split(":")
        # spotify:user:<user>:playlist:<id>
        if len(parts) >= 5 and parts[1] == "user" and parts[3] == "playlist":
            return {"type": "playlist", "id": parts[4]}
        if len(parts) >= 3 and parts[1] and parts[2]:
            return {"type": parts[1], "id": parts[2]}
        raise UsageError(f"Invalid Spotify URI: {value}")

    if value.startswith("http://") or value.startswith("https://"):
        parsed = urlparse(value)
        if parsed.netloc not in _OPEN_HOSTS:
            raise UsageError(f"Unsupported Spotify URL: {value}")
        segments = [s for s in parsed.path.split("/") if s]
        # Localized URLs carry an "intl-xx" prefix segment
        if segments and segments[0].startswith("intl-"):
            segments = segments[1:]
        if len(segments) >= 4 and segments[0] == "user" and segments[2] == "playlist":
            return {"type": "playlist", "id": segments[3]}
        if len(segments) >= 2:
            return {"type": segments[0], "id": segments[1]}
        raise UsageError(f"Invalid Spotify URL: {value}")

    return {"type": None, "id": value}


def parse_id_for_type(text: str, expected_type: str) -> str:
    ref = parse_spotify_ref(text)
    if ref["type"] is not None and ref["type"] != expected_type:
        raise UsageError(f"Expected a Spotify {expected_type} reference, got {ref['type']}.")
    return ref["id"]


def parse_playlist_id(text: str) -> str:
    return parse_id_for_type(text, "playlist")


def to_track_uri(text: str) -> str:
    return f"spotify:track:{parse_id_for_type(text, 'track')}"


def track_id_from_uri(uri: str) -> str:
    parts = (uri or "").split(":")
    if len(parts) != 3 or parts[0] != "spotify" or parts[1] != "track" or not parts[2]:
        raise UsageError(f"Not a Spotify track URI: {uri}")
    return parts[2]


def is_track_uri(uri: Any) -> bool:
    if not isinstance(uri, str):
        return False
    parts = uri.split(":")
    return len(parts) == 3 and parts[0] == "spotify" and parts[1] == "track" and bool(parts[2])


def split_refs(raw: str) -> List[str]:
    return [part for part in _SPLIT_REFS_PATTERN.split(raw or "") if part]


def parse_track_uris_input(raw: str, stdin: Optional[TextIO] = None) -> List[str]:
    """Turn a comma/whitespace separated list of track refs into URIs. ``-`` reads stdin."""
    if raw == "-":
        if stdin is None:
            raise UsageError("No stdin available to read track references from.")
        raw = stdin.read()
    refs = split_refs(raw)
    if not refs:
        raise UsageError("No track references provided.")
    return [to_track_uri(ref) for ref in refs]
