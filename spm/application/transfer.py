from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from spm.domain.errors import UsageError
from spm.domain.normalization import is_track_uri


EXPORT_VERSION = 2
EXPORT_KIND = "spm-playlist-tracks"


@dataclass
class PlaylistExport:
    """Portable list of track URIs taken from one playlist."""

    source_id: str
    tracks: List[str] = field(default_factory=list)
    source_name: Optional[str] = None
    exported_at: int = 0

    def to_json(self) -> Dict[str, Any]:
        source: Dict[str, Any] = {"id": self.source_id, "exported_at": self.exported_at}
        if self.source_name is not None:
            source["name"] = self.source_name
        return {
            "version": EXPORT_VERSION,
            "kind": EXPORT_KIND,
            "source": source,
            "tracks": list(self.tracks),
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PlaylistExport":
        source = data.get("source") if isinstance(data.get("source"), dict) else {}
        return cls(
            source_id=source.get("id") or "unknown",
            source_name=source.get("name"),
            exported_at=source.get("exported_at") or 0,
            tracks=list(data["tracks"]),
        )


def encode_playlist_export(payload: PlaylistExport) -> str:
    """Encode an export as base64 of its UTF-8 JSON."""
    raw = json.dumps(payload.to_json(), ensure_ascii=False, separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_playlist_import(text: str) -> PlaylistExport:
    """Decode and validate a base64 export payload.

    Raises:
        UsageError: If the payload is not valid base64 JSON of the expected shape
    """
    try:
        raw = base64.b64decode((text or "").strip(), validate=True)
    except (binascii.Error, ValueError):
        raise UsageError("Invalid base64 playlist payload.")

    try:
        parsed = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise UsageError("Playlist payload must be JSON encoded in base64.")

    if not isinstance(parsed, dict):
        raise UsageError("Playlist payload is not an object.")

    if (parsed.get("version") != EXPORT_VERSION or parsed.get("kind") != EXPORT_KIND
            or not isinstance(parsed.get("tracks"), list)):
        raise UsageError("Unsupported playlist import payload format.")

    if not all(is_track_uri(uri) for uri in parsed["tracks"]):
        raise UsageError("Playlist import payload contains invalid track URIs.")

    return PlaylistExport.from_json(parsed)


def write_maybe_file(path_or_dash: Optional[str], data: str) -> Optional[str]:
    """Write data to a file unless the path is empty or ``-``. Returns the path written."""
    if not path_or_dash or path_or_dash == "-":
        return None
    with open(path_or_dash, "w", encoding="utf-8") as f:
        f.write(f"{data}\n")
    return path_or_dash
