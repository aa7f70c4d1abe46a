from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from .entities import (
    AudioFeatures,
    LoadedItems,
    PlaylistMeta,
    RecommendationBatch,
    RecommendationRequest,
    TrackSummary,
)


@runtime_checkable
class PlaylistGateway(Protocol):
    """Port defining playlist reads and writes against the remote service.

    Write calls take at most one chunk (100 URIs); chunking policy lives in the
    application layer. Every write returns the new snapshot token when the
    service reports one.
    """

    def get_playlist_meta(self, playlist_id: str) -> PlaylistMeta:
        """Return playlist metadata including its snapshot token."""

    def get_snapshot_id(self, playlist_id: str) -> Optional[str]:
        """Return only the current snapshot token (cheap call used by the apply guard)."""

    def load_playlist_items(self, playlist_id: str, market: Optional[str] = None,
                            limit: Optional[int] = None, offset: int = 0) -> LoadedItems:
        """Page through playlist items and return them normalized."""

    def replace_items(self, playlist_id: str, track_uris: List[str]) -> Optional[str]:
        """Replace all playlist items with the given chunk."""

    def add_items(self, playlist_id: str, track_uris: List[str],
                  position: Optional[int] = None) -> Optional[str]:
        """Append (or insert at position) one chunk of items."""

    def list_playlists(self, limit: int = 20, offset: int = 0, fetch_all: bool = False) -> List[Dict[str, Any]]:
        """List the current user's playlists."""

    def create_playlist(self, name: str, description: Optional[str] = None,
                        public: Optional[bool] = None, collaborative: bool = False) -> Dict[str, Any]:
        """Create a playlist for the current user."""

    def update_playlist(self, playlist_id: str, changes: Dict[str, Any]) -> None:
        """Change playlist details (name, description, public, collaborative)."""

    def get_cover_images(self, playlist_id: str) -> List[Dict[str, Any]]:
        """Return the playlist cover images."""

    def upload_cover(self, playlist_id: str, image_b64: str) -> None:
        """Upload a base64 JPEG cover."""


@runtime_checkable
class RecommendationSource(Protocol):
    """Port for the data the pool generator needs.

    Feature endpoints raise EndpointUnavailable on permission/not-found class responses.
    """

    def fetch_recommendations(self, request: RecommendationRequest) -> RecommendationBatch:
        """Return one batch of candidate tracks."""

    def fetch_audio_features(self, track_uris: List[str]) -> Dict[str, AudioFeatures]:
        """Return audio features keyed by track URI."""

    def fetch_tracks(self, track_uris: List[str]) -> List[TrackSummary]:
        """Return track summaries (popularity) for the given URIs."""
