"""In-memory stand-in for the Spotify provider used by service and contract tests."""
from typing import Any, Dict, List, Optional

from spm.domain.entities import (
    AudioFeatures,
    ItemKind,
    LoadedItems,
    PlaylistItem,
    PlaylistMeta,
    RecommendationBatch,
    RecommendationRequest,
    RecommendationTrack,
    TrackSummary,
)
from spm.domain.errors import NotFound


def track_item(index: int, track_id: str, **kwargs) -> PlaylistItem:
    return PlaylistItem(index=index, kind=ItemKind.TRACK, uri=f'spotify:track:{track_id}', id=track_id,
                        name=kwargs.pop('name', f'Song {track_id}'), **kwargs)


def episode_item(index: int, episode_id: str) -> PlaylistItem:
    return PlaylistItem(index=index, kind=ItemKind.EPISODE, uri=f'spotify:episode:{episode_id}', id=episode_id)


class FakeSpotify:
    """Playlist gateway and recommendation source backed by dictionaries."""

    def __init__(self):
        self.playlists: Dict[str, Dict[str, Any]] = {}
        self.recommendations: List[RecommendationTrack] = []
        self.features: Dict[str, AudioFeatures] = {}
        self.uploaded_covers: Dict[str, str] = {}
        self.write_calls: List[tuple] = []
        self._revision = 0
        self._created = 0

    def add_playlist(self, playlist_id: str, items: List[PlaylistItem], name: Optional[str] = None,
                     snapshot_id: Optional[str] = None) -> None:
        self.playlists[playlist_id] = {
            'name': name or f'Playlist {playlist_id}',
            'description': None,
            'public': True,
            'collaborative': False,
            'snapshot_id': snapshot_id or f'{playlist_id}-snap0',
            'uris': [item.uri for item in items],
            'items': list(items),
            'images': [],
        }

    def uris(self, playlist_id: str) -> List[str]:
        return list(self.playlists[playlist_id]['uris'])

    def touch(self, playlist_id: str) -> str:
        """Simulate a concurrent edit."""
        self._revision += 1
        snapshot = f'{playlist_id}-snap{self._revision}'
        self.playlists[playlist_id]['snapshot_id'] = snapshot
        return snapshot

    def _get(self, playlist_id: str) -> Dict[str, Any]:
        if playlist_id not in self.playlists:
            raise NotFound(f"Playlist {playlist_id} not found")
        return self.playlists[playlist_id]

    def _write(self, playlist_id: str, uris: List[str]) -> str:
        playlist = self._get(playlist_id)
        playlist['uris'] = uris
        playlist['items'] = [
            PlaylistItem(index=i, kind=ItemKind.TRACK, uri=uri, id=uri.split(':')[-1], name=uri)
            for i, uri in enumerate(uris)
        ]
        return self.touch(playlist_id)

    # PlaylistGateway

    def get_playlist_meta(self, playlist_id: str) -> PlaylistMeta:
        playlist = self._get(playlist_id)
        return PlaylistMeta(
            id=playlist_id,
            name=playlist['name'],
            description=playlist['description'],
            snapshot_id=playlist['snapshot_id'],
            public=playlist['public'],
            collaborative=playlist['collaborative'],
            owner_id='owner',
            owner_name='Owner',
            total_tracks=len(playlist['items']),
            images=playlist['images'],
        )

    def get_snapshot_id(self, playlist_id: str) -> Optional[str]:
        return self._get(playlist_id)['snapshot_id']

    def load_playlist_items(self, playlist_id: str, market: Optional[str] = None,
                            limit: Optional[int] = None, offset: int = 0) -> LoadedItems:
        items = self._get(playlist_id)['items']
        window = items[offset:offset + limit] if limit is not None else items[offset:]
        return LoadedItems(items=list(window), total=len(items))

    def replace_items(self, playlist_id: str, track_uris: List[str]) -> Optional[str]:
        self.write_calls.append(('replace', playlist_id, list(track_uris)))
        return self._write(playlist_id, list(track_uris))

    def add_items(self, playlist_id: str, track_uris: List[str],
                  position: Optional[int] = None) -> Optional[str]:
        self.write_calls.append(('add', playlist_id, list(track_uris), position))
        current = self.uris(playlist_id)
        if position is None:
            current.extend(track_uris)
        else:
            current[position:position] = track_uris
        return self._write(playlist_id, current)

    def list_playlists(self, limit: int = 20, offset: int = 0, fetch_all: bool = False) -> List[Dict[str, Any]]:
        rows = [
            {'id': pid, 'name': p['name'], 'owner': {'id': 'owner', 'display_name': 'Owner'},
             'tracks': {'total': len(p['uris'])}, 'public': p['public'], 'collaborative': p['collaborative'],
             'snapshot_id': p['snapshot_id']}
            for pid, p in self.playlists.items()
        ]
        return rows if fetch_all else rows[offset:offset + limit]

    def create_playlist(self, name: str, description: Optional[str] = None,
                        public: Optional[bool] = None, collaborative: bool = False) -> Dict[str, Any]:
        self._created += 1
        playlist_id = f'new{self._created}'
        self.add_playlist(playlist_id, [], name=name)
        self.playlists[playlist_id].update(description=description, public=bool(public),
                                           collaborative=collaborative)
        return {'id': playlist_id, 'name': name, 'description': description, 'public': bool(public),
                'collaborative': collaborative,
                'external_urls': {'spotify': f'https://open.spotify.com/playlist/{playlist_id}'}}

    def update_playlist(self, playlist_id: str, changes: Dict[str, Any]) -> None:
        self._get(playlist_id).update(changes)

    def get_cover_images(self, playlist_id: str) -> List[Dict[str, Any]]:
        return list(self._get(playlist_id)['images'])

    def upload_cover(self, playlist_id: str, image_b64: str) -> None:
        self._get(playlist_id)
        self.uploaded_covers[playlist_id] = image_b64

    # RecommendationSource

    def fetch_recommendations(self, request: RecommendationRequest) -> RecommendationBatch:
        return RecommendationBatch(tracks=list(self.recommendations))

    def fetch_audio_features(self, track_uris: List[str]) -> Dict[str, AudioFeatures]:
        return {uri: self.features[uri] for uri in track_uris if uri in self.features}

    def fetch_tracks(self, track_uris: List[str]) -> List[TrackSummary]:
        return [TrackSummary(uri=uri) for uri in track_uris]
