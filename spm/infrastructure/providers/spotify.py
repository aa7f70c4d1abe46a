import logging
import time
from typing import Any, Dict, List, Optional

import requests
import spotipy
from requests.adapters import HTTPAdapter
from spotipy.exceptions import SpotifyException
from spotipy.oauth2 import SpotifyOAuth, SpotifyOauthError
from urllib3.exceptions import ReadTimeoutError
from urllib3.util.retry import Retry

from spm.crosscutting.config import ConfigError, SecretManager
from spm.domain.entities import (
    AudioFeatures,
    LoadedItems,
    PlaylistMeta,
    RecommendationBatch,
    RecommendationRequest,
    RecommendationTrack,
    TrackSummary,
)
from spm.domain.errors import (
    EndpointUnavailable,
    NotFound,
    PermanentFailure,
    RateLimited,
    TemporaryFailure,
)
from spm.domain.normalization import normalize_items, track_id_from_uri

logger = logging.getLogger(__name__)

ITEMS_PAGE_SIZE = 50
PLAYLISTS_PAGE_SIZE = 50
AUDIO_FEATURES_CHUNK = 100
TRACKS_CHUNK = 50
MAX_SEED_TRACKS = 5

META_FIELDS = ("id,name,description,snapshot_id,public,collaborative,owner(id,display_name),"
               "followers(total),tracks(total),images,external_urls")
ITEM_FIELDS = ("items(added_at,is_local,track(type,uri,id,name,artists(name),popularity,duration_ms,"
               "is_playable,is_local,available_markets)),total,next")

# Statuses the HTTP session retries on its own; 429 is handled in _call so Retry-After is honoured
SESSION_STATUS_FORCELIST = (500, 502, 503, 504)
SESSION_MAX_RETRIES = 3


def _unique_ordered(values: List[str]) -> List[str]:
    seen = set()
    out = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


def _number_or_none(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


class SpotifyProvider:
    """Spotify Web API adapter implementing PlaylistGateway and RecommendationSource."""

    def __init__(self,
                 access_token: str,
                 refresh_token: Optional[str] = None,
                 client_id: Optional[str] = None,
                 client_secret: Optional[str] = None,
                 redirect_uri: Optional[str] = None,
                 timeout_ms: int = 15000,
                 secret_manager: Optional[SecretManager] = None,
                 max_rate_limit_retries: int = 3,
                 account_id: Optional[str] = None):
        """Initialize Spotify provider.

        Args:
            access_token: Spotify access token
            refresh_token: Spotify refresh token used after a 401
            client_id: Spotify client ID for token refresh
            client_secret: Spotify client secret for token refresh
            redirect_uri: Redirect URI registered for the client
            timeout_ms: Per-request timeout in milliseconds
            secret_manager: Where refreshed tokens are persisted
            max_rate_limit_retries: Retries after HTTP 429 before giving up
            account_id: Stored account that refreshed tokens are written to
        """
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout_ms = timeout_ms
        self.secret_manager = secret_manager
        self.max_rate_limit_retries = max_rate_limit_retries
        self.account_id = account_id
        self._client = self._create_client()
        self._user_id: Optional[str] = None

    @classmethod
    def from_config(cls, secret_manager: SecretManager, timeout_ms: Optional[int] = None,
                    account: Optional[str] = None) -> "SpotifyProvider":
        """Build a provider from stored tokens and client configuration.

        Args:
            secret_manager: Token and client configuration store
            timeout_ms: Per-request timeout; SPM_TIMEOUT_MS when None
            account: Account id or name; SPM_ACCOUNT or the active account when None

        Raises:
            ConfigError: If no access token is stored
        """
        tokens = secret_manager.get_spotify_tokens(account) or {}
        access_token = tokens.get('access_token')
        if not access_token:
            raise ConfigError("Spotify access token not found.", hint="Run `spm login` first.")
        try:
            client_config = secret_manager.get_spotify_client_config()
        except ConfigError:
            # Refresh is impossible without client credentials; plain calls still work
            client_config = {}
        return cls(
            access_token=access_token,
            refresh_token=tokens.get('refresh_token'),
            client_id=client_config.get('client_id'),
            client_secret=client_config.get('client_secret'),
            redirect_uri=client_config.get('redirect_uri'),
            timeout_ms=timeout_ms or secret_manager.get_timeout_ms(),
            secret_manager=secret_manager,
            account_id=tokens.get('id'),
        )

    @staticmethod
    def _build_session() -> requests.Session:
        """Build the HTTP session used by spotipy.

        urllib3 would otherwise retry 429 responses carrying Retry-After by itself,
        and spotipy then reports them without headers.
        """
        session = requests.Session()
        retry = Retry(
            total=SESSION_MAX_RETRIES,
            connect=None,
            read=False,
            allowed_methods=frozenset(['GET', 'POST', 'PUT', 'DELETE']),
            status=SESSION_MAX_RETRIES,
            backoff_factor=0.3,
            status_forcelist=SESSION_STATUS_FORCELIST,
            respect_retry_after_header=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        session.mount('http://', adapter)
        session.mount('https://', adapter)
        return session

    def _create_client(self) -> spotipy.Spotify:
        return spotipy.Spotify(
            auth=self.access_token,
            requests_session=self._build_session(),
            requests_timeout=max(1.0, self.timeout_ms / 1000),
        )

    def _refresh_access_token(self) -> bool:
        """Refresh Spotify access token.

        Returns:
            True if token was refreshed successfully, False otherwise
        """
        if not self.refresh_token or not self.client_id or not self.client_secret:
            logger.warning("Cannot refresh token: missing refresh token or client credentials")
            return False

        logger.info("Refreshing Spotify access token...")
        oauth_manager = SpotifyOAuth(
            client_id=self.client_id,
            client_secret=self.client_secret,
            redirect_uri=self.redirect_uri,
            open_browser=False,
        )
        try:
            token_info = oauth_manager.refresh_access_token(self.refresh_token)
        except SpotifyOauthError as e:
            logger.error(f"Failed to refresh Spotify token: {e}")
            return False

        if not token_info or 'access_token' not in token_info:
            logger.error("Failed to refresh token: invalid response")
            return False

        self.access_token = token_info['access_token']
        if token_info.get('refresh_token'):
            self.refresh_token = token_info['refresh_token']
        self._client = self._create_client()

        if self.secret_manager is not None:
            self.secret_manager.save_spotify_tokens(
                self.access_token,
                self.refresh_token,
                expires_at=token_info.get('expires_at'),
                account_id=self.account_id,
            )
        logger.info("Spotify access token refreshed successfully")
        return True

    def _call(self, operation: str, method: str, *args,
              feature_endpoint: bool = False, **kwargs) -> Any:
        """Invoke a spotipy method and map failures onto domain errors.

        A 401 triggers one token refresh and retry. A 429 sleeps for Retry-After
        seconds (default 1) up to max_rate_limit_retries times. The client method
        is looked up on every attempt so a refreshed client is used.
        """
        refreshed = False
        rate_limit_attempts = 0
        while True:
            try:
                return getattr(self._client, method)(*args, **kwargs)
            except SpotifyException as e:
                status = e.http_status
                if status == 401 and not refreshed:
                    refreshed = True
                    logger.warning(f"Spotify token expired during {operation}, attempting refresh...")
                    if self._refresh_access_token():
                        continue
                    raise ConfigError("Spotify authorization failed.",
                                      hint="Run `spm login` to authorize again.") from e
                if status == 401:
                    raise ConfigError("Spotify authorization failed.",
                                      hint="Run `spm login` to authorize again.") from e
                if status == 429:
                    retry_after_ms = self._retry_after_ms(e)
                    if rate_limit_attempts < self.max_rate_limit_retries:
                        rate_limit_attempts += 1
                        logger.warning(f"Rate limited during {operation}, waiting {retry_after_ms}ms "
                                       f"(attempt {rate_limit_attempts}/{self.max_rate_limit_retries})")
                        time.sleep(retry_after_ms / 1000)
                        continue
                    raise RateLimited(retry_after_ms,
                                      "Spotify API rate limit exceeded after retries.") from e
                if feature_endpoint and status in (403, 404):
                    raise EndpointUnavailable(operation, status) from e
                if status == 404:
                    raise NotFound(f"Spotify resource not found during {operation}.") from e
                raise PermanentFailure(f"Spotify API error during {operation}: {e.msg}",
                                       status=status) from e
            except (requests.exceptions.Timeout, ReadTimeoutError) as e:
                raise TemporaryFailure(f"Spotify request timed out during {operation}.",
                                       hint="Increase --timeout-ms or retry later.") from e
            except requests.exceptions.RequestException as e:
                raise TemporaryFailure(f"Network error during {operation}: {e}") from e

    @staticmethod
    def _retry_after_ms(error: SpotifyException) -> int:
        headers = getattr(error, 'headers', None) or {}
        try:
            return int(float(headers.get('Retry-After', 1)) * 1000)
        except (TypeError, ValueError):
            return 1000

    # PlaylistGateway

    def get_playlist_meta(self, playlist_id: str) -> PlaylistMeta:
        raw = self._call('get_playlist', 'playlist', playlist_id, fields=META_FIELDS) or {}
        owner = raw.get('owner') or {}
        return PlaylistMeta(
            id=raw.get('id') or playlist_id,
            name=raw.get('name'),
            description=raw.get('description'),
            snapshot_id=raw.get('snapshot_id'),
            public=raw.get('public'),
            collaborative=raw.get('collaborative'),
            owner_id=owner.get('id'),
            owner_name=owner.get('display_name'),
            followers=(raw.get('followers') or {}).get('total'),
            total_tracks=(raw.get('tracks') or {}).get('total'),
            images=raw.get('images') or [],
            spotify_url=(raw.get('external_urls') or {}).get('spotify'),
        )

    def get_snapshot_id(self, playlist_id: str) -> Optional[str]:
        raw = self._call('get_snapshot', 'playlist', playlist_id, fields='snapshot_id') or {}
        return raw.get('snapshot_id')

    def load_playlist_items(self, playlist_id: str, market: Optional[str] = None,
                            limit: Optional[int] = None, offset: int = 0) -> LoadedItems:
        """Page through playlist items (tracks and episodes).

        Args:
            playlist_id: Playlist ID
            market: Optional market for playability info
            limit: Maximum number of items to load; all when None
            offset: Index of the first item to load

        Returns:
            LoadedItems with normalized items indexed from offset
        """
        raw_items: List[Dict[str, Any]] = []
        total = 0
        next_url = None
        current_offset = max(0, offset)
        while True:
            remaining = None if limit is None else limit - len(raw_items)
            if remaining is not None and remaining <= 0:
                break
            page_size = ITEMS_PAGE_SIZE if remaining is None else min(ITEMS_PAGE_SIZE, remaining)
            page = self._call(
                'load_playlist_items',
                'playlist_items',
                playlist_id,
                fields=ITEM_FIELDS,
                limit=page_size,
                offset=current_offset,
                market=market,
                additional_types=('track', 'episode'),
            ) or {}
            items = page.get('items') or []
            total = page.get('total') or total
            next_url = page.get('next')
            raw_items.extend(items)
            current_offset += len(items)
            if not next_url or not items:
                break

        logger.debug(f"Loaded {len(raw_items)} items from playlist {playlist_id}")
        return LoadedItems(items=normalize_items(raw_items, start_index=max(0, offset)),
                           total=total, next=next_url)

    def replace_items(self, playlist_id: str, track_uris: List[str]) -> Optional[str]:
        raw = self._call('replace_items', 'playlist_replace_items', playlist_id, track_uris) or {}
        return raw.get('snapshot_id')

    def add_items(self, playlist_id: str, track_uris: List[str],
                  position: Optional[int] = None) -> Optional[str]:
        raw = self._call('add_items', 'playlist_add_items', playlist_id, track_uris,
                         position=position) or {}
        return raw.get('snapshot_id')

    def list_playlists(self, limit: int = 20, offset: int = 0, fetch_all: bool = False) -> List[Dict[str, Any]]:
        page_limit = PLAYLISTS_PAGE_SIZE if fetch_all else max(1, min(PLAYLISTS_PAGE_SIZE, limit))
        current_offset = max(0, offset)
        playlists: List[Dict[str, Any]] = []
        while True:
            page = self._call('list_playlists', 'current_user_playlists',
                              limit=page_limit, offset=current_offset) or {}
            items = page.get('items') or []
            playlists.extend(items)
            if not fetch_all or not page.get('next') or not items:
                break
            current_offset += len(items)
        return playlists

    def get_current_user(self) -> Dict[str, Any]:
        """Profile of the token owner: id and display_name."""
        me = self._call('current_user', 'current_user') or {}
        if not me.get('id'):
            raise PermanentFailure("Could not determine current Spotify user.")
        self._user_id = me['id']
        return {'id': me['id'], 'display_name': me.get('display_name')}

    def _current_user_id(self) -> str:
        if self._user_id is None:
            self.get_current_user()
        return self._user_id

    def create_playlist(self, name: str, description: Optional[str] = None,
                        public: Optional[bool] = None, collaborative: bool = False) -> Dict[str, Any]:
        user_id = self._current_user_id()
        created = self._call(
            'create_playlist',
            'user_playlist_create',
            user_id,
            name,
            public=True if public is None else public,
            collaborative=collaborative,
            description=description or '',
        ) or {}
        logger.info(f"Created playlist {created.get('id')} ({name})")
        return created

    def update_playlist(self, playlist_id: str, changes: Dict[str, Any]) -> None:
        self._call('update_playlist', 'playlist_change_details', playlist_id, **changes)

    def get_cover_images(self, playlist_id: str) -> List[Dict[str, Any]]:
        return self._call('get_cover_images', 'playlist_cover_image', playlist_id) or []

    def upload_cover(self, playlist_id: str, image_b64: str) -> None:
        self._call('upload_cover', 'playlist_upload_cover_image', playlist_id, image_b64)

    # RecommendationSource

    def fetch_recommendations(self, request: RecommendationRequest) -> RecommendationBatch:
        """Fetch one batch of recommendations seeded by track URIs.

        Raises:
            EndpointUnavailable: If /recommendations answers 403 or 404
        """
        seed_ids = _unique_ordered([track_id_from_uri(uri) for uri in request.seed_track_uris])[:MAX_SEED_TRACKS]
        if not seed_ids:
            return RecommendationBatch(tracks=[], warnings=["No valid seed tracks provided for recommendation request."])

        params: Dict[str, Any] = {
            'max_duration_ms': max(1, int(request.max_duration_ms)),
        }
        if request.seed_profile_query:
            params.update(request.seed_profile_query)
        else:
            params['min_popularity'] = max(0, min(100, int(request.min_popularity)))

        raw = self._call(
            'recommendations',
            'recommendations',
            seed_tracks=seed_ids,
            limit=max(1, min(100, request.limit)),
            country=request.market,
            feature_endpoint=True,
            **params,
        ) or {}

        tracks: List[RecommendationTrack] = []
        seen = set()
        dropped = 0
        for track in raw.get('tracks') or []:
            uri = (track or {}).get('uri')
            if not isinstance(uri, str) or not uri.strip():
                dropped += 1
                continue
            if uri in seen:
                continue
            seen.add(uri)
            markets = track.get('available_markets')
            tracks.append(RecommendationTrack(
                uri=uri,
                id=track.get('id') or uri.rsplit(':', 1)[-1],
                name=track.get('name') if isinstance(track.get('name'), str) else None,
                popularity=_number_or_none(track.get('popularity')),
                duration_ms=_number_or_none(track.get('duration_ms')),
                is_playable=track.get('is_playable') if isinstance(track.get('is_playable'), bool) else None,
                available_markets=[m for m in markets if isinstance(m, str)] if isinstance(markets, list) else [],
            ))

        warnings = [f"dropped_invalid_recommendations: {dropped}"] if dropped else []
        return RecommendationBatch(tracks=tracks, warnings=warnings)

    def fetch_audio_features(self, track_uris: List[str]) -> Dict[str, AudioFeatures]:
        ids = _unique_ordered([track_id_from_uri(uri) for uri in track_uris])
        features: Dict[str, AudioFeatures] = {}
        for i in range(0, len(ids), AUDIO_FEATURES_CHUNK):
            chunk = ids[i:i + AUDIO_FEATURES_CHUNK]
            raw = self._call('audio-features', 'audio_features', chunk,
                             feature_endpoint=True) or []
            for item in raw:
                if not item or not item.get('id'):
                    continue
                uri = f"spotify:track:{item['id']}"
                key = item.get('key')
                features[uri] = AudioFeatures(
                    uri=uri,
                    key=key if isinstance(key, int) and not isinstance(key, bool) else None,
                    acousticness=_number_or_none(item.get('acousticness')),
                    danceability=_number_or_none(item.get('danceability')),
                    energy=_number_or_none(item.get('energy')),
                    instrumentalness=_number_or_none(item.get('instrumentalness')),
                    liveness=_number_or_none(item.get('liveness')),
                    speechiness=_number_or_none(item.get('speechiness')),
                    valence=_number_or_none(item.get('valence')),
                    tempo=_number_or_none(item.get('tempo')),
                    loudness=_number_or_none(item.get('loudness')),
                )
        return features

    def fetch_tracks(self, track_uris: List[str]) -> List[TrackSummary]:
        ids = _unique_ordered([track_id_from_uri(uri) for uri in track_uris])
        summaries: List[TrackSummary] = []
        for i in range(0, len(ids), TRACKS_CHUNK):
            chunk = ids[i:i + TRACKS_CHUNK]
            raw = self._call('tracks', 'tracks', chunk, feature_endpoint=True) or {}
            for track in raw.get('tracks') or []:
                if not track or not track.get('uri'):
                    continue
                summaries.append(TrackSummary(
                    uri=track['uri'],
                    name=track.get('name'),
                    popularity=_number_or_none(track.get('popularity')),
                ))
        return summaries
