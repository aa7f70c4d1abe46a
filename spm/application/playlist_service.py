import base64
import binascii
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, TextIO

from spm.application.apply import append_playlist_tracks, apply_playlist_plan
from spm.application.generate import DEFAULT_MAX_KEY_SHARE_PERCENT, GenerationConfig, generate_track_pool
from spm.application.transfer import (
    PlaylistExport,
    decode_playlist_import,
    encode_playlist_export,
    write_maybe_file,
)
from spm.application.transform import (
    plan_cleanup,
    plan_dedup,
    plan_reverse,
    plan_shuffle,
    plan_sort,
    plan_trim,
    split_tracks,
)
from spm.crosscutting.logging import CorrelationContext
from spm.crosscutting.reporting import CommandResult, action_summary_human, push_kv
from spm.domain.entities import PlanResult, PlaylistItem
from spm.domain.errors import UsageError
from spm.domain.normalization import parse_playlist_id, parse_track_uris_input


logger = logging.getLogger(__name__)

MAX_COVER_BASE64_BYTES = 256 * 1024

Planner = Callable[[List[PlaylistItem]], PlanResult]


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _best_image_url(images: Sequence[Dict[str, Any]]) -> Optional[str]:
    """Pick the largest image URL."""
    best = None
    best_width = -1
    for image in images or []:
        url = image.get('url')
        if not url:
            continue
        width = image.get('width') or 0
        if width > best_width:
            best, best_width = url, width
    return best


class PlaylistService:
    """Orchestrates playlist commands: load, plan, then preview or apply."""

    def __init__(self, gateway, rollback: bool = False, stdin: Optional[TextIO] = None,
                 clock: Callable[[], float] = time.time):
        """Initialize the service.

        Args:
            gateway: Object implementing PlaylistGateway and RecommendationSource
            rollback: Force every mutating command into preview mode
            stdin: Stream used when an argument is ``-``
            clock: Time source for export timestamps
        """
        self.gateway = gateway
        self.rollback = rollback
        self.stdin = stdin
        self.clock = clock

    def _effective_apply(self, apply: bool, warnings: List[str]) -> bool:
        if apply and self.rollback:
            logger.warning("Rollback mode enabled: forcing preview")
            warnings.append("Rollback mode is enabled (SPM_ROLLBACK=1); changes were not applied.")
            return False
        return apply

    def _read_stdin(self, hint: str) -> str:
        if self.stdin is None:
            raise UsageError("No stdin available.", hint=hint)
        return self.stdin.read()

    # Read-only commands

    def list_playlists(self, limit: int = 20, offset: int = 0, fetch_all: bool = False) -> CommandResult:
        raw = self.gateway.list_playlists(limit=limit, offset=offset, fetch_all=fetch_all)
        items = []
        for p in raw:
            owner = p.get('owner') or {}
            items.append({
                'id': p.get('id'),
                'name': p.get('name'),
                'owner': {'id': owner.get('id'), 'display_name': owner.get('display_name')} if owner else None,
                'total_tracks': (p.get('tracks') or {}).get('total'),
                'public': p.get('public'),
                'collaborative': p.get('collaborative'),
                'snapshot_id': p.get('snapshot_id'),
                'spotify_url': (p.get('external_urls') or {}).get('spotify'),
            })

        human = [f"Playlists: {len(items)}"]
        for i, p in enumerate(items, start=1):
            owner = p['owner'] or {}
            human.append(f" {i}. {p['name']} | by {owner.get('display_name') or owner.get('id') or ''} "
                         f"| {p['total_tracks'] or 0} tracks")
        return CommandResult(data={'count': len(items), 'items': items}, human=human)

    def get_playlist(self, playlist_ref: str, tracks: bool = False, limit: Optional[int] = None,
                     offset: int = 0, market: Optional[str] = None) -> CommandResult:
        playlist_id = parse_playlist_id(playlist_ref)
        meta = self.gateway.get_playlist_meta(playlist_id)
        loaded = None
        if tracks:
            loaded = self.gateway.load_playlist_items(playlist_id, market=market, limit=limit, offset=offset)

        cover = _best_image_url(meta.images)
        spotify_url = meta.spotify_url or f"https://open.spotify.com/playlist/{playlist_id}"
        data = {
            'id': playlist_id,
            'name': meta.name,
            'description': meta.description,
            'owner': {'id': meta.owner_id, 'display_name': meta.owner_name} if meta.owner_id else None,
            'followers': meta.followers,
            'total_tracks': meta.total_tracks,
            'public': meta.public,
            'collaborative': meta.collaborative,
            'snapshot_id': meta.snapshot_id,
            'cover': cover,
            'spotify_url': spotify_url,
            'tracks': [item.to_json() for item in loaded.items] if loaded else None,
        }

        human: List[str] = []
        push_kv(human, 'Playlist', meta.name)
        if meta.owner_id:
            push_kv(human, 'Owner', f"{meta.owner_name or ''} ({meta.owner_id})".strip())
        push_kv(human, 'Followers', meta.followers)
        push_kv(human, 'Total Tracks', meta.total_tracks)
        if meta.public is not None:
            push_kv(human, 'Public', 'Yes' if meta.public else 'No')
        if meta.collaborative is not None:
            push_kv(human, 'Collaborative', 'Yes' if meta.collaborative else 'No')
        push_kv(human, 'Description', meta.description)
        push_kv(human, 'Cover', cover)
        push_kv(human, 'Spotify URL', spotify_url)
        if loaded:
            human.append('')
            human.append(f"Items (showing {len(loaded.items)}):")
            for item in loaded.items:
                if not item.uri or not item.name:
                    human.append(f" {item.index + 1}. [unavailable]")
                    continue
                artists = ', '.join(item.artists or [])
                added = f" (added {item.added_at[:10]})" if item.added_at else ''
                human.append(f" {item.index + 1}. {item.name}{' - ' + artists if artists else ''}{added}")
        return CommandResult(data=data, human=human)

    # Metadata mutations

    def create_playlist(self, name: str, description: Optional[str] = None,
                        public: Optional[bool] = None, collaborative: bool = False) -> CommandResult:
        name = (name or '').strip()
        if not name:
            raise UsageError("Playlist name cannot be empty.")
        if collaborative and public is not False:
            raise UsageError("Collaborative playlists must be private.",
                             hint="Use --private together with --collaborative.")

        created = self.gateway.create_playlist(name, description=description, public=public,
                                               collaborative=collaborative)
        data = {
            'id': created.get('id'),
            'name': created.get('name'),
            'description': created.get('description'),
            'public': created.get('public'),
            'collaborative': created.get('collaborative'),
            'spotify_url': (created.get('external_urls') or {}).get('spotify'),
        }
        human: List[str] = []
        push_kv(human, 'Created', f"{data['name']} ({data['id']})")
        push_kv(human, 'Public', 'Yes' if data['public'] else 'No')
        push_kv(human, 'Collaborative', 'Yes' if data['collaborative'] else 'No')
        push_kv(human, 'Spotify URL', data['spotify_url'])
        return CommandResult(data=data, human=human)

    def update_playlist(self, playlist_ref: str, name: Optional[str] = None, description: Optional[str] = None,
                        public: Optional[bool] = None, collaborative: Optional[bool] = None) -> CommandResult:
        playlist_id = parse_playlist_id(playlist_ref)
        changes: Dict[str, Any] = {}
        if name is not None:
            changes['name'] = name
        if description is not None:
            changes['description'] = description
        if public is not None:
            changes['public'] = public
        if collaborative is not None:
            changes['collaborative'] = collaborative

        if not changes:
            raise UsageError("Nothing to update.",
                             hint="Use one or more of --name, --description, --public/--private, "
                                  "--collaborative/--no-collaborative.")
        if collaborative is True and public is not False:
            raise UsageError("Collaborative playlists must be private.",
                             hint="Set --private when using --collaborative.")

        self.gateway.update_playlist(playlist_id, changes)
        return CommandResult(data={'id': playlist_id, 'updated': changes},
                             human=[f"Updated playlist: {playlist_id}"])

    def add_tracks(self, playlist_ref: str, track_refs: str, pos: Optional[int] = None) -> CommandResult:
        """Insert tracks at a 1-based position, or append when pos is None."""
        playlist_id = parse_playlist_id(playlist_ref)
        track_uris = parse_track_uris_input(track_refs, self.stdin)
        if pos is not None and (not _is_int(pos) or pos < 1):
            raise UsageError("--pos must be a positive 1-based integer.")

        warnings: List[str] = []
        position = pos - 1 if pos is not None else None
        if not self._effective_apply(True, warnings):
            return CommandResult(
                data={'playlist_id': playlist_id, 'inserted_count': len(track_uris), 'position': pos,
                      'apply': False},
                human=[f"Preview: insert {len(track_uris)} track(s) into {playlist_id}."],
                warnings=warnings,
            )

        snapshot = append_playlist_tracks(self.gateway, playlist_id, track_uris, position=position)
        where = f"at position {pos}" if pos is not None else "at the end"
        return CommandResult(
            data={'playlist_id': playlist_id, 'inserted_count': len(track_uris), 'position': pos,
                  'snapshot_id': snapshot},
            human=[f"Inserted {len(track_uris)} track(s) {where}."],
        )

    # Planner-driven mutations

    def _run_transform(self, playlist_ref: str, action: str, planner: Planner, apply: bool,
                       force: bool, market: Optional[str] = None) -> CommandResult:
        playlist_id = parse_playlist_id(playlist_ref)
        warnings: List[str] = []
        with CorrelationContext(playlist_id=playlist_id, stage=action):
            meta = self.gateway.get_playlist_meta(playlist_id)
            loaded = self.gateway.load_playlist_items(playlist_id, market=market)
            tracks, _, _ = split_tracks(loaded.items)
            planned = planner(loaded.items)
            if planned.dropped_unknown:
                warnings.append(f"Dropped {planned.dropped_unknown} unavailable item(s).")

            result = apply_playlist_plan(
                self.gateway,
                action=action,
                playlist_id=playlist_id,
                before_uris=[t.uri for t in tracks],
                desired_uris=planned.uris,
                dropped_episodes=planned.dropped_episodes,
                apply=self._effective_apply(apply, warnings),
                force=force,
                expected_snapshot=meta.snapshot_id,
            )

        return CommandResult(
            data={
                'playlist': {'id': playlist_id, 'name': meta.name, 'snapshot_id': meta.snapshot_id},
                'result': result.to_json(),
            },
            human=action_summary_human(action, meta.name, result),
            warnings=warnings,
        )

    def shuffle(self, playlist_ref: str, group_size: Optional[int] = None, groups: Optional[int] = None,
                seed: Optional[int] = None, apply: bool = False, force: bool = False) -> CommandResult:
        if group_size and groups:
            raise UsageError("Use either --group-size or --groups, not both.")
        return self._run_transform(
            playlist_ref, 'shuffle',
            lambda items: plan_shuffle(items, group_size=group_size, groups=groups, seed=seed),
            apply, force,
        )

    def dedup(self, playlist_ref: str, keep: str = 'first', apply: bool = False, force: bool = False) -> CommandResult:
        return self._run_transform(playlist_ref, 'dedup', lambda items: plan_dedup(items, keep), apply, force)

    def cleanup(self, playlist_ref: str, market: Optional[str] = None, apply: bool = False,
                force: bool = False) -> CommandResult:
        return self._run_transform(playlist_ref, 'cleanup', lambda items: plan_cleanup(items, market),
                                   apply, force, market=market)

    def sort(self, playlist_ref: str, by: str = 'added_at', order: str = 'asc', apply: bool = False,
             force: bool = False) -> CommandResult:
        return self._run_transform(playlist_ref, f"sort:{by}:{order}",
                                   lambda items: plan_sort(items, by, order), apply, force)

    def trim(self, playlist_ref: str, keep: int, from_: str = 'start', apply: bool = False,
             force: bool = False) -> CommandResult:
        if not _is_int(keep) or keep < 0:
            raise UsageError("--keep must be a non-negative integer.")
        return self._run_transform(playlist_ref, f"trim:{from_}",
                                   lambda items: plan_trim(items, keep, from_), apply, force)

    def reverse(self, playlist_ref: str, apply: bool = False, force: bool = False) -> CommandResult:
        return self._run_transform(playlist_ref, 'reverse', plan_reverse, apply, force)

    # Delivery of a URI list to a target playlist

    def _deliver(self, label: str, track_uris: List[str], base_data: Dict[str, Any], warnings: List[str],
                 to: Optional[str], to_new: bool, name: Optional[str], description: Optional[str],
                 mode: Optional[str], public: Optional[bool], apply: bool, force: bool,
                 extra_dropped_episodes: int = 0) -> CommandResult:
        apply = self._effective_apply(apply, warnings)
        count = len(track_uris)

        if to_new:
            if not apply:
                return CommandResult(
                    data={**base_data, 'target': 'new', 'create_new': True, 'track_count': count, 'apply': False},
                    human=[f"Preview: create playlist '{name}' with {count} track(s).",
                           "Re-run with --apply to persist."],
                    warnings=warnings,
                )
            created = self.gateway.create_playlist(name, description=description, public=public,
                                                   collaborative=False)
            snapshot = append_playlist_tracks(self.gateway, created['id'], track_uris)
            spotify_url = (created.get('external_urls') or {}).get('spotify')
            return CommandResult(
                data={**base_data, 'target': 'new', 'mode': 'new', 'target_playlist_id': created['id'],
                      'track_count': count, 'snapshot_id': snapshot, 'spotify_url': spotify_url},
                human=[f"Created playlist '{created.get('name')}' ({created['id']}) with {count} track(s).",
                       f"Spotify URL: {spotify_url or 'n/a'}"],
                warnings=warnings,
            )

        if not to:
            raise UsageError("Use --to <playlist> or --to-new.")
        target_id = parse_playlist_id(to)
        mode = mode or 'append'

        if mode == 'append':
            if not apply:
                return CommandResult(
                    data={**base_data, 'target': 'existing', 'target_playlist_id': target_id, 'mode': mode,
                          'append_count': count, 'apply': False},
                    human=[f"Preview: append {count} track(s) to {target_id}.",
                           "Re-run with --apply to persist."],
                    warnings=warnings,
                )
            snapshot = append_playlist_tracks(self.gateway, target_id, track_uris)
            return CommandResult(
                data={**base_data, 'target': 'existing', 'target_playlist_id': target_id, 'mode': mode,
                      'track_count': count, 'snapshot_id': snapshot},
                human=[f"Appended {count} track(s) to {target_id}."],
                warnings=warnings,
            )

        if mode != 'replace':
            raise UsageError(f"Unsupported mode: {mode}. Use append or replace.")

        target_meta = self.gateway.get_playlist_meta(target_id)
        target_items = self.gateway.load_playlist_items(target_id)
        before, dropped_episodes, _ = split_tracks(target_items.items)
        action = f"{label}:replace"
        result = apply_playlist_plan(
            self.gateway,
            action=action,
            playlist_id=target_id,
            before_uris=[t.uri for t in before],
            desired_uris=track_uris,
            dropped_episodes=dropped_episodes + extra_dropped_episodes,
            apply=apply,
            force=force,
            expected_snapshot=target_meta.snapshot_id,
        )
        return CommandResult(
            data={**base_data, 'target': 'existing', 'target_playlist_id': target_id, 'mode': mode,
                  'result': result.to_json()},
            human=action_summary_human(action, target_meta.name, result),
            warnings=warnings,
        )

    @staticmethod
    def _validate_target(to_new: bool, name: Optional[str]) -> None:
        if to_new and not (name or '').strip():
            raise UsageError("--to-new requires --name.")

    def generate(self, seed_refs: str, to: Optional[str] = None, to_new: bool = False,
                 name: Optional[str] = None, description: Optional[str] = None, mode: Optional[str] = None,
                 public: Optional[bool] = None, target_size: int = 100, min_popularity: int = 30,
                 max_duration_ms: int = 240000, exclude_refs: Optional[str] = None, seed_profile: bool = True,
                 diversify_keys: bool = True, max_key_share: int = DEFAULT_MAX_KEY_SHARE_PERCENT,
                 market: Optional[str] = None, apply: bool = False, force: bool = False) -> CommandResult:
        """Generate a recommendation pool from seeds and deliver it to a playlist."""
        if bool(to) == bool(to_new):
            raise UsageError("Use exactly one target: --to <playlist> or --to-new.")
        if mode and not to:
            raise UsageError("--mode is valid only with --to.")
        if force and not (to and mode == 'replace'):
            raise UsageError("--force is valid only with --to ... --mode replace.")
        self._validate_target(to_new, name)

        seed_uris = parse_track_uris_input(seed_refs, self.stdin)
        exclude_uris = parse_track_uris_input(exclude_refs, self.stdin) if exclude_refs else []

        config = GenerationConfig(
            target_size=target_size,
            min_popularity=min_popularity,
            max_duration_ms=max_duration_ms,
            max_key_share_percent=max_key_share,
            seed_profile=seed_profile,
            diversify_keys=diversify_keys,
            market=market,
            exclude_track_uris=tuple(exclude_uris),
        )
        with CorrelationContext(stage='generate'):
            generated = generate_track_pool(seed_uris, config, self.gateway)

        base_data = {
            'seed_count': generated.seed_count,
            'target_size': target_size,
            'generated_count': generated.generated_count,
            'shortfall': generated.shortfall,
            'filtered_count': generated.filtered_count,
            'track_uris': generated.track_uris,
            'filter_config': {
                'min_popularity': min_popularity,
                'max_duration_ms': max_duration_ms,
                'seed_profile': seed_profile,
                'diversify_keys': diversify_keys,
                'max_key_share': max_key_share,
                'excluded': len(exclude_uris),
            },
            'filter_stats': generated.filter_stats.to_json(),
        }
        return self._deliver('generate', generated.track_uris, base_data, list(generated.warnings),
                             to, to_new, name, description, mode, public, apply, force)

    def copy(self, source_ref: str, to: Optional[str] = None, to_new: bool = False, name: Optional[str] = None,
             description: Optional[str] = None, mode: Optional[str] = None, public: Optional[bool] = None,
             apply: bool = False, force: bool = False) -> CommandResult:
        source_id = parse_playlist_id(source_ref)
        self._validate_target(to_new, name)
        self.gateway.get_playlist_meta(source_id)
        loaded = self.gateway.load_playlist_items(source_id)
        tracks, dropped_episodes, _ = split_tracks(loaded.items)
        warnings: List[str] = []
        if dropped_episodes:
            warnings.append(f"Dropped {dropped_episodes} episode item(s) from source playlist.")
        return self._deliver('copy', [t.uri for t in tracks], {'source_playlist_id': source_id}, warnings,
                             to, to_new, name, description, mode, public, apply, force,
                             extra_dropped_episodes=dropped_episodes)

    # Transfer

    def export(self, playlist_ref: str, out: Optional[str] = None) -> CommandResult:
        playlist_id = parse_playlist_id(playlist_ref)
        meta = self.gateway.get_playlist_meta(playlist_id)
        loaded = self.gateway.load_playlist_items(playlist_id)
        tracks, dropped_episodes, _ = split_tracks(loaded.items)

        payload = PlaylistExport(
            source_id=playlist_id,
            source_name=meta.name,
            exported_at=int(self.clock()),
            tracks=[t.uri for t in tracks],
        )
        encoded = encode_playlist_export(payload)
        out_path = write_maybe_file(out, encoded)
        return CommandResult(
            data={'playlist_id': playlist_id, 'playlist_name': meta.name, 'tracks': len(payload.tracks),
                  'dropped_episodes': dropped_episodes, 'out': out_path, 'base64': encoded},
            human=[f"Exported {len(payload.tracks)} track(s) to {out_path}."] if out_path else [encoded],
            warnings=[f"Dropped {dropped_episodes} episode item(s)."] if dropped_episodes else [],
        )

    def import_tracks(self, raw_input: str, to: Optional[str] = None, to_new: bool = False,
                      name: Optional[str] = None, description: Optional[str] = None, mode: Optional[str] = None,
                      public: Optional[bool] = None, apply: bool = False, force: bool = False) -> CommandResult:
        encoded = raw_input
        if raw_input == '-':
            encoded = self._read_stdin("Pipe base64 payload to stdin or pass it as an argument.")
        payload = decode_playlist_import(encoded)
        self._validate_target(to_new, name)
        return self._deliver('import', payload.tracks, {'source_playlist_id': payload.source_id}, [],
                             to, to_new, name, description, mode, public, apply, force)

    # Cover art

    def cover_get(self, playlist_ref: str) -> CommandResult:
        playlist_id = parse_playlist_id(playlist_ref)
        images = self.gateway.get_cover_images(playlist_id)
        best = _best_image_url(images)
        human: List[str] = []
        push_kv(human, 'Playlist', playlist_id)
        push_kv(human, 'Best Cover', best)
        for image in images:
            if image.get('url'):
                human.append(f" - {image['url']}")
        return CommandResult(data={'playlist_id': playlist_id, 'images': images, 'best': best}, human=human)

    def cover_set(self, playlist_ref: str, file: Optional[str] = None, base64_data: Optional[str] = None,
                  apply: bool = False) -> CommandResult:
        playlist_id = parse_playlist_id(playlist_ref)
        encoded = cover_payload(file, base64_data)
        warnings: List[str] = []
        apply = self._effective_apply(apply, warnings)
        data = {'playlist_id': playlist_id, 'apply': apply, 'payload_bytes': len(encoded)}
        if not apply:
            return CommandResult(
                data=data,
                human=[f"Preview only. Cover payload for playlist {playlist_id} is ready "
                       f"({len(encoded)} bytes).", "Re-run with --apply to upload."],
                warnings=warnings,
            )
        self.gateway.upload_cover(playlist_id, encoded)
        return CommandResult(data={**data, 'applied': True},
                             human=[f"Uploaded custom cover for playlist {playlist_id}."])


def cover_payload(file: Optional[str], base64_data: Optional[str]) -> str:
    """Read a JPEG cover from a file or base64 text and return canonical base64.

    Raises:
        UsageError: If neither or both sources are given, or the payload is too large
    """
    if not file and not base64_data:
        raise UsageError("Use --file <jpg> or --base64 <data>.")
    if file and base64_data:
        raise UsageError("Use either --file or --base64, not both.")

    if file:
        try:
            with open(file, 'rb') as f:
                raw = f.read()
        except OSError as e:
            raise UsageError(f"Cannot read cover file {file}: {e.strerror}")
    else:
        try:
            raw = base64.b64decode(base64_data.strip(), validate=True)
        except (binascii.Error, ValueError):
            raise UsageError("Cover payload is not valid base64.")

    encoded = base64.b64encode(raw).decode('ascii')
    if len(encoded) > MAX_COVER_BASE64_BYTES:
        raise UsageError("Playlist cover payload exceeds 256KB base64 limit.")
    return encoded
