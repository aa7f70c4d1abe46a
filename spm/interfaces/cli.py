import argparse
import logging
import signal
import sys
import time
from typing import List, Optional, TextIO

from spotipy.cache_handler import MemoryCacheHandler
from spotipy.oauth2 import SpotifyOAuth

from spm.application.generate import DEFAULT_MAX_KEY_SHARE_PERCENT
from spm.application.playlist_service import PlaylistService
from spm.crosscutting.config import ConfigError, get_secret_manager
from spm.crosscutting.logging import CorrelationContext, log_error, setup_logging
from spm.crosscutting.reporting import (
    CommandResult,
    error_envelope,
    exit_code_for,
    render_error_human,
    render_human,
    render_json,
    success_envelope,
)
from spm.domain.errors import SpmError, UsageError
from spm.infrastructure.providers.spotify import SpotifyProvider


logger = logging.getLogger(__name__)


def _add_apply_flags(parser: argparse.ArgumentParser, force: bool = True) -> None:
    parser.add_argument('--apply', action='store_true', help='Persist changes (default: preview only)')
    if force:
        parser.add_argument('--force', action='store_true', help='Bypass the snapshot guard')


def _add_visibility_flags(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group()
    group.add_argument('--public', dest='public', action='store_const', const=True, default=None,
                       help='Make the playlist public')
    group.add_argument('--private', dest='public', action='store_const', const=False,
                       help='Make the playlist private')


def _add_target_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--to', help='Target playlist ID/URL/URI')
    parser.add_argument('--to-new', action='store_true', help='Create a new target playlist')
    parser.add_argument('--name', help='Name of the new playlist (with --to-new)')
    parser.add_argument('--description', help='Description of the new playlist (with --to-new)')
    parser.add_argument('--mode', choices=['append', 'replace'], help='How to write into --to (default: append)')
    _add_visibility_flags(parser)
    _add_apply_flags(parser)


class CLI:
    """Command Line Interface for spm."""

    def __init__(self, stdout: Optional[TextIO] = None, stderr: Optional[TextIO] = None,
                 stdin: Optional[TextIO] = None):
        """Initialize CLI."""
        self.stdout = stdout or sys.stdout
        self.stderr = stderr or sys.stderr
        self.stdin = stdin or sys.stdin
        self.parser = self._create_parser()
        self._setup_signal_handlers()
        self._start_time = None

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create argument parser."""
        parser = argparse.ArgumentParser(
            prog='spm',
            description='Manage Spotify playlists with preview-first, guarded writes'
        )
        parser.add_argument('--json', action='store_true', help='Print JSON envelopes instead of text')
        parser.add_argument('--market', default=None, help='Market (country code), e.g. US. Defaults to SPM_MARKET')
        parser.add_argument('--timeout-ms', type=int, default=None,
                            help='Per-request timeout in milliseconds (default: SPM_TIMEOUT_MS or 15000)')
        parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], default='WARNING',
                            help='Set logging level')
        parser.add_argument('--log-json', action='store_true', help='Emit structured JSON logs on stderr')
        parser.add_argument('--account', default=None,
                            help='Spotify account id or name (default: SPM_ACCOUNT or the active account)')

        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        login_parser = subparsers.add_parser('login', help='Authorize with Spotify and store tokens')
        login_parser.add_argument('--no-browser', action='store_true', help='Print the URL instead of opening it')
        login_parser.add_argument('--name', default=None, help='Local alias for the account')

        subparsers.add_parser('status', help='Show configuration and token status')

        account_parser = subparsers.add_parser('account', help='Manage stored Spotify accounts')
        account_sub = account_parser.add_subparsers(dest='action', help='Account actions')
        account_sub.add_parser('list', help='List stored accounts')
        p = account_sub.add_parser('show', help='Show one account (default: the active one)')
        p.add_argument('ref', nargs='?', default=None, help='Account id or name')
        p = account_sub.add_parser('use', help='Make an account the active one')
        p.add_argument('ref', help='Account id or name')
        p = account_sub.add_parser('remove', help='Delete a stored account')
        p.add_argument('ref', help='Account id or name')
        p.add_argument('--force', action='store_true', help='Confirm removal')

        playlist_parser = subparsers.add_parser('playlist', help='Playlist commands')
        playlist_sub = playlist_parser.add_subparsers(dest='action', help='Playlist actions')

        p = playlist_sub.add_parser('list', help="List the current user's playlists")
        p.add_argument('--limit', type=int, default=20)
        p.add_argument('--offset', type=int, default=0)
        p.add_argument('--all', action='store_true', help='Fetch every page')

        p = playlist_sub.add_parser('get', help='Show playlist details')
        p.add_argument('playlist')
        p.add_argument('--tracks', action='store_true', help='Include playlist items')
        p.add_argument('--limit', type=int, default=None)
        p.add_argument('--offset', type=int, default=0)

        p = playlist_sub.add_parser('create', help='Create a playlist')
        p.add_argument('name')
        p.add_argument('--description')
        _add_visibility_flags(p)
        p.add_argument('--collaborative', action='store_true')

        p = playlist_sub.add_parser('update', help='Change playlist details')
        p.add_argument('playlist')
        p.add_argument('--name')
        p.add_argument('--description')
        _add_visibility_flags(p)
        collab = p.add_mutually_exclusive_group()
        collab.add_argument('--collaborative', dest='collaborative', action='store_const', const=True, default=None)
        collab.add_argument('--no-collaborative', dest='collaborative', action='store_const', const=False)

        p = playlist_sub.add_parser('add', help='Insert tracks into a playlist')
        p.add_argument('playlist')
        p.add_argument('tracks', help="Comma/space separated track refs, or '-' for stdin")
        p.add_argument('--pos', type=int, default=None, help='1-based insert position (default: append)')

        p = playlist_sub.add_parser('shuffle', help='Shuffle track order')
        p.add_argument('playlist')
        p.add_argument('--group-size', type=int, default=None)
        p.add_argument('--groups', type=int, default=None)
        p.add_argument('--seed', type=int, default=None, help='Seed for a reproducible order')
        _add_apply_flags(p)

        p = playlist_sub.add_parser('dedup', help='Remove duplicate tracks')
        p.add_argument('playlist')
        p.add_argument('--keep', choices=['first', 'last'], default='first')
        _add_apply_flags(p)

        p = playlist_sub.add_parser('cleanup', help='Remove episodes and unplayable tracks')
        p.add_argument('playlist')
        _add_apply_flags(p)

        p = playlist_sub.add_parser('sort', help='Sort tracks')
        p.add_argument('playlist')
        p.add_argument('--by', choices=['added_at', 'popularity'], default='added_at')
        p.add_argument('--order', choices=['asc', 'desc'], default='asc')
        _add_apply_flags(p)

        p = playlist_sub.add_parser('trim', help='Keep only the first or last N tracks')
        p.add_argument('playlist')
        p.add_argument('--keep', type=int, required=True)
        p.add_argument('--from', dest='from_', choices=['start', 'end'], default='start')
        _add_apply_flags(p)

        p = playlist_sub.add_parser('reverse', help='Reverse track order')
        p.add_argument('playlist')
        _add_apply_flags(p)

        p = playlist_sub.add_parser('generate', help='Generate a playlist from 3-5 seed tracks')
        p.add_argument('seeds', help="Comma/space separated seed track refs, or '-' for stdin")
        _add_target_flags(p)
        p.add_argument('--target-size', type=int, default=100)
        p.add_argument('--min-popularity', type=int, default=30)
        p.add_argument('--max-duration-ms', type=int, default=240000)
        p.add_argument('--exclude', default=None, help='Track refs never to include')
        p.add_argument('--seed-profile', action=argparse.BooleanOptionalAction, default=True)
        p.add_argument('--diversify-keys', action=argparse.BooleanOptionalAction, default=True)
        p.add_argument('--max-key-share', type=int, default=DEFAULT_MAX_KEY_SHARE_PERCENT,
                       help='Max percent of tracks sharing one musical key')

        p = playlist_sub.add_parser('copy', help='Copy tracks into another playlist')
        p.add_argument('source')
        _add_target_flags(p)

        p = playlist_sub.add_parser('export', help='Export track URIs as a base64 payload')
        p.add_argument('playlist')
        p.add_argument('--out', default=None, help="Write payload to a file ('-' for stdout)")

        p = playlist_sub.add_parser('import', help='Import a base64 payload into a playlist')
        p.add_argument('payload', help="Base64 payload, or '-' for stdin")
        _add_target_flags(p)

        p = playlist_sub.add_parser('cover-get', help='Show cover images')
        p.add_argument('playlist')

        p = playlist_sub.add_parser('cover-set', help='Upload a JPEG cover')
        p.add_argument('playlist')
        p.add_argument('--file', default=None)
        p.add_argument('--base64', dest='base64_data', default=None)
        _add_apply_flags(p, force=False)

        return parser

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger.warning(f"Received signal {signum}, shutting down gracefully...")
            self._cleanup_resources()
            sys.exit(130)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def _cleanup_resources(self) -> None:
        if self._start_time:
            duration = time.time() - self._start_time
            logger.info(f"CLI execution time: {duration:.2f}s")

    def _setup_logging(self, args: argparse.Namespace) -> None:
        setup_logging(level=args.log_level, json_output=args.log_json,
                      command=' '.join(filter(None, [args.command, getattr(args, 'action', None)])))

    def _create_provider(self, args: argparse.Namespace) -> SpotifyProvider:
        return SpotifyProvider.from_config(get_secret_manager(), timeout_ms=args.timeout_ms,
                                            account=args.account)

    def _create_service(self, args: argparse.Namespace) -> PlaylistService:
        return PlaylistService(
            self._create_provider(args),
            rollback=get_secret_manager().is_rollback_enabled(),
            stdin=self.stdin,
        )

    def _resolve_market(self, args: argparse.Namespace) -> Optional[str]:
        if args.market:
            return args.market.strip().upper()
        return get_secret_manager().get_default_market()

    def _login(self, args: argparse.Namespace) -> CommandResult:
        """Run the OAuth authorization code flow through spotipy and store the tokens."""
        manager = get_secret_manager()
        client_config = manager.get_spotify_client_config()
        auth_manager = SpotifyOAuth(
            client_id=client_config['client_id'],
            client_secret=client_config['client_secret'],
            redirect_uri=client_config['redirect_uri'],
            scope=manager.get_spotify_scope_string(),
            open_browser=not args.no_browser,
            cache_handler=MemoryCacheHandler(),
        )
        code = auth_manager.get_auth_response()
        auth_manager.get_access_token(code, as_dict=False, check_cache=False)
        token_info = auth_manager.cache_handler.get_cached_token()
        if not token_info or not token_info.get('access_token'):
            raise ConfigError("Spotify did not return an access token.")

        profile = SpotifyProvider(
            access_token=token_info['access_token'],
            timeout_ms=args.timeout_ms or manager.get_timeout_ms(),
        ).get_current_user()
        granted = token_info.get('scope') or ''
        account_id = manager.save_spotify_tokens(
            token_info['access_token'], token_info.get('refresh_token'),
            expires_at=token_info.get('expires_at'), scope=granted,
            account_id=profile['id'], name=args.name, display_name=profile.get('display_name'),
            activate=True,
        )
        account = manager.resolve_account(account_id)
        warnings = []
        missing = manager.get_missing_spotify_scopes(granted)
        if missing:
            warnings.append(f"Missing scopes: {' '.join(missing)}")
        return CommandResult(
            data={
                'logged_in': True,
                'account': {'id': account_id, 'name': account['name'],
                            'display_name': account.get('display_name')},
                'active': True,
                'expires_at': token_info.get('expires_at'),
                'scope': granted,
            },
            human=[f"Logged in as {account['name']} ({account_id}). Tokens saved to {manager.tokens_file}.",
                   "Active: Yes"],
            warnings=warnings,
        )

    def _status(self, args: argparse.Namespace) -> CommandResult:
        summary = get_secret_manager().get_config_summary(args.account)
        account = summary['account']
        human = [
            f"Config dir: {summary['config_dir']}",
            f"Account: {account['name']} ({account['id']})" if account else "Account: none",
            f"Logged in: {'Yes' if summary['has_spotify_tokens'] else 'No'}",
            f"Refresh token: {'Yes' if summary['has_refresh_token'] else 'No'}",
        ]
        for key, ok in summary['validation'].items():
            human.append(f"{key}: {'ok' if ok else 'missing'}")
        return CommandResult(data=summary, human=human)

    def _account(self, args: argparse.Namespace) -> CommandResult:
        manager = get_secret_manager()
        action = args.action

        if action == 'list':
            items = manager.list_accounts()
            active = next((item['id'] for item in items if item['active']), None)
            human = [
                f"{'*' if item['active'] else ' '} {item['name']}"
                f"{' (' + item['display_name'] + ')' if item['display_name'] else ''} [{item['id']}]"
                f" {'refresh' if item['has_refresh_token'] else 'access-only'}"
                for item in items
            ] or ["No accounts configured."]
            return CommandResult(data={'count': len(items), 'active_account_id': active, 'items': items},
                                 human=human)
        if action == 'show':
            account = manager.resolve_account(args.ref or args.account)
            if account is None:
                raise ConfigError("No active Spotify account is configured.",
                                  hint="Run `spm login` or `spm account use <name>`.")
            active = next((item['active'] for item in manager.list_accounts() if item['id'] == account['id']), False)
            data = {
                'id': account['id'],
                'name': account.get('name'),
                'display_name': account.get('display_name'),
                'active': active,
                'has_refresh_token': bool(account.get('refresh_token')),
                'expires_at': account.get('expires_at'),
                'scope': account.get('scope'),
            }
            human = [
                f"Name: {data['name']}",
                f"ID: {data['id']}",
                f"Active: {'Yes' if active else 'No'}",
                f"Refresh token: {'Yes' if data['has_refresh_token'] else 'No'}",
            ]
            return CommandResult(data=data, human=human)
        if action == 'use':
            account = manager.use_account(args.ref)
            return CommandResult(
                data={'active_account_id': account['id'], 'active_account_name': account['name']},
                human=[f"Active account: {account['name']} ({account['id']})"],
            )
        if action == 'remove':
            if not args.force:
                raise UsageError("Account removal requires --force.",
                                 hint=f"Run: spm account remove {args.ref} --force")
            removed = manager.remove_account(args.ref)
            return CommandResult(
                data=removed,
                human=[f"Removed account: {removed['removed_account_name']} ({removed['removed_account_id']})"],
            )
        raise SpmError(f"Unknown account action: {action}")

    def _playlist(self, args: argparse.Namespace) -> CommandResult:
        if not args.action:
            raise SpmError("Missing playlist action.")
        service = self._create_service(args)
        market = self._resolve_market(args)
        action = args.action

        if action == 'list':
            return service.list_playlists(limit=args.limit, offset=args.offset, fetch_all=args.all)
        if action == 'get':
            return service.get_playlist(args.playlist, tracks=args.tracks, limit=args.limit,
                                        offset=args.offset, market=market)
        if action == 'create':
            return service.create_playlist(args.name, description=args.description, public=args.public,
                                           collaborative=args.collaborative)
        if action == 'update':
            return service.update_playlist(args.playlist, name=args.name, description=args.description,
                                           public=args.public, collaborative=args.collaborative)
        if action == 'add':
            return service.add_tracks(args.playlist, args.tracks, pos=args.pos)
        if action == 'shuffle':
            return service.shuffle(args.playlist, group_size=args.group_size, groups=args.groups,
                                   seed=args.seed, apply=args.apply, force=args.force)
        if action == 'dedup':
            return service.dedup(args.playlist, keep=args.keep, apply=args.apply, force=args.force)
        if action == 'cleanup':
            return service.cleanup(args.playlist, market=market, apply=args.apply, force=args.force)
        if action == 'sort':
            return service.sort(args.playlist, by=args.by, order=args.order, apply=args.apply, force=args.force)
        if action == 'trim':
            return service.trim(args.playlist, keep=args.keep, from_=args.from_, apply=args.apply,
                                force=args.force)
        if action == 'reverse':
            return service.reverse(args.playlist, apply=args.apply, force=args.force)
        if action == 'generate':
            return service.generate(
                args.seeds, to=args.to, to_new=args.to_new, name=args.name, description=args.description,
                mode=args.mode, public=args.public, target_size=args.target_size,
                min_popularity=args.min_popularity, max_duration_ms=args.max_duration_ms,
                exclude_refs=args.exclude, seed_profile=args.seed_profile, diversify_keys=args.diversify_keys,
                max_key_share=args.max_key_share, market=market, apply=args.apply, force=args.force,
            )
        if action == 'copy':
            return service.copy(args.source, to=args.to, to_new=args.to_new, name=args.name,
                                description=args.description, mode=args.mode, public=args.public,
                                apply=args.apply, force=args.force)
        if action == 'export':
            return service.export(args.playlist, out=args.out)
        if action == 'import':
            return service.import_tracks(args.payload, to=args.to, to_new=args.to_new, name=args.name,
                                         description=args.description, mode=args.mode, public=args.public,
                                         apply=args.apply, force=args.force)
        if action == 'cover-get':
            return service.cover_get(args.playlist)
        if action == 'cover-set':
            return service.cover_set(args.playlist, file=args.file, base64_data=args.base64_data,
                                     apply=args.apply)
        raise SpmError(f"Unknown playlist action: {action}")

    def _emit(self, args: argparse.Namespace, result: CommandResult) -> None:
        if args.json:
            print(render_json(success_envelope(result)), file=self.stdout)
        else:
            print(render_human(result), file=self.stdout)

    def _emit_error(self, json_output: bool, error: BaseException) -> None:
        if json_output:
            print(render_json(error_envelope(error)), file=self.stdout)
        else:
            print(render_error_human(error), file=self.stderr)

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Run the CLI and return the process exit code."""
        self._start_time = time.time()
        args = self.parser.parse_args(argv)

        if not args.command or (args.command in ('playlist', 'account') and not args.action):
            self.parser.print_help(self.stderr)
            return 2

        self._setup_logging(args)

        try:
            with CorrelationContext(command=args.command):
                if args.command == 'login':
                    result = self._login(args)
                elif args.command == 'status':
                    result = self._status(args)
                elif args.command == 'account':
                    result = self._account(args)
                else:
                    result = self._playlist(args)
            self._emit(args, result)
            return 0
        except KeyboardInterrupt as e:
            logger.warning("Operation cancelled by user")
            self._emit_error(args.json, e)
            return exit_code_for(e)
        except SpmError as e:
            logger.info(f"Command failed: {e.message}")
            self._emit_error(args.json, e)
            return exit_code_for(e)
        except Exception as e:
            log_error(logger, "Unexpected CLI error", e)
            self._emit_error(args.json, e)
            return exit_code_for(e)
        finally:
            self._cleanup_resources()


def main():
    """Main entry point."""
    cli = CLI()
    sys.exit(cli.run())


if __name__ == '__main__':
    main()
