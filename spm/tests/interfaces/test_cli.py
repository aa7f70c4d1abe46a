import argparse
import io
import json
import os
from unittest.mock import Mock, patch

import pytest

from spm.application.playlist_service import PlaylistService
from spm.crosscutting.config import get_secret_manager
from spm.interfaces.cli import CLI
from spm.tests.fakes import FakeSpotify, track_item


class TestCLIParser:
    """Tests for argument parsing."""

    def setup_method(self):
        self.cli = CLI()

    def test_create_parser(self):
        parser = self.cli._create_parser()

        assert isinstance(parser, argparse.ArgumentParser)

        args = parser.parse_args(['--json', '--market', 'US', 'playlist', 'shuffle', 'p1',
                                  '--group-size', '10', '--seed', '7', '--apply'])
        assert args.json is True
        assert args.market == 'US'
        assert args.command == 'playlist'
        assert args.action == 'shuffle'
        assert args.group_size == 10
        assert args.seed == 7
        assert args.apply is True
        assert args.force is False

    def test_trim_flags(self):
        args = self.cli.parser.parse_args(['playlist', 'trim', 'p1', '--keep', '5', '--from', 'end'])
        assert args.keep == 5
        assert args.from_ == 'end'

    def test_trim_requires_keep(self):
        with pytest.raises(SystemExit):
            self.cli.parser.parse_args(['playlist', 'trim', 'p1'])

    def test_generate_defaults(self):
        args = self.cli.parser.parse_args(['playlist', 'generate', 'a,b,c', '--to-new', '--name', 'Mix'])
        assert args.target_size == 100
        assert args.min_popularity == 30
        assert args.max_duration_ms == 240000
        assert args.max_key_share == 25
        assert args.seed_profile is True
        assert args.diversify_keys is True
        assert args.public is None

    def test_generate_negated_flags(self):
        args = self.cli.parser.parse_args(['playlist', 'generate', 'a,b,c', '--to', 'p1',
                                           '--no-seed-profile', '--no-diversify-keys', '--private'])
        assert args.seed_profile is False
        assert args.diversify_keys is False
        assert args.public is False

    def test_update_collaborative_tristate(self):
        args = self.cli.parser.parse_args(['playlist', 'update', 'p1', '--no-collaborative'])
        assert args.collaborative is False
        args = self.cli.parser.parse_args(['playlist', 'update', 'p1', '--name', 'x'])
        assert args.collaborative is None

    def test_cover_set_has_no_force(self):
        args = self.cli.parser.parse_args(['playlist', 'cover-set', 'p1', '--base64', 'AAAA'])
        assert args.base64_data == 'AAAA'
        assert not hasattr(args, 'force')


class TestCLIRun:
    """Tests for command execution and output."""

    def setup_method(self):
        self.stdout = io.StringIO()
        self.stderr = io.StringIO()
        self.cli = CLI(stdout=self.stdout, stderr=self.stderr, stdin=io.StringIO(''))
        self.fake = FakeSpotify()
        self.fake.add_playlist('p1', [track_item(0, 'a'), track_item(1, 'b')], name='Mix')

    def _use_fake(self, rollback=False):
        return patch.object(self.cli, '_create_service',
                            return_value=PlaylistService(self.fake, rollback=rollback))

    def test_no_command_shows_help(self):
        assert self.cli.run([]) == 2
        assert 'usage' in self.stderr.getvalue()

    def test_playlist_without_action(self):
        assert self.cli.run(['playlist']) == 2

    def test_json_success_envelope(self):
        with self._use_fake():
            code = self.cli.run(['--json', 'playlist', 'reverse', 'p1'])

        envelope = json.loads(self.stdout.getvalue())
        assert code == 0
        assert envelope['ok'] is True
        assert envelope['data']['result']['changed'] is True
        assert envelope['data']['result']['applied'] is False
        assert envelope['warnings'] == []

    def test_human_output(self):
        with self._use_fake():
            code = self.cli.run(['playlist', 'reverse', 'p1', '--apply'])

        assert code == 0
        assert 'Applied: Yes' in self.stdout.getvalue()
        assert self.fake.uris('p1') == ['spotify:track:b', 'spotify:track:a']

    def test_usage_error_exit_code(self):
        with self._use_fake():
            code = self.cli.run(['playlist', 'trim', 'p1', '--keep', '-1'])

        assert code == 2
        assert self.stderr.getvalue().startswith('Error: --keep')
        assert self.stdout.getvalue() == ''

    def test_json_error_envelope(self):
        with self._use_fake():
            code = self.cli.run(['--json', 'playlist', 'get', 'missing'])

        envelope = json.loads(self.stdout.getvalue())
        assert code == 6
        assert envelope == {'ok': False, 'error': {'code': 'NOT_FOUND', 'message': 'Playlist missing not found'}}

    def test_unexpected_error_exit_code(self):
        with patch.object(self.cli, '_create_service', side_effect=RuntimeError('boom')):
            code = self.cli.run(['--json', 'playlist', 'list'])

        assert code == 1
        assert json.loads(self.stdout.getvalue())['error']['code'] == 'INTERNAL'

    def test_keyboard_interrupt(self):
        with patch.object(self.cli, '_create_service', side_effect=KeyboardInterrupt):
            assert self.cli.run(['playlist', 'list']) == 130

    def test_missing_token_is_auth_error(self):
        code = self.cli.run(['playlist', 'list'])

        assert code == 3
        assert 'Run `spm login` first.' in self.stderr.getvalue()

    @patch('spm.interfaces.cli.SpotifyProvider')
    def test_provider_created_from_config(self, mock_provider_class):
        mock_provider_class.from_config.return_value = self.fake

        code = self.cli.run(['--timeout-ms', '2000', 'playlist', 'list'])

        assert code == 0
        mock_provider_class.from_config.assert_called_once_with(get_secret_manager(), timeout_ms=2000, account=None)

    @patch('spm.interfaces.cli.SpotifyProvider')
    def test_rollback_env_forces_preview(self, mock_provider_class):
        mock_provider_class.from_config.return_value = self.fake

        with patch.dict(os.environ, {'SPM_ROLLBACK': '1'}):
            code = self.cli.run(['--json', 'playlist', 'reverse', 'p1', '--apply'])

        envelope = json.loads(self.stdout.getvalue())
        assert code == 0
        assert envelope['data']['result']['applied'] is False
        assert self.fake.uris('p1') == ['spotify:track:a', 'spotify:track:b']

    @patch('spm.interfaces.cli.SpotifyProvider')
    def test_market_defaults_from_env(self, mock_provider_class):
        mock_provider_class.from_config.return_value = self.fake
        self.fake.load_playlist_items = Mock(wraps=self.fake.load_playlist_items)

        with patch.dict(os.environ, {'SPM_MARKET': 'se'}):
            self.cli.run(['playlist', 'cleanup', 'p1'])

        assert self.fake.load_playlist_items.call_args.kwargs['market'] == 'SE'

    def test_status(self):
        code = self.cli.run(['--json', 'status'])

        envelope = json.loads(self.stdout.getvalue())
        assert code == 0
        assert envelope['data']['has_spotify_tokens'] is False


class TestCLILogin:
    """Tests for the login command."""

    def setup_method(self):
        self.stdout = io.StringIO()
        self.stderr = io.StringIO()
        self.cli = CLI(stdout=self.stdout, stderr=self.stderr)

    def test_login_requires_client_credentials(self):
        assert self.cli.run(['login']) == 3
        assert 'SPOTIFY_CLIENT_ID' in self.stderr.getvalue()

    @patch.dict(os.environ, {'SPOTIFY_CLIENT_ID': 'id', 'SPOTIFY_CLIENT_SECRET': 'secret'})
    @patch('spm.interfaces.cli.SpotifyProvider')
    @patch('spm.interfaces.cli.SpotifyOAuth')
    def test_login_saves_tokens(self, mock_oauth_class, mock_provider_class):
        manager = get_secret_manager()
        mock_provider_class.return_value.get_current_user.return_value = {'id': 'user1', 'display_name': 'User One'}
        oauth = mock_oauth_class.return_value
        oauth.get_auth_response.return_value = 'auth-code'
        oauth.cache_handler.get_cached_token.return_value = {
            'access_token': 'new_access',
            'refresh_token': 'new_refresh',
            'expires_at': 1234,
            'scope': manager.get_spotify_scope_string(),
        }

        code = self.cli.run(['--json', 'login', '--no-browser', '--name', 'main'])

        assert code == 0
        assert mock_oauth_class.call_args.kwargs['open_browser'] is False
        assert mock_oauth_class.call_args.kwargs['redirect_uri'] == 'http://127.0.0.1:8888/callback'
        oauth.get_access_token.assert_called_once_with('auth-code', as_dict=False, check_cache=False)
        tokens = manager.get_spotify_tokens()
        assert tokens['access_token'] == 'new_access'
        assert tokens['refresh_token'] == 'new_refresh'
        assert tokens['id'] == 'user1'
        assert tokens['name'] == 'main'
        mock_provider_class.assert_called_once_with(access_token='new_access', timeout_ms=15000)
        envelope = json.loads(self.stdout.getvalue())
        assert envelope['warnings'] == []
        assert envelope['data']['account'] == {'id': 'user1', 'name': 'main', 'display_name': 'User One'}

    @patch.dict(os.environ, {'SPOTIFY_CLIENT_ID': 'id', 'SPOTIFY_CLIENT_SECRET': 'secret'})
    @patch('spm.interfaces.cli.SpotifyProvider')
    @patch('spm.interfaces.cli.SpotifyOAuth')
    def test_login_warns_about_missing_scopes(self, mock_oauth_class, mock_provider_class):
        mock_provider_class.return_value.get_current_user.return_value = {'id': 'user1', 'display_name': None}
        oauth = mock_oauth_class.return_value
        oauth.cache_handler.get_cached_token.return_value = {
            'access_token': 'a', 'refresh_token': 'r', 'expires_at': 1, 'scope': 'playlist-read-private'}

        self.cli.run(['--json', 'login'])

        warnings = json.loads(self.stdout.getvalue())['warnings']
        assert warnings and warnings[0].startswith('Missing scopes:')


class TestCLIAccount:
    """Tests for account selection and the account command."""

    def setup_method(self):
        self.stdout = io.StringIO()
        self.stderr = io.StringIO()
        self.cli = CLI(stdout=self.stdout, stderr=self.stderr)

    @pytest.fixture(autouse=True)
    def _stored_accounts(self, _isolate_spm_env):
        manager = get_secret_manager()
        manager.save_spotify_tokens('a_access', 'a_refresh', expires_at=1, account_id='alice_id', name='alice')
        manager.save_spotify_tokens('b_access', 'b_refresh', expires_at=1, account_id='bob_id', name='bob')

    def _envelope(self):
        return json.loads(self.stdout.getvalue())

    def test_account_without_action_shows_help(self):
        assert self.cli.run(['account']) == 2

    def test_list(self):
        assert self.cli.run(['--json', 'account', 'list']) == 0

        data = self._envelope()['data']
        assert data['count'] == 2
        assert data['active_account_id'] == 'alice_id'
        assert [item['name'] for item in data['items']] == ['alice', 'bob']

    def test_list_human_marks_active(self):
        self.cli.run(['account', 'list'])

        lines = self.stdout.getvalue().splitlines()
        assert lines[0].startswith('* alice')
        assert lines[1].startswith('  bob')

    def test_use_switches_active_account(self):
        assert self.cli.run(['--json', 'account', 'use', 'bob']) == 0

        assert self._envelope()['data'] == {'active_account_id': 'bob_id', 'active_account_name': 'bob'}
        assert get_secret_manager().get_spotify_tokens()['access_token'] == 'b_access'

    def test_use_unknown_account(self):
        assert self.cli.run(['account', 'use', 'ghost']) == 6

    def test_show_uses_global_account_flag(self):
        assert self.cli.run(['--json', '--account', 'bob', 'account', 'show']) == 0

        data = self._envelope()['data']
        assert data['id'] == 'bob_id'
        assert data['active'] is False
        assert 'access_token' not in data

    def test_remove_requires_force(self):
        assert self.cli.run(['account', 'remove', 'alice']) == 2
        assert len(get_secret_manager().list_accounts()) == 2

    def test_remove(self):
        assert self.cli.run(['--json', 'account', 'remove', 'alice', '--force']) == 0

        assert self._envelope()['data']['active_account_id'] == 'bob_id'
        assert [item['id'] for item in get_secret_manager().list_accounts()] == ['bob_id']

    @patch('spm.interfaces.cli.SpotifyProvider')
    def test_account_flag_passed_to_provider(self, mock_provider_class):
        mock_provider_class.from_config.return_value = FakeSpotify()

        assert self.cli.run(['--account', 'bob', 'playlist', 'list']) == 0

        mock_provider_class.from_config.assert_called_once_with(get_secret_manager(), timeout_ms=None,
                                                                account='bob')

    def test_unknown_account_flag_is_auth_error(self):
        assert self.cli.run(['--account', 'ghost', 'playlist', 'list']) == 3

    def test_status_reports_selected_account(self):
        with patch.dict(os.environ, {'SPM_ACCOUNT': 'bob'}):
            self.cli.run(['--json', 'status'])

        assert self._envelope()['data']['account'] == {'id': 'bob_id', 'name': 'bob'}
