"""End-to-end flows through the CLI against an in-memory Spotify."""
import io
import json
from unittest.mock import patch

import pytest

from spm.domain.entities import AudioFeatures, RecommendationTrack
from spm.interfaces.cli import CLI
from spm.tests.fakes import FakeSpotify, episode_item, track_item


class TestPlaylistWorkflowE2E:
    """Preview, apply, export and generate through the public command surface."""

    def setup_method(self):
        self.fake = FakeSpotify()
        self.fake.add_playlist('mix', [
            track_item(0, 'a', popularity=10, added_at='2024-02-01T00:00:00Z'),
            track_item(1, 'b', popularity=90, added_at='2024-01-01T00:00:00Z'),
            episode_item(2, 'pod'),
            track_item(3, 'a', popularity=10, added_at='2024-03-01T00:00:00Z'),
            track_item(4, 'c', popularity=50, added_at='2023-12-01T00:00:00Z'),
        ], name='Mix')
        self.fake.recommendations = [
            RecommendationTrack(uri=f'spotify:track:r{i}', id=f'r{i}', name=f'R{i}', popularity=60,
                                duration_ms=200000)
            for i in range(20)
        ]
        self.provider_patch = patch('spm.interfaces.cli.SpotifyProvider')
        provider_class = self.provider_patch.start()
        provider_class.from_config.return_value = self.fake

    def teardown_method(self):
        self.provider_patch.stop()

    def run(self, *argv, stdin=''):
        stdout, stderr = io.StringIO(), io.StringIO()
        code = CLI(stdout=stdout, stderr=stderr, stdin=io.StringIO(stdin)).run(['--json', *argv])
        out = stdout.getvalue()
        return code, json.loads(out) if out.strip() else None

    def test_preview_then_apply_dedup(self):
        code, preview = self.run('playlist', 'dedup', 'https://open.spotify.com/playlist/mix')
        assert code == 0
        assert preview['data']['result']['applied'] is False
        assert self.fake.write_calls == []

        code, applied = self.run('playlist', 'dedup', 'spotify:playlist:mix', '--apply')
        assert code == 0
        assert applied['data']['result']['applied'] is True
        assert applied['data']['result']['dropped_episodes'] == 1
        assert self.fake.uris('mix') == ['spotify:track:a', 'spotify:track:b', 'spotify:track:c']

    def test_sort_by_popularity_desc(self):
        self.run('playlist', 'sort', 'mix', '--by', 'popularity', '--order', 'desc', '--apply')

        assert self.fake.uris('mix') == [
            'spotify:track:b', 'spotify:track:c', 'spotify:track:a', 'spotify:track:a',
        ]

    def test_export_import_to_new_playlist(self):
        code, exported = self.run('playlist', 'export', 'mix')
        assert code == 0

        code, imported = self.run('playlist', 'import', '-', '--to-new', '--name', 'Backup', '--apply',
                                  stdin=exported['data']['base64'])

        assert code == 0
        new_id = imported['data']['target_playlist_id']
        assert self.fake.uris(new_id) == [
            'spotify:track:a', 'spotify:track:b', 'spotify:track:a', 'spotify:track:c',
        ]

    def test_generate_with_key_cap(self):
        for i in range(20):
            uri = f'spotify:track:r{i}'
            self.fake.features[uri] = AudioFeatures(uri=uri, key=i % 2)

        code, result = self.run('playlist', 'generate', 'a b c', '--to-new', '--name', 'Radio',
                                '--target-size', '10', '--max-key-share', '30', '--no-seed-profile',
                                '--apply')

        assert code == 0
        data = result['data']
        assert data['generated_count'] == 9
        assert data['shortfall'] == 1
        assert data['filter_stats']['key_diversity']['key_cap'] == 3
        assert self.fake.uris(data['target_playlist_id'])[:3] == [
            'spotify:track:a', 'spotify:track:b', 'spotify:track:c',
        ]

    def test_concurrent_edit_blocks_replace(self):
        original = self.fake.get_playlist_meta

        def meta_then_edit(playlist_id):
            meta = original(playlist_id)
            self.fake.touch(playlist_id)
            return meta

        self.fake.get_playlist_meta = meta_then_edit

        code, result = self.run('playlist', 'reverse', 'mix', '--apply')

        assert code == 2
        assert result['error']['code'] == 'INVALID_USAGE'
        assert 'snapshot guard' in result['error']['hint']

    @pytest.mark.parametrize('argv', [
        ('playlist', 'generate', 'a,b', '--to-new', '--name', 'x'),
        ('playlist', 'copy', 'mix', '--to-new'),
        ('playlist', 'cover-set', 'mix'),
    ])
    def test_usage_errors(self, argv):
        code, result = self.run(*argv)
        assert code == 2
        assert result['ok'] is False
