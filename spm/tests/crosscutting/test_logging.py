import json
import logging

from spm.crosscutting.logging import (
    CorrelationContext,
    PlainFormatter,
    SecretMasker,
    StructuredFormatter,
    command_var,
    log_error,
    log_plan_applied,
    log_with_fields,
    playlist_id_var,
    setup_logging,
)
from spm.domain.entities import ApplyResult, ApplyState


def make_record(message, **attrs):
    record = logging.LogRecord('spm.test', logging.INFO, __file__, 10, message, None, None)
    for key, value in attrs.items():
        setattr(record, key, value)
    return record


class TestSecretMasker:
    """Tests for secret masking functionality."""

    def setup_method(self):
        self.masker = SecretMasker()

    def test_mask_access_token(self):
        masked = self.masker.mask_secrets("access_token=abcdefghijklmnopqrstuvwxyz")
        assert masked == "access_token: abcd******************wxyz"

    def test_mask_client_secret(self):
        masked = self.masker.mask_secrets("client_secret: my_super_secret_key_12345")
        assert masked == "client_secret: my_s*****************2345"

    def test_plain_text_untouched(self):
        text = "Loaded 120 items from playlist 37i9dQZF1DXcBWIGoYBM5M"
        assert self.masker.mask_secrets(text) == text

    def test_mask_dict_nested(self):
        data = {'auth': {'refresh_token': 'refresh_token=abcdefghijklmnopqrstuvwx'}, 'count': 3}
        masked = self.masker.mask_dict(data)
        assert 'abcdefghijklmnopqrstuvwx' not in masked['auth']['refresh_token']
        assert masked['count'] == 3


class TestFormatters:
    def test_structured_formatter_emits_json_with_context(self):
        formatter = StructuredFormatter()
        with CorrelationContext(command='playlist shuffle', playlist_id='p1', stage='plan'):
            line = formatter.format(make_record('hello', fields={'count': 2}))

        entry = json.loads(line)
        assert entry['level'] == 'INFO'
        assert entry['message'] == 'hello'
        assert entry['command'] == 'playlist shuffle'
        assert entry['playlistId'] == 'p1'
        assert entry['stage'] == 'plan'
        assert entry['fields'] == {'count': 2}
        assert entry['ts'].endswith('Z')

    def test_plain_formatter_appends_fields(self):
        line = PlainFormatter().format(make_record('done', fields={'removed': 1}))
        assert line == 'INFO spm.test: done [removed=1]'

    def test_context_is_restored(self):
        with CorrelationContext(playlist_id='outer'):
            with CorrelationContext(playlist_id='inner'):
                assert playlist_id_var.get() == 'inner'
            assert playlist_id_var.get() == 'outer'
        assert playlist_id_var.get() is None


class TestSetupLogging:
    """Tests for logger configuration."""

    def teardown_method(self):
        root = logging.getLogger('spm')
        for handler in root.handlers:
            handler.close()
        root.handlers.clear()
        command_var.set(None)

    def test_logs_go_to_stderr(self, capsys):
        logger = setup_logging(level='INFO', command='status')
        logging.getLogger('spm.test').info('to stderr')

        captured = capsys.readouterr()
        assert captured.out == ''
        assert 'to stderr' in captured.err
        assert logger.propagate is False
        assert command_var.get() == 'status'

    def test_json_output(self, capsys):
        setup_logging(level='INFO', json_output=True)
        log_with_fields(logging.getLogger('spm.test'), 'INFO', 'structured', {'a': 1}, b=2)

        entry = json.loads(capsys.readouterr().err.strip())
        assert entry['fields'] == {'a': 1, 'b': 2}

    def test_level_filters(self, capsys):
        setup_logging(level='WARNING')
        logging.getLogger('spm.test').info('hidden')
        assert 'hidden' not in capsys.readouterr().err

    def test_log_file(self, tmp_path, capsys):
        log_file = tmp_path / 'spm.log'
        setup_logging(level='INFO', log_file=str(log_file))
        logging.getLogger('spm.test').info('to file')
        for handler in logging.getLogger('spm').handlers:
            handler.flush()

        assert json.loads(log_file.read_text().strip())['message'] == 'to file'

    def test_log_plan_applied(self, capsys):
        setup_logging(level='INFO', json_output=True)
        result = ApplyResult(action='dedup', playlist_id='p9', before_count=3, after_count=2, removed=1,
                             dropped_episodes=0, changed=True, applied=True, snapshot_id='s1',
                             state=ApplyState.APPLIED)

        log_plan_applied(logging.getLogger('spm.test'), result)

        entry = json.loads(capsys.readouterr().err.strip())
        assert entry['message'] == 'Applied dedup'
        assert entry['playlistId'] == 'p9'
        assert entry['fields']['removed'] == 1

    def test_log_error_includes_exception(self, capsys):
        setup_logging(level='ERROR', json_output=True)
        try:
            raise ValueError('boom')
        except ValueError as e:
            log_error(logging.getLogger('spm.test'), 'failed', e)

        entry = json.loads(capsys.readouterr().err.strip())
        assert entry['fields']['error_type'] == 'ValueError'
        assert 'Traceback' in entry['exception']
