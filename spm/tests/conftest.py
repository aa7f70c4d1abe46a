import os
import sys
import pytest


def _ensure_project_root_on_sys_path() -> None:
    here = os.path.dirname(__file__)
    project_root = os.path.abspath(os.path.join(here, "..", ".."))
    if project_root not in sys.path:
        sys.path.insert(0, project_root)


_ensure_project_root_on_sys_path()


@pytest.fixture(autouse=True)
def _isolate_spm_env(tmp_path):
    """Keep tokens and toggles from the developer's shell out of tests.

    Token, account and rollback variables are cleared before each test and restored
    afterwards; SPM_CONFIG_DIR points at a per-test temporary directory so
    nothing reads or writes ~/.spm.
    """
    keys = [
        'SPOTIFY_ACCESS_TOKEN',
        'SPOTIFY_REFRESH_TOKEN',
        'SPOTIFY_CLIENT_ID',
        'SPOTIFY_CLIENT_SECRET',
        'SPOTIFY_REDIRECT_URI',
        'SPM_ROLLBACK',
        'SPM_MARKET',
        'SPM_TIMEOUT_MS',
        'SPM_CONFIG_DIR',
        'SPM_ACCOUNT',
    ]
    backup = {k: os.environ.get(k) for k in keys}
    for k in keys:
        os.environ.pop(k, None)
    os.environ['SPM_CONFIG_DIR'] = str(tmp_path / 'spm-config')

    import spm.crosscutting.config as config_module
    previous_manager = config_module._secret_manager
    config_module._secret_manager = None
    try:
        yield
    finally:
        config_module._secret_manager = previous_manager
        for k, v in backup.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v
