import json
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import dotenv_values

from spm.domain.errors import NotFound, SpmError


DEFAULT_REDIRECT_URI = 'http://127.0.0.1:8888/callback'
DEFAULT_TIMEOUT_MS = 15000
DEFAULT_ACCOUNT_ID = 'default'


class ConfigError(SpmError):
    """Configuration error (missing credentials, unreadable config files)."""


class SecretManager:
    """Manages application secrets and configuration.

    tokens.json holds one entry per Spotify account, keyed by user id:

        {"active_account": "<id>", "accounts": {"<id>": {"name": ..., "access_token": ...}}}
    """

    def __init__(self, config_dir: Optional[str] = None):
        """Initialize secret manager.

        Args:
            config_dir: Directory holding tokens.json and .env. Defaults to
                SPM_CONFIG_DIR or ~/.spm.
        """
        config_dir = config_dir or os.environ.get('SPM_CONFIG_DIR')
        self.config_dir = Path(config_dir) if config_dir else Path.home() / '.spm'
        self.tokens_file = self.config_dir / 'tokens.json'
        self.env_file = self.config_dir / '.env'

    def _ensure_dir(self) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)

    def get_spotify_scopes(self) -> List[str]:
        """Get Spotify scopes required by playlist commands."""
        return [
            'playlist-read-private',
            'playlist-read-collaborative',
            'playlist-modify-public',
            'playlist-modify-private',
            'ugc-image-upload',
            'user-read-private',
        ]

    def get_spotify_scope_string(self) -> str:
        return ' '.join(self.get_spotify_scopes())

    def get_missing_spotify_scopes(self, scopes: str) -> List[str]:
        provided_scopes = set(scopes.split())
        return [s for s in self.get_spotify_scopes() if s not in provided_scopes]

    def load_tokens(self) -> Dict[str, Any]:
        """Load the account store from tokens.json."""
        if not self.tokens_file.exists():
            return {'active_account': None, 'accounts': {}}

        try:
            with open(self.tokens_file, 'r') as f:
                store = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise ConfigError(f"Failed to load tokens from {self.tokens_file}: {e}",
                              hint=f"Fix or remove {self.tokens_file}.")

        if not isinstance(store, dict) or not isinstance(store.get('accounts', {}), dict):
            raise ConfigError(f"Invalid account store in {self.tokens_file}: accounts must be an object.",
                              hint=f"Fix or remove {self.tokens_file}.")
        accounts = store.get('accounts') or {}
        active = store.get('active_account')
        if active is not None and active not in accounts:
            raise ConfigError(f"Invalid account store in {self.tokens_file}: active account {active!r} does not exist.",
                              hint=f"Fix or remove {self.tokens_file}.")
        return {'active_account': active, 'accounts': accounts}

    def save_tokens(self, store: Dict[str, Any]) -> None:
        """Write the account store to tokens.json (mode 0600)."""
        try:
            self._ensure_dir()
            with open(self.tokens_file, 'w') as f:
                json.dump(store, f, indent=2, ensure_ascii=False)
            os.chmod(self.tokens_file, 0o600)
        except OSError as e:
            raise ConfigError(f"Failed to save tokens to {self.tokens_file}: {e}")

    @staticmethod
    def _find_account_id(store: Dict[str, Any], ref: str) -> Optional[str]:
        """Match an account by id first, then by case-insensitive name."""
        ref = ref.strip()
        if not ref:
            return None
        accounts = store['accounts']
        if ref in accounts:
            return ref
        key = ref.lower()
        for account_id, entry in accounts.items():
            if str(entry.get('name') or '').strip().lower() == key:
                return account_id
        return None

    def _requested_account(self, account: Optional[str]) -> Optional[str]:
        if account and account.strip():
            return account.strip()
        from_env = self.load_env_vars().get('SPM_ACCOUNT')
        return from_env.strip() if from_env and from_env.strip() else None

    def resolve_account(self, account: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Resolve the account to use: explicit ref, then SPM_ACCOUNT, then the active one.

        Raises:
            ConfigError: If an account was requested but is not stored
        """
        store = self.load_tokens()
        ref = self._requested_account(account)
        if ref:
            account_id = self._find_account_id(store, ref)
            if account_id is None:
                raise ConfigError(f"Spotify account not found: {ref}",
                                  hint="Run `spm account list` to see stored accounts.")
        else:
            account_id = store['active_account']
            if account_id is None:
                return None
        return {'id': account_id, **store['accounts'][account_id]}

    def list_accounts(self) -> List[Dict[str, Any]]:
        """Stored accounts sorted by name, without secrets."""
        store = self.load_tokens()
        items = []
        for account_id, entry in store['accounts'].items():
            items.append({
                'id': account_id,
                'name': entry.get('name') or account_id,
                'display_name': entry.get('display_name'),
                'active': account_id == store['active_account'],
                'expires_at': entry.get('expires_at'),
                'has_refresh_token': bool(entry.get('refresh_token')),
                'scope': entry.get('scope'),
            })
        return sorted(items, key=lambda item: item['name'].lower())

    def use_account(self, ref: str) -> Dict[str, Any]:
        """Make an account the active one.

        Raises:
            NotFound: If no stored account matches ref
        """
        store = self.load_tokens()
        account_id = self._find_account_id(store, ref)
        if account_id is None:
            raise NotFound(f"Account not found: {ref}")
        store['active_account'] = account_id
        self.save_tokens(store)
        return {'id': account_id, 'name': store['accounts'][account_id].get('name') or account_id}

    def remove_account(self, ref: str) -> Dict[str, Any]:
        """Delete an account. When it was active, the next stored account becomes active.

        Raises:
            NotFound: If no stored account matches ref
        """
        store = self.load_tokens()
        account_id = self._find_account_id(store, ref)
        if account_id is None:
            raise NotFound(f"Account not found: {ref}")
        removed = store['accounts'].pop(account_id)
        if store['active_account'] == account_id:
            store['active_account'] = next(iter(store['accounts']), None)
        self.save_tokens(store)
        return {
            'removed_account_id': account_id,
            'removed_account_name': removed.get('name') or account_id,
            'active_account_id': store['active_account'],
        }

    def get_spotify_tokens(self, account: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Get Spotify tokens of the resolved account. Environment overrides win over tokens.json."""
        stored = self.resolve_account(account) or {}
        env_vars = self.load_env_vars()
        access_token = env_vars.get('SPOTIFY_ACCESS_TOKEN')
        refresh_token = env_vars.get('SPOTIFY_REFRESH_TOKEN')
        if access_token:
            stored['access_token'] = access_token
        if refresh_token:
            stored['refresh_token'] = refresh_token
        return stored or None

    def save_spotify_tokens(self, access_token: str, refresh_token: Optional[str],
                            expires_at: Optional[int] = None, scope: Optional[str] = None,
                            account_id: Optional[str] = None, name: Optional[str] = None,
                            display_name: Optional[str] = None, activate: bool = False) -> str:
        """Save Spotify tokens into an account entry.

        Without account_id the active account is updated, or a 'default' one created.
        The first stored account always becomes active.

        Returns:
            The id of the account that was written
        """
        store = self.load_tokens()
        account_id = account_id or store['active_account'] or DEFAULT_ACCOUNT_ID
        current = store['accounts'].get(account_id) or {}
        entry = dict(current)
        entry.update({
            'name': (name or '').strip() or current.get('name') or (display_name or '').strip() or account_id,
            'access_token': access_token,
            'refresh_token': refresh_token or current.get('refresh_token'),
            'expires_at': expires_at if expires_at is not None else int(time.time()) + 3600,
            'updated_at': int(time.time()),
        })
        if display_name:
            entry['display_name'] = display_name
        if scope:
            entry['scope'] = scope
        store['accounts'][account_id] = entry
        if activate or store['active_account'] is None:
            store['active_account'] = account_id
        self.save_tokens(store)
        return account_id

    def load_env_vars(self) -> Dict[str, str]:
        """Load variables from the config dir .env file, overridden by the process environment."""
        env_vars: Dict[str, str] = {}
        if self.env_file.exists():
            try:
                env_vars.update({k: v for k, v in dotenv_values(self.env_file).items() if v is not None})
            except OSError as e:
                raise ConfigError(f"Failed to load .env file {self.env_file}: {e}")

        for key, value in os.environ.items():
            if key.startswith('SPOTIFY_') or key.startswith('SPM_'):
                env_vars[key] = value
        return env_vars

    def get_spotify_client_config(self) -> Dict[str, str]:
        """Get Spotify client configuration.

        Raises:
            ConfigError: If the client id or secret is missing
        """
        env_vars = self.load_env_vars()

        client_id = env_vars.get('SPOTIFY_CLIENT_ID')
        client_secret = env_vars.get('SPOTIFY_CLIENT_SECRET')
        redirect_uri = env_vars.get('SPOTIFY_REDIRECT_URI') or DEFAULT_REDIRECT_URI

        if not client_id:
            raise ConfigError("SPOTIFY_CLIENT_ID not found in environment",
                              hint=f"Set it in the environment or in {self.env_file}.")
        if not client_secret:
            raise ConfigError("SPOTIFY_CLIENT_SECRET not found in environment",
                              hint=f"Set it in the environment or in {self.env_file}.")

        return {
            'client_id': client_id,
            'client_secret': client_secret,
            'redirect_uri': redirect_uri
        }

    def get_timeout_ms(self) -> int:
        raw = self.load_env_vars().get('SPM_TIMEOUT_MS')
        if not raw:
            return DEFAULT_TIMEOUT_MS
        try:
            value = int(raw)
        except ValueError:
            raise ConfigError(f"SPM_TIMEOUT_MS must be an integer, got {raw!r}")
        if value <= 0:
            raise ConfigError("SPM_TIMEOUT_MS must be positive")
        return value

    def get_default_market(self) -> Optional[str]:
        market = self.load_env_vars().get('SPM_MARKET')
        return market.strip().upper() if market else None

    def is_rollback_enabled(self) -> bool:
        """SPM_ROLLBACK=1 forces every mutating command into preview mode."""
        return os.environ.get('SPM_ROLLBACK', '').strip() == '1'

    def validate_configuration(self, account: Optional[str] = None) -> Dict[str, bool]:
        """Validate that all required configuration is present."""
        env_vars = self.load_env_vars()
        spotify_tokens = self.get_spotify_tokens(account)
        return {
            'spotify_client_id': bool(env_vars.get('SPOTIFY_CLIENT_ID')),
            'spotify_client_secret': bool(env_vars.get('SPOTIFY_CLIENT_SECRET')),
            'spotify_redirect_uri': bool(env_vars.get('SPOTIFY_REDIRECT_URI')),
            'spotify_tokens': bool(spotify_tokens and spotify_tokens.get('access_token')),
        }

    def get_config_summary(self, account: Optional[str] = None) -> Dict[str, Any]:
        """Get configuration summary (without sensitive data)."""
        validation = self.validate_configuration(account)
        tokens = self.get_spotify_tokens(account) or {}
        return {
            'config_dir': str(self.config_dir),
            'tokens_file': str(self.tokens_file),
            'env_file': str(self.env_file),
            'validation': validation,
            'spotify_scopes': self.get_spotify_scopes(),
            'account': {'id': tokens['id'], 'name': tokens.get('name')} if tokens.get('id') else None,
            'accounts': len(self.load_tokens()['accounts']),
            'has_spotify_tokens': validation['spotify_tokens'],
            'has_refresh_token': bool(tokens.get('refresh_token')),
            'expires_at': tokens.get('expires_at'),
        }


# Global instance, created on first use
_secret_manager: Optional[SecretManager] = None


def get_secret_manager() -> SecretManager:
    """Get global secret manager instance."""
    global _secret_manager
    if _secret_manager is None:
        _secret_manager = SecretManager()
    return _secret_manager
