import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional


class ConfigError(Exception):
    """Configuration error."""
    pass


SPOTIFY_ACCOUNTS_URL = 'https://accounts.spotify.com'

SPOTIFY_SCOPES = [
    'user-top-read',
    'user-read-recently-played',
    'user-read-private',
    'user-read-email',
    'user-follow-read',
    'playlist-read-private',
    'playlist-read-collaborative',
    'user-library-read',
    'user-read-playback-state',
    'user-modify-playback-state',
    'streaming',
]

TOKEN_DELIVERY_MODES = ('cookie', 'query')

LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}")


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == '':
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}")


@dataclass
class Settings:
    """Application settings read from the environment."""

    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_uri: str = 'http://localhost:4000/callback'
    frontend_uri: str = 'http://localhost:3000'
    accounts_url: str = SPOTIFY_ACCOUNTS_URL
    profile_db_path: str = 'db.json'
    upstream_timeout: float = 5.0
    upstream_retries: int = 0
    market: str = 'IN'
    token_delivery: str = 'cookie'
    host: str = 'localhost'
    port: int = 4000
    log_level: str = 'INFO'
    log_file: Optional[str] = None
    scopes: List[str] = field(default_factory=lambda: list(SPOTIFY_SCOPES))

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'Settings':
        """Build settings from a mapping, os.environ by default."""
        env = os.environ if env is None else env

        token_delivery = env.get('TOKEN_DELIVERY', 'cookie').lower()
        if token_delivery not in TOKEN_DELIVERY_MODES:
            raise ConfigError(
                f"TOKEN_DELIVERY must be one of {', '.join(TOKEN_DELIVERY_MODES)}, got {token_delivery!r}"
            )

        log_level = env.get('LOG_LEVEL', cls.log_level).upper()
        if log_level not in LOG_LEVELS:
            raise ConfigError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {log_level!r}")

        return cls(
            client_id=env.get('SPOTIFY_CLIENT_ID') or None,
            client_secret=env.get('SPOTIFY_CLIENT_SECRET') or None,
            redirect_uri=env.get('SPOTIFY_REDIRECT_URI', cls.redirect_uri),
            frontend_uri=env.get('FRONTEND_URI', cls.frontend_uri).rstrip('/'),
            accounts_url=env.get('SPOTIFY_ACCOUNTS_URL', SPOTIFY_ACCOUNTS_URL).rstrip('/'),
            profile_db_path=env.get('PROFILE_DB_PATH', cls.profile_db_path),
            upstream_timeout=_float(env, 'UPSTREAM_TIMEOUT', cls.upstream_timeout),
            upstream_retries=_int(env, 'UPSTREAM_RETRIES', cls.upstream_retries),
            market=env.get('SPOTIFY_MARKET', cls.market),
            token_delivery=token_delivery,
            host=env.get('HOST', cls.host),
            port=_int(env, 'PORT', cls.port),
            log_level=log_level,
            log_file=env.get('LOG_FILE') or None,
        )

    @property
    def scope_string(self) -> str:
        """Scopes as the space-separated string the authorize URL expects."""
        return ' '.join(self.scopes)

    @property
    def token_url(self) -> str:
        return f'{self.accounts_url}/api/token'

    @property
    def authorize_url(self) -> str:
        return f'{self.accounts_url}/authorize'

    def validate(self) -> None:
        """Raise ConfigError when the OAuth client is not configured."""
        if not self.client_id:
            raise ConfigError("SPOTIFY_CLIENT_ID not found in environment")
        if not self.client_secret:
            raise ConfigError("SPOTIFY_CLIENT_SECRET not found in environment")
        if not self.redirect_uri:
            raise ConfigError("SPOTIFY_REDIRECT_URI not found in environment")
        if self.upstream_timeout <= 0:
            raise ConfigError("UPSTREAM_TIMEOUT must be positive")

    def summary(self) -> Dict[str, object]:
        """Configuration summary without secrets."""
        return {
            'client_id_configured': bool(self.client_id),
            'client_secret_configured': bool(self.client_secret),
            'redirect_uri': self.redirect_uri,
            'frontend_uri': self.frontend_uri,
            'profile_db_path': self.profile_db_path,
            'upstream_timeout': self.upstream_timeout,
            'market': self.market,
            'token_delivery': self.token_delivery,
            'scopes': list(self.scopes),
        }


# Global instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def setup_config(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Rebuild the global settings, from a custom mapping if given."""
    global _settings
    _settings = Settings.from_env(env)
    return _settings
