import logging
import os
import sys
import pytest


def _ensure_project_root_on_sys_path() -> None:
    here = os.path.dirname(__file__)
    project_root = os.path.abspath(os.path.join(here, "..", ".."))
    if project_root not in sys.path:
        sys.path.insert(0, project_root)


_ensure_project_root_on_sys_path()


CONFIG_ENV_KEYS = [
    'SPOTIFY_CLIENT_ID', 'SPOTIFY_CLIENT_SECRET', 'SPOTIFY_REDIRECT_URI', 'SPOTIFY_ACCOUNTS_URL',
    'SPOTIFY_MARKET', 'FRONTEND_URI', 'PROFILE_DB_PATH', 'UPSTREAM_TIMEOUT', 'UPSTREAM_RETRIES',
    'TOKEN_DELIVERY', 'HOST', 'PORT', 'LOG_LEVEL', 'LOG_FILE',
]


@pytest.fixture(autouse=True)
def _clear_config_env():
    """Keep a developer's .env or shell settings out of the tests.
    Cleared before each test and restored afterwards; tests that need a
    value set it with monkeypatch.
    """
    backup = {k: os.environ.get(k) for k in CONFIG_ENV_KEYS}
    for k in CONFIG_ENV_KEYS:
        os.environ.pop(k, None)
    try:
        yield
    finally:
        for k, v in backup.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


@pytest.fixture(autouse=True)
def _reset_wavestats_logger():
    """Drop handlers setup_logging() attached during a test."""
    yield
    logger = logging.getLogger('wavestats')
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
