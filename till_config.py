"""
Till configuration from environment variables (optionally a .env file).

Env vars:
  TILL_REMOTE_URL        Base URL of the remote data API (PostgREST style)
  TILL_REMOTE_API_KEY    API key sent as apikey + bearer token
  TILL_USE_MOCK          '1' to use the in-memory remote (default when no URL)
  TILL_QUEUE_DB          SQLite file holding the offline sale queue
  TILL_REQUEST_TIMEOUT   seconds per remote request (default: 30)
  TILL_DEBOUNCE_SECONDS  stable-online debounce (default: 2)
  TILL_PROBE_URL         URL polled for reachability (default: remote URL)
  TILL_PROBE_INTERVAL    seconds between probes (default: 5)
  TILL_PROBE_TIMEOUT     seconds per probe (default: 3)
  TILL_BRANCH_ID / TILL_USER_ID / TILL_USER_NAME
  TILL_LOG_LEVEL         logging level name (default: INFO)
"""
import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


REMOTE_URL = _env_string('TILL_REMOTE_URL')
REMOTE_API_KEY = _env_string('TILL_REMOTE_API_KEY')
USE_MOCK = _env_string('TILL_USE_MOCK', '0' if REMOTE_URL else '1') == '1'
QUEUE_DB_PATH = _env_string('TILL_QUEUE_DB', 'till_queue.sqlite3')
QUEUE_KEY = 'offlineSales'
REQUEST_TIMEOUT = max(1.0, _env_float('TILL_REQUEST_TIMEOUT', 30.0))
DEBOUNCE_SECONDS = max(0.0, _env_float('TILL_DEBOUNCE_SECONDS', 2.0))
PROBE_URL = _env_string('TILL_PROBE_URL', REMOTE_URL)
PROBE_INTERVAL = max(1.0, _env_float('TILL_PROBE_INTERVAL', 5.0))
PROBE_TIMEOUT = max(0.5, _env_float('TILL_PROBE_TIMEOUT', 3.0))
BRANCH_ID = _env_string('TILL_BRANCH_ID', 'main')
USER_ID = _env_string('TILL_USER_ID', 'till')
USER_NAME = _env_string('TILL_USER_NAME', 'Till')
LOG_LEVEL = (_env_string('TILL_LOG_LEVEL') or 'INFO').upper()


@dataclass
class TillSettings:
    remote_url: Optional[str] = REMOTE_URL
    remote_api_key: Optional[str] = REMOTE_API_KEY
    use_mock: bool = USE_MOCK
    queue_db_path: str = QUEUE_DB_PATH
    queue_key: str = QUEUE_KEY
    request_timeout: float = REQUEST_TIMEOUT
    debounce_seconds: float = DEBOUNCE_SECONDS
    probe_url: Optional[str] = PROBE_URL
    probe_interval: float = PROBE_INTERVAL
    probe_timeout: float = PROBE_TIMEOUT
    branch_id: str = BRANCH_ID
    user_id: str = USER_ID
    user_name: str = USER_NAME


def load_settings(**overrides) -> TillSettings:
    settings = TillSettings()
    for key, value in overrides.items():
        if not hasattr(settings, key):
            raise TypeError(f"Unknown setting {key!r}")
        setattr(settings, key, value)
    return settings


def configure_logging(prefix: str = 'till', level_name: Optional[str] = None) -> None:
    level = getattr(logging, (level_name or LOG_LEVEL).upper(), logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=f'[{prefix}] %(asctime)s %(levelname)s %(name)s: %(message)s')
