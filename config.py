import os
import logging

from errors import ConfigError

logger = logging.getLogger('config')

DEFAULT_MODEL = 'gpt-4.1-mini'
DEFAULT_OPENAI_BASE_URL = 'https://api.openai.com/v1'
DEFAULT_GITHUB_API_BASE = 'https://api.github.com'
DEFAULT_CLOUDFLARE_API_BASE = 'https://api.cloudflare.com/client/v4'
DEFAULT_ORCHESTRATOR_URL = 'https://launchwing-orchestrator.promptpulse.workers.dev'


def require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise ConfigError(f'Missing required env: {name}')
    return value


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == '':
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


def env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning('Ignoring non-integer %s=%r; using %s', name, raw, default)
        return default


def env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning('Ignoring non-numeric %s=%r; using %s', name, raw, default)
        return default


def http_timeout() -> float:
    return env_float('HTTP_TIMEOUT_SECONDS', 30.0)


def orchestrator_url() -> str:
    return os.environ.get('ORCHESTRATOR_URL') or DEFAULT_ORCHESTRATOR_URL


def env_presence() -> dict:
    """Which integrations are configured. Never returns secret values."""
    return {
        'openai': bool(os.environ.get('OPENAI_API_KEY')),
        'github': bool(os.environ.get('GITHUB_TOKEN')),
        'cloudflare': bool(os.environ.get('CLOUDFLARE_API_TOKEN')) and bool(os.environ.get('CLOUDFLARE_ACCOUNT_ID')),
        'orchestrator_url': os.environ.get('ORCHESTRATOR_URL') or None,
    }
