import os
from typing import Dict, Optional

from dotenv import dotenv_values

from .logging import get_logger

log = get_logger("config")

DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_HTTP_TIMEOUT = 30


def _find_upwards(start_dir: str, filename: str) -> Optional[str]:
    """Return first matching file found when walking up from start_dir.

    Running the CLI from a subdirectory (e.g. `src/`) still finds the
    project-level `.env`.
    """
    d = os.path.abspath(start_dir or ".")
    while True:
        candidate = os.path.join(d, filename)
        if os.path.isfile(candidate):
            return candidate
        parent = os.path.dirname(d)
        if parent == d:
            return None
        d = parent


def _read_dotenv(dotenv_dir: str) -> Dict[str, str]:
    """Read key=value pairs from the nearest .env; does not mutate os.environ."""
    path = _find_upwards(dotenv_dir, ".env")
    if not path:
        log.debug(f"No .env found starting from: {os.path.abspath(dotenv_dir)}")
        return {}
    try:
        values = dotenv_values(path)
    except (OSError, UnicodeDecodeError) as e:
        log.warning(f"Failed reading .env: {e}")
        return {}
    env = {k: v.strip() for k, v in values.items() if k and v is not None}
    log.debug(f"Loaded {len(env)} key(s) from .env at {path}")
    return env


def _lookup(dotenv_dir: str, *names: str) -> Optional[str]:
    for name in names:
        v = os.environ.get(name)
        if v and v.strip():
            return v.strip()
    env = _read_dotenv(dotenv_dir)
    for name in names:
        v = env.get(name)
        if v:
            return v
    return None


def load_script_url(dotenv_dir: str) -> Optional[str]:
    """Return the remote store endpoint from env or .env (NFCE_SCRIPT_URL)."""
    return _lookup(dotenv_dir, "NFCE_SCRIPT_URL")


def load_openai(dotenv_dir: str) -> Optional[str]:
    """Return the OpenAI API key (OPENAI_API_KEY or lowercase variant)."""
    return _lookup(dotenv_dir, "OPENAI_API_KEY", "openai_api_key")


def load_openai_model(dotenv_dir: str, fallback: str = DEFAULT_OPENAI_MODEL) -> str:
    return _lookup(dotenv_dir, "OPENAI_MODEL") or fallback


def load_openai_base_url(dotenv_dir: str) -> Optional[str]:
    return _lookup(dotenv_dir, "OPENAI_BASE_URL")


def load_http_timeout(dotenv_dir: str, fallback: int = DEFAULT_HTTP_TIMEOUT) -> int:
    raw = _lookup(dotenv_dir, "NFCE_HTTP_TIMEOUT")
    if not raw:
        return fallback
    try:
        value = int(raw)
    except ValueError:
        log.warning(f"NFCE_HTTP_TIMEOUT={raw!r} is not an integer; using {fallback}s")
        return fallback
    return value if value > 0 else fallback
