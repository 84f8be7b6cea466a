"""Environment helpers for datastore configuration."""

import logging
import os

from dotenv import load_dotenv


logger = logging.getLogger(__name__)

_loaded = False


def load_env_file() -> bool:
    """Load backend/.env into os.environ once, never overwriting exported variables.

    Returns True when a file was found.
    """
    global _loaded
    if _loaded:
        return False
    _loaded = True
    found = load_dotenv(override=False)
    if found:
        logger.info("[DATABASE] Loaded local .env file (exported variables kept)")
    return found


def require_database_url(name: str) -> str:
    """Value of a datastore URL variable, consulting .env first.

    Raises:
        RuntimeError: If the variable is not configured anywhere
    """
    value = os.getenv(name)
    if not value:
        load_env_file()
        value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value
