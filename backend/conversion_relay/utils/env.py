"""Environment configuration helpers for workers and the monitoring app.

Variables come from the process environment first; a local `backend/.env`
only fills in what is not exported already.
"""

import logging
import os
from typing import Iterable, List

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Needed by the Google Ads adapter only; the Meta worker runs without them
GOOGLE_ADS_ENV = ("GOOGLE_DEVELOPER_TOKEN", "GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET")


def load_env_file() -> bool:
    """Load a local .env without overwriting exported variables.

    Returns:
        True if a .env file was found and read
    """
    loaded = load_dotenv(override=False)
    if loaded:
        logger.info("[ENV] Loaded local .env file (exported variables take precedence)")
    else:
        logger.debug("[ENV] No local .env file found")
    return loaded


def require_env(name: str) -> str:
    """Return a mandatory variable, consulting .env once before giving up.

    Raises:
        RuntimeError: If the variable is unset or empty
    """
    value = os.getenv(name)
    if not value:
        load_env_file()
        value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def warn_missing_env(names: Iterable[str], context: str) -> List[str]:
    """Log (once, at startup) which optional-but-expected variables are unset."""
    missing = [name for name in names if not os.getenv(name)]
    if missing:
        logger.warning("[ENV] %s: missing %s", context, ", ".join(missing))
    return missing
