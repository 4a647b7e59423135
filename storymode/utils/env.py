from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

from storymode.utils.logging import get_logger

REPO_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_ENV_PATH = REPO_ROOT / ".env"

log = get_logger(__name__)


@lru_cache(maxsize=1)
def load_env_file(dotenv_path: str | Path | None = None) -> bool:
    """Load environment variables from a .env file exactly once per process."""

    path: Path | None
    if dotenv_path is None:
        candidate = DEFAULT_ENV_PATH
        path = candidate if candidate.exists() else None
    else:
        path = Path(dotenv_path)
    return load_dotenv(dotenv_path=path, override=False)


def get_float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        parsed = float(value)
    except ValueError:
        log.warning("env_invalid_float", name=name, value=value)
        return default
    return parsed if parsed > 0 else default


def get_int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        parsed = int(value)
    except ValueError:
        log.warning("env_invalid_int", name=name, value=value)
        return default
    return parsed if parsed > 0 else default


def get_bool_env(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}
