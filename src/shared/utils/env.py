"""Environment variable loading utilities."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_env(env_file: Optional[str] = None, override: bool = False) -> None:
    """Load environment variables from .env file(s).

    Args:
        env_file: Path to .env file. If None, every .env found from the
                 filesystem root down to the current directory is loaded,
                 nearest last.
        override: Whether to override existing environment variables.
    """
    env_paths = []
    if env_file:
        env_path = Path(env_file)
        if env_path.exists():
            env_paths.append(env_path)
    else:
        current = Path.cwd()
        for parent in reversed(list(current.parents)):
            candidate = parent / ".env"
            if candidate.exists():
                env_paths.append(candidate)
        candidate = current / ".env"
        if candidate.exists():
            env_paths.append(candidate)

    if not env_paths:
        logger.debug("No .env file found, using system environment")
        return

    seen = set()
    for path in env_paths:
        if path in seen:
            continue
        load_dotenv(path, override=override)
        seen.add(path)
        logger.debug("Loaded environment from %s", path)
