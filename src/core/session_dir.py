"""Monthly replay directory resolution."""

from datetime import datetime
from pathlib import Path

import structlog

from src.core.errors import DirectoryCreateFailed

logger = structlog.get_logger()


def month_folder_name(now: datetime) -> str:
    """Slippi groups replays by calendar month, e.g. ``2026-10``."""
    return now.strftime("%Y-%m")


def resolve_session_directory(base_directory: Path, now: datetime | None = None) -> Path:
    """Return ``<base_directory>/<YYYY-MM>`` for ``now``, creating it if needed."""
    path = Path(base_directory).expanduser() / month_folder_name(now or datetime.now())
    if path.is_dir():
        return path

    logger.info("replay_directory_creating", path=str(path))
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error("replay_directory_create_failed", path=str(path), error=str(e))
        raise DirectoryCreateFailed(f"Could not create replay directory {path}: {e}") from e
    return path
