import logging
import os
from typing import Optional, Union

logger = logging.getLogger("backpack_grid")

# Internal guard to avoid re-initialising logging repeatedly
_LOGGING_CONFIGURED = False

_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _resolve_level(level: Optional[Union[int, str]]) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        return resolved if isinstance(resolved, int) else logging.INFO
    env = os.getenv("LOG_LEVEL") or os.getenv("BACKPACK_LOG_LEVEL")
    if env:
        resolved = logging.getLevelName(env.upper())
        if isinstance(resolved, int):
            return resolved
    return logging.INFO


def setup_logging(
    log_level: Optional[Union[int, str]] = None, log_file: Optional[str] = None
) -> None:
    """Initialise console (and optional file) logging in an idempotent way.

    - Configures root logger once with a sane format.
    - Attaches a StreamHandler to the app logger and disables propagation to prevent duplicates.
    - Adds a FileHandler when ``log_file`` or ``BACKPACK_LOG_FILE`` names a path.
    - Respects a provided level, otherwise falls back to env vars or INFO.
    """
    global _LOGGING_CONFIGURED

    level = _resolve_level(log_level)

    if not _LOGGING_CONFIGURED:
        # Configure root just once; avoid 'force' to keep 3rd party handlers intact
        logging.basicConfig(level=level, format=_FORMAT)
        _LOGGING_CONFIGURED = True

    # Ensure our app logger is always usable and not duplicated
    logger.setLevel(level)
    logger.propagate = False
    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
               for h in logger.handlers):
        h = logging.StreamHandler()
        h.setLevel(level)
        h.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(h)

    path = log_file or os.getenv("BACKPACK_LOG_FILE")
    if path:
        target = os.path.abspath(path)
        if not any(isinstance(h, logging.FileHandler) and h.baseFilename == target
                   for h in logger.handlers):
            fh = logging.FileHandler(target)
            fh.setLevel(level)
            fh.setFormatter(logging.Formatter(_FORMAT))
            logger.addHandler(fh)
