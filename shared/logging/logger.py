import logging
import os
from datetime import datetime
from pathlib import Path

LOG_DIR = Path(os.getenv("LOG_DIRECTORY", "logs"))
LOG_DIR.mkdir(parents=True, exist_ok=True)

_LOGGERS = {}
_DEBUG_MODE = {"enabled": True}


def get_logger(
    name: str,
    *,
    runtime: str = "livealerts",
) -> logging.Logger:
    """
    Create or retrieve a named logger.

    Parameters:
    - name: logger namespace (e.g. core.runtime, youtube.multistream)
    - runtime: log file prefix (livealerts | tests | future runtimes)
    """
    cache_key = f"{runtime}:{name}"
    if cache_key in _LOGGERS:
        return _LOGGERS[cache_key]

    logger = logging.getLogger(cache_key)
    logger.setLevel(logging.DEBUG)

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
    )

    # ------------------------------
    # Console handler
    # ------------------------------
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    console.setLevel(logging.DEBUG if _DEBUG_MODE["enabled"] else logging.INFO)
    logger.addHandler(console)

    # ------------------------------
    # File handler (one per run)
    # ------------------------------
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    logfile = LOG_DIR / f"{runtime}-{timestamp}.log"

    file_handler = logging.FileHandler(logfile, encoding="utf-8")
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    logger.propagate = False
    _LOGGERS[cache_key] = logger

    return logger


def set_debug_mode(enabled: bool) -> None:
    """
    Toggle console verbosity for every cached logger.

    File handlers always keep DEBUG so post-mortems have full detail.
    """
    _DEBUG_MODE["enabled"] = bool(enabled)
    level = logging.DEBUG if enabled else logging.INFO

    for logger in _LOGGERS.values():
        for handler in logger.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(
                handler, logging.FileHandler
            ):
                handler.setLevel(level)


def is_debug_mode() -> bool:
    return _DEBUG_MODE["enabled"]
