import logging
from logging.handlers import RotatingFileHandler

from .config import LOG_DIR, LOG_LEVEL

ROOT_LOGGER = "frs"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _configure_root() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if root.handlers:
        return root

    LOG_DIR.mkdir(parents=True, exist_ok=True)
    level = getattr(logging, LOG_LEVEL, None)
    root.setLevel(level if isinstance(level, int) else logging.INFO)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handlers = [
        RotatingFileHandler(LOG_DIR / "frs.log", maxBytes=2_000_000, backupCount=5, encoding="utf-8"),
        logging.StreamHandler(),
    ]
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    return root


def setup_logger(name: str) -> logging.Logger:
    """Return ``frs.<name>``; every component logger shares the package handlers."""
    _configure_root()
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
