from __future__ import annotations

import logging
import os


_configured = False


def _ensure_base_logger() -> None:
    global _configured
    if _configured:
        return
    level = os.getenv("SHIPYARD_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    )
    _configured = True


def get_logger(name: str) -> logging.Logger:
    _ensure_base_logger()
    return logging.getLogger(name)


def set_level(level: str) -> None:
    """Adjust the level of every shipyard logger (CLI --debug)."""
    _ensure_base_logger()
    logging.getLogger("shipyard").setLevel(getattr(logging, level.upper(), logging.INFO))
