from __future__ import annotations

import logging
import sys

_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    """Install a single stdout handler on the root logger.

    Safe to call more than once; later calls only adjust the level.
    """
    global _configured
    if level is None:
        from weather_backbone.core.config import get_settings

        level = get_settings().log_level

    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(resolved)
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root_logger.addHandler(handler)
    _configured = True
    logging.getLogger("weather_backbone").debug("logging configured level=%s", level)
