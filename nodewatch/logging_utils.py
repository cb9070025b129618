from __future__ import annotations

import logging
import os
import sys

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(verbose_int: int = 0) -> None:
    """Configure root logging. Safe to call more than once."""
    level = logging.DEBUG if (verbose_int or 0) >= 1 else logging.INFO

    # LOG_LEVEL from the service environment wins over the CLI flag.
    env_level = os.environ.get("LOG_LEVEL")
    if env_level:
        resolved = logging.getLevelName(env_level.upper())
        if isinstance(resolved, int):
            level = resolved

    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level)
        for h in root.handlers:
            h.setLevel(level)
        return

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
