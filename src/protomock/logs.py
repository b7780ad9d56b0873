from __future__ import annotations

import logging
import sys

TRACE = 5

# Verbosity flag value -> logging level.
VERBOSITY_LEVELS = {
    0: logging.ERROR,
    1: logging.WARNING,
    2: logging.INFO,
    3: logging.DEBUG,
    4: TRACE,
}

DEFAULT_VERBOSITY = 2


def verbosity_level(verbosity: int) -> int:
    verbosity = max(0, min(verbosity, max(VERBOSITY_LEVELS)))
    return VERBOSITY_LEVELS[verbosity]


def init_logging(verbosity: int = DEFAULT_VERBOSITY, prefix: str = "protomock") -> None:
    """Send all protomock logging to stderr at the given verbosity (0..4).

    stdout is left alone: it carries the plugin protocol inside protoc and the
    generated server's own output.
    """
    logging.addLevelName(TRACE, "TRACE")
    logging.basicConfig(
        stream=sys.stderr,
        level=verbosity_level(verbosity),
        format=f"{prefix}: %(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )
