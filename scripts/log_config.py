#!/usr/bin/env python3
"""
Logging for the relay process.

Records go to stderr and carry the thread name, so the reader and writer
of each session (udp-reader-<client>, udp-writer-<client>) and the
udp-dispatcher can be told apart in one stream.

Level, first match wins:
- --verbose on the command line: DEBUG
- LOG_LEVEL: DEBUG, INFO, WARNING, ERROR, CRITICAL
- DEBUG=1/true/yes/on: DEBUG
- otherwise INFO
"""

import logging
import os
import sys
from typing import Mapping, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers held at WARNING or above whatever the relay level is
QUIET_LOGGERS = ("socks",)

_TRUTHY = ("1", "true", "yes", "on")


def resolve_level(verbose: bool = False, env: Optional[Mapping[str, str]] = None) -> int:
    """Pick the relay log level; unknown LOG_LEVEL names fall back to INFO."""
    if verbose:
        return logging.DEBUG

    env = os.environ if env is None else env
    name = env.get("LOG_LEVEL", "").strip().upper()
    if name:
        level = logging.getLevelName(name)
        return level if isinstance(level, int) else logging.INFO

    if env.get("DEBUG", "").strip().lower() in _TRUTHY:
        return logging.DEBUG
    return logging.INFO


def setup_logging(verbose: bool = False, env: Optional[Mapping[str, str]] = None) -> int:
    """Configure the root logger for the relay, replacing earlier handlers.

    Returns:
        The level that was applied
    """
    level = resolve_level(verbose, env)
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stderr,
        force=True
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    logging.getLogger(__name__).debug(f"Logging configured: level={logging.getLevelName(level)}")
    return level
