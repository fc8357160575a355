"""Module logger levels for Conductor's `# Log Setup` blocks.

Core modules set their own logger level from logSetup() at import time.
CONDUCTOR_LOG_LEVEL, which also drives the root handler, takes precedence
over the generic LOG_LEVEL so a single variable turns on debug output for
the whole worker.
"""
import os
import logging

from Conductor.Core.logging_config import LOG_LEVELS

DEFAULT_MODULE_LEVEL = "WARNING"


def logSetup() -> int:
    """
    Level for a module logger.

    Reads CONDUCTOR_LOG_LEVEL, then LOG_LEVEL. WARN and FATAL are accepted
    as aliases; unknown names fall back to WARNING.

    Returns:
        Logging level as integer
    """
    level_name = (
        os.environ.get("CONDUCTOR_LOG_LEVEL")
        or os.environ.get("LOG_LEVEL")
        or DEFAULT_MODULE_LEVEL
    )
    return LOG_LEVELS.get(level_name.strip().upper(), logging.WARNING)
