"""
Infrastructure module - environment settings and logging.
"""

from .logging_config import setup_logging

from .settings import (
    Settings,
    load_settings,
    parse_interval,
)

__all__ = [
    # logging
    "setup_logging",
    # settings
    "Settings",
    "load_settings",
    "parse_interval",
]
