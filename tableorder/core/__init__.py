"""
Core module initialization.
Exports configuration and logging utilities.
"""

from tableorder.core.config import (
    ChangeFeedBackend,
    EnvironmentMode,
    Settings,
    get_settings,
    setup_logging,
)

__all__ = [
    "get_settings",
    "setup_logging",
    "Settings",
    "EnvironmentMode",
    "ChangeFeedBackend",
]
