"""
Change Feed Factory

Returns the local or Redis change feed based on CHANGE_FEED.
"""

import logging

from tableorder.core.config import ChangeFeedBackend, get_settings
from tableorder.services.feed.base import (
    BaseChangeFeed,
    ChangeEvent,
    ChangeFilter,
    ChangeHandler,
    ChangeOperation,
    Subscription,
)
from tableorder.services.feed.local import LocalChangeFeed
from tableorder.services.feed.redis_feed import RedisChangeFeed

logger = logging.getLogger(__name__)


def get_change_feed() -> BaseChangeFeed:
    """
    Build the configured change feed.

    Not cached: the feed owns a subscription list and the caller (the app
    lifespan or a test) owns its lifetime.
    """
    settings = get_settings()

    if settings.change_feed == ChangeFeedBackend.REDIS:
        logger.info("Change Feed: Using RedisChangeFeed")
        return RedisChangeFeed()

    logger.info("Change Feed: Using LocalChangeFeed (single process)")
    return LocalChangeFeed()


__all__ = [
    "get_change_feed",
    "BaseChangeFeed",
    "ChangeEvent",
    "ChangeFilter",
    "ChangeHandler",
    "ChangeOperation",
    "Subscription",
    "LocalChangeFeed",
    "RedisChangeFeed",
]
