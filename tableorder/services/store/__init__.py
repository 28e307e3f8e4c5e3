"""
Remote Store Factory

Provides a single entry point for obtaining the remote store. The rest of
the application only sees BaseRemoteStore.

Usage:
    from tableorder.services.store import get_remote_store

    store = get_remote_store(feed)
    lines = await store.list_cart_lines(restaurant_id, "A3")
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from tableorder.core.config import get_settings
from tableorder.database import create_engine
from tableorder.services.feed.base import BaseChangeFeed
from tableorder.services.store.base import BaseRemoteStore
from tableorder.services.store.sql import SqlRemoteStore

logger = logging.getLogger(__name__)


def get_remote_store(feed: BaseChangeFeed, engine: Optional[AsyncEngine] = None) -> BaseRemoteStore:
    """
    Build the remote store on `engine`, or on DATABASE_URL when omitted.

    Args:
        feed: Change feed that receives committed row changes
        engine: Pre-built engine (tests pass an in-memory one)
    """
    if engine is None:
        settings = get_settings()
        engine = create_engine(settings.database_url, echo=settings.database_echo)

    logger.info(f"Remote Store: Using SqlRemoteStore ({engine.dialect.name})")
    return SqlRemoteStore(engine, feed)


__all__ = [
    "get_remote_store",
    "BaseRemoteStore",
    "SqlRemoteStore",
]
