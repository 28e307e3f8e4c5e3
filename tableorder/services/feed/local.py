"""
Local Change Feed

In-process broker used in development and tests. Publishing awaits every
matching handler before returning, so a writer that awaited its write has
also let all local sessions re-fetch.
"""

import logging
from typing import Iterable

from tableorder.services.feed.base import BaseChangeFeed, ChangeEvent

logger = logging.getLogger(__name__)


class LocalChangeFeed(BaseChangeFeed):
    """Single-process change feed."""

    def __init__(self):
        super().__init__()
        self.published = 0
        logger.info("LocalChangeFeed initialized")

    @property
    def provider_name(self) -> str:
        return "local"

    async def publish(self, events: Iterable[ChangeEvent]) -> None:
        for event in events:
            self.published += 1
            logger.debug(f"Publishing {event.operation.value} on {event.table}")
            await self._dispatch(event)

    async def health_check(self) -> bool:
        """The in-process broker is always reachable."""
        return True
