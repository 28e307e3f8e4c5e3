"""
Change Feed Abstract Base Class

Defines the publish/subscribe interface for row-level change
notifications. A notification is only a signal to re-fetch authoritative
state; subscribers never apply it as a delta.

Implementations:
    - LocalChangeFeed: in-process broker (single process, development, tests)
    - RedisChangeFeed: Redis pub/sub (several API processes)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional

logger = logging.getLogger(__name__)


class ChangeOperation(str, Enum):
    """Row operation carried by a notification."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    # Synthetic: the feed reconnected and events may have been missed
    RESYNC = "resync"


@dataclass(frozen=True)
class ChangeEvent:
    """A row-level change on a watched table."""
    operation: ChangeOperation
    table: str
    new: Optional[dict[str, Any]] = None
    old: Optional[dict[str, Any]] = None

    @property
    def row(self) -> dict[str, Any]:
        """The row image to filter on: new, falling back to old."""
        return self.new or self.old or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "operation": self.operation.value,
            "table": self.table,
            "new": self.new,
            "old": self.old,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangeEvent":
        return cls(
            operation=ChangeOperation(data["operation"]),
            table=data["table"],
            new=data.get("new"),
            old=data.get("old"),
        )


@dataclass(frozen=True)
class ChangeFilter:
    """
    Server-side filter of a subscription.

    Matches events on `table` whose row image has every `equals` column
    equal to the given value. `operations` restricts the operation kinds;
    RESYNC always passes so subscribers can recover after a disconnect.
    """
    table: str
    equals: dict[str, Any] = field(default_factory=dict)
    operations: frozenset[ChangeOperation] = frozenset(
        {ChangeOperation.INSERT, ChangeOperation.UPDATE, ChangeOperation.DELETE}
    )

    def matches(self, event: ChangeEvent) -> bool:
        if event.operation is ChangeOperation.RESYNC:
            return event.table in (self.table, "*")
        if event.table != self.table or event.operation not in self.operations:
            return False
        row = event.row
        # Compare as strings: JSON transports turn ids and table numbers alike
        return all(
            column in row and str(row[column]) == str(value)
            for column, value in self.equals.items()
        )


ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]


class Subscription:
    """Handle of one subscription; `unsubscribe()` is idempotent."""

    def __init__(
        self,
        feed: "BaseChangeFeed",
        change_filter: ChangeFilter,
        handler: ChangeHandler,
    ):
        self.feed = feed
        self.filter = change_filter
        self.handler = handler
        self.active = True

    async def deliver(self, event: ChangeEvent) -> None:
        """Run the handler; a failing handler never breaks the feed."""
        if not self.active or not self.filter.matches(event):
            return
        try:
            await self.handler(event)
        except Exception:
            logger.exception(
                f"Change handler failed for {event.operation.value} on {event.table}"
            )

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self.feed._remove(self)

    def __call__(self) -> None:
        """Subscriptions double as disposers."""
        self.unsubscribe()


class BaseChangeFeed(ABC):
    """Abstract base class for change feeds."""

    def __init__(self):
        self._subscriptions: list[Subscription] = []

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the transport name."""
        pass

    @abstractmethod
    async def publish(self, events: Iterable[ChangeEvent]) -> None:
        """Broadcast committed changes to every matching subscriber."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check feed connectivity."""
        pass

    async def start(self) -> None:
        """Open transport resources. No-op by default."""

    async def close(self) -> None:
        """Release transport resources and drop all subscriptions."""
        for subscription in list(self._subscriptions):
            subscription.unsubscribe()

    def subscribe(self, change_filter: ChangeFilter, handler: ChangeHandler) -> Subscription:
        """Register `handler` for events matching `change_filter`."""
        subscription = Subscription(self, change_filter, handler)
        self._subscriptions.append(subscription)
        logger.debug(f"Subscribed to {change_filter.table} where {change_filter.equals}")
        return subscription

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def _dispatch(self, event: ChangeEvent) -> None:
        """Deliver to a snapshot of the subscribers, in subscription order."""
        for subscription in list(self._subscriptions):
            await subscription.deliver(event)

    def _remove(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass
