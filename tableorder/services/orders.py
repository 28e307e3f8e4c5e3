"""
Order Queue Store

Kitchen view of one restaurant's active orders (pending, preparing,
served), newest first. Like the cart, it caches authoritative reads and
re-fetches on every notification instead of applying deltas.

Every successful refresh emits `changed`. An insert notification means
a new order arrived: after its refresh the store also emits `new_order`,
which drives the audible alert. Updates and deletes only refresh.

Events:
    changed(orders)
    new_order(order_id)
    error(message)
"""

import logging
from typing import Any, Optional

from tableorder.errors import NotFound, TableOrderError, ValidationFailure
from tableorder.schemas import OrderWithLines
from tableorder.services.events import EventEmitter
from tableorder.services.feed.base import (
    BaseChangeFeed,
    ChangeEvent,
    ChangeFilter,
    ChangeOperation,
    Subscription,
)
from tableorder.services.store.base import BaseRemoteStore
from tableorder.status import ACTIVE_STATUSES, OrderStatus, validate_transition

logger = logging.getLogger(__name__)

ORDER_QUEUE_EVENTS = ("changed", "new_order", "error")


class OrderQueueStore:
    """Active orders of one restaurant, with status transitions."""

    def __init__(self, store: BaseRemoteStore, feed: BaseChangeFeed, restaurant_id: int):
        self.store = store
        self.feed = feed
        self.restaurant_id = restaurant_id

        self.orders: list[OrderWithLines] = []
        self.is_loading = True
        self.error: Optional[str] = None
        self.events = EventEmitter(ORDER_QUEUE_EVENTS)

        self._subscription: Optional[Subscription] = None
        self._issued = 0
        self._applied = 0

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> "OrderQueueStore":
        if self._subscription is None:
            self._subscription = self.feed.subscribe(
                ChangeFilter(table="orders", equals={"restaurant_id": self.restaurant_id}),
                self._on_change,
            )
        try:
            await self.refresh()
        except TableOrderError:
            self.close()
            raise
        return self

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    @property
    def is_subscribed(self) -> bool:
        return self._subscription is not None

    async def __aenter__(self) -> "OrderQueueStore":
        return await self.start()

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()

    # =========================================================================
    # READS
    # =========================================================================

    async def refresh(self) -> list[OrderWithLines]:
        """Re-fetch the active set; on failure the previous set is kept."""
        self._issued += 1
        ticket = self._issued
        try:
            orders = await self.store.list_orders(self.restaurant_id, ACTIVE_STATUSES)
        except TableOrderError as e:
            await self._record_error(e)
            raise
        finally:
            self.is_loading = False

        if ticket < self._applied:
            return self.orders

        self._applied = ticket
        self.orders = orders
        self.error = None
        await self.events.emit("changed", self.orders)
        return self.orders

    def get(self, order_id: int) -> Optional[OrderWithLines]:
        return next((order for order in self.orders if order.id == order_id), None)

    def by_status(self) -> dict[OrderStatus, list[OrderWithLines]]:
        """Column buckets, always derived from the current active set."""
        return {
            status: [order for order in self.orders if order.status is status]
            for status in ACTIVE_STATUSES
        }

    def counts(self) -> dict[OrderStatus, int]:
        return {status: len(orders) for status, orders in self.by_status().items()}

    def dismiss_error(self) -> None:
        self.error = None

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def advance(self, order_id: int, next_status: OrderStatus) -> None:
        """
        Move an order to `next_status`, its single legal successor.

        Re-applying a transition that already happened is a no-op. On any
        failure the cached view is left as it was and the error is
        recorded and raised.

        Raises:
            NotFound: The order does not belong to this restaurant
            ValidationFailure: `next_status` is not the legal successor
            TransientRemoteFailure: The store could not be reached
        """
        next_status = OrderStatus(next_status)
        try:
            current = await self._current_status(order_id)
            if current is next_status and next_status is not OrderStatus.PENDING:
                logger.debug(f"Order #{order_id} already {next_status.value}")
                return
            validate_transition(current, next_status)

            applied = await self.store.update_order_status(order_id, current, next_status)
            if not applied:
                # Someone else moved it meanwhile; fine if they made the same move
                latest = await self._current_status(order_id, remote=True)
                if latest is not next_status:
                    raise ValidationFailure(
                        f"Order #{order_id} changed to {latest.value} before it could be "
                        f"moved to {next_status.value}"
                    )
        except TableOrderError as e:
            await self._record_error(e)
            raise

        await self._refresh_quietly()

    async def advance_next(self, order_id: int) -> OrderStatus:
        """Advance an order one step and return its new status."""
        try:
            current = await self._current_status(order_id)
            if current.is_terminal:
                raise ValidationFailure(f"Order #{order_id} is already {current.value}")
        except TableOrderError as e:
            await self._record_error(e)
            raise
        await self.advance(order_id, current.successor)
        return current.successor

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _current_status(self, order_id: int, remote: bool = False) -> OrderStatus:
        cached = None if remote else self.get(order_id)
        if cached is not None:
            return cached.status
        order = await self.store.get_order(order_id)
        if order is None or order.restaurant_id != self.restaurant_id:
            raise NotFound(f"Order #{order_id} not found")
        return order.status

    async def _refresh_quietly(self) -> None:
        try:
            await self.refresh()
        except TableOrderError as e:
            logger.warning(f"Order queue refresh failed for restaurant #{self.restaurant_id}: {e}")

    async def _record_error(self, error: TableOrderError) -> None:
        self.error = error.message
        await self.events.emit("error", error.message)

    async def _on_change(self, event: ChangeEvent) -> None:
        await self._refresh_quietly()
        # The order exists even when the re-fetch failed
        if event.operation is ChangeOperation.INSERT:
            order_id = event.row.get("id")
            logger.info(f"New order #{order_id} for restaurant #{self.restaurant_id}")
            await self.events.emit("new_order", order_id)

    # Defined last: the name shadows the builtin inside the class body
    def list(self) -> list[OrderWithLines]:
        """Active orders, newest first."""
        return [*self.orders]
