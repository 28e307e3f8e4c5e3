"""
Cart Store

Client-side view of one table's shared cart. The remote store owns the
state; this class only caches the last authoritative read.

Several sessions at the same table each hold their own CartStore on the
same scope. A session never applies its own writes locally: after every
write it re-fetches, and every change-feed notification for the scope
triggers a re-fetch as well, so all sessions converge on what the store
holds. Notifications that arrive late, twice or out of order are harmless
because they only cause another read; reads that complete out of order
are discarded when a newer read has already been applied.

Events:
    changed(lines)              the cached lines were replaced
    error(message)              a read or write failed
    checkout_succeeded(order_id)
    checkout_failed(message)
"""

import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from tableorder.errors import TableOrderError, ValidationFailure
from tableorder.schemas import CartLine, MenuItem, to_money
from tableorder.services.events import EventEmitter
from tableorder.services.feed.base import BaseChangeFeed, ChangeEvent, ChangeFilter, Subscription
from tableorder.services.store.base import BaseRemoteStore

logger = logging.getLogger(__name__)

CART_EVENTS = ("changed", "error", "checkout_succeeded", "checkout_failed")


class CartStore:
    """
    Shared cart of one (restaurant, table) scope.

    Usage:
        async with CartStore(store, feed, restaurant.id, "A3") as cart:
            dispose = cart.events.on("changed", render)
            await cart.add(item, 2, {"辣度": "中辣"})
            order_id = await cart.checkout("no onions")
    """

    def __init__(
        self,
        store: BaseRemoteStore,
        feed: BaseChangeFeed,
        restaurant_id: int,
        table_number: str,
    ):
        self.store = store
        self.feed = feed
        self.restaurant_id = restaurant_id
        self.table_number = table_number

        self.lines: list[CartLine] = []
        self.is_loading = True
        self.error: Optional[str] = None
        self.events = EventEmitter(CART_EVENTS)

        self._subscription: Optional[Subscription] = None
        self._issued = 0
        self._applied = 0

    @property
    def scope(self) -> tuple[int, str]:
        return self.restaurant_id, self.table_number

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> "CartStore":
        """Subscribe to the scope's changes, then load the cart."""
        if self._subscription is None:
            self._subscription = self.feed.subscribe(
                ChangeFilter(
                    table="cart_items",
                    equals={"restaurant_id": self.restaurant_id, "table_number": self.table_number},
                ),
                self._on_change,
            )
        try:
            await self.refresh()
        except TableOrderError:
            self.close()
            raise
        return self

    def close(self) -> None:
        """Tear down the subscription; safe to call more than once."""
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    @property
    def is_subscribed(self) -> bool:
        return self._subscription is not None

    async def __aenter__(self) -> "CartStore":
        return await self.start()

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()

    # =========================================================================
    # READS
    # =========================================================================

    async def refresh(self) -> list[CartLine]:
        """
        Re-fetch the scope's lines.

        On failure the last-known-good lines are kept and the error is
        recorded before it is re-raised.
        """
        self._issued += 1
        ticket = self._issued
        try:
            lines = await self.store.list_cart_lines(self.restaurant_id, self.table_number)
        except TableOrderError as e:
            await self._record_error(e)
            raise
        finally:
            self.is_loading = False

        if ticket < self._applied:
            logger.debug(f"Discarding stale cart read for table {self.table_number}")
            return self.lines

        self._applied = ticket
        self.lines = lines
        self.error = None
        await self.events.emit("changed", self.lines)
        return self.lines

    def find_line(self, menu_item_id: int, selected_options: dict[str, str]) -> Optional[CartLine]:
        return next((line for line in self.lines if line.matches(menu_item_id, selected_options)), None)

    @property
    def total_amount(self) -> Decimal:
        """Estimate at current menu prices; checkout fixes the real total."""
        return to_money(sum((line.line_total for line in self.lines), Decimal("0")))

    @property
    def total_item_count(self) -> int:
        return sum(line.quantity for line in self.lines)

    def dismiss_error(self) -> None:
        self.error = None

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def add(
        self,
        menu_item: MenuItem,
        quantity: int = 1,
        selected_options: Optional[dict[str, str]] = None,
    ) -> None:
        """
        Add `quantity` of a configuration, merging into an identical line.

        Raises:
            ValidationFailure: Bad quantity, unavailable or sold-out item,
                invalid options
            TransientRemoteFailure: The store could not be reached
        """
        options = dict(selected_options or {})

        async def write() -> None:
            if quantity < 1:
                raise ValidationFailure("Quantity must be at least 1")
            if menu_item.restaurant_id != self.restaurant_id:
                raise ValidationFailure(f"{menu_item.name} is not on this restaurant's menu")
            if not menu_item.is_available:
                raise ValidationFailure(f"{menu_item.name} is not available")
            if menu_item.is_sold_out:
                raise ValidationFailure(f"{menu_item.name} is sold out")
            menu_item.validate_options(options)

            # The store merges into an identical line inside its own transaction
            await self.store.insert_cart_line(
                self.restaurant_id, self.table_number, menu_item.id, quantity, options
            )

        await self._mutate(write)

    async def set_quantity(self, line_id: int, quantity: int) -> None:
        """Set a line's quantity; zero or less removes the line."""
        if quantity <= 0:
            await self.remove(line_id)
            return
        await self._mutate(
            lambda: self.store.update_cart_line_quantity(*self.scope, line_id, quantity)
        )

    async def remove(self, line_id: int) -> None:
        """Delete a line; removing an absent line or another table's line is a no-op."""
        await self._mutate(lambda: self.store.delete_cart_line(*self.scope, line_id))

    async def checkout(self, notes: Optional[str] = None) -> int:
        """
        Turn the whole cart into one order through the store's atomic
        checkout. On failure the cart is untouched.

        Returns:
            int: The new order's id
        """
        try:
            order_id = await self.store.checkout_cart(self.restaurant_id, self.table_number, notes)
        except TableOrderError as e:
            await self._record_error(e)
            await self.events.emit("checkout_failed", e.message)
            raise

        logger.info(f"Table {self.table_number} checked out order #{order_id}")
        await self.events.emit("checkout_succeeded", order_id)
        await self._refresh_quietly()
        return order_id

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _mutate(self, write: Callable[[], Awaitable[Any]]) -> None:
        try:
            await write()
        except TableOrderError as e:
            await self._record_error(e)
            raise
        await self._refresh_quietly()

    async def _refresh_quietly(self) -> None:
        """Refresh after a committed write; a failed read is recorded, not raised."""
        try:
            await self.refresh()
        except TableOrderError as e:
            logger.warning(f"Cart refresh failed for table {self.table_number}: {e}")

    async def _record_error(self, error: TableOrderError) -> None:
        self.error = error.message
        await self.events.emit("error", error.message)

    async def _on_change(self, event: ChangeEvent) -> None:
        await self._refresh_quietly()

    # Defined last: the name shadows the builtin inside the class body
    def list(self) -> list[CartLine]:
        """Cached lines, oldest first."""
        return [*self.lines]
