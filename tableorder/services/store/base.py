"""
Remote Store Abstract Base Class

The single seam to persistent state. Cart and order-queue stores never
touch the database directly; they call these coroutines and re-fetch
after every write.

Every write publishes row-level change notifications to the change feed
once it has committed.

Errors:
    NotFound: Referenced row does not exist (where documented)
    ValidationFailure: A constraint or business rule rejected the write
    TransientRemoteFailure: The store could not be reached or failed
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Iterable, Optional

from tableorder.schemas import CartLine, MenuItem, OrderWithLines, Restaurant
from tableorder.status import OrderStatus


class BaseRemoteStore(ABC):
    """Abstract base class for remote stores."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the backend name."""
        pass

    # =========================================================================
    # CATALOG
    # =========================================================================

    @abstractmethod
    async def get_restaurant_by_slug(self, slug: str) -> Optional[Restaurant]:
        """Resolve a slug; None when no restaurant uses it."""
        pass

    @abstractmethod
    async def list_menu_items(
        self,
        restaurant_id: int,
        available_only: bool = True,
    ) -> list[MenuItem]:
        """Menu items ordered by category, then name."""
        pass

    @abstractmethod
    async def get_menu_item(self, item_id: int) -> Optional[MenuItem]:
        pass

    @abstractmethod
    async def create_restaurant(
        self,
        name: str,
        slug: str,
        owner_id: Optional[str] = None,
        logo_url: Optional[str] = None,
    ) -> Restaurant:
        """
        Raises:
            ValidationFailure: If the slug is already taken
        """
        pass

    @abstractmethod
    async def create_menu_item(
        self,
        restaurant_id: int,
        category: str,
        name: str,
        price: Decimal,
        stock: int = -1,
        options: Optional[list[dict[str, Any]]] = None,
        description: Optional[str] = None,
        is_available: bool = True,
    ) -> MenuItem:
        pass

    @abstractmethod
    async def update_menu_item(self, item_id: int, **changes: Any) -> MenuItem:
        """
        Raises:
            NotFound: If the item does not exist
        """
        pass

    # =========================================================================
    # CART
    # =========================================================================

    @abstractmethod
    async def list_cart_lines(self, restaurant_id: int, table_number: str) -> list[CartLine]:
        """Lines of one scope joined with their menu items, oldest first."""
        pass

    @abstractmethod
    async def insert_cart_line(
        self,
        restaurant_id: int,
        table_number: str,
        menu_item_id: int,
        quantity: int,
        selected_options: dict[str, str],
    ) -> CartLine:
        """
        Insert a line, or add to the scope's line with the same item and
        options if one exists by the time the write runs.

        Raises:
            NotFound: If the menu item is not on this restaurant's menu
        """
        pass

    @abstractmethod
    async def update_cart_line_quantity(
        self,
        restaurant_id: int,
        table_number: str,
        line_id: int,
        quantity: int,
    ) -> None:
        """
        Set the quantity (>= 1) of a line in the (restaurant, table) cart.
        Lines that are absent or belong to another table are ignored.
        """
        pass

    @abstractmethod
    async def delete_cart_line(self, restaurant_id: int, table_number: str, line_id: int) -> None:
        """Delete a line of the (restaurant, table) cart. Lines outside it are ignored."""
        pass

    @abstractmethod
    async def checkout_cart(
        self,
        restaurant_id: int,
        table_number: str,
        notes: Optional[str] = None,
    ) -> int:
        """
        Atomically turn a scope's cart into a pending order.

        Snapshots every line with its current menu price, creates the order
        and its lines, decrements finite stock and empties the cart, all in
        one transaction. Concurrent checkouts of one scope are serialized.

        Returns:
            int: The new order's id

        Raises:
            ValidationFailure: Empty cart, sold-out or unavailable item;
                nothing is changed
        """
        pass

    # =========================================================================
    # ORDERS
    # =========================================================================

    @abstractmethod
    async def list_orders(
        self,
        restaurant_id: int,
        statuses: Iterable[OrderStatus],
    ) -> list[OrderWithLines]:
        """Orders with lines and menu items, newest first."""
        pass

    @abstractmethod
    async def get_order(self, order_id: int) -> Optional[OrderWithLines]:
        pass

    @abstractmethod
    async def update_order_status(
        self,
        order_id: int,
        from_status: OrderStatus,
        to_status: OrderStatus,
    ) -> bool:
        """
        Compare-and-set the status.

        Returns:
            bool: False when the order is not currently at `from_status`
        """
        pass

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @abstractmethod
    async def health_check(self) -> bool:
        pass

    async def close(self) -> None:
        """Release backend resources."""
