"""
Menu / Restaurant Lookup

Read-only resolution of a restaurant slug to its record and menu.
"""

import logging
from dataclasses import dataclass, field

from tableorder.errors import NotFound
from tableorder.schemas import MenuItem, Restaurant
from tableorder.services.store.base import BaseRemoteStore

logger = logging.getLogger(__name__)


@dataclass
class MenuContext:
    """Everything a table page needs before the cart starts."""
    restaurant: Restaurant
    items: list[MenuItem] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)

    def items_in(self, category: str) -> list[MenuItem]:
        return [item for item in self.items if item.category == category]

    def item(self, item_id: int) -> MenuItem:
        for item in self.items:
            if item.id == item_id:
                return item
        raise NotFound(f"Menu item #{item_id} not found")


def categories_of(items: list[MenuItem]) -> list[str]:
    """Unique categories in first-seen order."""
    return list(dict.fromkeys(item.category for item in items))


class MenuLookup:
    def __init__(self, store: BaseRemoteStore):
        self.store = store

    async def resolve(self, slug: str) -> Restaurant:
        """
        Raises:
            NotFound: If no restaurant uses `slug`
        """
        restaurant = await self.store.get_restaurant_by_slug(slug)
        if restaurant is None:
            logger.info(f"Unknown restaurant slug '{slug}'")
            raise NotFound("Restaurant not found")
        return restaurant

    async def menu(self, restaurant_id: int) -> list[MenuItem]:
        """Available items, by category then name."""
        return await self.store.list_menu_items(restaurant_id, available_only=True)

    async def load(self, slug: str) -> MenuContext:
        restaurant = await self.resolve(slug)
        items = await self.menu(restaurant.id)
        return MenuContext(restaurant=restaurant, items=items, categories=categories_of(items))
