"""
SQL Remote Store

SQLAlchemy async implementation of the remote store. SQLite (aiosqlite)
backs development and tests; PostgreSQL (psycopg) backs production.

Writes run in one transaction each and publish their row changes to the
change feed after the commit, the way a database's realtime publication
would. Checkout is a single transaction with row locks on the cart lines
and menu items, so concurrent checkouts of one table serialize and the
loser finds an empty cart.

SQLite has one writer and, in memory, one shared connection; all
operations on it go through a store-wide lock.
"""

import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, AsyncIterator, Iterable, Optional

from sqlalchemy import select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import joinedload, noload, selectinload

from tableorder.database import create_session_maker
from tableorder.errors import NotFound, TableOrderError, TransientRemoteFailure, ValidationFailure
from tableorder.models import CartItem, MenuItem, Order, OrderItem, Restaurant, utcnow
from tableorder.schemas import (
    CartLine as CartLineSchema,
    MenuItem as MenuItemSchema,
    MenuOption,
    OrderWithLines,
    Restaurant as RestaurantSchema,
    to_money,
)
from tableorder.services.feed.base import BaseChangeFeed, ChangeEvent, ChangeOperation
from tableorder.services.store.base import BaseRemoteStore
from tableorder.status import OrderStatus

logger = logging.getLogger(__name__)

UPDATABLE_MENU_FIELDS = {
    "category", "name", "description", "price", "stock", "options", "image_url", "is_available",
}


def _json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def row_image(obj: Any) -> dict[str, Any]:
    """Column values of a mapped object as a JSON-safe dict."""
    return {
        column.key: _json_safe(getattr(obj, column.key))
        for column in obj.__table__.columns
    }


class SqlRemoteStore(BaseRemoteStore):
    """
    Remote store backed by a relational database through SQLAlchemy.

    Attributes:
        engine: Async engine owning the connection pool
        feed: Change feed receiving committed row changes
    """

    def __init__(self, engine: AsyncEngine, feed: BaseChangeFeed):
        self.engine = engine
        self.feed = feed
        self.session_maker = create_session_maker(engine)
        self._serialize = engine.dialect.name == "sqlite"
        self._lock = asyncio.Lock()

        logger.info(
            f"SqlRemoteStore initialized (dialect={engine.dialect.name}, "
            f"feed={feed.provider_name})"
        )

    @property
    def provider_name(self) -> str:
        return f"sql:{self.engine.dialect.name}"

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    @asynccontextmanager
    async def _guard(self) -> AsyncIterator[None]:
        if self._serialize:
            async with self._lock:
                yield
        else:
            yield

    @asynccontextmanager
    async def _transaction(self, action: str) -> AsyncIterator[AsyncSession]:
        """
        One session and transaction; commits on success, rolls back on error.

        Database errors are translated into the store's error taxonomy.
        """
        async with self._guard():
            try:
                async with self.session_maker() as session:
                    async with session.begin():
                        yield session
            except TableOrderError:
                raise
            except IntegrityError as e:
                logger.warning(f"Constraint violation while trying to {action}: {e.orig}")
                raise ValidationFailure(
                    f"Could not {action}: rejected by a store constraint",
                    detail=str(e.orig),
                ) from e
            except (SQLAlchemyError, OSError) as e:
                logger.error(f"Store error while trying to {action}: {e}")
                raise TransientRemoteFailure(f"Could not {action}", detail=str(e)) from e

    async def _publish(self, events: list[ChangeEvent]) -> None:
        if events:
            await self.feed.publish(events)

    # =========================================================================
    # CATALOG
    # =========================================================================

    async def get_restaurant_by_slug(self, slug: str) -> Optional[RestaurantSchema]:
        async with self._transaction("load restaurant") as session:
            result = await session.execute(select(Restaurant).where(Restaurant.slug == slug))
            restaurant = result.scalar_one_or_none()
            if restaurant is None:
                return None
            return RestaurantSchema.model_validate(restaurant)

    async def list_menu_items(
        self,
        restaurant_id: int,
        available_only: bool = True,
    ) -> list[MenuItemSchema]:
        query = select(MenuItem).where(MenuItem.restaurant_id == restaurant_id)
        if available_only:
            query = query.where(MenuItem.is_available.is_(True))
        query = query.order_by(MenuItem.category, MenuItem.name, MenuItem.id)

        async with self._transaction("load menu") as session:
            result = await session.execute(query)
            return [MenuItemSchema.model_validate(item) for item in result.scalars()]

    async def get_menu_item(self, item_id: int) -> Optional[MenuItemSchema]:
        async with self._transaction("load menu item") as session:
            item = await session.get(MenuItem, item_id)
            return MenuItemSchema.model_validate(item) if item else None

    async def create_restaurant(
        self,
        name: str,
        slug: str,
        owner_id: Optional[str] = None,
        logo_url: Optional[str] = None,
    ) -> RestaurantSchema:
        async with self._transaction("create restaurant") as session:
            taken = await session.execute(select(Restaurant.id).where(Restaurant.slug == slug))
            if taken.scalar_one_or_none() is not None:
                raise ValidationFailure(f"Slug '{slug}' is already taken")

            restaurant = Restaurant(name=name, slug=slug, owner_id=owner_id, logo_url=logo_url)
            session.add(restaurant)
            await session.flush()
            created = RestaurantSchema.model_validate(restaurant)
            events = [ChangeEvent(ChangeOperation.INSERT, "restaurants", new=row_image(restaurant))]

        await self._publish(events)
        logger.info(f"Restaurant #{created.id} created ({slug})")
        return created

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
    ) -> MenuItemSchema:
        if stock < -1:
            raise ValidationFailure("Stock must be -1 (unlimited) or a count of portions")
        groups = [MenuOption.model_validate(opt).model_dump() for opt in options or []]

        async with self._transaction("create menu item") as session:
            if await session.get(Restaurant, restaurant_id) is None:
                raise NotFound(f"Restaurant #{restaurant_id} not found")

            item = MenuItem(
                restaurant_id=restaurant_id,
                category=category,
                name=name,
                description=description,
                price=to_money(price),
                stock=stock,
                options=groups,
                is_available=is_available,
            )
            session.add(item)
            await session.flush()
            created = MenuItemSchema.model_validate(item)
            events = [ChangeEvent(ChangeOperation.INSERT, "menu_items", new=row_image(item))]

        await self._publish(events)
        return created

    async def update_menu_item(self, item_id: int, **changes: Any) -> MenuItemSchema:
        unknown = set(changes) - UPDATABLE_MENU_FIELDS
        if unknown:
            raise ValidationFailure(f"Cannot update menu item fields: {sorted(unknown)}")
        if "price" in changes:
            changes["price"] = to_money(changes["price"])
        if "options" in changes:
            changes["options"] = [MenuOption.model_validate(opt).model_dump() for opt in changes["options"]]

        async with self._transaction("update menu item") as session:
            item = await session.get(MenuItem, item_id)
            if item is None:
                raise NotFound(f"Menu item #{item_id} not found")
            old = row_image(item)
            for key, value in changes.items():
                setattr(item, key, value)
            await session.flush()
            updated = MenuItemSchema.model_validate(item)
            events = [ChangeEvent(ChangeOperation.UPDATE, "menu_items", new=row_image(item), old=old)]

        await self._publish(events)
        return updated

    # =========================================================================
    # CART
    # =========================================================================

    async def list_cart_lines(self, restaurant_id: int, table_number: str) -> list[CartLineSchema]:
        query = (
            select(CartItem)
            .options(joinedload(CartItem.menu_item))
            .where(
                CartItem.restaurant_id == restaurant_id,
                CartItem.table_number == table_number,
            )
            .order_by(CartItem.created_at, CartItem.id)
        )
        async with self._transaction("load cart") as session:
            result = await session.execute(query)
            return [CartLineSchema.model_validate(line) for line in result.scalars()]

    async def insert_cart_line(
        self,
        restaurant_id: int,
        table_number: str,
        menu_item_id: int,
        quantity: int,
        selected_options: dict[str, str],
    ) -> CartLineSchema:
        if quantity < 1:
            raise ValidationFailure("Quantity must be at least 1")

        async with self._transaction("add item to cart") as session:
            item = await session.get(MenuItem, menu_item_id)
            if item is None or item.restaurant_id != restaurant_id:
                raise NotFound(f"Menu item #{menu_item_id} not found")

            # A concurrent session may have added the same configuration
            # since the caller last read the cart; merge instead of duplicating
            result = await session.execute(
                select(CartItem)
                .options(noload(CartItem.menu_item))
                .where(
                    CartItem.restaurant_id == restaurant_id,
                    CartItem.table_number == table_number,
                    CartItem.menu_item_id == menu_item_id,
                )
                .order_by(CartItem.created_at, CartItem.id)
                .with_for_update()
            )
            existing = next(
                (line for line in result.scalars() if line.selected_options == selected_options),
                None,
            )
            if existing is not None:
                old = row_image(existing)
                existing.quantity += quantity
                existing.menu_item = item
                await session.flush()
                saved = CartLineSchema.model_validate(existing)
                events = [ChangeEvent(ChangeOperation.UPDATE, "cart_items", new=row_image(existing), old=old)]
            else:
                line = CartItem(
                    restaurant_id=restaurant_id,
                    table_number=table_number,
                    menu_item_id=menu_item_id,
                    quantity=quantity,
                    selected_options=dict(selected_options),
                    menu_item=item,
                )
                session.add(line)
                await session.flush()
                saved = CartLineSchema.model_validate(line)
                events = [ChangeEvent(ChangeOperation.INSERT, "cart_items", new=row_image(line))]

        await self._publish(events)
        return saved

    async def _scoped_line(
        self,
        session: AsyncSession,
        restaurant_id: int,
        table_number: str,
        line_id: int,
    ) -> Optional[CartItem]:
        result = await session.execute(
            select(CartItem)
            .options(noload(CartItem.menu_item))
            .where(
                CartItem.id == line_id,
                CartItem.restaurant_id == restaurant_id,
                CartItem.table_number == table_number,
            )
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def update_cart_line_quantity(
        self,
        restaurant_id: int,
        table_number: str,
        line_id: int,
        quantity: int,
    ) -> None:
        if quantity < 1:
            raise ValidationFailure("Quantity must be at least 1")

        async with self._transaction("update quantity") as session:
            line = await self._scoped_line(session, restaurant_id, table_number, line_id)
            if line is None:
                return
            old = row_image(line)
            line.quantity = quantity
            await session.flush()
            events = [ChangeEvent(ChangeOperation.UPDATE, "cart_items", new=row_image(line), old=old)]

        await self._publish(events)

    async def delete_cart_line(self, restaurant_id: int, table_number: str, line_id: int) -> None:
        async with self._transaction("remove item") as session:
            line = await self._scoped_line(session, restaurant_id, table_number, line_id)
            if line is None:
                return
            events = [ChangeEvent(ChangeOperation.DELETE, "cart_items", old=row_image(line))]
            await session.delete(line)

        await self._publish(events)

    async def checkout_cart(
        self,
        restaurant_id: int,
        table_number: str,
        notes: Optional[str] = None,
    ) -> int:
        async with self._transaction("check out") as session:
            # Lock the scope's lines; a concurrent checkout waits here and
            # then finds them gone
            result = await session.execute(
                select(CartItem)
                .options(noload(CartItem.menu_item))
                .where(
                    CartItem.restaurant_id == restaurant_id,
                    CartItem.table_number == table_number,
                )
                .order_by(CartItem.created_at, CartItem.id)
                .with_for_update()
            )
            lines = list(result.scalars())
            if not lines:
                raise ValidationFailure("Nothing to check out")

            item_ids = sorted({line.menu_item_id for line in lines})
            result = await session.execute(
                select(MenuItem)
                .where(MenuItem.id.in_(item_ids))
                .order_by(MenuItem.id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            menu = {item.id: item for item in result.scalars()}

            # Snapshot prices
            snapshot: list[tuple[CartItem, Decimal]] = []
            total = Decimal("0.00")
            for line in lines:
                item = menu.get(line.menu_item_id)
                if item is None or item.restaurant_id != restaurant_id:
                    raise ValidationFailure("An item in the cart is no longer on the menu")
                if not item.is_available:
                    raise ValidationFailure(f"{item.name} is no longer available")
                unit_price = to_money(item.price)
                total += unit_price * line.quantity
                snapshot.append((line, unit_price))

            order = Order(
                restaurant_id=restaurant_id,
                table_number=table_number,
                status=OrderStatus.PENDING,
                total_amount=to_money(total),
                notes=notes,
            )
            session.add(order)
            await session.flush()

            order_items = [
                OrderItem(
                    order_id=order.id,
                    menu_item_id=line.menu_item_id,
                    quantity=line.quantity,
                    selected_options=dict(line.selected_options),
                    unit_price=unit_price,
                )
                for line, unit_price in snapshot
            ]
            session.add_all(order_items)

            # Stock counters: -1 unlimited, 0 sold out, >0 remaining
            events: list[ChangeEvent] = []
            wanted = Counter()
            for line in lines:
                wanted[line.menu_item_id] += line.quantity
            for item_id, quantity in sorted(wanted.items()):
                item = menu[item_id]
                if item.stock == 0:
                    raise ValidationFailure(f"{item.name} is sold out")
                if item.stock > 0:
                    if item.stock < quantity:
                        raise ValidationFailure(f"Only {item.stock} {item.name} left")
                    old = row_image(item)
                    item.stock -= quantity
                    events.append(ChangeEvent(ChangeOperation.UPDATE, "menu_items", new=row_image(item), old=old))

            cart_events = [
                ChangeEvent(ChangeOperation.DELETE, "cart_items", old=row_image(line))
                for line in lines
            ]
            for line in lines:
                await session.delete(line)
            await session.flush()

            order_id = order.id
            events = (
                [ChangeEvent(ChangeOperation.INSERT, "orders", new=row_image(order))]
                + [ChangeEvent(ChangeOperation.INSERT, "order_items", new=row_image(oi)) for oi in order_items]
                + events
                + cart_events
            )

        logger.info(
            f"Checkout: order #{order_id} for table {table_number} "
            f"({len(lines)} lines, total {to_money(total)})"
        )
        await self._publish(events)
        return order_id

    # =========================================================================
    # ORDERS
    # =========================================================================

    def _orders_query(self):
        return select(Order).options(
            selectinload(Order.items).joinedload(OrderItem.menu_item)
        )

    async def list_orders(
        self,
        restaurant_id: int,
        statuses: Iterable[OrderStatus],
    ) -> list[OrderWithLines]:
        query = (
            self._orders_query()
            .where(
                Order.restaurant_id == restaurant_id,
                Order.status.in_([OrderStatus(s) for s in statuses]),
            )
            .order_by(Order.created_at.desc(), Order.id.desc())
        )
        async with self._transaction("load orders") as session:
            result = await session.execute(query)
            return [OrderWithLines.model_validate(order) for order in result.scalars()]

    async def get_order(self, order_id: int) -> Optional[OrderWithLines]:
        async with self._transaction("load order") as session:
            result = await session.execute(self._orders_query().where(Order.id == order_id))
            order = result.scalar_one_or_none()
            return OrderWithLines.model_validate(order) if order else None

    async def update_order_status(
        self,
        order_id: int,
        from_status: OrderStatus,
        to_status: OrderStatus,
    ) -> bool:
        async with self._transaction("update order status") as session:
            result = await session.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == OrderStatus(from_status))
                .values(status=OrderStatus(to_status), updated_at=utcnow())
            )
            if result.rowcount == 0:
                return False
            order = await session.get(Order, order_id)
            new = row_image(order)
            old = dict(new, status=OrderStatus(from_status).value)
            events = [ChangeEvent(ChangeOperation.UPDATE, "orders", new=new, old=old)]

        logger.info(f"Order #{order_id}: {OrderStatus(from_status).value} -> {OrderStatus(to_status).value}")
        await self._publish(events)
        return True

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def health_check(self) -> bool:
        try:
            async with self._transaction("check health") as session:
                await session.execute(text("SELECT 1"))
            return True
        except TransientRemoteFailure:
            return False

    async def close(self) -> None:
        await self.engine.dispose()
