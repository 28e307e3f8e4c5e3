"""
                        Services Module

Client-side stores and the backends they talk to. Each backend has an
abstract base and interchangeable implementations picked by a factory.

Services:
    - store: Remote store (SQL via SQLAlchemy async)
    - feed: Row change notifications (in-process or Redis pub/sub)
    - cart: Shared cart of one table
    - orders: Kitchen order queue of one restaurant
    - menu: Restaurant and menu lookup
"""

from tableorder.services.cart import CartStore
from tableorder.services.events import EventEmitter
from tableorder.services.menu import MenuContext, MenuLookup
from tableorder.services.orders import OrderQueueStore

__all__ = [
    "CartStore",
    "OrderQueueStore",
    "MenuLookup",
    "MenuContext",
    "EventEmitter",
]
