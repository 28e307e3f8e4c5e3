"""
FastAPI Application Entry Point

Thin HTTP/WebSocket surface over the cart and order-queue stores. Pages,
styling and authentication live in the front end; this service only
exposes state and relays the stores' signals.

Endpoints:
    - GET  /api/r/{slug}/menu: Restaurant, categories and available items
    - GET  /api/r/{slug}/tables/{table}/cart: Current shared cart
    - POST /api/r/{slug}/tables/{table}/cart: Add an item configuration
    - PATCH/DELETE /api/r/{slug}/tables/{table}/cart/{line_id}: Change or remove a line
    - POST /api/r/{slug}/tables/{table}/checkout: Turn the cart into an order
    - GET  /api/r/{slug}/kitchen/orders: Active orders and status columns
    - POST /api/r/{slug}/kitchen/orders/{order_id}/advance: Next status
    - WS   /ws/r/{slug}/tables/{table}: Cart signals and commands
    - WS   /ws/r/{slug}/kitchen: Order-queue signals and commands
    - GET  /health: System health check
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, Any, Literal, Optional

from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from tableorder.core.config import get_settings, setup_logging
from tableorder.database import create_engine, init_db
from tableorder.errors import (
    NotFound,
    SubscriptionFailure,
    TableOrderError,
    TransientRemoteFailure,
    ValidationFailure,
)
from tableorder.schemas import (
    AdvanceRequest,
    CartAddRequest,
    CartQuantityRequest,
    CartResponse,
    CheckoutRequest,
    CheckoutResponse,
    ErrorResponse,
    HealthResponse,
    KitchenQueueResponse,
    MenuResponse,
    Restaurant,
)
from tableorder.services.cart import CartStore
from tableorder.services.feed import BaseChangeFeed, get_change_feed
from tableorder.services.menu import MenuLookup
from tableorder.services.orders import OrderQueueStore
from tableorder.services.store import BaseRemoteStore, get_remote_store
from tableorder.status import OrderStatus

settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    logger.info("=" * 60)
    logger.info(f"Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    engine = create_engine(settings.database_url, echo=settings.database_echo)
    await init_db(engine)
    logger.info("Database initialized")

    feed = get_change_feed()
    await feed.start()
    store = get_remote_store(feed, engine)
    app.state.feed = feed
    app.state.store = store
    logger.info(f"Remote store: {store.provider_name}")
    logger.info(f"Change feed: {feed.provider_name}")

    problems = settings.validate_production_config()
    if problems:
        logger.warning(f"Configuration problems: {problems}")

    logger.info("Application ready")

    yield  # Application runs

    logger.info("Shutting down...")
    await feed.close()
    await store.close()
    logger.info("Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Shared realtime table carts, atomic checkout and a live kitchen queue "
        "for multi-tenant restaurants."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_store(request: Request) -> BaseRemoteStore:
    return request.app.state.store


def get_feed(request: Request) -> BaseChangeFeed:
    return request.app.state.feed


StoreDep = Annotated[BaseRemoteStore, Depends(get_store)]
FeedDep = Annotated[BaseChangeFeed, Depends(get_feed)]


async def get_restaurant(slug: str, store: StoreDep) -> Restaurant:
    return await MenuLookup(store).resolve(slug)


RestaurantDep = Annotated[Restaurant, Depends(get_restaurant)]


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def cart_response(cart: CartStore) -> CartResponse:
    return CartResponse(
        restaurant_id=cart.restaurant_id,
        table_number=cart.table_number,
        lines=cart.list(),
        total_amount=cart.total_amount,
        total_item_count=cart.total_item_count,
    )


def queue_response(queue: OrderQueueStore) -> KitchenQueueResponse:
    return KitchenQueueResponse(
        restaurant_id=queue.restaurant_id,
        orders=queue.list(),
        buckets=queue.by_status(),
        counts=queue.counts(),
    )


async def load_menu_item(store: BaseRemoteStore, restaurant: Restaurant, item_id: int):
    item = await store.get_menu_item(item_id)
    if item is None or item.restaurant_id != restaurant.id:
        raise NotFound(f"Menu item #{item_id} not found")
    return item


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(store: StoreDep, feed: FeedDep) -> HealthResponse:
    """Verify the store and the change feed are reachable."""
    db_status = "healthy" if await store.health_check() else "unhealthy"
    feed_status = "healthy" if await feed.health_check() else "unhealthy"

    overall = "operational" if db_status == feed_status == "healthy" else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        change_feed=feed_status,
        timestamp=datetime.now(),
    )


# =============================================================================
# MENU ENDPOINTS
# =============================================================================

@app.get(
    "/api/r/{slug}/menu",
    response_model=MenuResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Menu"],
)
async def get_menu(slug: str, store: StoreDep) -> MenuResponse:
    """Restaurant record and its available menu, by category then name."""
    context = await MenuLookup(store).load(slug)
    return MenuResponse(
        restaurant=context.restaurant,
        categories=context.categories,
        items=context.items,
    )


# =============================================================================
# CART ENDPOINTS
# =============================================================================

@app.get(
    "/api/r/{slug}/tables/{table_number}/cart",
    response_model=CartResponse,
    tags=["Cart"],
)
async def get_cart(
    table_number: str,
    restaurant: RestaurantDep,
    store: StoreDep,
    feed: FeedDep,
) -> CartResponse:
    async with CartStore(store, feed, restaurant.id, table_number) as cart:
        return cart_response(cart)


@app.post(
    "/api/r/{slug}/tables/{table_number}/cart",
    response_model=CartResponse,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
    tags=["Cart"],
)
async def add_to_cart(
    table_number: str,
    payload: CartAddRequest,
    restaurant: RestaurantDep,
    store: StoreDep,
    feed: FeedDep,
) -> CartResponse:
    """Add an item configuration; identical configurations are merged."""
    item = await load_menu_item(store, restaurant, payload.menu_item_id)
    async with CartStore(store, feed, restaurant.id, table_number) as cart:
        await cart.add(item, payload.quantity, payload.selected_options)
        return cart_response(cart)


@app.patch(
    "/api/r/{slug}/tables/{table_number}/cart/{line_id}",
    response_model=CartResponse,
    tags=["Cart"],
)
async def update_cart_line(
    table_number: str,
    line_id: int,
    payload: CartQuantityRequest,
    restaurant: RestaurantDep,
    store: StoreDep,
    feed: FeedDep,
) -> CartResponse:
    """Set a line's quantity; zero or less removes it."""
    async with CartStore(store, feed, restaurant.id, table_number) as cart:
        # Lines of other tables are invisible to this scope
        if not any(line.id == line_id for line in cart.list()):
            raise NotFound(f"Cart line #{line_id} not found")
        await cart.set_quantity(line_id, payload.quantity)
        return cart_response(cart)


@app.delete(
    "/api/r/{slug}/tables/{table_number}/cart/{line_id}",
    response_model=CartResponse,
    tags=["Cart"],
)
async def remove_cart_line(
    table_number: str,
    line_id: int,
    restaurant: RestaurantDep,
    store: StoreDep,
    feed: FeedDep,
) -> CartResponse:
    """Remove a line; removing an absent line is not an error."""
    async with CartStore(store, feed, restaurant.id, table_number) as cart:
        await cart.remove(line_id)
        return cart_response(cart)


@app.post(
    "/api/r/{slug}/tables/{table_number}/checkout",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"model": ErrorResponse}},
    tags=["Cart"],
)
async def checkout(
    table_number: str,
    payload: CheckoutRequest,
    restaurant: RestaurantDep,
    store: StoreDep,
    feed: FeedDep,
) -> CheckoutResponse:
    """Atomically turn the table's cart into a pending order."""
    async with CartStore(store, feed, restaurant.id, table_number) as cart:
        order_id = await cart.checkout(payload.notes)
    return CheckoutResponse(order_id=order_id)


# =============================================================================
# KITCHEN ENDPOINTS
# =============================================================================

@app.get(
    "/api/r/{slug}/kitchen/orders",
    response_model=KitchenQueueResponse,
    tags=["Kitchen"],
)
async def kitchen_orders(
    restaurant: RestaurantDep,
    store: StoreDep,
    feed: FeedDep,
) -> KitchenQueueResponse:
    """Active orders, newest first, plus the per-status columns."""
    async with OrderQueueStore(store, feed, restaurant.id) as queue:
        return queue_response(queue)


@app.post(
    "/api/r/{slug}/kitchen/orders/{order_id}/advance",
    response_model=KitchenQueueResponse,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
    tags=["Kitchen"],
)
async def advance_order(
    order_id: int,
    payload: AdvanceRequest,
    restaurant: RestaurantDep,
    store: StoreDep,
    feed: FeedDep,
) -> KitchenQueueResponse:
    """Move an order to its next status; repeating the same move is a no-op."""
    async with OrderQueueStore(store, feed, restaurant.id) as queue:
        await queue.advance(order_id, payload.status)
        return queue_response(queue)


# =============================================================================
# WEBSOCKET SIGNALS
# =============================================================================

class CartCommand(BaseModel):
    """Client message on the table socket."""
    action: Literal["add", "set_quantity", "remove", "checkout", "refresh"]
    menu_item_id: Optional[int] = None
    line_id: Optional[int] = None
    quantity: int = Field(default=1, le=99)
    selected_options: dict[str, str] = Field(default_factory=dict)
    notes: Optional[str] = Field(None, max_length=500)


class KitchenCommand(BaseModel):
    """Client message on the kitchen socket."""
    action: Literal["advance", "refresh"]
    order_id: Optional[int] = None
    status: Optional[OrderStatus] = None


class SignalOutbox:
    """
    Outgoing signals of one socket.

    Signals are queued and sent from the outbox's own task, so a change
    notification never waits on a slow client. Order is preserved.
    """

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._queue: asyncio.Queue = asyncio.Queue()
        self.is_gone = False
        self._sender = asyncio.create_task(self._drain())

    def send(self, signal: str, **data: Any) -> None:
        self._queue.put_nowait(jsonable_encoder({"type": signal, **data}))

    async def flush(self) -> None:
        """Wait until every queued signal has been handed to the socket."""
        await self._queue.join()

    async def close(self) -> None:
        self._sender.cancel()
        try:
            await self._sender
        except asyncio.CancelledError:
            pass

    async def _drain(self) -> None:
        while True:
            payload = await self._queue.get()
            try:
                if not self.is_gone:
                    await self.websocket.send_json(payload)
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                # Later signals are discarded; the receive loop ends the session
                self.is_gone = True
                logger.info(f"Socket gone, dropping {payload['type']} signal: {e!r}")
            finally:
                self._queue.task_done()


async def run_cart_command(
    cart: CartStore,
    store: BaseRemoteStore,
    restaurant: Restaurant,
    command: CartCommand,
) -> None:
    if command.action == "add":
        if command.menu_item_id is None:
            raise ValidationFailure("menu_item_id is required")
        item = await load_menu_item(store, restaurant, command.menu_item_id)
        await cart.add(item, command.quantity, command.selected_options)
    elif command.action == "set_quantity":
        if command.line_id is None:
            raise ValidationFailure("line_id is required")
        await cart.set_quantity(command.line_id, command.quantity)
    elif command.action == "remove":
        if command.line_id is None:
            raise ValidationFailure("line_id is required")
        await cart.remove(command.line_id)
    elif command.action == "checkout":
        await cart.checkout(command.notes)
    else:
        await cart.refresh()


@app.websocket("/ws/r/{slug}/tables/{table_number}")
async def cart_socket(websocket: WebSocket, slug: str, table_number: str):
    """
    Shared cart session of one table.

    Signals: cart-changed, cart-error, checkout-succeeded, checkout-failed.
    """
    store: BaseRemoteStore = websocket.app.state.store
    feed: BaseChangeFeed = websocket.app.state.feed

    try:
        restaurant = await MenuLookup(store).resolve(slug)
    except NotFound:
        await websocket.close(code=4404)
        return

    await websocket.accept()
    outbox = SignalOutbox(websocket)
    cart = CartStore(store, feed, restaurant.id, table_number)
    disposers = [
        cart.events.on("changed", lambda lines: outbox.send(
            "cart-changed", **cart_response(cart).model_dump()
        )),
        cart.events.on("error", lambda message: outbox.send("cart-error", message=message)),
        cart.events.on("checkout_succeeded", lambda order_id: outbox.send(
            "checkout-succeeded", order_id=order_id
        )),
        cart.events.on("checkout_failed", lambda reason: outbox.send(
            "checkout-failed", reason=reason
        )),
    ]

    try:
        await cart.start()
        while True:
            message = await websocket.receive_json()
            try:
                await run_cart_command(cart, store, restaurant, CartCommand.model_validate(message))
            except ValidationError as e:
                outbox.send("cart-error", message="Invalid command", detail=str(e))
            except (NotFound, ValidationFailure) as e:
                if e.message != cart.error:
                    outbox.send("cart-error", message=e.message)
            except TableOrderError as e:
                logger.warning(f"Cart command failed for table {table_number}: {e}")
    except WebSocketDisconnect:
        logger.info(f"Cart socket closed for table {table_number}")
    except TableOrderError as e:
        logger.error(f"Cart socket for table {table_number} failed to start: {e}")
        await outbox.flush()
        await websocket.close(code=1011)
    finally:
        for dispose in disposers:
            dispose()
        cart.close()
        await outbox.close()


@app.websocket("/ws/r/{slug}/kitchen")
async def kitchen_socket(websocket: WebSocket, slug: str):
    """
    Live kitchen queue of one restaurant.

    Signals: order-queue-changed, new-order-arrived, order-queue-error.
    """
    store: BaseRemoteStore = websocket.app.state.store
    feed: BaseChangeFeed = websocket.app.state.feed

    try:
        restaurant = await MenuLookup(store).resolve(slug)
    except NotFound:
        await websocket.close(code=4404)
        return

    await websocket.accept()
    outbox = SignalOutbox(websocket)
    queue = OrderQueueStore(store, feed, restaurant.id)
    disposers = [
        queue.events.on("changed", lambda orders: outbox.send(
            "order-queue-changed", **queue_response(queue).model_dump()
        )),
        queue.events.on("new_order", lambda order_id: outbox.send(
            "new-order-arrived", order_id=order_id
        )),
        queue.events.on("error", lambda message: outbox.send(
            "order-queue-error", message=message
        )),
    ]

    try:
        await queue.start()
        while True:
            message = await websocket.receive_json()
            try:
                command = KitchenCommand.model_validate(message)
                if command.action == "advance":
                    if command.order_id is None:
                        raise ValidationFailure("order_id is required")
                    if command.status is None:
                        await queue.advance_next(command.order_id)
                    else:
                        await queue.advance(command.order_id, command.status)
                else:
                    await queue.refresh()
            except ValidationError as e:
                outbox.send("order-queue-error", message="Invalid command", detail=str(e))
            except TableOrderError as e:
                if e.message != queue.error:
                    outbox.send("order-queue-error", message=e.message)
    except WebSocketDisconnect:
        logger.info(f"Kitchen socket closed for restaurant #{restaurant.id}")
    except TableOrderError as e:
        logger.error(f"Kitchen socket for restaurant #{restaurant.id} failed to start: {e}")
        await outbox.flush()
        await websocket.close(code=1011)
    finally:
        for dispose in disposers:
            dispose()
        queue.close()
        await outbox.close()


# =============================================================================
# ERROR HANDLERS
# =============================================================================

ERROR_STATUS = {
    NotFound: status.HTTP_404_NOT_FOUND,
    ValidationFailure: status.HTTP_422_UNPROCESSABLE_ENTITY,
    TransientRemoteFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
    SubscriptionFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@app.exception_handler(TableOrderError)
async def table_order_error_handler(request: Request, exc: TableOrderError) -> JSONResponse:
    """Map the store error taxonomy onto HTTP status codes."""
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    if status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=exc.message,
            detail=exc.detail if settings.debug else None,
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "tableorder.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
