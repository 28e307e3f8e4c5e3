"""
Pydantic Schemas

Row snapshots exchanged between the remote store and the client-side
stores, plus request/response bodies of the HTTP surface.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tableorder.errors import ValidationFailure
from tableorder.status import OrderStatus

CENT = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    """Quantize a price or amount to cents."""
    return Decimal(str(value)).quantize(CENT)


# =============================================================================
# CATALOG
# =============================================================================

class Restaurant(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    slug: str
    owner_id: Optional[str] = None
    logo_url: Optional[str] = None
    created_at: Optional[datetime] = None


class MenuOption(BaseModel):
    """An option group such as spice level; exactly one choice is picked."""
    name: str
    choices: list[str] = Field(default_factory=list)
    required: bool = False


class MenuItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    restaurant_id: int
    category: str
    name: str
    description: Optional[str] = None
    price: Decimal = Field(..., ge=0)
    stock: int = -1
    options: list[MenuOption] = Field(default_factory=list)
    image_url: Optional[str] = None
    is_available: bool = True
    created_at: Optional[datetime] = None

    @field_validator("price", mode="before")
    @classmethod
    def quantize_price(cls, v: Any) -> Decimal:
        return to_money(v)

    @property
    def is_sold_out(self) -> bool:
        return self.stock == 0

    @property
    def has_unlimited_stock(self) -> bool:
        return self.stock < 0

    def default_options(self) -> dict[str, str]:
        """First choice of every option group, the dialog's initial selection."""
        return {opt.name: opt.choices[0] for opt in self.options if opt.choices}

    def validate_options(self, selected: dict[str, str]) -> None:
        """
        Check a selected configuration against the item's option groups.

        Raises:
            ValidationFailure: On an unknown group, an unknown choice or a
                missing required group
        """
        groups = {opt.name: opt for opt in self.options}
        for name, choice in selected.items():
            group = groups.get(name)
            if group is None:
                raise ValidationFailure(f"{self.name} has no option '{name}'")
            if choice not in group.choices:
                raise ValidationFailure(f"'{choice}' is not a valid choice for {name}")
        for group in self.options:
            if group.required and group.name not in selected:
                raise ValidationFailure(f"Please choose {group.name} for {self.name}")


# =============================================================================
# CART
# =============================================================================

class CartLine(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    restaurant_id: int
    table_number: str
    menu_item_id: int
    quantity: int = Field(..., ge=1)
    selected_options: dict[str, str] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    menu_item: Optional[MenuItem] = None

    @property
    def line_total(self) -> Decimal:
        """Estimated total from the current menu price."""
        if self.menu_item is None:
            return Decimal("0.00")
        return to_money(self.menu_item.price * self.quantity)

    def matches(self, menu_item_id: int, selected_options: dict[str, str]) -> bool:
        """Same logical line: same item and structurally equal options."""
        return self.menu_item_id == menu_item_id and self.selected_options == selected_options


# =============================================================================
# ORDERS
# =============================================================================

class OrderLine(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    menu_item_id: int
    quantity: int
    selected_options: dict[str, str] = Field(default_factory=dict)
    unit_price: Decimal
    menu_item: Optional[MenuItem] = None

    @field_validator("unit_price", mode="before")
    @classmethod
    def quantize_unit_price(cls, v: Any) -> Decimal:
        return to_money(v)

    @property
    def line_total(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)


class Order(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    restaurant_id: int
    table_number: str
    status: OrderStatus
    total_amount: Decimal
    notes: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("total_amount", mode="before")
    @classmethod
    def quantize_total(cls, v: Any) -> Decimal:
        return to_money(v)


class OrderWithLines(Order):
    items: list[OrderLine] = Field(default_factory=list)

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.items)


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class CartAddRequest(BaseModel):
    """Add a menu item configuration to the table's cart."""
    menu_item_id: int
    quantity: int = Field(default=1, ge=1, le=99, examples=[2])
    selected_options: dict[str, str] = Field(default_factory=dict, examples=[{"辣度": "中辣"}])


class CartQuantityRequest(BaseModel):
    """Set a line's quantity; zero or less removes the line."""
    quantity: int = Field(..., le=99)


class CheckoutRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=500)

    @field_validator("notes")
    @classmethod
    def blank_notes_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()


class AdvanceRequest(BaseModel):
    """Explicit target status of a kitchen action."""
    status: OrderStatus


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class MenuResponse(BaseModel):
    restaurant: Restaurant
    categories: list[str]
    items: list[MenuItem]


class CartResponse(BaseModel):
    restaurant_id: int
    table_number: str
    lines: list[CartLine]
    total_amount: Decimal
    total_item_count: int


class CheckoutResponse(BaseModel):
    success: bool = True
    order_id: int


class KitchenQueueResponse(BaseModel):
    restaurant_id: int
    orders: list[OrderWithLines]
    buckets: dict[OrderStatus, list[OrderWithLines]]
    counts: dict[OrderStatus, int]


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    change_feed: str
    timestamp: datetime
