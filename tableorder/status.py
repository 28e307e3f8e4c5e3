"""
Order Status State Machine

    pending → preparing → served → completed

Every non-terminal status has exactly one successor, reached by an
explicit staff action. There are no backward transitions, no skips and
no branches. `completed` is terminal and drops the order out of the
kitchen queue.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from tableorder.errors import ValidationFailure


class OrderStatus(str, Enum):
    """Order status workflow."""
    PENDING = "pending"
    PREPARING = "preparing"
    SERVED = "served"
    COMPLETED = "completed"

    @property
    def successor(self) -> Optional["OrderStatus"]:
        """The single legal next status, or None when terminal."""
        return _SUCCESSORS.get(self)

    @property
    def is_terminal(self) -> bool:
        return self.successor is None

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    @property
    def info(self) -> "StatusInfo":
        return STATUS_INFO[self]


_SUCCESSORS: dict[OrderStatus, OrderStatus] = {
    OrderStatus.PENDING: OrderStatus.PREPARING,
    OrderStatus.PREPARING: OrderStatus.SERVED,
    OrderStatus.SERVED: OrderStatus.COMPLETED,
}

# Kitchen queue columns, in display order
ACTIVE_STATUSES: tuple[OrderStatus, ...] = (
    OrderStatus.PENDING,
    OrderStatus.PREPARING,
    OrderStatus.SERVED,
)


@dataclass(frozen=True)
class StatusInfo:
    """Display label of a status and the label of the button that advances it."""
    label: str
    action_label: Optional[str] = None


STATUS_INFO: dict[OrderStatus, StatusInfo] = {
    OrderStatus.PENDING: StatusInfo(label="待处理", action_label="开始制作"),
    OrderStatus.PREPARING: StatusInfo(label="制作中", action_label="已上菜"),
    OrderStatus.SERVED: StatusInfo(label="已上菜", action_label="完成订单"),
    OrderStatus.COMPLETED: StatusInfo(label="已完成"),
}


def validate_transition(current: OrderStatus, target: OrderStatus) -> None:
    """
    Reject any transition other than `current` → `current.successor`.

    Raises:
        ValidationFailure: If `target` is not the successor of `current`
    """
    current = OrderStatus(current)
    target = OrderStatus(target)
    if current.is_terminal:
        raise ValidationFailure(f"Order is already {current.value}")
    if target is not current.successor:
        raise ValidationFailure(
            f"Cannot move order from {current.value} to {target.value}; "
            f"next status is {current.successor.value}"
        )
