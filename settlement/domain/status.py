"""Closed status enumerations and the order pipeline tables.

Every legal forward edge of the order pipeline lives in
``FORWARD_TRANSITIONS``; which roles may drive an edge lives in
``EDGE_ROLES``. Call sites ask these tables instead of comparing strings.
"""
from enum import Enum
from typing import Optional


class OrderStatus(str, Enum):
    BOOKED = "booked"
    PICKUP_SCHEDULED = "pickup_scheduled"
    COLLECTED = "collected"
    IN_PROGRESS = "in_progress"
    READY = "ready"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ItemStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"


class PayoutRole(str, Enum):
    PROVIDER = "provider"
    AGENT = "agent"


class Role(str, Enum):
    CUSTOMER = "customer"
    AGENT = "agent"
    PROVIDER = "provider"
    STAFF = "staff"
    ADMIN = "admin"
    # webhook-driven effects with no human behind them
    SYSTEM = "system"


class PickupSlot(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"


class PayoutMethod(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    PAYPAL = "paypal"
    STRIPE = "stripe"
    CASH = "cash"


PIPELINE = (
    OrderStatus.BOOKED,
    OrderStatus.PICKUP_SCHEDULED,
    OrderStatus.COLLECTED,
    OrderStatus.IN_PROGRESS,
    OrderStatus.READY,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
    OrderStatus.COMPLETED,
)

FORWARD_TRANSITIONS = {
    current: following for current, following in zip(PIPELINE, PIPELINE[1:])
}

TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

OPERATOR_ROLES = frozenset({Role.STAFF, Role.ADMIN})

EDGE_ROLES = {
    (OrderStatus.PICKUP_SCHEDULED, OrderStatus.COLLECTED): Role.AGENT,
    (OrderStatus.COLLECTED, OrderStatus.IN_PROGRESS): Role.PROVIDER,
    (OrderStatus.IN_PROGRESS, OrderStatus.READY): Role.PROVIDER,
    (OrderStatus.READY, OrderStatus.OUT_FOR_DELIVERY): Role.AGENT,
    (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED): Role.AGENT,
}

# Edges on which an unassigned order is claimed by the acting agent/provider
CLAIMING_EDGES = frozenset({
    (OrderStatus.PICKUP_SCHEDULED, OrderStatus.COLLECTED),
    (OrderStatus.COLLECTED, OrderStatus.IN_PROGRESS),
})

# Statuses an agent or provider may claim an unassigned order in
CLAIMABLE = {
    Role.AGENT: frozenset({OrderStatus.BOOKED, OrderStatus.PICKUP_SCHEDULED}),
    Role.PROVIDER: frozenset({OrderStatus.COLLECTED}),
}

ITEM_EDITABLE = frozenset({OrderStatus.COLLECTED, OrderStatus.IN_PROGRESS})

MILESTONE_FIELDS = {
    OrderStatus.PICKUP_SCHEDULED: "pickup_scheduled_at",
    OrderStatus.COLLECTED: "collected_at",
    OrderStatus.READY: "ready_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.COMPLETED: "completed_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


def next_status(current: OrderStatus) -> Optional[OrderStatus]:
    return FORWARD_TRANSITIONS.get(current)


def is_forward(current: OrderStatus, target: OrderStatus) -> bool:
    """True when ``target`` lies strictly after ``current`` in the pipeline."""
    if current not in PIPELINE or target not in PIPELINE:
        return False
    return PIPELINE.index(target) > PIPELINE.index(current)


def requires_finished_items(target: OrderStatus) -> bool:
    return target in PIPELINE and PIPELINE.index(target) >= PIPELINE.index(OrderStatus.READY)


def permitted_role(current: OrderStatus, target: OrderStatus) -> Optional[Role]:
    """Service-side role allowed on the edge, ``None`` for operator-only edges."""
    return EDGE_ROLES.get((current, target))
