"""
Transition tables for orders, payments and deliveries
"""
from typing import Optional

from app.core.auth import ActorRole
from app.db.models.order import OrderStatus, PaymentStatus
from app.db.models.delivery import DeliveryStatus


# ============================================================================
# Orders
# ============================================================================

ORDER_TRANSITIONS = {
    OrderStatus.PENDING: [OrderStatus.PROCESSING, OrderStatus.CANCELLED],
    OrderStatus.PROCESSING: [OrderStatus.CONFIRMED, OrderStatus.CANCELLED],
    OrderStatus.CONFIRMED: [OrderStatus.PREPARING, OrderStatus.CANCELLED],
    OrderStatus.PREPARING: [OrderStatus.READY, OrderStatus.CANCELLED],
    OrderStatus.READY: [OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED],
    OrderStatus.OUT_FOR_DELIVERY: [OrderStatus.DELIVERED],
    OrderStatus.DELIVERED: [OrderStatus.REFUNDED],
    # מותר רק כשהתשלום בוצע - נבדק בשירות
    OrderStatus.CANCELLED: [OrderStatus.REFUNDED],
    OrderStatus.REFUNDED: [],
}

_VENDOR_CANCEL = frozenset({ActorRole.VENDOR, ActorRole.SYSTEM, ActorRole.ADMIN})
_VENDOR_FLOW = frozenset({ActorRole.VENDOR, ActorRole.ADMIN})
# הזמנה יוצאת למשלוח ונמסרת רק דרך התקדמות המשלוח (system), או אדמין מול מצב המשלוח
_DELIVERY_FLOW = frozenset({ActorRole.SYSTEM, ActorRole.ADMIN})
_REFUND = frozenset({ActorRole.ADMIN, ActorRole.SYSTEM})

# Which roles may drive each edge; ownership is checked by the order service
ORDER_EDGE_ROLES = {
    (OrderStatus.PENDING, OrderStatus.PROCESSING): frozenset({ActorRole.SYSTEM}),
    (OrderStatus.PENDING, OrderStatus.CANCELLED): frozenset(
        {ActorRole.CUSTOMER, ActorRole.VENDOR, ActorRole.SYSTEM, ActorRole.ADMIN}
    ),
    (OrderStatus.PROCESSING, OrderStatus.CANCELLED): _VENDOR_CANCEL,
    (OrderStatus.CONFIRMED, OrderStatus.CANCELLED): _VENDOR_CANCEL,
    (OrderStatus.PREPARING, OrderStatus.CANCELLED): _VENDOR_CANCEL,
    (OrderStatus.READY, OrderStatus.CANCELLED): _VENDOR_CANCEL,
    (OrderStatus.PROCESSING, OrderStatus.CONFIRMED): _VENDOR_FLOW,
    (OrderStatus.CONFIRMED, OrderStatus.PREPARING): _VENDOR_FLOW,
    (OrderStatus.PREPARING, OrderStatus.READY): _VENDOR_FLOW,
    (OrderStatus.READY, OrderStatus.OUT_FOR_DELIVERY): _DELIVERY_FLOW,
    (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED): _DELIVERY_FLOW,
    (OrderStatus.DELIVERED, OrderStatus.REFUNDED): _REFUND,
    (OrderStatus.CANCELLED, OrderStatus.REFUNDED): _REFUND,
}

# Outside delivery advancement these order edges need the active delivery to
# be at least this far along
ORDER_EDGE_DELIVERY_GATE = {
    (OrderStatus.READY, OrderStatus.OUT_FOR_DELIVERY): frozenset(
        {DeliveryStatus.PICKED_UP, DeliveryStatus.DELIVERING}
    ),
    (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED): frozenset({DeliveryStatus.DELIVERING}),
}

# Statuses in which a delivery may be published for the order
DELIVERABLE_ORDER_STATUSES = frozenset(
    {OrderStatus.CONFIRMED, OrderStatus.PREPARING, OrderStatus.READY}
)

TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.REFUNDED})


def is_valid_order_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """Check that the edge exists in the order table"""
    return target in ORDER_TRANSITIONS.get(current, [])


def order_edge_roles(current: OrderStatus, target: OrderStatus) -> frozenset:
    return ORDER_EDGE_ROLES.get((current, target), frozenset())


def order_edge_delivery_gate(current: OrderStatus, target: OrderStatus) -> Optional[frozenset]:
    return ORDER_EDGE_DELIVERY_GATE.get((current, target))


# ============================================================================
# Payments - orthogonal to order status
# ============================================================================

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: [PaymentStatus.PAID, PaymentStatus.FAILED],
    PaymentStatus.PAID: [PaymentStatus.REFUNDED],
    PaymentStatus.FAILED: [],
    PaymentStatus.REFUNDED: [],
}


def is_valid_payment_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in PAYMENT_TRANSITIONS.get(current, [])


# ============================================================================
# Deliveries
# ============================================================================

# The rider-driven path, in order. advance() may only move one step along it.
DELIVERY_SEQUENCE = [
    DeliveryStatus.AVAILABLE,
    DeliveryStatus.ACCEPTED,
    DeliveryStatus.PICKING_UP,
    DeliveryStatus.PICKED_UP,
    DeliveryStatus.DELIVERING,
    DeliveryStatus.DELIVERED,
]

DELIVERY_TRANSITIONS = {
    DeliveryStatus.AVAILABLE: [DeliveryStatus.ACCEPTED, DeliveryStatus.CANCELLED, DeliveryStatus.EXPIRED],
    DeliveryStatus.ACCEPTED: [DeliveryStatus.PICKING_UP, DeliveryStatus.CANCELLED, DeliveryStatus.EXPIRED],
    DeliveryStatus.PICKING_UP: [DeliveryStatus.PICKED_UP, DeliveryStatus.CANCELLED],
    DeliveryStatus.PICKED_UP: [DeliveryStatus.DELIVERING],
    DeliveryStatus.DELIVERING: [DeliveryStatus.DELIVERED],
    DeliveryStatus.DELIVERED: [],
    DeliveryStatus.CANCELLED: [],
    DeliveryStatus.EXPIRED: [],
}

# Statuses in which the delivery can still be handed back to the pool
CANCELLABLE_DELIVERY_STATUSES = frozenset(
    {DeliveryStatus.AVAILABLE, DeliveryStatus.ACCEPTED, DeliveryStatus.PICKING_UP}
)

ACTIVE_DELIVERY_STATUSES = frozenset(
    {
        DeliveryStatus.AVAILABLE,
        DeliveryStatus.ACCEPTED,
        DeliveryStatus.PICKING_UP,
        DeliveryStatus.PICKED_UP,
        DeliveryStatus.DELIVERING,
    }
)


def is_valid_delivery_transition(current: DeliveryStatus, target: DeliveryStatus) -> bool:
    return target in DELIVERY_TRANSITIONS.get(current, [])


def next_delivery_status(current: DeliveryStatus) -> Optional[DeliveryStatus]:
    """The single status a rider may advance to from ``current``, if any"""
    if current not in DELIVERY_SEQUENCE:
        return None
    index = DELIVERY_SEQUENCE.index(current)
    if index + 1 >= len(DELIVERY_SEQUENCE):
        return None
    return DELIVERY_SEQUENCE[index + 1]
