"""
State Machine Module for Orders, Payments and Deliveries
"""
from app.state_machine.states import (
    ORDER_TRANSITIONS,
    PAYMENT_TRANSITIONS,
    DELIVERY_TRANSITIONS,
    DELIVERY_SEQUENCE,
    is_valid_order_transition,
    is_valid_payment_transition,
    is_valid_delivery_transition,
    next_delivery_status,
    order_edge_roles,
)

__all__ = [
    "ORDER_TRANSITIONS",
    "PAYMENT_TRANSITIONS",
    "DELIVERY_TRANSITIONS",
    "DELIVERY_SEQUENCE",
    "is_valid_order_transition",
    "is_valid_payment_transition",
    "is_valid_delivery_transition",
    "next_delivery_status",
    "order_edge_roles",
]
