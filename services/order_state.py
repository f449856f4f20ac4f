"""
Order state machines

Order (automated checkout):
    pending -> paid -> provisioning_requested
    pending -> cancelled

PendingDomainOrder (manual review, never merged with Order):
    PENDING_REVIEW -> APPROVED -> PAID
    PENDING_REVIEW -> REJECTED

No state is ever revisited. Guards here decide whether a move is legal;
repositories apply it with a compare-and-set on the expected prior status.
"""

from typing import Dict, FrozenSet

from models import InvoiceStatus, OrderStatus, PendingDomainOrderStatus
from services.errors import InvalidTransition

ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.PROVISIONING_REQUESTED}),
    OrderStatus.PROVISIONING_REQUESTED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

PENDING_DOMAIN_ORDER_TRANSITIONS: Dict[PendingDomainOrderStatus, FrozenSet[PendingDomainOrderStatus]] = {
    PendingDomainOrderStatus.PENDING_REVIEW: frozenset({
        PendingDomainOrderStatus.APPROVED,
        PendingDomainOrderStatus.REJECTED,
    }),
    PendingDomainOrderStatus.APPROVED: frozenset({PendingDomainOrderStatus.PAID}),
    PendingDomainOrderStatus.REJECTED: frozenset(),
    PendingDomainOrderStatus.PAID: frozenset(),
}

INVOICE_PAYABLE_STATES = frozenset({InvoiceStatus.PENDING, InvoiceStatus.FAILED})

# Statuses reached only after payment was confirmed
ORDER_SETTLED_STATES = frozenset({OrderStatus.PAID, OrderStatus.PROVISIONING_REQUESTED})

def can_transition_order(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS[current]

def assert_order_transition(current: OrderStatus, target: OrderStatus) -> None:
    if not can_transition_order(current, target):
        raise InvalidTransition('order', current.value, target.value)

def can_transition_pending_domain_order(current: PendingDomainOrderStatus,
                                        target: PendingDomainOrderStatus) -> bool:
    return target in PENDING_DOMAIN_ORDER_TRANSITIONS[current]

def assert_pending_domain_order_transition(current: PendingDomainOrderStatus,
                                           target: PendingDomainOrderStatus) -> None:
    if not can_transition_pending_domain_order(current, target):
        raise InvalidTransition('pending domain order', current.value, target.value)

def is_order_settled(status: OrderStatus) -> bool:
    return status in ORDER_SETTLED_STATES
