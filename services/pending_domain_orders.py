"""
Manual-review domain orders

Some registrar purchases need a human to verify them before the customer is
charged. These orders live in pending_domain_orders and follow their own state
machine; nothing here reads or writes the automated orders table.

    PENDING_REVIEW -> APPROVED -> PAID
    PENDING_REVIEW -> REJECTED
"""

import logging
import uuid
from typing import List, Optional, Tuple

from models import CustomerIdentity, DomainQuote, PendingDomainOrder, PendingDomainOrderStatus
from pricing_utils import round_money
from services import events
from services.errors import InvalidTransition, OrderNotFound, ValidationError
from services.events import CoreEvent
from services.order_state import assert_pending_domain_order_transition
from services.quote_engine import QuoteEngine
from services.repositories import PendingDomainOrderRepository, PricingRepository

logger = logging.getLogger(__name__)

Transition = Tuple[PendingDomainOrder, List[CoreEvent]]

class PendingDomainOrderService:

    def __init__(self, orders: PendingDomainOrderRepository, pricing: PricingRepository, quote_engine: QuoteEngine):
        self.orders = orders
        self.pricing = pricing
        self.quote_engine = quote_engine

    async def submit(self, customer: CustomerIdentity, quote: DomainQuote,
                     hosting_plan_ref: Optional[str] = None) -> Transition:
        """
        Record a domain order for manual review

        The quote must still be a valid locked quote. The estimate adds a
        year of monthly hosting for every registration year when a plan is given.
        """
        await self.quote_engine.verify_locked_quote(quote)

        hosting_price = round_money(0)
        if hosting_plan_ref:
            plan = await self.pricing.get_hosting_plan(hosting_plan_ref)
            if plan is None:
                raise ValidationError(f"Unknown hosting plan: {hosting_plan_ref}")
            hosting_price = round_money(plan.monthly_price * 12 * quote.years)

        order = PendingDomainOrder(
            id=str(uuid.uuid4()),
            user_id=customer.customer_id,
            domain_name=quote.domain,
            years=quote.years,
            total_estimate=round_money(quote.total_price + hosting_price),
            currency=quote.currency,
            domain_price=quote.total_price,
            hosting_price=hosting_price,
            hosting_package_ref=hosting_plan_ref,
        )
        order = await self.orders.create(order)
        logger.info(f"📝 Pending domain order {order.id} for {order.domain_name}: "
                    f"{order.total_estimate} {order.currency} awaiting review")
        return order, [events.audit('domain_order_submitted', order.id, actor_id=customer.customer_id,
                                    domain_name=order.domain_name, total_estimate=f"{order.total_estimate:.2f}")]

    async def approve(self, order_id: str, admin_id: str, notes: Optional[str] = None) -> Transition:
        order = await self._transition(order_id, PendingDomainOrderStatus.APPROVED, admin_id, notes)
        return order, [
            events.notification('order_manually_approved', order.id, order.user_id, domain_name=order.domain_name),
            events.audit('order_manually_approved', order.id, actor_id=admin_id, notes=notes),
        ]

    async def reject(self, order_id: str, admin_id: str, notes: Optional[str] = None) -> Transition:
        order = await self._transition(order_id, PendingDomainOrderStatus.REJECTED, admin_id, notes)
        return order, [
            events.notification('order_manually_rejected', order.id, order.user_id,
                                domain_name=order.domain_name, notes=notes or ''),
            events.audit('order_manually_rejected', order.id, actor_id=admin_id, notes=notes),
        ]

    async def mark_paid(self, order_id: str, admin_id: Optional[str] = None) -> Transition:
        order = await self._transition(order_id, PendingDomainOrderStatus.PAID, admin_id, None)
        return order, [events.audit('domain_order_paid', order.id, actor_id=admin_id)]

    async def _transition(self, order_id: str, target: PendingDomainOrderStatus, admin_id: Optional[str],
                          notes: Optional[str]) -> PendingDomainOrder:
        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFound(f"Pending domain order {order_id} not found")

        assert_pending_domain_order_transition(order.status, target)

        if not await self.orders.compare_and_set_status(order_id, order.status, target,
                                                        reviewed_by=admin_id, admin_notes=notes):
            current = await self.orders.get(order_id)
            logger.warning(f"🔒 Pending domain order {order_id} moved to {current.status.value} concurrently")
            raise InvalidTransition('pending domain order', current.status.value, target.value)

        logger.info(f"✅ Pending domain order {order_id}: {order.status.value} -> {target.value}")
        return await self.orders.get(order_id)
