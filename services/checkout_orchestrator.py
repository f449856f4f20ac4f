"""
Checkout Orchestrator - single entry point for hosting, domain and combined checkouts

Architecture:
- One contract for every checkout: optional hosting line + optional domain line
- Locked quote verified, then a binding availability re-check that fails closed
- Payment customer resolved lookup-before-create (never duplicated per email)
- Order persisted as pending BEFORE the payment provider is contacted
- Order id embedded in session metadata; reconciliation links by that alone
"""

import logging
import uuid
from dataclasses import replace
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from models import (
    CheckoutResult, CustomerIdentity, DomainQuote, HostingPlan, LineItemType, Order, OrderItem, OrderStatus,
)
from pricing_utils import round_money, to_minor_units
from services import events
from services.errors import DomainUnavailable, OrderNotFound, ValidationError
from services.order_state import assert_order_transition
from services.payment_provider import StripePaymentProvider
from services.quote_engine import QuoteEngine
from services.repositories import CustomerRepository, OrderRepository, PricingRepository

logger = logging.getLogger(__name__)

class CheckoutOrchestrator:

    def __init__(self, orders: OrderRepository, customers: CustomerRepository, pricing: PricingRepository,
                 quote_engine: QuoteEngine, payment_provider: StripePaymentProvider, base_url: str,
                 default_nameservers: List[str], settlement_currency: str = 'GBP'):
        self.orders = orders
        self.customers = customers
        self.pricing = pricing
        self.quote_engine = quote_engine
        self.payment_provider = payment_provider
        self.base_url = base_url.rstrip('/')
        self.default_nameservers = list(default_nameservers)
        self.settlement_currency = settlement_currency

    # ====================================================================
    # CHECKOUT
    # ====================================================================

    async def create_combined_checkout(self, customer: CustomerIdentity, hosting_plan_ref: Optional[str],
                                       domain_quote: Optional[DomainQuote]) -> CheckoutResult:
        """
        Start a payment for a hosting plan, a domain, or both

        Args:
            customer: Authenticated customer from the identity provider
            hosting_plan_ref: Hosting plan to subscribe to, if any
            domain_quote: Locked quote returned earlier by the quote engine, if any

        Returns:
            CheckoutResult with the provider redirect URL and our order id

        Raises:
            ValidationError: Neither line given, or unknown hosting plan
            StaleQuoteMismatch: Quote tampered, expired or re-priced
            RegistrarUnavailable: Binding availability check could not complete
            DomainUnavailable: Domain was taken since the quote
            PaymentProviderError: Provider call failed; order left pending
        """
        if hosting_plan_ref is None and domain_quote is None:
            raise ValidationError("Checkout requires a hosting plan, a domain quote, or both")

        logger.info(f"💳 Checkout for customer {customer.customer_id}: "
                    f"hosting={hosting_plan_ref}, domain={domain_quote.domain if domain_quote else None}")

        if domain_quote is not None:
            await self._confirm_domain(domain_quote)

        plan = await self._resolve_hosting_plan(hosting_plan_ref) if hosting_plan_ref else None

        provider_customer_id = await self._resolve_payment_customer(customer)

        items, line_items = self._build_lines(plan, domain_quote)
        order = Order(
            id=str(uuid.uuid4()),
            customer_id=customer.customer_id,
            items=items,
            total_amount=round_money(sum((item.price for item in items), Decimal('0'))),
            currency=self.settlement_currency,
            status=OrderStatus.PENDING,
            metadata=self._order_metadata(plan, domain_quote),
        )
        order = await self.orders.create(order)
        logger.info(f"📝 Order {order.id} persisted as pending: {order.total_amount} {order.currency}")

        mode = 'subscription' if plan is not None else 'payment'
        session = await self.payment_provider.create_checkout_session(
            customer_id=provider_customer_id,
            line_items=line_items,
            mode=mode,
            success_url=f"{self.base_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.base_url}/billing/cancelled",
            metadata={'order_id': order.id, 'customer_id': customer.customer_id},
            idempotency_key=f"checkout-{order.id}",
        )

        await self.orders.set_session_id(order.id, session.id)
        logger.info(f"✅ Checkout session {session.id} created for order {order.id} ({mode})")
        return CheckoutResult(redirect_url=session.url, order_id=order.id, session_id=session.id)

    async def _confirm_domain(self, quote: DomainQuote) -> None:
        await self.quote_engine.verify_locked_quote(quote)
        binding = await self.quote_engine.quote(quote.domain, quote.years, quote.id_protection, binding=True)
        if not binding.available:
            raise DomainUnavailable(quote.domain)

    async def _resolve_hosting_plan(self, ref: str) -> HostingPlan:
        plan = await self.pricing.get_hosting_plan(ref)
        if plan is None:
            raise ValidationError(f"Unknown hosting plan: {ref}")
        return plan

    async def _resolve_payment_customer(self, customer: CustomerIdentity) -> str:
        """Local mapping, then provider lookup by email, then create"""
        provider_customer_id = await self.customers.get_provider_customer_id(customer.customer_id)
        if provider_customer_id:
            return provider_customer_id

        provider_customer_id = await self.payment_provider.find_customer_by_email(customer.email)
        if provider_customer_id:
            logger.info(f"🔍 Reusing payment customer {provider_customer_id} for {customer.customer_id}")
        else:
            provider_customer_id = await self.payment_provider.create_customer(
                email=customer.email,
                name=customer.name,
                metadata={'customer_id': customer.customer_id},
                idempotency_key=f"customer-{customer.customer_id}",
            )
            logger.info(f"✅ Created payment customer {provider_customer_id} for {customer.customer_id}")

        await self.customers.save_provider_customer_id(customer.customer_id, customer.email, provider_customer_id)
        return provider_customer_id

    def _build_lines(self, plan: Optional[HostingPlan],
                     quote: Optional[DomainQuote]) -> Tuple[List[OrderItem], List[Dict[str, Any]]]:
        items: List[OrderItem] = []
        line_items: List[Dict[str, Any]] = []

        if plan is not None:
            items.append(OrderItem(
                type=LineItemType.HOSTING,
                ref_id=plan.ref,
                price=plan.annual_price,
                description=f"{plan.name} hosting (annual)",
                metadata={'whm_package': plan.whm_package},
            ))
            line_items.append({'price': plan.stripe_price_id, 'quantity': 1})

        if quote is not None:
            description = f"Domain registration: {quote.domain} ({quote.years} year{'s' if quote.years > 1 else ''})"
            if quote.id_protection:
                description += " + ID protection"
            items.append(OrderItem(
                type=LineItemType.DOMAIN,
                ref_id=quote.domain,
                price=quote.total_price,
                description=description,
                metadata={'years': quote.years, 'id_protection': quote.id_protection},
            ))
            price_data: Dict[str, Any] = {
                'currency': quote.currency.lower(),
                'product_data': {'name': description},
                'unit_amount': to_minor_units(quote.total_price),
            }
            line_items.append({'price_data': price_data, 'quantity': 1})

        return items, line_items

    def _order_metadata(self, plan: Optional[HostingPlan], quote: Optional[DomainQuote]) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {}
        if quote is not None:
            metadata['domain_quote'] = quote.to_dict()
            metadata['domain'] = quote.domain
            metadata['years'] = quote.years
            metadata['id_protection'] = quote.id_protection
            metadata['nameservers'] = list(self.default_nameservers)
        if plan is not None:
            metadata['hosting_plan_ref'] = plan.ref
            metadata['whm_package'] = plan.whm_package
        return metadata

    # ====================================================================
    # CANCELLATION
    # ====================================================================

    async def cancel_order(self, order_id: str, customer_id: Optional[str] = None) -> Tuple[Order, list]:
        """
        Cancel a pending order

        Has no effect once the order is paid; the current order is returned
        unchanged. Returns the order and the post-commit events.
        """
        order = await self.orders.get(order_id)
        if order is None or (customer_id is not None and order.customer_id != customer_id):
            raise OrderNotFound(f"Order {order_id} not found")

        if order.status is not OrderStatus.PENDING:
            logger.info(f"Order {order_id} is {order.status.value}; cancellation has no effect")
            return order, []

        assert_order_transition(order.status, OrderStatus.CANCELLED)
        if not await self.orders.compare_and_set_status(order_id, OrderStatus.PENDING, OrderStatus.CANCELLED):
            current = await self.orders.get(order_id)
            logger.info(f"🔒 Order {order_id} changed to {current.status.value} before cancellation")
            return current, []

        logger.info(f"🚫 Order {order_id} cancelled")
        return replace(order, status=OrderStatus.CANCELLED), [
            events.notification('order_cancelled', order_id, order.customer_id),
            events.audit('order_cancelled', order_id, actor_id=customer_id),
        ]
