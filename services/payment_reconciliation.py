"""
Payment Reconciliation

Confirms checkout sessions with the payment provider and moves the linked
order to paid exactly once. The same settlement runs for the customer's
success redirect (verify) and for provider webhooks (handle_webhook_event);
whichever arrives first wins the pending -> paid compare-and-set and the
other observes already_settled.

Side effects after the transition (provisioning, notifications, audit) are
returned as post-commit events or reported through alerts. None of them can
un-confirm a payment.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from admin_alerts import AlertCategory, AlertSeverity
from models import LineItemType, Order, OrderStatus, PaymentStatus, ProvisioningKind, VerificationResult
from payment_validation import validate_settled_amount
from pricing_utils import format_money
from services import events
from services.errors import (
    BillingError, InvalidTransition, OrderNotFound, PaymentProviderError, ProvisioningDispatchFailure,
)
from services.events import CoreEvent
from services.invoices import InvoiceService
from services.payment_provider import ProviderSession, StripePaymentProvider
from services.provisioning import ProvisioningDispatcher
from services.repositories import OrderRepository

logger = logging.getLogger(__name__)

SETTLE_EVENTS = frozenset({
    'checkout.session.completed',
    'checkout.session.async_payment_succeeded',
})

CANCEL_EVENTS = frozenset({
    'checkout.session.expired',
    'checkout.session.async_payment_failed',
})

Sleep = Callable[[float], Awaitable[Any]]

class PaymentReconciler:

    def __init__(self, orders: OrderRepository, payment_provider: StripePaymentProvider,
                 provisioning: ProvisioningDispatcher, invoices: InvoiceService,
                 retry_delays: Sequence[float] = (0, 2, 4, 8), sleep: Sleep = asyncio.sleep):
        self.orders = orders
        self.payment_provider = payment_provider
        self.provisioning = provisioning
        self.invoices = invoices
        self.retry_delays = tuple(retry_delays)
        self._sleep = sleep

    # ====================================================================
    # VERIFY (customer redirect / polling)
    # ====================================================================

    async def verify(self, session_id: str, customer_id: Optional[str] = None) -> VerificationResult:
        """
        Confirm a checkout session and settle its order

        The provider may not have settled the session yet; retrieval is
        retried on the configured delay schedule before reporting unsettled.

        Args:
            session_id: Checkout session id from the success redirect
            customer_id: When given, the order must belong to this customer

        Returns:
            VerificationResult with paid/unsettled and whether this call settled the order

        Raises:
            PaymentProviderError: Every retrieval attempt failed
            OrderNotFound: Session carries no order reference, the order is gone,
                or it belongs to another customer
        """
        session: Optional[ProviderSession] = None
        last_error: Optional[PaymentProviderError] = None

        for attempt, delay in enumerate(self.retry_delays, start=1):
            if delay:
                await self._sleep(delay)
            try:
                session = await self.payment_provider.retrieve_session(session_id)
            except PaymentProviderError as e:
                last_error = e
                logger.warning(f"⚠️ Session {session_id} retrieval failed (attempt {attempt}/{len(self.retry_delays)})")
                continue
            if session.is_paid:
                break
            logger.info(f"💳 Session {session_id} is {session.payment_status} "
                        f"(attempt {attempt}/{len(self.retry_delays)})")

        if session is None:
            raise last_error or PaymentProviderError("Checkout session could not be retrieved")

        order_id = session.metadata.get('order_id')
        if not order_id:
            logger.error(f"❌ Session {session_id} has no order_id in metadata")
            raise OrderNotFound(f"Session {session_id} is not linked to an order")

        order = await self.orders.get(order_id)
        if customer_id is not None and (order is None or order.customer_id != customer_id):
            logger.warning(f"⚠️ Customer {customer_id} tried to verify session {session_id} for another order")
            raise OrderNotFound(f"Order {order_id} not found")

        if not session.is_paid:
            logger.info(f"💳 Session {session_id} still unsettled after {len(self.retry_delays)} attempts")
            return VerificationResult(
                payment_status=PaymentStatus.UNSETTLED,
                order_id=order_id,
                order_status=order.status if order else None,
            )

        return await self.settle_order(order_id, session)

    # ====================================================================
    # SETTLEMENT
    # ====================================================================

    async def settle_order(self, order_id: str, session: ProviderSession) -> VerificationResult:
        """
        Move a pending order to paid and queue its follow-on work

        Only the caller that wins the compare-and-set performs side effects.
        """
        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")

        if not await self.orders.compare_and_set_status(order_id, OrderStatus.PENDING, OrderStatus.PAID):
            current = await self.orders.get(order_id)
            if current.status is OrderStatus.CANCELLED:
                logger.error(f"❌ Paid session {session.id} arrived for cancelled order {order_id}")
                return VerificationResult(
                    payment_status=PaymentStatus.PAID,
                    order_id=order_id,
                    order_status=current.status,
                    events=(events.alert(
                        'payment_for_cancelled_order', order_id, AlertSeverity.CRITICAL,
                        AlertCategory.PAYMENT_PROCESSING,
                        f"Session {session.id} was paid but order {order_id} is cancelled",
                        session_id=session.id, amount_total=session.amount_total,
                    ),),
                )
            logger.info(f"🔒 Order {order_id} already {current.status.value}; settlement skipped")
            status, resumed = current.status, []
            if current.status is OrderStatus.PAID:
                status, resumed = await self._request_provisioning(current)
            return VerificationResult(
                payment_status=PaymentStatus.PAID,
                order_id=order_id,
                order_status=status,
                already_settled=True,
                events=tuple(resumed),
            )

        logger.info(f"💳 Order {order_id} settled by session {session.id}")
        post_commit: List[CoreEvent] = [
            events.notification('payment_confirmed', order_id, order.customer_id,
                                amount=format_money(order.total_amount, order.currency)),
            events.audit('payment_settled', order_id, session_id=session.id,
                         amount=f"{order.total_amount:.2f}", currency=order.currency),
        ]

        check = validate_settled_amount(order.total_amount, order.currency, session.amount_total, session.currency)
        if not check.valid:
            post_commit.append(events.alert(
                'settled_amount_mismatch', order_id, AlertSeverity.ERROR, AlertCategory.PAYMENT_PROCESSING,
                f"Order {order_id} settled with an unexpected amount", session_id=session.id, **check.to_details(),
            ))

        invoice_id = session.metadata.get('invoice_id')
        if invoice_id:
            post_commit.extend(await self._settle_invoice(order_id, invoice_id, session.id))

        status, dispatch_events = await self._request_provisioning(order)
        post_commit.extend(dispatch_events)

        return VerificationResult(
            payment_status=PaymentStatus.PAID,
            order_id=order_id,
            order_status=status,
            events=tuple(post_commit),
        )

    async def resume_provisioning(self, order_id: str) -> VerificationResult:
        """
        Re-queue provisioning for an order whose earlier dispatch failed

        Raises:
            OrderNotFound: Unknown order
            InvalidTransition: Order is not paid
        """
        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        if order.status is not OrderStatus.PAID:
            raise InvalidTransition('order', order.status.value, OrderStatus.PROVISIONING_REQUESTED.value)

        logger.info(f"🔁 Retrying provisioning for order {order_id}")
        status, dispatch_events = await self._request_provisioning(order)
        return VerificationResult(
            payment_status=PaymentStatus.PAID,
            order_id=order_id,
            order_status=status,
            already_settled=True,
            events=tuple(dispatch_events),
        )

    async def _request_provisioning(self, order: Order) -> Tuple[OrderStatus, List[CoreEvent]]:
        dispatch_events, dispatched = await self._dispatch_provisioning(order)
        if not dispatched:
            return OrderStatus.PAID, dispatch_events
        if await self.orders.compare_and_set_status(order.id, OrderStatus.PAID, OrderStatus.PROVISIONING_REQUESTED):
            return OrderStatus.PROVISIONING_REQUESTED, dispatch_events
        current = await self.orders.get(order.id)
        logger.info(f"🔒 Order {order.id} is {current.status.value}; provisioning_requested already recorded")
        return current.status, dispatch_events

    async def _settle_invoice(self, order_id: str, invoice_id: str, session_id: str) -> List[CoreEvent]:
        try:
            settlement = await self.invoices.settle_invoice_for_session(invoice_id, session_id)
        except BillingError as e:
            logger.error(f"❌ Could not settle invoice {invoice_id} for order {order_id}: {e}")
            return [events.alert('invoice_settlement_failed', order_id, AlertSeverity.ERROR,
                                 AlertCategory.PAYMENT_PROCESSING, f"Invoice {invoice_id} could not be settled",
                                 invoice_id=invoice_id, session_id=session_id)]
        return settlement.events

    async def _dispatch_provisioning(self, order: Order) -> Tuple[List[CoreEvent], bool]:
        failures: List[CoreEvent] = []
        for item in order.items:
            kind = ProvisioningKind(item.type.value)
            try:
                await self.provisioning.request_provisioning(item.ref_id, kind, order.id,
                                                             self._provisioning_payload(order, item.type))
            except ProvisioningDispatchFailure as e:
                failures.append(events.alert(
                    'provisioning_failed', order.id, AlertSeverity.ERROR, AlertCategory.PROVISIONING,
                    f"Could not queue {kind.value} provisioning for {item.ref_id}", error=str(e),
                ))
                failures.append(events.audit('provisioning_failed', order.id, ref_id=item.ref_id,
                                             provisioning_kind=kind.value, error=str(e)))
        if failures:
            logger.error(f"❌ Order {order.id} paid but provisioning dispatch failed; left in paid")
        return failures, not failures

    def _provisioning_payload(self, order: Order, item_type: LineItemType) -> Dict[str, Any]:
        payload: Dict[str, Any] = {'customer_id': order.customer_id}
        metadata = order.metadata
        if item_type is LineItemType.DOMAIN:
            payload.update({
                'years': metadata.get('years'),
                'id_protection': metadata.get('id_protection', False),
                'nameservers': metadata.get('nameservers', []),
            })
        else:
            payload['whm_package'] = metadata.get('whm_package')
            if metadata.get('domain'):
                payload['domain'] = metadata['domain']
        return payload

    # ====================================================================
    # WEBHOOKS
    # ====================================================================

    async def handle_webhook_event(self, event: Dict[str, Any]) -> Tuple[str, List[CoreEvent]]:
        """
        Apply a verified provider webhook event

        Returns:
            (action, events) where action is one of settled, already_settled,
            unsettled, cancelled, ignored
        """
        event_type = event.get('type', '')
        data = (event.get('data') or {}).get('object') or {}

        if event_type in SETTLE_EVENTS:
            session = ProviderSession.from_event_object(data)
            order_id = session.metadata.get('order_id')
            if not order_id:
                logger.warning(f"⚠️ Webhook {event_type} for session {session.id} has no order_id, ignoring")
                return 'ignored', []
            if not session.is_paid:
                logger.info(f"💳 Webhook {event_type}: session {session.id} is {session.payment_status}, waiting")
                return 'unsettled', []
            result = await self.settle_order(order_id, session)
            return ('already_settled' if result.already_settled else 'settled'), list(result.events)

        if event_type in CANCEL_EVENTS:
            order_id = (data.get('metadata') or {}).get('order_id')
            if not order_id:
                return 'ignored', []
            return await self._cancel_unpaid(order_id, event_type)

        logger.info(f"📨 Webhook {event_type} acknowledged (no action)")
        return 'ignored', []

    async def _cancel_unpaid(self, order_id: str, reason: str) -> Tuple[str, List[CoreEvent]]:
        order = await self.orders.get(order_id)
        if order is None:
            logger.warning(f"⚠️ Webhook {reason} for unknown order {order_id}")
            return 'ignored', []

        if not await self.orders.compare_and_set_status(order_id, OrderStatus.PENDING, OrderStatus.CANCELLED):
            logger.info(f"🔒 Order {order_id} is {order.status.value}; {reason} has no effect")
            return 'ignored', []

        logger.info(f"🚫 Order {order_id} cancelled by {reason}")
        return 'cancelled', [
            events.notification('order_cancelled', order_id, order.customer_id),
            events.audit('order_cancelled', order_id, reason=reason),
        ]
