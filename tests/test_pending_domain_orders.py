"""
Manual-review domain order tests
"""

import pytest
from decimal import Decimal

from models import PendingDomainOrderStatus
from services.errors import InvalidTransition, OrderNotFound, StaleQuoteMismatch, ValidationError
from conftest import make_customer


@pytest.fixture
def customer():
    return make_customer(customer_id='cust_7', email='buyer@example.test')


@pytest.fixture
async def submitted(services, customer):
    quote = await services.quote_engine.quote('example.com', 1, False)
    order, _ = await services.pending_domain_orders.submit(customer, quote, hosting_plan_ref='starter')
    return order


@pytest.mark.asyncio
class TestSubmit:

    async def test_estimate_includes_hosting(self, submitted):
        assert submitted.status == PendingDomainOrderStatus.PENDING_REVIEW
        assert submitted.domain_price == Decimal('12.99')
        # 4.99 x 12 months x 1 year
        assert submitted.hosting_price == Decimal('59.88')
        assert submitted.total_estimate == Decimal('72.87')
        assert submitted.user_id == 'cust_7'

    async def test_domain_only_estimate(self, services, customer):
        quote = await services.quote_engine.quote('example.co.uk', 2, True)

        order, events = await services.pending_domain_orders.submit(customer, quote)

        assert order.hosting_price == Decimal('0.00')
        assert order.total_estimate == Decimal('36.49')
        assert [event.kind for event in events] == ['domain_order_submitted']

    async def test_unknown_plan(self, services, customer):
        quote = await services.quote_engine.quote('example.com', 1, False)
        with pytest.raises(ValidationError):
            await services.pending_domain_orders.submit(customer, quote, hosting_plan_ref='enterprise')

    async def test_unsigned_quote_rejected(self, services, customer):
        quote = await services.quote_engine.price('example.com', 1, False)
        with pytest.raises(StaleQuoteMismatch):
            await services.pending_domain_orders.submit(customer, quote)


@pytest.mark.asyncio
class TestReview:

    async def test_approve_then_mark_paid(self, services, submitted):
        order, events = await services.pending_domain_orders.approve(submitted.id, 'admin_1', notes='Looks fine')

        assert order.status == PendingDomainOrderStatus.APPROVED
        assert order.reviewed_by == 'admin_1'
        assert order.admin_notes == 'Looks fine'
        assert [event.kind for event in events] == ['order_manually_approved', 'order_manually_approved']

        order, events = await services.pending_domain_orders.mark_paid(submitted.id, 'admin_1')
        assert order.status == PendingDomainOrderStatus.PAID
        assert [event.kind for event in events] == ['domain_order_paid']

    async def test_rejected_order_cannot_be_approved(self, services, submitted):
        order, events = await services.pending_domain_orders.reject(submitted.id, 'admin_1', notes='Trademark')
        assert order.status == PendingDomainOrderStatus.REJECTED
        assert events[0].payload == {'domain_name': 'example.com', 'notes': 'Trademark'}

        with pytest.raises(InvalidTransition):
            await services.pending_domain_orders.approve(submitted.id, 'admin_2')

        stored = services.repositories.pending_domain_orders.orders[submitted.id]
        assert stored.status == PendingDomainOrderStatus.REJECTED
        assert stored.reviewed_by == 'admin_1'

    async def test_cannot_mark_unreviewed_order_paid(self, services, submitted):
        with pytest.raises(InvalidTransition):
            await services.pending_domain_orders.mark_paid(submitted.id, 'admin_1')

    async def test_unknown_order(self, services):
        with pytest.raises(OrderNotFound):
            await services.pending_domain_orders.approve('missing', 'admin_1')

    async def test_rejection_notification_text(self, services, submitted):
        _, events = await services.pending_domain_orders.reject(submitted.id, 'admin_1', notes='Trademark')

        await services.events.drain(events)

        notification = services.repositories.activity.notifications[(submitted.id, 'order_manually_rejected')]
        assert notification['customer_id'] == 'cust_7'
        assert 'example.com' in notification['message']
        assert 'Trademark' in notification['message']
