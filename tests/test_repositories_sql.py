"""
PostgreSQL repository tests
SQL helpers are patched; these check row mapping and compare-and-set semantics
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from models import (
    InvoiceStatus, OrderStatus, PendingDomainOrder, PendingDomainOrderStatus, ProvisioningKind, TldCategory,
)
from services.repositories import (
    PostgresActivityRepository, PostgresInvoiceRepository, PostgresOrderRepository,
    PostgresPendingDomainOrderRepository, PostgresPricingRepository, PostgresProvisioningQueue,
)
from conftest import make_order

NOW = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def mock_query():
    with patch('services.repositories.execute_query', new_callable=AsyncMock) as mocked:
        yield mocked


@pytest.fixture
def mock_update():
    with patch('services.repositories.execute_update', new_callable=AsyncMock) as mocked:
        yield mocked


@pytest.fixture
def mock_returning():
    with patch('services.repositories.execute_returning', new_callable=AsyncMock) as mocked:
        yield mocked


@pytest.mark.asyncio
class TestPricingRows:

    async def test_exchange_rate_row(self, mock_query):
        mock_query.return_value = [{
            'from_currency': 'USD', 'to_currency': 'GBP', 'rate': Decimal('0.791200'),
            'margin': Decimal('0.0500'), 'source': 'exchangerate-api', 'fetched_at': NOW,
        }]

        rate = await PostgresPricingRepository().get_exchange_rate('USD', 'GBP')

        assert rate.rate == Decimal('0.7912')
        assert rate.margin == Decimal('0.05')
        assert mock_query.await_args.args[1] == ('USD', 'GBP')

    async def test_missing_rate_row(self, mock_query):
        mock_query.return_value = []
        assert await PostgresPricingRepository().get_exchange_rate('EUR', 'GBP') is None

    async def test_tld_row(self, mock_query):
        mock_query.return_value = [{
            'tld': '.co.uk', 'category': 'ccTLD', 'reg_1y': Decimal('9.99'), 'reg_2y': Decimal('19.98'),
            'reg_5y': None, 'reg_10y': None, 'renew_1y': Decimal('9.99'), 'transfer_1y': None,
            'currency': 'GBP', 'source': 'manual', 'updated_at': NOW,
        }]

        entry = await PostgresPricingRepository().get_tld_price('.co.uk')

        assert entry.category == TldCategory.CCTLD
        assert entry.base_price == Decimal('9.99')
        assert entry.registration_prices == {1: Decimal('9.99'), 2: Decimal('19.98')}
        assert entry.transfer_price is None

    async def test_hosting_plan_row(self, mock_query):
        mock_query.return_value = [{
            'ref': 'starter', 'name': 'Starter', 'stripe_price_id': 'price_starter_annual',
            'monthly_price': Decimal('4.99'), 'annual_price': Decimal('49.99'), 'currency': 'GBP',
            'whm_package': 'codelab_starter',
        }]

        plan = await PostgresPricingRepository().get_hosting_plan('starter')

        assert plan.annual_price == Decimal('49.99')
        assert 'is_active = TRUE' in mock_query.await_args.args[0]


@pytest.mark.asyncio
class TestOrderRows:

    async def test_compare_and_set_won(self, mock_update):
        mock_update.return_value = 1

        won = await PostgresOrderRepository().compare_and_set_status('order-1', OrderStatus.PENDING, OrderStatus.PAID)

        assert won is True
        sql, params = mock_update.await_args.args
        assert 'WHERE id = %s AND status = %s' in sql
        assert params == ('paid', 'order-1', 'pending')

    async def test_compare_and_set_lost(self, mock_update):
        mock_update.return_value = 0
        assert not await PostgresOrderRepository().compare_and_set_status('order-1', OrderStatus.PENDING,
                                                                          OrderStatus.PAID)

    async def test_create_returns_timestamps(self, mock_query, mock_returning):
        mock_returning.return_value = [{'created_at': NOW, 'updated_at': NOW}]

        order = await PostgresOrderRepository().create(make_order())

        assert order.created_at == NOW
        # Inserts go through the single-attempt helper, never the retrying read path
        mock_query.assert_not_called()
        params = mock_returning.await_args.args[1]
        assert params[0] == 'order-1'
        assert params[5] == 'pending'
        assert params[2].adapted[0]['price'] == '49.99'

    async def test_get_maps_items(self, mock_query):
        mock_query.return_value = [{
            'id': 'order-1', 'customer_id': 'cust_1', 'total_amount': Decimal('62.98'), 'currency': 'GBP',
            'status': 'provisioning_requested', 'stripe_session_id': 'cs_test_abc12345', 'metadata': {},
            'items': [
                {'type': 'hosting', 'ref_id': 'starter', 'price': '49.99'},
                {'type': 'domain', 'ref_id': 'example.com', 'price': '12.99'},
            ],
            'created_at': NOW, 'updated_at': NOW,
        }]

        order = await PostgresOrderRepository().get('order-1')

        assert order.status == OrderStatus.PROVISIONING_REQUESTED
        assert [item.price for item in order.items] == [Decimal('49.99'), Decimal('12.99')]


@pytest.mark.asyncio
class TestOtherRows:

    async def test_pending_domain_order_review_write(self, mock_update):
        mock_update.return_value = 1

        won = await PostgresPendingDomainOrderRepository().compare_and_set_status(
            'pdo-1', PendingDomainOrderStatus.PENDING_REVIEW, PendingDomainOrderStatus.APPROVED,
            reviewed_by='admin_1', admin_notes='ok',
        )

        assert won
        params = mock_update.await_args.args[1]
        assert params == ('APPROVED', 'admin_1', 'ok', 'admin_1', 'pdo-1', 'PENDING_REVIEW')

    async def test_pending_domain_order_insert_is_single_attempt(self, mock_query, mock_returning):
        mock_returning.return_value = [{'created_at': NOW}]
        order = PendingDomainOrder(id='pdo-1', user_id='cust_1', domain_name='example.com', years=2,
                                   total_estimate=Decimal('25.98'), currency='GBP', domain_price=Decimal('25.98'))

        stored = await PostgresPendingDomainOrderRepository().create(order)

        assert stored.created_at == NOW
        mock_query.assert_not_called()
        params = mock_returning.await_args.args[1]
        assert params[:4] == ('pdo-1', 'cust_1', 'example.com', 2)
        assert params[-1] == 'PENDING_REVIEW'

    async def test_invoice_mark_paid_only_from_payable_states(self, mock_update):
        mock_update.return_value = 0

        won = await PostgresInvoiceRepository().mark_paid('inv-1', 'manual')

        assert won is False
        assert "status IN ('pending', 'failed')" in mock_update.await_args.args[0]

    async def test_invoice_row(self, mock_query):
        mock_query.return_value = [{
            'id': 'inv-1', 'customer_id': 'cust_1', 'invoice_number': 'INV-2026-0001',
            'amount': Decimal('62.98'), 'currency': 'GBP', 'status': 'refunded',
        }]
        invoice = await PostgresInvoiceRepository().get_by_number('INV-2026-0001')
        assert invoice.status == InvoiceStatus.REFUNDED

    async def test_notification_ledger_conflict(self, mock_update):
        mock_update.return_value = 0

        inserted = await PostgresActivityRepository().record_notification(
            'order-1', 'payment_confirmed', 'cust_1', 'Payment confirmed', 'Thanks')

        assert inserted is False
        assert 'ON CONFLICT (subject_id, kind) DO NOTHING' in mock_update.await_args.args[0]

    @pytest.mark.parametrize("created", [True, False])
    async def test_provisioning_enqueue(self, mock_query, mock_returning, created):
        mock_returning.return_value = [{'id': 17, 'created': created}]

        result = await PostgresProvisioningQueue().enqueue('order-1', 'example.com', ProvisioningKind.DOMAIN,
                                                           'activate', {'years': 1})

        assert result == (17, created)
        mock_query.assert_not_called()
        sql, params = mock_returning.await_args.args
        assert 'ON CONFLICT (order_id, ref_id, kind)' in sql
        assert params[:4] == ('order-1', 'example.com', 'domain', 'activate')
