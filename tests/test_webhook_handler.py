"""
HTTP boundary tests
Routes, identity headers, error mapping and the Stripe webhook endpoint
"""

import json
import pytest
from decimal import Decimal

from aiohttp import test_utils

from models import Invoice, OrderStatus
from services.errors import RegistrarUnavailable, ValidationError
from webhook_handler import create_app
from conftest import make_order

CUSTOMER_HEADERS = {'X-Customer-Id': 'cust_42', 'X-Customer-Email': 'owner@example.test'}
ADMIN_HEADERS = {'X-Customer-Id': 'admin_1', 'X-Customer-Email': 'ops@example.test', 'X-Customer-Role': 'admin'}


@pytest.fixture
async def client(services):
    test_client = test_utils.TestClient(test_utils.TestServer(create_app(services)))
    await test_client.start_server()
    yield test_client
    await test_client.close()


async def get_quote(client, domain='example.com', years=1, id_protection=False):
    response = await client.post('/api/domains/quote',
                                 json={'domain': domain, 'years': years, 'id_protection': id_protection})
    assert response.status == 200
    return await response.json()


@pytest.mark.asyncio
class TestQuoteRoutes:

    async def test_health(self, client):
        response = await client.get('/health')
        body = await response.json()
        assert response.status == 200
        assert body['status'] == 'healthy'
        assert body['checks']['registrar_configured'] is True

    async def test_quote(self, client):
        body = await get_quote(client, 'example.co.uk', 2, True)

        assert body['total_price'] == '36.49'
        assert body['id_protection_price'] == '16.51'
        assert body['currency'] == 'GBP'
        assert body['signature']

    async def test_search(self, client):
        response = await client.post('/api/domains/search', json={'query': 'myshop', 'tlds': ['.com', '.dev']})
        body = await response.json()
        assert [result['domain'] for result in body['results']] == ['myshop.com']

    async def test_unpriced_tld_is_422(self, client):
        response = await client.post('/api/domains/quote', json={'domain': 'example.dev'})
        assert response.status == 422
        assert (await response.json())['error'] == 'Unable to price this domain'

    @pytest.mark.parametrize("payload", [
        {'domain': 'example.com', 'years': 0},
        {'domain': 'example.com', 'years': '2'},
        {'domain': 'example.com', 'id_protection': 'yes'},
        {'years': 1},
        ['example.com'],
    ])
    async def test_invalid_quote_request_is_400(self, client, payload):
        response = await client.post('/api/domains/quote', json=payload)
        assert response.status == 400
        assert 'detail' in await response.json()

    async def test_malformed_json_is_400(self, client):
        response = await client.post('/api/domains/quote', data=b'{not json',
                                     headers={'Content-Type': 'application/json'})
        assert response.status == 400

    async def test_unexpected_error_is_500(self, client, mock_registrar):
        mock_registrar.check_availability.side_effect = RuntimeError("boom")
        response = await client.post('/api/domains/quote', json={'domain': 'example.com'})
        assert response.status == 500
        assert (await response.json()) == {'error': 'Internal server error'}


@pytest.mark.asyncio
class TestCheckoutRoutes:

    async def test_checkout_requires_identity(self, client):
        quote = await get_quote(client)
        response = await client.post('/api/checkout', json={'domain_quote': quote})
        assert response.status == 401

    async def test_checkout(self, client, services):
        quote = await get_quote(client)

        response = await client.post('/api/checkout', json={'hosting_plan_ref': 'starter', 'domain_quote': quote},
                                     headers=CUSTOMER_HEADERS)
        body = await response.json()

        assert response.status == 200
        assert body['session_id'] == 'cs_test_abc12345'
        assert body['redirect_url'].startswith('https://checkout.stripe.com/')
        order = services.repositories.orders.orders[body['order_id']]
        assert order.total_amount == Decimal('62.98')

    async def test_tampered_quote_is_409(self, client):
        quote = await get_quote(client)
        quote['total_price'] = '0.99'

        response = await client.post('/api/checkout', json={'domain_quote': quote}, headers=CUSTOMER_HEADERS)
        assert response.status == 409

    async def test_registrar_outage_at_checkout_is_503(self, client, mock_registrar):
        quote = await get_quote(client)
        mock_registrar.check_availability.side_effect = RegistrarUnavailable("timeout")

        response = await client.post('/api/checkout', json={'domain_quote': quote}, headers=CUSTOMER_HEADERS)
        assert response.status == 503

    async def test_empty_checkout_is_400(self, client):
        response = await client.post('/api/checkout', json={}, headers=CUSTOMER_HEADERS)
        assert response.status == 400

    async def test_verify_settles_and_notifies(self, client, services):
        await services.repositories.orders.create(make_order(customer_id='cust_42'))

        response = await client.post('/api/payments/verify', json={'session_id': 'cs_test_abc12345'},
                                     headers=CUSTOMER_HEADERS)
        body = await response.json()

        assert body == {'payment_status': 'paid', 'order_id': 'order-1',
                        'order_status': 'provisioning_requested', 'already_settled': False}
        assert ('order-1', 'payment_confirmed') in services.repositories.activity.notifications

    async def test_verify_of_another_customers_session_is_404(self, client, services):
        await services.repositories.orders.create(make_order(customer_id='cust_other'))

        response = await client.post('/api/payments/verify', json={'session_id': 'cs_test_abc12345'},
                                     headers=CUSTOMER_HEADERS)

        assert response.status == 404
        assert 'order-1' not in await response.text()
        assert services.repositories.orders.orders['order-1'].status == OrderStatus.PENDING

    async def test_admin_can_verify_any_session(self, client, services):
        await services.repositories.orders.create(make_order(customer_id='cust_other'))

        response = await client.post('/api/payments/verify', json={'session_id': 'cs_test_abc12345'},
                                     headers=ADMIN_HEADERS)

        assert (await response.json())['order_status'] == 'provisioning_requested'

    async def test_verify_rejects_malformed_session_id(self, client):
        response = await client.post('/api/payments/verify', json={'session_id': '../etc'},
                                     headers=CUSTOMER_HEADERS)
        assert response.status == 400

    async def test_cancel(self, client, services):
        await services.repositories.orders.create(make_order(customer_id='cust_42'))

        response = await client.post('/api/orders/order-1/cancel', headers=CUSTOMER_HEADERS)

        assert (await response.json()) == {'order_id': 'order-1', 'status': 'cancelled'}
        assert services.repositories.orders.orders['order-1'].status == OrderStatus.CANCELLED

    async def test_cancel_unknown_order_is_404(self, client):
        response = await client.post('/api/orders/nope/cancel', headers=CUSTOMER_HEADERS)
        assert response.status == 404


@pytest.mark.asyncio
class TestAdminRoutes:

    async def submit(self, client):
        quote = await get_quote(client)
        response = await client.post('/api/domain-orders', json={'domain_quote': quote}, headers=CUSTOMER_HEADERS)
        assert response.status == 201
        return await response.json()

    async def test_non_admin_is_403(self, client):
        order = await self.submit(client)
        response = await client.post(f"/api/admin/domain-orders/{order['id']}/approve", headers=CUSTOMER_HEADERS)
        assert response.status == 403

    async def test_reject_then_approve_is_409(self, client):
        order = await self.submit(client)
        assert order['status'] == 'PENDING_REVIEW'

        response = await client.post(f"/api/admin/domain-orders/{order['id']}/reject",
                                     json={'notes': 'Trademark conflict'}, headers=ADMIN_HEADERS)
        assert (await response.json())['status'] == 'REJECTED'

        response = await client.post(f"/api/admin/domain-orders/{order['id']}/approve", headers=ADMIN_HEADERS)
        assert response.status == 409

    async def test_approve_and_mark_paid(self, client):
        order = await self.submit(client)

        response = await client.post(f"/api/admin/domain-orders/{order['id']}/approve", headers=ADMIN_HEADERS)
        body = await response.json()
        assert body['status'] == 'APPROVED'
        assert body['reviewed_by'] == 'admin_1'

        response = await client.post(f"/api/admin/domain-orders/{order['id']}/mark-paid", headers=ADMIN_HEADERS)
        assert (await response.json())['status'] == 'PAID'

    async def test_retry_provisioning(self, client, services):
        await services.repositories.orders.create(make_order(status=OrderStatus.PAID))

        response = await client.post('/api/admin/orders/order-1/retry-provisioning', headers=ADMIN_HEADERS)

        assert (await response.json())['order_status'] == 'provisioning_requested'
        assert len(services.repositories.provisioning.requests) == 2

    async def test_retry_provisioning_is_admin_only(self, client, services):
        await services.repositories.orders.create(make_order(status=OrderStatus.PAID))
        response = await client.post('/api/admin/orders/order-1/retry-provisioning', headers=CUSTOMER_HEADERS)
        assert response.status == 403

    async def test_retry_provisioning_on_pending_order_is_409(self, client, services):
        await services.repositories.orders.create(make_order())
        response = await client.post('/api/admin/orders/order-1/retry-provisioning', headers=ADMIN_HEADERS)
        assert response.status == 409

    async def test_mark_invoice_paid(self, client, services):
        services.repositories.invoices.invoices['inv-1'] = Invoice(
            id='inv-1', customer_id='cust_42', invoice_number='INV-2026-0001', amount=Decimal('62.98'),
            currency='GBP',
        )
        payload = {'invoice_number': 'INV-2026-0001', 'payment_method': 'bank_transfer'}

        first = await client.post('/api/admin/invoices/mark-paid', json=payload, headers=ADMIN_HEADERS)
        second = await client.post('/api/admin/invoices/mark-paid', json=payload, headers=ADMIN_HEADERS)

        assert (await first.json()) == {'invoice_number': 'INV-2026-0001', 'status': 'paid', 'already_paid': False}
        assert (await second.json())['already_paid'] is True
        assert ('inv-1', 'invoice_paid') in services.repositories.activity.notifications


@pytest.mark.asyncio
class TestStripeWebhook:

    async def test_invalid_signature_is_400_and_alerted(self, client, services, mock_payment_provider):
        mock_payment_provider.construct_webhook_event.side_effect = ValidationError("Invalid webhook signature")

        response = await client.post('/webhook/stripe', data=b'{}', headers={'Stripe-Signature': 't=1,v1=bad'})

        assert response.status == 400
        assert services.repositories.activity.alerts[0]['component'] == 'webhook_signature_failed'

    async def test_completed_session_settles_order(self, client, services, mock_payment_provider):
        await services.repositories.orders.create(make_order())
        event = {
            'id': 'evt_1',
            'type': 'checkout.session.completed',
            'data': {'object': {'id': 'cs_test_abc12345', 'payment_status': 'paid', 'amount_total': 6298,
                                'currency': 'gbp', 'metadata': {'order_id': 'order-1'}}},
        }
        mock_payment_provider.construct_webhook_event.return_value = event

        response = await client.post('/webhook/stripe', data=json.dumps(event).encode(),
                                     headers={'Stripe-Signature': 't=1,v1=good'})

        assert (await response.json()) == {'received': True, 'action': 'settled'}
        signature = mock_payment_provider.construct_webhook_event.call_args.args[1]
        assert signature == 't=1,v1=good'
        assert services.repositories.orders.orders['order-1'].status == OrderStatus.PROVISIONING_REQUESTED
