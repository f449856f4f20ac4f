"""
Stripe adapter tests
SDK calls are patched; checks parameter mapping and error translation
"""

import json
import time
import pytest
from unittest.mock import patch

import stripe

from services.errors import PaymentProviderError, ValidationError
from services.payment_provider import ProviderSession, StripePaymentProvider


@pytest.fixture
def provider():
    return StripePaymentProvider('sk_test_dummy', 'whsec_test_dummy', timeout=5.0)


@pytest.mark.asyncio
class TestStripeCalls:

    async def test_find_customer_by_email(self, provider):
        with patch.object(stripe.Customer, 'list', return_value={'data': [{'id': 'cus_existing'}]}) as mocked:
            assert await provider.find_customer_by_email('owner@example.test') == 'cus_existing'
        assert mocked.call_args.kwargs == {'api_key': 'sk_test_dummy', 'email': 'owner@example.test', 'limit': 1}

    async def test_find_customer_none(self, provider):
        with patch.object(stripe.Customer, 'list', return_value={'data': []}):
            assert await provider.find_customer_by_email('nobody@example.test') is None

    async def test_create_customer_is_idempotent_by_key(self, provider):
        with patch.object(stripe.Customer, 'create', return_value={'id': 'cus_new'}) as mocked:
            customer_id = await provider.create_customer('owner@example.test', None, {'customer_id': 'cust_42'},
                                                         idempotency_key='customer-cust_42')
        assert customer_id == 'cus_new'
        assert mocked.call_args.kwargs['idempotency_key'] == 'customer-cust_42'
        assert 'name' not in mocked.call_args.kwargs

    async def test_create_checkout_session(self, provider):
        created = {'id': 'cs_test_abc12345', 'url': 'https://checkout.stripe.com/c/pay/cs_test_abc12345',
                   'status': 'open', 'payment_status': 'unpaid', 'metadata': {'order_id': 'order-1'}}
        with patch.object(stripe.checkout.Session, 'create', return_value=created) as mocked:
            session = await provider.create_checkout_session(
                customer_id='cus_1', line_items=[{'price': 'price_starter_annual', 'quantity': 1}],
                mode='subscription', success_url='https://portal.example.test/billing/success',
                cancel_url='https://portal.example.test/billing/cancelled',
                metadata={'order_id': 'order-1'}, idempotency_key='checkout-order-1',
            )

        assert session.id == 'cs_test_abc12345'
        assert session.metadata == {'order_id': 'order-1'}
        assert not session.is_paid
        assert mocked.call_args.kwargs['customer'] == 'cus_1'

    async def test_incomplete_session_is_an_error(self, provider):
        with patch.object(stripe.checkout.Session, 'create', return_value={'id': 'cs_test_abc12345'}):
            with pytest.raises(PaymentProviderError):
                await provider.create_checkout_session(
                    customer_id='cus_1', line_items=[], mode='payment', success_url='s', cancel_url='c',
                    metadata={}, idempotency_key='checkout-order-1',
                )

    async def test_retrieve_session(self, provider):
        retrieved = {'id': 'cs_test_abc12345', 'payment_status': 'paid', 'amount_total': 6298, 'currency': 'gbp',
                     'metadata': {'order_id': 'order-1'}}
        with patch.object(stripe.checkout.Session, 'retrieve', return_value=retrieved):
            session = await provider.retrieve_session('cs_test_abc12345')
        assert session.is_paid
        assert session.amount_total == 6298

    async def test_stripe_error_is_translated(self, provider):
        with patch.object(stripe.checkout.Session, 'retrieve', side_effect=stripe.APIConnectionError("network down")):
            with pytest.raises(PaymentProviderError):
                await provider.retrieve_session('cs_test_abc12345')

    async def test_timeout_is_translated(self):
        provider = StripePaymentProvider('sk_test_dummy', timeout=0.01)

        def slow(**kwargs):
            time.sleep(0.2)
            return {'data': []}

        with patch.object(stripe.Customer, 'list', side_effect=slow):
            with pytest.raises(PaymentProviderError):
                await provider.find_customer_by_email('owner@example.test')

    async def test_unconfigured_provider(self):
        with pytest.raises(PaymentProviderError):
            await StripePaymentProvider('').retrieve_session('cs_test_abc12345')


class TestWebhookVerification:

    def test_valid_signature_returns_plain_event(self, provider):
        payload = json.dumps({'id': 'evt_1', 'type': 'checkout.session.completed'}).encode()
        with patch.object(stripe.Webhook, 'construct_event') as mocked:
            event = provider.construct_webhook_event(payload, 't=1,v1=abc')
        assert event == {'id': 'evt_1', 'type': 'checkout.session.completed'}
        mocked.assert_called_once_with(payload, 't=1,v1=abc', 'whsec_test_dummy')

    def test_invalid_signature(self, provider):
        error = stripe.SignatureVerificationError("No signatures found", "t=1,v1=bad")
        with patch.object(stripe.Webhook, 'construct_event', side_effect=error):
            with pytest.raises(ValidationError):
                provider.construct_webhook_event(b'{}', 't=1,v1=bad')

    def test_missing_signature_header(self, provider):
        with pytest.raises(ValidationError):
            provider.construct_webhook_event(b'{}', None)

    def test_session_from_event_object(self):
        session = ProviderSession.from_event_object({'id': 'cs_1', 'payment_status': 'paid',
                                                     'metadata': {'order_id': 'order-1', 'attempt': 2}})
        assert session.is_paid
        assert session.metadata == {'order_id': 'order-1', 'attempt': '2'}
