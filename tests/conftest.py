"""
Shared test fixtures and configuration for the billing service test suite
Provides in-memory repositories, mocked registrar/payment provider and data factories
"""

import os
import pytest
import factory
from factory.faker import Faker
from factory.declarations import Sequence, LazyFunction
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Any, List
from unittest.mock import AsyncMock, MagicMock
import logging

from admin_alerts import AdminAlertConfig
from config import BillingConfig
from models import (
    AvailabilityResult, CustomerIdentity, ExchangeRate, HostingPlan, LineItemType, Order, OrderItem, OrderStatus,
    TldCategory, TldPriceEntry,
)
from services.container import build_services, in_memory_repositories
from services.exchange_rates import ExchangeRateService
from services.payment_provider import ProviderSession, StripePaymentProvider
from services.quote_engine import QuoteEngine
from services.registrar import EnomRegistrarGateway
from services.repositories import InMemoryPricingRepository
from services.tld_pricing import TldPricingService

# Configure test logging
logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger(__name__)

# Test environment configuration
test_env_vars = {
    'TEST_MODE': '1',  # CRITICAL: Prevent live credential usage during tests
    'QUOTE_SIGNING_SECRET': 'test-signing-secret',
    'STRIPE_SECRET_KEY': 'sk_test_dummy',
    'STRIPE_WEBHOOK_SECRET': 'whsec_test_dummy',
    'PUBLIC_BASE_URL': 'https://portal.example.test',
    'ADMIN_ALERT_WEBHOOK_URL': '',
}
for key, value in test_env_vars.items():
    os.environ[key] = value
os.environ.pop('DATABASE_URL', None)

FIXED_NOW = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)

class Clock:
    """Controllable clock for quote expiry"""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)

# Test data factories
class CustomerFactory(factory.Factory):  # type: ignore[misc]
    """Factory for creating authenticated customer data"""
    class Meta:  # type: ignore[misc]
        model = dict

    customer_id = Sequence(lambda n: f"cust_{1000 + n}")
    email = Faker('email')
    name = Faker('name')
    role = 'customer'

class TldPriceFactory(factory.Factory):  # type: ignore[misc]
    """Factory for creating TLD pricing rows"""
    class Meta:  # type: ignore[misc]
        model = dict

    tld = '.com'
    category = TldCategory.GTLD
    base_price = Decimal('12.99')
    currency = 'GBP'
    source = 'manual'
    updated_at = LazyFunction(lambda: FIXED_NOW - timedelta(days=1))

class HostingPlanFactory(factory.Factory):  # type: ignore[misc]
    """Factory for creating hosting plan data"""
    class Meta:  # type: ignore[misc]
        model = dict

    ref = 'starter'
    name = 'Starter'
    stripe_price_id = 'price_starter_annual'
    monthly_price = Decimal('4.99')
    annual_price = Decimal('49.99')
    currency = 'GBP'
    whm_package = 'codelab_starter'

def make_customer(**overrides) -> CustomerIdentity:
    return CustomerIdentity(**CustomerFactory(**overrides))

def make_tld_price(**overrides) -> TldPriceEntry:
    data = TldPriceFactory(**overrides)
    base = data.pop('base_price')
    return TldPriceEntry(
        registration_prices={1: base},
        renewal_price=base,
        transfer_price=base,
        **data,
    )

def make_hosting_plan(**overrides) -> HostingPlan:
    return HostingPlan(**HostingPlanFactory(**overrides))

def make_order(order_id: str = 'order-1', customer_id: str = 'cust_1', status: OrderStatus = OrderStatus.PENDING,
               items: List[OrderItem] = None, metadata: Dict[str, Any] = None) -> Order:
    items = items if items is not None else [
        OrderItem(type=LineItemType.HOSTING, ref_id='starter', price=Decimal('49.99')),
        OrderItem(type=LineItemType.DOMAIN, ref_id='example.com', price=Decimal('12.99')),
    ]
    return Order(
        id=order_id,
        customer_id=customer_id,
        items=items,
        total_amount=sum((item.price for item in items), Decimal('0')),
        currency='GBP',
        status=status,
        metadata=metadata if metadata is not None else {
            'domain': 'example.com', 'years': 1, 'id_protection': False,
            'nameservers': ['ns1.404codelab.com', 'ns2.404codelab.com'], 'whm_package': 'codelab_starter',
        },
    )

def make_session(session_id: str = 'cs_test_abc12345', payment_status: str = 'paid', order_id: str = 'order-1',
                 amount_total: int = 6298, **metadata) -> ProviderSession:
    return ProviderSession(
        id=session_id,
        url=f"https://checkout.stripe.com/c/pay/{session_id}",
        status='complete' if payment_status == 'paid' else 'open',
        payment_status=payment_status,
        amount_total=amount_total,
        currency='gbp',
        customer='cus_test123',
        metadata={'order_id': order_id, **metadata},
    )

@pytest.fixture
def clock():
    return Clock()

@pytest.fixture
def billing_config():
    return BillingConfig(env=dict(test_env_vars))

@pytest.fixture
def alert_config():
    return AdminAlertConfig(env={'ADMIN_ALERTS_ENABLED': 'true', 'ALERT_MIN_SEVERITY': 'INFO'})

@pytest.fixture
def pricing_repository():
    """GBP price rows for .com/.co.uk/.org, the USD->GBP rate and one hosting plan"""
    return InMemoryPricingRepository(
        rates=[ExchangeRate('USD', 'GBP', Decimal('0.79'), Decimal('0.05'))],
        tld_prices=[
            make_tld_price(tld='.com', base_price=Decimal('12.99')),
            make_tld_price(tld='.co.uk', category=TldCategory.CCTLD, base_price=Decimal('9.99')),
            make_tld_price(tld='.org', base_price=Decimal('10.49')),
        ],
        hosting_plans=[make_hosting_plan()],
    )

@pytest.fixture
def mock_registrar():
    """Registrar gateway that reports every domain available"""
    registrar = MagicMock(spec=EnomRegistrarGateway)
    registrar.is_configured = True
    registrar.check_availability = AsyncMock(return_value=AvailabilityResult(available=True, premium=False))
    registrar.get_product_price = AsyncMock(return_value=Decimal('10.00'))
    registrar.close = AsyncMock()
    return registrar

@pytest.fixture
def mock_payment_provider():
    """Stripe adapter with no existing customers and a fixed checkout session"""
    provider = MagicMock(spec=StripePaymentProvider)
    provider.find_customer_by_email = AsyncMock(return_value=None)
    provider.create_customer = AsyncMock(return_value='cus_test123')
    provider.create_checkout_session = AsyncMock(return_value=ProviderSession(
        id='cs_test_abc12345',
        url='https://checkout.stripe.com/c/pay/cs_test_abc12345',
        status='open',
        payment_status='unpaid',
    ))
    provider.retrieve_session = AsyncMock(return_value=make_session())
    provider.construct_webhook_event = MagicMock()
    return provider

@pytest.fixture
def fake_sleep():
    return AsyncMock(return_value=None)

@pytest.fixture
def exchange_rates(pricing_repository):
    return ExchangeRateService(pricing_repository, {'USD_TO_GBP': Decimal('0.79')}, Decimal('0.05'))

@pytest.fixture
def quote_engine(pricing_repository, exchange_rates, mock_registrar, clock):
    return QuoteEngine(
        TldPricingService(pricing_repository),
        exchange_rates,
        mock_registrar,
        settlement_currency='GBP',
        id_protection_usd=Decimal('9.95'),
        signing_secret='test-signing-secret',
        quote_ttl_seconds=1800,
        clock=clock,
    )

@pytest.fixture
def services(billing_config, pricing_repository, mock_registrar, mock_payment_provider, alert_config, fake_sleep):
    """Fully wired billing core over in-memory repositories"""
    return build_services(
        billing_config,
        in_memory_repositories(pricing_repository),
        registrar=mock_registrar,
        payment_provider=mock_payment_provider,
        alert_config=alert_config,
        sleep=fake_sleep,
    )
