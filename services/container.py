"""
Service wiring

Every repository and service is built once here and passed in explicitly.
main.py builds the PostgreSQL-backed set; tests and local runs build the
in-memory set with the same constructor.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from admin_alerts import AdminAlertConfig, AdminAlertSystem
from config import BillingConfig
from models import ProvisioningKind
from performance_cache import SimpleCache
from services.checkout_orchestrator import CheckoutOrchestrator
from services.events import EventDispatcher
from services.exchange_rates import ExchangeRateService
from services.invoices import InvoiceService
from services.payment_provider import StripePaymentProvider
from services.payment_reconciliation import PaymentReconciler
from services.pending_domain_orders import PendingDomainOrderService
from services.pricing_sync import PricingSync
from services.provisioning import HttpActivator, ProvisioningDispatcher
from services.quote_engine import QuoteEngine
from services.registrar import EnomRegistrarGateway
from services.repositories import (
    ActivityRepository, CustomerRepository, InMemoryActivityRepository, InMemoryCustomerRepository,
    InMemoryInvoiceRepository, InMemoryOrderRepository, InMemoryPendingDomainOrderRepository,
    InMemoryPricingRepository, InMemoryProvisioningQueue, InvoiceRepository, OrderRepository,
    PendingDomainOrderRepository, PostgresActivityRepository, PostgresCustomerRepository,
    PostgresInvoiceRepository, PostgresOrderRepository, PostgresPendingDomainOrderRepository,
    PostgresPricingRepository, PostgresProvisioningQueue, PricingRepository, ProvisioningQueue,
)
from services.tld_pricing import TldPricingService

logger = logging.getLogger(__name__)

@dataclass
class Repositories:
    pricing: PricingRepository
    orders: OrderRepository
    pending_domain_orders: PendingDomainOrderRepository
    invoices: InvoiceRepository
    customers: CustomerRepository
    provisioning: ProvisioningQueue
    activity: ActivityRepository

@dataclass
class BillingServices:
    config: BillingConfig
    repositories: Repositories
    registrar: EnomRegistrarGateway
    payment_provider: StripePaymentProvider
    exchange_rates: ExchangeRateService
    quote_engine: QuoteEngine
    checkout: CheckoutOrchestrator
    reconciler: PaymentReconciler
    invoices: InvoiceService
    pending_domain_orders: PendingDomainOrderService
    provisioning: ProvisioningDispatcher
    events: EventDispatcher
    alerts: AdminAlertSystem
    pricing_sync: PricingSync
    http_clients: List[httpx.AsyncClient] = field(default_factory=list)

    async def close(self):
        await self.provisioning.wait_idle()
        await self.registrar.close()
        for client in self.http_clients:
            await client.aclose()
        logger.info("✅ Billing services closed")

def postgres_repositories() -> Repositories:
    return Repositories(
        pricing=PostgresPricingRepository(),
        orders=PostgresOrderRepository(),
        pending_domain_orders=PostgresPendingDomainOrderRepository(),
        invoices=PostgresInvoiceRepository(),
        customers=PostgresCustomerRepository(),
        provisioning=PostgresProvisioningQueue(),
        activity=PostgresActivityRepository(),
    )

def in_memory_repositories(pricing: Optional[InMemoryPricingRepository] = None) -> Repositories:
    return Repositories(
        pricing=pricing or InMemoryPricingRepository(),
        orders=InMemoryOrderRepository(),
        pending_domain_orders=InMemoryPendingDomainOrderRepository(),
        invoices=InMemoryInvoiceRepository(),
        customers=InMemoryCustomerRepository(),
        provisioning=InMemoryProvisioningQueue(),
        activity=InMemoryActivityRepository(),
    )

def build_services(config: BillingConfig, repositories: Repositories,
                   registrar: Optional[EnomRegistrarGateway] = None,
                   payment_provider: Optional[StripePaymentProvider] = None,
                   alert_config: Optional[AdminAlertConfig] = None,
                   sleep=None) -> BillingServices:
    """
    Wire the billing core around a set of repositories

    Args:
        config: Loaded BillingConfig
        repositories: PostgreSQL or in-memory repositories
        registrar: Override the eNom gateway (tests)
        payment_provider: Override the Stripe adapter (tests)
        alert_config: Override admin alert settings
        sleep: Override the reconciliation retry sleep (tests)
    """
    http_clients: List[httpx.AsyncClient] = []

    registrar = registrar or EnomRegistrarGateway(
        config.enom_api_url, config.enom_uid, config.enom_token, timeout=config.registrar_timeout
    )
    payment_provider = payment_provider or StripePaymentProvider(
        config.stripe_secret_key, config.stripe_webhook_secret, timeout=config.stripe_timeout
    )

    alerts = AdminAlertSystem(repositories.activity, alert_config)
    event_dispatcher = EventDispatcher(repositories.activity, alerts)

    activators = {}
    if config.domain_activation_url or config.hosting_activation_url:
        activation_client = httpx.AsyncClient(timeout=httpx.Timeout(10.0))
        http_clients.append(activation_client)
        if config.domain_activation_url:
            activators[ProvisioningKind.DOMAIN] = HttpActivator(config.domain_activation_url, activation_client)
        if config.hosting_activation_url:
            activators[ProvisioningKind.HOSTING] = HttpActivator(config.hosting_activation_url, activation_client)
    provisioning = ProvisioningDispatcher(repositories.provisioning, activators, event_dispatcher)

    rate_cache = SimpleCache(default_ttl=config.rate_cache_ttl) if config.rate_cache_ttl > 0 else None
    exchange_rates = ExchangeRateService(repositories.pricing, config.fallback_rates, config.fallback_margin,
                                         cache=rate_cache)
    quote_engine = QuoteEngine(
        TldPricingService(repositories.pricing),
        exchange_rates,
        registrar,
        config.settlement_currency,
        config.id_protection_usd,
        config.quote_signing_secret,
        quote_ttl_seconds=config.quote_ttl_seconds,
    )

    invoices = InvoiceService(repositories.invoices)
    checkout = CheckoutOrchestrator(
        repositories.orders, repositories.customers, repositories.pricing, quote_engine, payment_provider,
        config.public_base_url, config.default_nameservers, config.settlement_currency,
    )

    reconciler_kwargs = {'retry_delays': config.verify_retry_delays}
    if sleep is not None:
        reconciler_kwargs['sleep'] = sleep
    reconciler = PaymentReconciler(repositories.orders, payment_provider, provisioning, invoices,
                                   **reconciler_kwargs)

    pending = PendingDomainOrderService(repositories.pending_domain_orders, repositories.pricing, quote_engine)
    pricing_sync = PricingSync(registrar, config.fallback_margin, api_key=config.exchange_rate_api_key)

    logger.info(f"✅ Billing services wired (activators: {[kind.value for kind in activators] or 'none'})")
    return BillingServices(
        config=config,
        repositories=repositories,
        registrar=registrar,
        payment_provider=payment_provider,
        exchange_rates=exchange_rates,
        quote_engine=quote_engine,
        checkout=checkout,
        reconciler=reconciler,
        invoices=invoices,
        pending_domain_orders=pending,
        provisioning=provisioning,
        events=event_dispatcher,
        alerts=alerts,
        pricing_sync=pricing_sync,
        http_clients=http_clients,
    )

def build_postgres_services(config: BillingConfig) -> BillingServices:
    return build_services(config, postgres_repositories())
