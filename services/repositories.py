"""
Repositories for pricing, orders, invoices and the notification/audit ledger

Each repository has a PostgreSQL implementation (raw SQL through database.py)
and an in-memory implementation used for local runs and tests. Every status
change is a compare-and-set: the write only lands if the row is still in the
expected state, and the caller learns whether it won.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from psycopg2.extras import Json

from database import execute_query, execute_returning, execute_update
from models import (
    ExchangeRate, HostingPlan, Invoice, InvoiceStatus, Order, OrderItem, OrderStatus,
    PendingDomainOrder, PendingDomainOrderStatus, ProvisioningKind, TldCategory, TldPriceEntry,
)

logger = logging.getLogger(__name__)

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

# ====================================================================
# INTERFACES
# ====================================================================

class PricingRepository(ABC):
    """Read-only view over materialised exchange rates, TLD prices and hosting plans"""

    @abstractmethod
    async def get_exchange_rate(self, from_currency: str, to_currency: str) -> Optional[ExchangeRate]:
        ...

    @abstractmethod
    async def get_tld_price(self, tld: str) -> Optional[TldPriceEntry]:
        ...

    @abstractmethod
    async def list_priced_tlds(self) -> List[str]:
        ...

    @abstractmethod
    async def get_hosting_plan(self, ref: str) -> Optional[HostingPlan]:
        ...

class OrderRepository(ABC):

    @abstractmethod
    async def create(self, order: Order) -> Order:
        ...

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        ...

    @abstractmethod
    async def set_session_id(self, order_id: str, session_id: str) -> None:
        ...

    @abstractmethod
    async def compare_and_set_status(self, order_id: str, expected: OrderStatus, new: OrderStatus) -> bool:
        """Write `new` only if the order is still `expected`; True when this call won"""

class PendingDomainOrderRepository(ABC):

    @abstractmethod
    async def create(self, order: PendingDomainOrder) -> PendingDomainOrder:
        ...

    @abstractmethod
    async def get(self, order_id: str) -> Optional[PendingDomainOrder]:
        ...

    @abstractmethod
    async def compare_and_set_status(self, order_id: str, expected: PendingDomainOrderStatus,
                                     new: PendingDomainOrderStatus, reviewed_by: Optional[str] = None,
                                     admin_notes: Optional[str] = None) -> bool:
        ...

class InvoiceRepository(ABC):

    @abstractmethod
    async def get(self, invoice_id: str) -> Optional[Invoice]:
        ...

    @abstractmethod
    async def get_by_number(self, invoice_number: str) -> Optional[Invoice]:
        ...

    @abstractmethod
    async def mark_paid(self, invoice_id: str, payment_method: str, notes: Optional[str] = None,
                        session_id: Optional[str] = None) -> bool:
        """Move pending/failed -> paid; False if already paid or refunded"""

class CustomerRepository(ABC):
    """Local mapping from our customer id to the payment provider's customer id"""

    @abstractmethod
    async def get_provider_customer_id(self, customer_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def save_provider_customer_id(self, customer_id: str, email: str, provider_customer_id: str) -> None:
        ...

class ProvisioningQueue(ABC):

    @abstractmethod
    async def enqueue(self, order_id: str, ref_id: str, kind: ProvisioningKind, action: str,
                      payload: Dict[str, Any]) -> Tuple[int, bool]:
        """Record a request once per (order, ref, kind); returns (request_id, created)"""

    @abstractmethod
    async def set_status(self, request_id: int, status: str, error_message: Optional[str] = None) -> None:
        ...

class ActivityRepository(ABC):
    """Notification ledger, audit log and stored admin alerts"""

    @abstractmethod
    async def record_notification(self, subject_id: str, kind: str, customer_id: Optional[str],
                                  title: str, message: str) -> bool:
        """Insert a notification; False if (subject_id, kind) was already notified"""

    @abstractmethod
    async def log_activity(self, subject_id: str, action: str, actor_id: Optional[str],
                           details: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def store_alert(self, alert: Dict[str, Any]) -> None:
        ...

# ====================================================================
# POSTGRESQL IMPLEMENTATIONS
# ====================================================================

class PostgresPricingRepository(PricingRepository):

    async def get_exchange_rate(self, from_currency: str, to_currency: str) -> Optional[ExchangeRate]:
        rows = await execute_query(
            """SELECT from_currency, to_currency, rate, margin, source, fetched_at
               FROM currency_rates WHERE from_currency = %s AND to_currency = %s""",
            (from_currency, to_currency)
        )
        if not rows:
            return None
        row = rows[0]
        return ExchangeRate(
            from_currency=row['from_currency'],
            to_currency=row['to_currency'],
            rate=Decimal(row['rate']),
            margin=Decimal(row['margin']),
            fetched_at=row['fetched_at'],
            source=row['source'],
        )

    async def get_tld_price(self, tld: str) -> Optional[TldPriceEntry]:
        rows = await execute_query("SELECT * FROM domain_tld_pricing WHERE tld = %s", (tld,))
        if not rows:
            return None
        return _tld_entry_from_row(rows[0])

    async def list_priced_tlds(self) -> List[str]:
        rows = await execute_query("SELECT tld FROM domain_tld_pricing ORDER BY tld")
        return [row['tld'] for row in rows]

    async def get_hosting_plan(self, ref: str) -> Optional[HostingPlan]:
        rows = await execute_query(
            "SELECT * FROM hosting_plans WHERE ref = %s AND is_active = TRUE", (ref,)
        )
        if not rows:
            return None
        row = rows[0]
        return HostingPlan(
            ref=row['ref'],
            name=row['name'],
            stripe_price_id=row['stripe_price_id'],
            monthly_price=Decimal(row['monthly_price']),
            annual_price=Decimal(row['annual_price']),
            currency=row['currency'],
            whm_package=row.get('whm_package'),
        )

def _tld_entry_from_row(row: Dict[str, Any]) -> TldPriceEntry:
    registration = {1: Decimal(row['reg_1y'])}
    for years, column in ((2, 'reg_2y'), (5, 'reg_5y'), (10, 'reg_10y')):
        if row.get(column) is not None:
            registration[years] = Decimal(row[column])
    return TldPriceEntry(
        tld=row['tld'],
        category=TldCategory(row['category']),
        registration_prices=registration,
        renewal_price=Decimal(row['renew_1y']) if row.get('renew_1y') is not None else None,
        transfer_price=Decimal(row['transfer_1y']) if row.get('transfer_1y') is not None else None,
        currency=row['currency'],
        source=row['source'],
        updated_at=row.get('updated_at'),
    )

class PostgresOrderRepository(OrderRepository):

    async def create(self, order: Order) -> Order:
        rows = await execute_returning(
            """INSERT INTO orders (id, customer_id, items, total_amount, currency, status, metadata)
               VALUES (%s, %s, %s, %s, %s, %s, %s)
               RETURNING created_at, updated_at""",
            (order.id, order.customer_id, Json([item.to_dict() for item in order.items]),
             order.total_amount, order.currency, order.status.value, Json(order.metadata))
        )
        row = rows[0]
        return replace(order, created_at=row['created_at'], updated_at=row['updated_at'])

    async def get(self, order_id: str) -> Optional[Order]:
        rows = await execute_query("SELECT * FROM orders WHERE id = %s", (order_id,))
        if not rows:
            return None
        row = rows[0]
        return Order(
            id=row['id'],
            customer_id=row['customer_id'],
            items=[OrderItem.from_dict(item) for item in row['items']],
            total_amount=Decimal(row['total_amount']),
            currency=row['currency'],
            status=OrderStatus(row['status']),
            stripe_session_id=row.get('stripe_session_id'),
            metadata=row.get('metadata') or {},
            created_at=row.get('created_at'),
            updated_at=row.get('updated_at'),
        )

    async def set_session_id(self, order_id: str, session_id: str) -> None:
        await execute_update(
            "UPDATE orders SET stripe_session_id = %s, updated_at = CURRENT_TIMESTAMP WHERE id = %s",
            (session_id, order_id)
        )

    async def compare_and_set_status(self, order_id: str, expected: OrderStatus, new: OrderStatus) -> bool:
        rows_updated = await execute_update(
            """UPDATE orders SET status = %s, updated_at = CURRENT_TIMESTAMP
               WHERE id = %s AND status = %s""",
            (new.value, order_id, expected.value)
        )
        return rows_updated == 1

class PostgresPendingDomainOrderRepository(PendingDomainOrderRepository):

    async def create(self, order: PendingDomainOrder) -> PendingDomainOrder:
        rows = await execute_returning(
            """INSERT INTO pending_domain_orders
                   (id, user_id, domain_name, years, domain_price, hosting_price, total_estimate,
                    currency, hosting_package_ref, status)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
               RETURNING created_at""",
            (order.id, order.user_id, order.domain_name, order.years, order.domain_price,
             order.hosting_price, order.total_estimate, order.currency, order.hosting_package_ref,
             order.status.value)
        )
        return replace(order, created_at=rows[0]['created_at'])

    async def get(self, order_id: str) -> Optional[PendingDomainOrder]:
        rows = await execute_query("SELECT * FROM pending_domain_orders WHERE id = %s", (order_id,))
        if not rows:
            return None
        row = rows[0]
        return PendingDomainOrder(
            id=row['id'],
            user_id=row['user_id'],
            domain_name=row['domain_name'],
            years=row['years'],
            total_estimate=Decimal(row['total_estimate']),
            currency=row['currency'],
            domain_price=Decimal(row['domain_price']),
            hosting_price=Decimal(row['hosting_price']),
            hosting_package_ref=row.get('hosting_package_ref'),
            status=PendingDomainOrderStatus(row['status']),
            admin_notes=row.get('admin_notes'),
            reviewed_by=row.get('reviewed_by'),
            reviewed_at=row.get('reviewed_at'),
            created_at=row.get('created_at'),
        )

    async def compare_and_set_status(self, order_id: str, expected: PendingDomainOrderStatus,
                                     new: PendingDomainOrderStatus, reviewed_by: Optional[str] = None,
                                     admin_notes: Optional[str] = None) -> bool:
        rows_updated = await execute_update(
            """UPDATE pending_domain_orders
               SET status = %s,
                   reviewed_by = COALESCE(%s, reviewed_by),
                   admin_notes = COALESCE(%s, admin_notes),
                   reviewed_at = CASE WHEN %s IS NOT NULL THEN CURRENT_TIMESTAMP ELSE reviewed_at END
               WHERE id = %s AND status = %s""",
            (new.value, reviewed_by, admin_notes, reviewed_by, order_id, expected.value)
        )
        return rows_updated == 1

class PostgresInvoiceRepository(InvoiceRepository):

    async def get(self, invoice_id: str) -> Optional[Invoice]:
        rows = await execute_query("SELECT * FROM invoices WHERE id = %s", (invoice_id,))
        return _invoice_from_row(rows[0]) if rows else None

    async def get_by_number(self, invoice_number: str) -> Optional[Invoice]:
        rows = await execute_query("SELECT * FROM invoices WHERE invoice_number = %s", (invoice_number,))
        return _invoice_from_row(rows[0]) if rows else None

    async def mark_paid(self, invoice_id: str, payment_method: str, notes: Optional[str] = None,
                        session_id: Optional[str] = None) -> bool:
        rows_updated = await execute_update(
            """UPDATE invoices
               SET status = 'paid', paid_at = CURRENT_TIMESTAMP, payment_method = %s,
                   notes = COALESCE(%s, notes),
                   stripe_session_id = COALESCE(%s, stripe_session_id)
               WHERE id = %s AND status IN ('pending', 'failed')""",
            (payment_method, notes, session_id, invoice_id)
        )
        return rows_updated == 1

def _invoice_from_row(row: Dict[str, Any]) -> Invoice:
    return Invoice(
        id=row['id'],
        customer_id=row['customer_id'],
        invoice_number=row['invoice_number'],
        amount=Decimal(row['amount']),
        currency=row['currency'],
        status=InvoiceStatus(row['status']),
        stripe_session_id=row.get('stripe_session_id'),
        order_id=row.get('order_id'),
        paid_at=row.get('paid_at'),
        payment_method=row.get('payment_method'),
        notes=row.get('notes'),
    )

class PostgresCustomerRepository(CustomerRepository):

    async def get_provider_customer_id(self, customer_id: str) -> Optional[str]:
        rows = await execute_query(
            "SELECT provider_customer_id FROM payment_customers WHERE customer_id = %s", (customer_id,)
        )
        return rows[0]['provider_customer_id'] if rows else None

    async def save_provider_customer_id(self, customer_id: str, email: str, provider_customer_id: str) -> None:
        await execute_update(
            """INSERT INTO payment_customers (customer_id, email, provider_customer_id)
               VALUES (%s, %s, %s)
               ON CONFLICT (customer_id) DO NOTHING""",
            (customer_id, email, provider_customer_id)
        )

class PostgresProvisioningQueue(ProvisioningQueue):

    async def enqueue(self, order_id: str, ref_id: str, kind: ProvisioningKind, action: str,
                      payload: Dict[str, Any]) -> Tuple[int, bool]:
        # xmax is 0 only for a freshly inserted row
        rows = await execute_returning(
            """INSERT INTO provisioning_requests (order_id, ref_id, kind, action, payload)
               VALUES (%s, %s, %s, %s, %s)
               ON CONFLICT (order_id, ref_id, kind) DO UPDATE SET updated_at = CURRENT_TIMESTAMP
               RETURNING id, (xmax = 0) AS created""",
            (order_id, ref_id, kind.value, action, Json(payload))
        )
        return rows[0]['id'], bool(rows[0]['created'])

    async def set_status(self, request_id: int, status: str, error_message: Optional[str] = None) -> None:
        await execute_update(
            """UPDATE provisioning_requests
               SET status = %s, error_message = %s, updated_at = CURRENT_TIMESTAMP
               WHERE id = %s""",
            (status, error_message, request_id)
        )

class PostgresActivityRepository(ActivityRepository):

    async def record_notification(self, subject_id: str, kind: str, customer_id: Optional[str],
                                  title: str, message: str) -> bool:
        rows_inserted = await execute_update(
            """INSERT INTO notification_ledger (subject_id, kind, customer_id, title, message)
               VALUES (%s, %s, %s, %s, %s)
               ON CONFLICT (subject_id, kind) DO NOTHING""",
            (subject_id, kind, customer_id, title, message)
        )
        return rows_inserted == 1

    async def log_activity(self, subject_id: str, action: str, actor_id: Optional[str],
                           details: Dict[str, Any]) -> None:
        await execute_update(
            "INSERT INTO activity_log (subject_id, action, actor_id, details) VALUES (%s, %s, %s, %s)",
            (subject_id, action, actor_id, Json(details))
        )

    async def store_alert(self, alert: Dict[str, Any]) -> None:
        await execute_update(
            """INSERT INTO admin_alerts (severity, category, component, message, details, fingerprint)
               VALUES (%s, %s, %s, %s, %s, %s)""",
            (alert['severity'], alert['category'], alert['component'], alert['message'],
             Json(alert.get('details')), alert['fingerprint'])
        )

# ====================================================================
# IN-MEMORY IMPLEMENTATIONS
# ====================================================================

class InMemoryPricingRepository(PricingRepository):
    """Pricing rows supplied at construction; read-only afterwards"""

    def __init__(self, rates: Iterable[ExchangeRate] = (), tld_prices: Iterable[TldPriceEntry] = (),
                 hosting_plans: Iterable[HostingPlan] = ()):
        self._rates = {(r.from_currency, r.to_currency): r for r in rates}
        self._tlds = {entry.tld: entry for entry in tld_prices}
        self._plans = {plan.ref: plan for plan in hosting_plans}

    async def get_exchange_rate(self, from_currency: str, to_currency: str) -> Optional[ExchangeRate]:
        return self._rates.get((from_currency, to_currency))

    async def get_tld_price(self, tld: str) -> Optional[TldPriceEntry]:
        return self._tlds.get(tld)

    async def list_priced_tlds(self) -> List[str]:
        return sorted(self._tlds)

    async def get_hosting_plan(self, ref: str) -> Optional[HostingPlan]:
        return self._plans.get(ref)

class InMemoryOrderRepository(OrderRepository):

    def __init__(self):
        self.orders: Dict[str, Order] = {}
        self.status_writes: List[Tuple[str, OrderStatus, OrderStatus]] = []
        self._lock = asyncio.Lock()

    async def create(self, order: Order) -> Order:
        async with self._lock:
            now = _utcnow()
            stored = replace(order, created_at=now, updated_at=now)
            self.orders[order.id] = stored
            return replace(stored)

    async def get(self, order_id: str) -> Optional[Order]:
        order = self.orders.get(order_id)
        return replace(order) if order else None

    async def set_session_id(self, order_id: str, session_id: str) -> None:
        async with self._lock:
            if order_id in self.orders:
                self.orders[order_id] = replace(self.orders[order_id], stripe_session_id=session_id,
                                                updated_at=_utcnow())

    async def compare_and_set_status(self, order_id: str, expected: OrderStatus, new: OrderStatus) -> bool:
        async with self._lock:
            order = self.orders.get(order_id)
            if order is None or order.status != expected:
                return False
            self.orders[order_id] = replace(order, status=new, updated_at=_utcnow())
            self.status_writes.append((order_id, expected, new))
            return True

class InMemoryPendingDomainOrderRepository(PendingDomainOrderRepository):

    def __init__(self):
        self.orders: Dict[str, PendingDomainOrder] = {}
        self._lock = asyncio.Lock()

    async def create(self, order: PendingDomainOrder) -> PendingDomainOrder:
        async with self._lock:
            stored = replace(order, created_at=_utcnow())
            self.orders[order.id] = stored
            return replace(stored)

    async def get(self, order_id: str) -> Optional[PendingDomainOrder]:
        order = self.orders.get(order_id)
        return replace(order) if order else None

    async def compare_and_set_status(self, order_id: str, expected: PendingDomainOrderStatus,
                                     new: PendingDomainOrderStatus, reviewed_by: Optional[str] = None,
                                     admin_notes: Optional[str] = None) -> bool:
        async with self._lock:
            order = self.orders.get(order_id)
            if order is None or order.status != expected:
                return False
            changes: Dict[str, Any] = {'status': new}
            if reviewed_by is not None:
                changes['reviewed_by'] = reviewed_by
                changes['reviewed_at'] = _utcnow()
            if admin_notes is not None:
                changes['admin_notes'] = admin_notes
            self.orders[order_id] = replace(order, **changes)
            return True

class InMemoryInvoiceRepository(InvoiceRepository):

    def __init__(self, invoices: Iterable[Invoice] = ()):
        self.invoices: Dict[str, Invoice] = {invoice.id: invoice for invoice in invoices}
        self._lock = asyncio.Lock()

    async def get(self, invoice_id: str) -> Optional[Invoice]:
        invoice = self.invoices.get(invoice_id)
        return replace(invoice) if invoice else None

    async def get_by_number(self, invoice_number: str) -> Optional[Invoice]:
        for invoice in self.invoices.values():
            if invoice.invoice_number == invoice_number:
                return replace(invoice)
        return None

    async def mark_paid(self, invoice_id: str, payment_method: str, notes: Optional[str] = None,
                        session_id: Optional[str] = None) -> bool:
        async with self._lock:
            invoice = self.invoices.get(invoice_id)
            if invoice is None or invoice.status not in (InvoiceStatus.PENDING, InvoiceStatus.FAILED):
                return False
            self.invoices[invoice_id] = replace(
                invoice,
                status=InvoiceStatus.PAID,
                paid_at=_utcnow(),
                payment_method=payment_method,
                notes=notes if notes is not None else invoice.notes,
                stripe_session_id=session_id or invoice.stripe_session_id,
            )
            return True

class InMemoryCustomerRepository(CustomerRepository):

    def __init__(self):
        self.customers: Dict[str, Tuple[str, str]] = {}

    async def get_provider_customer_id(self, customer_id: str) -> Optional[str]:
        entry = self.customers.get(customer_id)
        return entry[1] if entry else None

    async def save_provider_customer_id(self, customer_id: str, email: str, provider_customer_id: str) -> None:
        self.customers.setdefault(customer_id, (email, provider_customer_id))

class InMemoryProvisioningQueue(ProvisioningQueue):

    def __init__(self):
        self.requests: Dict[int, Dict[str, Any]] = {}
        self._next_id = 1

    async def enqueue(self, order_id: str, ref_id: str, kind: ProvisioningKind, action: str,
                      payload: Dict[str, Any]) -> Tuple[int, bool]:
        for request_id, request in self.requests.items():
            if (request['order_id'], request['ref_id'], request['kind']) == (order_id, ref_id, kind):
                return request_id, False
        request_id = self._next_id
        self._next_id += 1
        self.requests[request_id] = {
            'order_id': order_id, 'ref_id': ref_id, 'kind': kind, 'action': action,
            'payload': dict(payload), 'status': 'queued', 'error_message': None,
        }
        return request_id, True

    async def set_status(self, request_id: int, status: str, error_message: Optional[str] = None) -> None:
        if request_id in self.requests:
            self.requests[request_id]['status'] = status
            self.requests[request_id]['error_message'] = error_message

class InMemoryActivityRepository(ActivityRepository):

    def __init__(self):
        self.notifications: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.activity: List[Dict[str, Any]] = []
        self.alerts: List[Dict[str, Any]] = []

    async def record_notification(self, subject_id: str, kind: str, customer_id: Optional[str],
                                  title: str, message: str) -> bool:
        key = (subject_id, kind)
        if key in self.notifications:
            return False
        self.notifications[key] = {'customer_id': customer_id, 'title': title, 'message': message}
        return True

    async def log_activity(self, subject_id: str, action: str, actor_id: Optional[str],
                           details: Dict[str, Any]) -> None:
        self.activity.append({'subject_id': subject_id, 'action': action, 'actor_id': actor_id,
                              'details': dict(details)})

    async def store_alert(self, alert: Dict[str, Any]) -> None:
        self.alerts.append(dict(alert))
