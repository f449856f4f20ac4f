"""
Typed records and request/response structures for the billing core

Inbound JSON bodies are parsed into the *Request classes at the HTTP boundary;
services only ever see these validated structures, never raw dicts.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pricing_utils import to_decimal
from services.errors import ValidationError

MAX_REGISTRATION_YEARS = 10
SESSION_ID_PATTERN = re.compile(r'^[A-Za-z0-9_]{8,255}$')

# ====================================================================
# ENUMS
# ====================================================================

class TldCategory(Enum):
    GTLD = "gTLD"
    CCTLD = "ccTLD"
    STLD = "sTLD"

class OrderStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    PROVISIONING_REQUESTED = "provisioning_requested"
    CANCELLED = "cancelled"

class PendingDomainOrderStatus(Enum):
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PAID = "PAID"

class InvoiceStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"

class LineItemType(Enum):
    HOSTING = "hosting"
    DOMAIN = "domain"

class ProvisioningKind(Enum):
    DOMAIN = "domain"
    HOSTING = "hosting"

class PaymentStatus(Enum):
    PAID = "paid"
    UNSETTLED = "unsettled"

# ====================================================================
# PRICING RECORDS
# ====================================================================

@dataclass(frozen=True)
class ExchangeRate:
    """Conversion rate and margin between two currencies"""
    from_currency: str
    to_currency: str
    rate: Decimal
    margin: Decimal
    fetched_at: Optional[datetime] = None
    source: str = "database"

    def __post_init__(self):
        if self.rate <= 0:
            raise ValidationError(f"Exchange rate must be positive: {self.rate}")
        if not (Decimal('0') <= self.margin < Decimal('1')):
            raise ValidationError(f"Exchange margin must be in [0, 1): {self.margin}")

@dataclass(frozen=True)
class TldPriceEntry:
    tld: str
    category: TldCategory
    registration_prices: Dict[int, Decimal]
    renewal_price: Optional[Decimal]
    transfer_price: Optional[Decimal]
    currency: str
    source: str = "manual"
    updated_at: Optional[datetime] = None

    @property
    def base_price(self) -> Decimal:
        """One-year registration price"""
        return self.registration_prices[1]

@dataclass(frozen=True)
class HostingPlan:
    ref: str
    name: str
    stripe_price_id: str
    monthly_price: Decimal
    annual_price: Decimal
    currency: str
    whm_package: Optional[str] = None

@dataclass(frozen=True)
class AvailabilityResult:
    available: bool
    premium: bool = False

# ====================================================================
# QUOTE
# ====================================================================

@dataclass(frozen=True)
class DomainQuote:
    """
    A locked price for a domain registration

    Produced per request and never cached. The signature covers every
    price-defining field so checkout can detect a tampered or stale quote.
    """
    domain: str
    tld: str
    years: int
    id_protection: bool
    domain_price: Decimal
    id_protection_price: Decimal
    unit_price: Decimal
    total_price: Decimal
    currency: str
    available: bool
    quoted_at: datetime
    expires_at: datetime
    premium: bool = False
    availability_assumed: bool = False
    signature: str = ""

    def signing_payload(self) -> str:
        return "|".join([
            self.domain,
            self.tld,
            str(self.years),
            "1" if self.id_protection else "0",
            f"{self.domain_price:.2f}",
            f"{self.id_protection_price:.2f}",
            f"{self.total_price:.2f}",
            self.currency,
            self.quoted_at.isoformat(),
            self.expires_at.isoformat(),
        ])

    def to_dict(self) -> Dict[str, Any]:
        return {
            'domain': self.domain,
            'tld': self.tld,
            'years': self.years,
            'id_protection': self.id_protection,
            'domain_price': f"{self.domain_price:.2f}",
            'id_protection_price': f"{self.id_protection_price:.2f}",
            'unit_price': f"{self.unit_price:.2f}",
            'total_price': f"{self.total_price:.2f}",
            'currency': self.currency,
            'available': self.available,
            'premium': self.premium,
            'availability_assumed': self.availability_assumed,
            'quoted_at': self.quoted_at.isoformat(),
            'expires_at': self.expires_at.isoformat(),
            'signature': self.signature,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'DomainQuote':
        """Rebuild a quote submitted back by the client"""
        if not isinstance(data, Mapping):
            raise ValidationError("domain_quote must be an object")
        try:
            return cls(
                domain=_require_str(data, 'domain').lower(),
                tld=_require_str(data, 'tld').lower(),
                years=_parse_years(data.get('years')),
                id_protection=_parse_bool(data.get('id_protection', False), 'id_protection'),
                domain_price=_parse_money(data, 'domain_price'),
                id_protection_price=_parse_money(data, 'id_protection_price'),
                unit_price=_parse_money(data, 'unit_price'),
                total_price=_parse_money(data, 'total_price'),
                currency=_require_str(data, 'currency').upper(),
                available=_parse_bool(data.get('available', False), 'available'),
                premium=_parse_bool(data.get('premium', False), 'premium'),
                availability_assumed=_parse_bool(data.get('availability_assumed', False), 'availability_assumed'),
                quoted_at=_parse_datetime(data, 'quoted_at'),
                expires_at=_parse_datetime(data, 'expires_at'),
                signature=_require_str(data, 'signature'),
            )
        except (TypeError, KeyError) as e:
            raise ValidationError(f"Malformed domain_quote: {e}")

# ====================================================================
# ORDERS, PENDING DOMAIN ORDERS, INVOICES
# ====================================================================

@dataclass(frozen=True)
class OrderItem:
    type: LineItemType
    ref_id: str
    price: Decimal
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'ref_id': self.ref_id,
            'price': f"{self.price:.2f}",
            'description': self.description,
            'metadata': self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'OrderItem':
        return cls(
            type=LineItemType(data['type']),
            ref_id=str(data['ref_id']),
            price=to_decimal(data['price']),
            description=data.get('description', ''),
            metadata=dict(data.get('metadata') or {}),
        )

@dataclass
class Order:
    id: str
    customer_id: str
    items: List[OrderItem]
    total_amount: Decimal
    currency: str
    status: OrderStatus = OrderStatus.PENDING
    stripe_session_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

@dataclass
class PendingDomainOrder:
    id: str
    user_id: str
    domain_name: str
    years: int
    total_estimate: Decimal
    currency: str
    domain_price: Decimal
    hosting_price: Decimal = Decimal('0.00')
    hosting_package_ref: Optional[str] = None
    status: PendingDomainOrderStatus = PendingDomainOrderStatus.PENDING_REVIEW
    admin_notes: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

@dataclass
class Invoice:
    id: str
    customer_id: str
    invoice_number: str
    amount: Decimal
    currency: str
    status: InvoiceStatus = InvoiceStatus.PENDING
    stripe_session_id: Optional[str] = None
    order_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None

# ====================================================================
# IDENTITY AND REQUEST STRUCTS
# ====================================================================

@dataclass(frozen=True)
class CustomerIdentity:
    """Authenticated customer supplied by the identity provider"""
    customer_id: str
    email: str
    name: Optional[str] = None
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

@dataclass(frozen=True)
class QuoteRequest:
    domain: str
    years: int = 1
    id_protection: bool = False

    @classmethod
    def from_payload(cls, payload: Any) -> 'QuoteRequest':
        data = _require_object(payload)
        return cls(
            domain=_require_str(data, 'domain').strip().lower(),
            years=_parse_years(data.get('years', 1)),
            id_protection=_parse_bool(data.get('id_protection', False), 'id_protection'),
        )

@dataclass(frozen=True)
class SearchRequest:
    query: str
    tlds: Optional[List[str]] = None
    years: int = 1

    @classmethod
    def from_payload(cls, payload: Any) -> 'SearchRequest':
        data = _require_object(payload)
        tlds = data.get('tlds')
        if tlds is not None:
            if not isinstance(tlds, list) or not all(isinstance(t, str) and t.strip() for t in tlds):
                raise ValidationError("tlds must be a list of strings")
            tlds = [t.strip().lower() for t in tlds]
        return cls(
            query=_require_str(data, 'query'),
            tlds=tlds,
            years=_parse_years(data.get('years', 1)),
        )

@dataclass(frozen=True)
class CheckoutRequest:
    """Unified checkout: an optional hosting line and an optional domain line"""
    hosting_plan_ref: Optional[str] = None
    domain_quote: Optional[DomainQuote] = None

    @classmethod
    def from_payload(cls, payload: Any) -> 'CheckoutRequest':
        data = _require_object(payload)
        plan_ref = data.get('hosting_plan_ref')
        if plan_ref is not None and (not isinstance(plan_ref, str) or not plan_ref.strip()):
            raise ValidationError("hosting_plan_ref must be a non-empty string")
        quote_data = data.get('domain_quote')
        quote = DomainQuote.from_dict(quote_data) if quote_data is not None else None
        if plan_ref is None and quote is None:
            raise ValidationError("Checkout requires a hosting plan, a domain quote, or both")
        return cls(hosting_plan_ref=plan_ref.strip() if plan_ref else None, domain_quote=quote)

@dataclass(frozen=True)
class VerifyPaymentRequest:
    session_id: str

    @classmethod
    def from_payload(cls, payload: Any) -> 'VerifyPaymentRequest':
        data = _require_object(payload)
        session_id = _require_str(data, 'session_id').strip()
        if not SESSION_ID_PATTERN.match(session_id):
            raise ValidationError("session_id is malformed")
        return cls(session_id=session_id)

@dataclass(frozen=True)
class PendingDomainOrderRequest:
    domain_quote: DomainQuote
    hosting_plan_ref: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> 'PendingDomainOrderRequest':
        data = _require_object(payload)
        if 'domain_quote' not in data:
            raise ValidationError("domain_quote is required")
        plan_ref = data.get('hosting_plan_ref')
        if plan_ref is not None and not isinstance(plan_ref, str):
            raise ValidationError("hosting_plan_ref must be a string")
        return cls(domain_quote=DomainQuote.from_dict(data['domain_quote']), hosting_plan_ref=plan_ref or None)

@dataclass(frozen=True)
class ReviewRequest:
    notes: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> 'ReviewRequest':
        data = _require_object(payload or {})
        notes = data.get('notes')
        if notes is not None and not isinstance(notes, str):
            raise ValidationError("notes must be a string")
        return cls(notes=notes)

@dataclass(frozen=True)
class MarkInvoicePaidRequest:
    invoice_number: str
    payment_method: str = "manual"
    notes: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> 'MarkInvoicePaidRequest':
        data = _require_object(payload)
        notes = data.get('notes')
        if notes is not None and not isinstance(notes, str):
            raise ValidationError("notes must be a string")
        method = data.get('payment_method') or 'manual'
        if not isinstance(method, str):
            raise ValidationError("payment_method must be a string")
        return cls(
            invoice_number=_require_str(data, 'invoice_number').strip(),
            payment_method=method,
            notes=notes,
        )

# ====================================================================
# RESULTS
# ====================================================================

@dataclass(frozen=True)
class CheckoutResult:
    redirect_url: str
    order_id: str
    session_id: str

@dataclass(frozen=True)
class VerificationResult:
    payment_status: PaymentStatus
    order_id: Optional[str]
    order_status: Optional[OrderStatus] = None
    already_settled: bool = False
    events: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'payment_status': self.payment_status.value,
            'order_id': self.order_id,
            'order_status': self.order_status.value if self.order_status else None,
            'already_settled': self.already_settled,
        }

# ====================================================================
# PARSING HELPERS
# ====================================================================

def _require_object(payload: Any) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise ValidationError("Request body must be a JSON object")
    return payload

def _require_str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{key} is required")
    return value

def _parse_years(value: Any) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("years must be an integer")
    if value < 1 or value > MAX_REGISTRATION_YEARS:
        raise ValidationError(f"years must be between 1 and {MAX_REGISTRATION_YEARS}")
    return value

def _parse_bool(value: Any, key: str) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{key} must be a boolean")
    return value

def _parse_money(data: Mapping[str, Any], key: str) -> Decimal:
    value = data.get(key)
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{key} must be a monetary amount")
    try:
        amount = to_decimal(value)
    except ValueError:
        raise ValidationError(f"{key} must be a monetary amount")
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"{key} must be a non-negative amount")
    return amount

def _parse_datetime(data: Mapping[str, Any], key: str) -> datetime:
    raw = _require_str(data, key)
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"{key} must be an ISO-8601 timestamp")
    if parsed.tzinfo is None:
        raise ValidationError(f"{key} must include a timezone")
    return parsed
