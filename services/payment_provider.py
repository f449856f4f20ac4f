"""
Stripe payment provider adapter
Customer lookup/creation, checkout sessions, session retrieval and webhook verification

The stripe SDK is synchronous; every call runs on a worker thread with a
bounded timeout so the event loop is never blocked on the provider.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import stripe

from performance_monitor import monitor_performance
from services.errors import PaymentProviderError, ValidationError

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class ProviderSession:
    """The parts of a Stripe Checkout Session the billing core reads"""
    id: str
    url: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    customer: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == 'paid'

    @classmethod
    def from_stripe(cls, session: Any) -> 'ProviderSession':
        return cls(
            id=_field(session, 'id'),
            url=_field(session, 'url'),
            status=_field(session, 'status'),
            payment_status=_field(session, 'payment_status'),
            amount_total=_field(session, 'amount_total'),
            currency=_field(session, 'currency'),
            customer=_field(session, 'customer'),
            metadata=_plain_dict(_field(session, 'metadata')),
        )

    @classmethod
    def from_event_object(cls, data: Dict[str, Any]) -> 'ProviderSession':
        return cls(
            id=data.get('id', ''),
            url=data.get('url'),
            status=data.get('status'),
            payment_status=data.get('payment_status'),
            amount_total=data.get('amount_total'),
            currency=data.get('currency'),
            customer=data.get('customer'),
            metadata={str(k): str(v) for k, v in (data.get('metadata') or {}).items()},
        )

def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)

def _plain_dict(obj: Any) -> Dict[str, str]:
    if not obj:
        return {}
    if isinstance(obj, dict):
        items = obj.items()
    else:
        items = ((key, obj[key]) for key in obj.keys())
    return {str(key): str(value) for key, value in items}

class StripePaymentProvider:
    """Async facade over the stripe SDK"""

    def __init__(self, api_key: str, webhook_secret: str = '', timeout: float = 15.0):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout = timeout

    async def _call(self, operation: str, func, **params):
        if not self.api_key:
            raise PaymentProviderError("Payment provider is not configured")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, api_key=self.api_key, **params),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"❌ Stripe {operation} timed out after {self.timeout:.0f}s")
            raise PaymentProviderError(f"Payment provider timed out during {operation}")
        except stripe.StripeError as e:
            logger.error(f"❌ Stripe {operation} failed: {type(e).__name__}: {e.user_message or e}")
            raise PaymentProviderError(f"Payment provider error during {operation}")

    @monitor_performance("stripe_customer_lookup")
    async def find_customer_by_email(self, email: str) -> Optional[str]:
        """Return the id of an existing provider customer with this email, if any"""
        result = await self._call('customer lookup', stripe.Customer.list, email=email, limit=1)
        customers = _field(result, 'data') or []
        if customers:
            return _field(customers[0], 'id')
        return None

    @monitor_performance("stripe_customer_create")
    async def create_customer(self, email: str, name: Optional[str], metadata: Dict[str, str],
                              idempotency_key: str) -> str:
        params: Dict[str, Any] = {'email': email, 'metadata': metadata, 'idempotency_key': idempotency_key}
        if name:
            params['name'] = name
        customer = await self._call('customer create', stripe.Customer.create, **params)
        return _field(customer, 'id')

    @monitor_performance("stripe_session_create")
    async def create_checkout_session(self, *, customer_id: str, line_items: List[Dict[str, Any]], mode: str,
                                      success_url: str, cancel_url: str, metadata: Dict[str, str],
                                      idempotency_key: str) -> ProviderSession:
        session = await self._call(
            'checkout session create',
            stripe.checkout.Session.create,
            customer=customer_id,
            line_items=line_items,
            mode=mode,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        provider_session = ProviderSession.from_stripe(session)
        if not provider_session.id or not provider_session.url:
            raise PaymentProviderError("Payment provider returned an incomplete checkout session")
        return provider_session

    @monitor_performance("stripe_session_retrieve")
    async def retrieve_session(self, session_id: str) -> ProviderSession:
        session = await self._call('checkout session retrieve', stripe.checkout.Session.retrieve, id=session_id)
        return ProviderSession.from_stripe(session)

    def construct_webhook_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify a webhook delivery and return the event as a plain dict

        Raises:
            ValidationError: Missing/invalid signature or malformed payload
        """
        if not self.webhook_secret:
            raise ValidationError("Webhook secret is not configured")
        if not signature:
            raise ValidationError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError:
            logger.warning("⚠️ Stripe webhook signature verification failed")
            raise ValidationError("Invalid webhook signature")
        except ValueError:
            raise ValidationError("Malformed webhook payload")
        return json.loads(payload)
