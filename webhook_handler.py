"""
HTTP boundary for the billing service
aiohttp routes for domain search/quotes, checkout, payment verification,
manual-review domain orders, admin invoice settlement and Stripe webhooks

Request bodies are parsed into typed request structs before reaching the
core. Core errors are mapped to status codes in one middleware. Post-commit
events returned by the core are drained here, after the state change.
"""

import json
import logging
import time
from typing import Any, Dict, Iterable

from aiohttp import web
from aiohttp.web_request import Request
from aiohttp.web_response import Response

from admin_alerts import AlertCategory, AlertSeverity
from database import ping_database
from models import (
    CheckoutRequest, CustomerIdentity, MarkInvoicePaidRequest, PendingDomainOrder, PendingDomainOrderRequest,
    QuoteRequest, ReviewRequest, SearchRequest, VerifyPaymentRequest,
)
from performance_monitor import get_performance_stats
from services import events
from services.container import BillingServices
from services.errors import (
    BillingError, ConfigurationError, DomainUnavailable, InvalidTransition, OrderNotFound, PaymentProviderError,
    ProvisioningDispatchFailure, RegistrarError, RegistrarUnavailable, StaleQuoteMismatch, TldNotPriced,
    ValidationError,
)
from services.events import CoreEvent

logger = logging.getLogger(__name__)

# Suppress aiohttp access logs for successful requests but keep errors
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

SERVICES_KEY = web.AppKey('billing_services', BillingServices)

# Most specific first; RegistrarUnavailable must precede RegistrarError
ERROR_STATUS = (
    (ValidationError, 400),
    (OrderNotFound, 404),
    (DomainUnavailable, 409),
    (StaleQuoteMismatch, 409),
    (InvalidTransition, 409),
    (TldNotPriced, 422),
    (RegistrarUnavailable, 503),
    (RegistrarError, 502),
    (PaymentProviderError, 502),
    (ProvisioningDispatchFailure, 502),
    (ConfigurationError, 500),
)

# Errors whose message is safe and useful to show the caller
DETAILED_ERRORS = (ValidationError, InvalidTransition)

# ====================================================================
# MIDDLEWARE AND HELPERS
# ====================================================================

def _error_response(error: BillingError) -> Response:
    status = 500
    for error_type, error_status in ERROR_STATUS:
        if isinstance(error, error_type):
            status = error_status
            break
    body = {'error': error.public_message}
    if isinstance(error, DETAILED_ERRORS):
        body['detail'] = str(error)
    return web.json_response(body, status=status)

@web.middleware
async def error_middleware(request: Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except BillingError as e:
        logger.info(f"{request.method} {request.path} -> {type(e).__name__}: {e}")
        return _error_response(e)
    except Exception:
        logger.exception(f"❌ Unhandled error on {request.method} {request.path}")
        return web.json_response({'error': 'Internal server error'}, status=500)

def _json_error(exc_type, message: str) -> web.HTTPException:
    return exc_type(text=json.dumps({'error': message}), content_type='application/json')

async def _read_json(request: Request, allow_empty: bool = False) -> Any:
    if allow_empty and not request.can_read_body:
        return {}
    try:
        return await request.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON")

def get_identity(request: Request) -> CustomerIdentity:
    """Identity supplied by the identity provider's gateway in trusted headers"""
    customer_id = request.headers.get('X-Customer-Id', '').strip()
    email = request.headers.get('X-Customer-Email', '').strip()
    if not customer_id or not email:
        raise _json_error(web.HTTPUnauthorized, 'Authentication required')
    return CustomerIdentity(
        customer_id=customer_id,
        email=email,
        name=request.headers.get('X-Customer-Name') or None,
        role=request.headers.get('X-Customer-Role', 'customer').strip().lower(),
    )

def require_admin(request: Request) -> CustomerIdentity:
    identity = get_identity(request)
    if not identity.is_admin:
        logger.warning(f"⚠️ Non-admin {identity.customer_id} attempted {request.method} {request.path}")
        raise _json_error(web.HTTPForbidden, 'Admin access required')
    return identity

async def _drain(request: Request, pending: Iterable[CoreEvent]) -> None:
    pending = list(pending)
    if pending:
        await request.app[SERVICES_KEY].events.drain(pending)

def _pending_order_to_dict(order: PendingDomainOrder) -> Dict[str, Any]:
    return {
        'id': order.id,
        'domain_name': order.domain_name,
        'years': order.years,
        'total_estimate': f"{order.total_estimate:.2f}",
        'currency': order.currency,
        'hosting_package_ref': order.hosting_package_ref,
        'status': order.status.value,
        'admin_notes': order.admin_notes,
        'reviewed_by': order.reviewed_by,
    }

# ====================================================================
# HANDLERS
# ====================================================================

async def health_handler(request: Request) -> Response:
    services = request.app[SERVICES_KEY]
    checks: Dict[str, Any] = {
        'performance': get_performance_stats(),
        'registrar_configured': services.registrar.is_configured,
        'payment_provider_configured': bool(services.config.stripe_secret_key),
    }
    healthy = True
    if services.config.database_url:
        checks['database'] = await ping_database()
        healthy = checks['database']

    return web.json_response({
        'status': 'healthy' if healthy else 'degraded',
        'service': 'billing',
        'timestamp': time.time(),
        'checks': checks,
    }, status=200 if healthy else 503)

async def search_handler(request: Request) -> Response:
    search = SearchRequest.from_payload(await _read_json(request))
    results = await request.app[SERVICES_KEY].quote_engine.search(search.query, search.tlds, search.years)
    return web.json_response({'results': [quote.to_dict() for quote in results]})

async def quote_handler(request: Request) -> Response:
    quote_request = QuoteRequest.from_payload(await _read_json(request))
    quote = await request.app[SERVICES_KEY].quote_engine.quote(
        quote_request.domain, quote_request.years, quote_request.id_protection
    )
    return web.json_response(quote.to_dict())

async def checkout_handler(request: Request) -> Response:
    customer = get_identity(request)
    checkout = CheckoutRequest.from_payload(await _read_json(request))
    result = await request.app[SERVICES_KEY].checkout.create_combined_checkout(
        customer, checkout.hosting_plan_ref, checkout.domain_quote
    )
    return web.json_response({
        'redirect_url': result.redirect_url,
        'order_id': result.order_id,
        'session_id': result.session_id,
    })

async def verify_payment_handler(request: Request) -> Response:
    customer = get_identity(request)
    verify = VerifyPaymentRequest.from_payload(await _read_json(request))
    result = await request.app[SERVICES_KEY].reconciler.verify(
        verify.session_id, None if customer.is_admin else customer.customer_id
    )
    await _drain(request, result.events)
    return web.json_response(result.to_dict())

async def cancel_order_handler(request: Request) -> Response:
    customer = get_identity(request)
    order, pending = await request.app[SERVICES_KEY].checkout.cancel_order(
        request.match_info['order_id'], customer.customer_id
    )
    await _drain(request, pending)
    return web.json_response({'order_id': order.id, 'status': order.status.value})

async def submit_domain_order_handler(request: Request) -> Response:
    customer = get_identity(request)
    submission = PendingDomainOrderRequest.from_payload(await _read_json(request))
    order, pending = await request.app[SERVICES_KEY].pending_domain_orders.submit(
        customer, submission.domain_quote, submission.hosting_plan_ref
    )
    await _drain(request, pending)
    return web.json_response(_pending_order_to_dict(order), status=201)

async def approve_domain_order_handler(request: Request) -> Response:
    admin = require_admin(request)
    review = ReviewRequest.from_payload(await _read_json(request, allow_empty=True))
    order, pending = await request.app[SERVICES_KEY].pending_domain_orders.approve(
        request.match_info['order_id'], admin.customer_id, review.notes
    )
    await _drain(request, pending)
    return web.json_response(_pending_order_to_dict(order))

async def reject_domain_order_handler(request: Request) -> Response:
    admin = require_admin(request)
    review = ReviewRequest.from_payload(await _read_json(request, allow_empty=True))
    order, pending = await request.app[SERVICES_KEY].pending_domain_orders.reject(
        request.match_info['order_id'], admin.customer_id, review.notes
    )
    await _drain(request, pending)
    return web.json_response(_pending_order_to_dict(order))

async def mark_domain_order_paid_handler(request: Request) -> Response:
    admin = require_admin(request)
    order, pending = await request.app[SERVICES_KEY].pending_domain_orders.mark_paid(
        request.match_info['order_id'], admin.customer_id
    )
    await _drain(request, pending)
    return web.json_response(_pending_order_to_dict(order))

async def retry_provisioning_handler(request: Request) -> Response:
    require_admin(request)
    result = await request.app[SERVICES_KEY].reconciler.resume_provisioning(request.match_info['order_id'])
    await _drain(request, result.events)
    return web.json_response(result.to_dict())

async def mark_invoice_paid_handler(request: Request) -> Response:
    admin = require_admin(request)
    mark = MarkInvoicePaidRequest.from_payload(await _read_json(request))
    settlement = await request.app[SERVICES_KEY].invoices.mark_invoice_paid(
        mark.invoice_number, admin.customer_id, mark.payment_method, mark.notes
    )
    await _drain(request, settlement.events)
    return web.json_response({
        'invoice_number': settlement.invoice.invoice_number,
        'status': settlement.invoice.status.value,
        'already_paid': settlement.already_paid,
    })

async def stripe_webhook_handler(request: Request) -> Response:
    """Verify and apply a Stripe webhook delivery"""
    services = request.app[SERVICES_KEY]
    payload = await request.read()

    try:
        event = services.payment_provider.construct_webhook_event(payload, request.headers.get('Stripe-Signature'))
    except ValidationError as e:
        await _drain(request, [events.alert(
            'webhook_signature_failed', 'stripe', AlertSeverity.WARNING, AlertCategory.SECURITY,
            f"Stripe webhook rejected: {e}", remote=request.remote,
        )])
        raise

    action, pending = await services.reconciler.handle_webhook_event(event)
    await _drain(request, pending)
    logger.info(f"📨 Stripe webhook {event.get('type')} ({event.get('id')}): {action}")
    return web.json_response({'received': True, 'action': action})

# ====================================================================
# APPLICATION
# ====================================================================

def create_app(services: BillingServices) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[SERVICES_KEY] = services

    app.router.add_get('/health', health_handler)

    app.router.add_post('/api/domains/search', search_handler)
    app.router.add_post('/api/domains/quote', quote_handler)
    app.router.add_post('/api/checkout', checkout_handler)
    app.router.add_post('/api/payments/verify', verify_payment_handler)
    app.router.add_post('/api/orders/{order_id}/cancel', cancel_order_handler)
    app.router.add_post('/api/domain-orders', submit_domain_order_handler)

    app.router.add_post('/api/admin/domain-orders/{order_id}/approve', approve_domain_order_handler)
    app.router.add_post('/api/admin/domain-orders/{order_id}/reject', reject_domain_order_handler)
    app.router.add_post('/api/admin/domain-orders/{order_id}/mark-paid', mark_domain_order_paid_handler)
    app.router.add_post('/api/admin/invoices/mark-paid', mark_invoice_paid_handler)
    app.router.add_post('/api/admin/orders/{order_id}/retry-provisioning', retry_provisioning_handler)

    app.router.add_post('/webhook/stripe', stripe_webhook_handler)
    return app

async def start_webhook_server(services: BillingServices, port: int = 5000) -> web.AppRunner:
    """Start the aiohttp server in the current event loop"""
    runner = web.AppRunner(create_app(services))
    await runner.setup()
    site = web.TCPSite(runner, '0.0.0.0', port)
    await site.start()
    logger.info(f"✅ Billing server started on http://0.0.0.0:{port}")
    return runner

async def stop_webhook_server(runner: web.AppRunner):
    await runner.cleanup()
    logger.info("✅ Billing server stopped")
