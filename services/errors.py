"""
Billing error hierarchy
Raised by the checkout, quote and reconciliation services and mapped to HTTP status codes by webhook_handler
"""

from typing import Optional


class BillingError(Exception):
    """Base class for every error raised by the billing core"""

    public_message = "Request could not be completed"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)


class ConfigurationError(BillingError):
    """Invalid or missing configuration detected at startup"""
    public_message = "Service is misconfigured"


class ValidationError(BillingError):
    """Inbound request body failed validation at the boundary"""
    public_message = "Invalid request"


class TldNotPriced(BillingError):
    """No pricing row exists for the requested TLD"""
    public_message = "Unable to price this domain"

    def __init__(self, tld: str):
        self.tld = tld
        super().__init__(f"No pricing available for {tld}")


class RegistrarError(BillingError):
    """Registrar API returned an error or a payload we could not parse"""
    public_message = "Domain registrar error"


class RegistrarUnavailable(RegistrarError):
    """Registrar timed out, errored or answered ambiguously"""
    public_message = "Domain registrar is unavailable, please try again shortly"


class DomainUnavailable(BillingError):
    """A binding availability check reported the domain as taken"""
    public_message = "This domain is no longer available"

    def __init__(self, domain: str):
        self.domain = domain
        super().__init__(f"Domain {domain} is not available for registration")


class StaleQuoteMismatch(BillingError):
    """Checkout attempted with a price that no longer matches the locked quote"""
    public_message = "Your quote has expired or changed, please request a new quote"


class InvalidTransition(BillingError):
    """Requested state change is not allowed from the current state"""
    public_message = "This action is not allowed in the current state"

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Invalid {entity} transition: {current} -> {target}")


class OrderNotFound(BillingError):
    """Referenced order, invoice or pending domain order does not exist"""
    public_message = "Order not found"


class PaymentProviderError(BillingError):
    """Payment provider call failed; nothing was charged"""
    public_message = "Payment could not be started, no charge made"


class ProvisioningDispatchFailure(BillingError):
    """Downstream activation could not be queued or failed"""
    public_message = "Provisioning could not be requested"
