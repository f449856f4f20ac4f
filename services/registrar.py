"""
eNom Registrar Gateway
Availability checks and price lookups over the eNom reseller interface

The gateway reports three outcomes distinctly: available, taken, or an error.
Errors (HTTP failures, timeouts, ErrCount > 0, unparseable payloads) always
raise RegistrarUnavailable; the caller decides whether a fallback is allowed.
"""

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Tuple

import httpx
import idna

from models import AvailabilityResult
from performance_monitor import monitor_performance
from services.errors import RegistrarError, RegistrarUnavailable, ValidationError

logger = logging.getLogger(__name__)

AVAILABLE_CODE = '210'
TAKEN_CODE = '211'

PRODUCT_TYPES = {
    'register': 'RegisterDomain',
    'renew': 'RenewDomain',
    'transfer': 'TransferDomain',
}

LABEL_PATTERN = re.compile(r'^[a-z0-9-]+$')

# ====================================================================
# DOMAIN VALIDATION
# ====================================================================

def validate_domain_rfc_compliant(domain_name: str) -> str:
    """
    RFC 1035/1123 domain validation with IDNA conversion

    Args:
        domain_name: Domain as typed by the customer, Unicode allowed

    Returns:
        str: Lower-case ASCII (punycode) domain

    Raises:
        ValidationError: With a specific reason when the domain is invalid
    """
    if not domain_name or not isinstance(domain_name, str) or not domain_name.strip():
        raise ValidationError("Domain name is required")

    try:
        ascii_domain = idna.encode(domain_name.strip(), uts46=True).decode('ascii')
    except (idna.IDNAError, UnicodeError) as e:
        raise ValidationError(f"Invalid internationalized domain name: {e}")

    domain = ascii_domain.lower()
    if len(domain) > 253:
        raise ValidationError(f"Domain name too long: {len(domain)} characters (maximum: 253)")

    labels = domain.split('.')
    if len(labels) < 2:
        raise ValidationError('Domain must have at least 2 parts (e.g., "example.com")')

    for i, label in enumerate(labels):
        label_type = 'TLD' if i == len(labels) - 1 else f'Label {i + 1}'
        if not label:
            raise ValidationError(f"{label_type} cannot be empty")
        if len(label) > 63:
            raise ValidationError(f'{label_type} too long: "{label}" (maximum: 63)')
        if label.startswith('-') or label.endswith('-'):
            raise ValidationError(f'{label_type} cannot start or end with hyphen: "{label}"')
        if not LABEL_PATTERN.match(label):
            raise ValidationError(f'{label_type} contains invalid characters: "{label}"')

    tld = labels[-1]
    if tld.isdigit():
        raise ValidationError(f'TLD cannot be all numeric: "{tld}"')
    if len(tld) < 2:
        raise ValidationError(f'TLD too short: "{tld}" (minimum: 2 characters)')

    return domain

def split_domain(domain_name: str) -> Tuple[str, str]:
    """
    Split a domain into SLD and TLD

    Everything after the first label is the TLD, so multi-label
    suffixes stay together: 'example.co.uk' -> ('example', '.co.uk').
    """
    domain = validate_domain_rfc_compliant(domain_name)
    sld, tld = domain.split('.', 1)
    return sld, f".{tld}"

def sanitize_search_term(query: str) -> str:
    """Reduce free text to a bare SLD: drop any typed TLD and characters outside [a-z0-9-]"""
    term = (query or '').strip().lower()
    term = term.split('.', 1)[0]
    term = re.sub(r'[^a-z0-9-]', '', term).strip('-')
    if not term:
        raise ValidationError("Search term must contain letters or digits")
    if len(term) > 63:
        raise ValidationError("Search term too long (maximum: 63 characters)")
    return term

# ====================================================================
# GATEWAY
# ====================================================================

class EnomRegistrarGateway:
    """Thin adapter over the eNom reseller HTTP interface"""

    def __init__(self, api_url: str, uid: str, token: str, timeout: float = 8.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.api_url = api_url
        self.uid = uid
        self.token = token
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    @property
    def is_configured(self) -> bool:
        return bool(self.uid and self.token)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            limits = httpx.Limits(max_connections=20, max_keepalive_connections=10, keepalive_expiry=30.0)
            timeout = httpx.Timeout(self.timeout, connect=3.0)
            self._client = httpx.AsyncClient(limits=limits, timeout=timeout)
            self._owns_client = True
            logger.info(f"🌐 Registrar HTTP client initialised ({self.timeout:.0f}s timeout)")
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _command(self, command: str, **params: str) -> Dict[str, Any]:
        """Run one eNom command and return the parsed interface-response"""
        if not self.is_configured:
            raise RegistrarUnavailable("Registrar credentials are not configured")

        query = {'command': command, 'uid': self.uid, 'pw': self.token, 'responsetype': 'JSON'}
        query.update(params)

        try:
            response = await self._get_client().get(self.api_url, params=query)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            logger.warning(f"⚠️ Registrar {command} timed out: {type(e).__name__}")
            raise RegistrarUnavailable(f"Registrar {command} timed out")
        except httpx.HTTPError as e:
            # The request URL carries credentials; log only the error type
            logger.warning(f"⚠️ Registrar {command} HTTP failure: {type(e).__name__}")
            raise RegistrarUnavailable(f"Registrar {command} request failed")
        except ValueError:
            logger.warning(f"⚠️ Registrar {command} returned a non-JSON body")
            raise RegistrarUnavailable(f"Registrar {command} returned an unparseable response")

        body = data.get('interface-response') if isinstance(data, dict) else None
        if not isinstance(body, dict):
            raise RegistrarUnavailable(f"Registrar {command} response missing interface-response")

        try:
            err_count = int(body.get('ErrCount') or 0)
        except (TypeError, ValueError):
            raise RegistrarUnavailable(f"Registrar {command} returned an invalid ErrCount")
        if err_count > 0:
            logger.warning(f"⚠️ Registrar {command} reported {err_count} error(s): {body.get('errors')}")
            raise RegistrarUnavailable(f"Registrar {command} reported errors")

        return body

    @monitor_performance("registrar_check")
    async def check_availability(self, sld: str, tld: str) -> AvailabilityResult:
        """
        Check whether sld + tld can be registered

        Args:
            sld: Second-level label, e.g. 'example'
            tld: TLD with or without leading dot, e.g. '.co.uk'

        Returns:
            AvailabilityResult(available, premium)

        Raises:
            RegistrarUnavailable: On any error or ambiguous answer
        """
        tld = tld.lstrip('.')
        body = await self._command('Check', sld=sld, tld=tld)

        rrp_code = str(body.get('RRPCode', '')).strip()
        domain_available = str(body.get('DomainAvailable', '')).strip()

        if rrp_code == AVAILABLE_CODE or domain_available == '1':
            available = True
        elif rrp_code == TAKEN_CODE or domain_available == '0':
            available = False
        else:
            logger.warning(f"⚠️ Registrar returned no availability code for {sld}.{tld}: RRPCode={rrp_code!r}")
            raise RegistrarUnavailable(f"Registrar gave no availability answer for {sld}.{tld}")

        premium = _is_premium(body)
        logger.info(f"🌐 Availability {sld}.{tld}: available={available}, premium={premium}")
        return AvailabilityResult(available=available, premium=premium)

    @monitor_performance("registrar_price")
    async def get_product_price(self, tld: str, years: Optional[int], product: str = 'register') -> Decimal:
        """
        Look up the reseller price (USD) for a TLD product

        Args:
            tld: TLD with or without leading dot
            years: Registration term; ignored for transfers
            product: 'register', 'renew' or 'transfer'
        """
        if product not in PRODUCT_TYPES:
            raise ValueError(f"Unknown registrar product: {product}")

        params = {'ProductType': PRODUCT_TYPES[product], 'tld': tld.lstrip('.')}
        if product != 'transfer' and years:
            params['years'] = str(years)

        body = await self._command('PE_GetProductPrice', **params)
        lowered = {str(key).lower(): value for key, value in body.items()}
        for key in ('price', 'productprice', 'retailprice', 'yourprice'):
            raw = lowered.get(key)
            if raw in (None, ''):
                continue
            try:
                price = Decimal(str(raw))
            except InvalidOperation:
                continue
            if price > 0:
                return price

        raise RegistrarError(f"No {product} price returned for {tld}")

def _is_premium(body: Dict[str, Any]) -> bool:
    flags = [body.get('IsPremiumName'), body.get('IsPremium')]
    premium_block = body.get('PremiumName')
    if isinstance(premium_block, dict):
        flags.append(premium_block.get('IsPremium'))
    return any(str(flag).strip().lower() in ('true', '1', 'yes') for flag in flags if flag is not None)
