"""
Pricing Sync - out-of-band refresher for currency_rates and domain_tld_pricing

The quote path only ever reads these tables. This job is the only writer:
exchange rates come from ExchangeRate-API with the fawazahmed0 currency API
as fallback, and TLD prices come from the registrar's reseller price list.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx

from database import execute_update
from performance_monitor import OperationTimer
from services.errors import RegistrarError
from services.registrar import EnomRegistrarGateway
from services.tld_pricing import categorize_tld, normalize_tld

logger = logging.getLogger(__name__)

PRIMARY_API_URL = "https://v6.exchangerate-api.com/v6"
FREE_API_URL = "https://api.exchangerate-api.com/v4/latest"
FALLBACK_API_URL = "https://cdn.jsdelivr.net/npm/@fawazahmed0/currency-api@latest/v1/currencies"

# Reject rates outside these bounds (prevents a bad upstream value reaching quotes)
RATE_BOUNDS = {
    'USD_TO_GBP': (Decimal('0.60'), Decimal('1.00')),
    'GBP_TO_USD': (Decimal('1.00'), Decimal('1.60')),
    'EUR_TO_GBP': (Decimal('0.70'), Decimal('1.00')),
    'USD_TO_EUR': (Decimal('0.60'), Decimal('1.25')),
}

REGISTRATION_TERMS = (1, 2, 5, 10)

class PricingSync:

    def __init__(self, registrar: Optional[EnomRegistrarGateway], margin: Decimal, api_key: str = '',
                 http_client: Optional[httpx.AsyncClient] = None):
        self.registrar = registrar
        self.margin = margin
        self.api_key = api_key
        self._http_client = http_client

    # ====================================================================
    # EXCHANGE RATES
    # ====================================================================

    async def refresh_exchange_rate(self, from_currency: str, to_currency: str) -> Optional[Decimal]:
        """
        Fetch a rate from the primary then fallback API and upsert it

        Returns:
            The stored rate, or None when both APIs failed (existing row kept)
        """
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()

        async with OperationTimer(f"rate_sync_{from_currency}_{to_currency}"):
            source = 'exchangerate-api'
            rate = await self._fetch_from_primary_api(from_currency, to_currency)
            if rate is None:
                source = 'currency-api'
                rate = await self._fetch_from_fallback_api(from_currency, to_currency)

        if rate is None:
            logger.error(f"❌ All exchange rate APIs failed for {from_currency}/{to_currency}, keeping stored rate")
            return None

        await execute_update(
            """INSERT INTO currency_rates (from_currency, to_currency, rate, margin, source, fetched_at)
               VALUES (%s, %s, %s, %s, %s, CURRENT_TIMESTAMP)
               ON CONFLICT (from_currency, to_currency)
               DO UPDATE SET rate = EXCLUDED.rate, margin = EXCLUDED.margin,
                             source = EXCLUDED.source, fetched_at = EXCLUDED.fetched_at""",
            (from_currency, to_currency, rate, self.margin, source)
        )
        logger.info(f"✅ Stored {from_currency}/{to_currency} = {rate} ({source})")
        return rate

    async def _get_json(self, url: str) -> Any:
        if self._http_client is not None:
            response = await self._http_client.get(url)
        else:
            async with httpx.AsyncClient(timeout=httpx.Timeout(10.0)) as client:
                response = await client.get(url)
        response.raise_for_status()
        return response.json()

    async def _fetch_from_primary_api(self, from_currency: str, to_currency: str) -> Optional[Decimal]:
        """ExchangeRate-API; keyed endpoint when a key is configured, free tier otherwise"""
        if self.api_key:
            url = f"{PRIMARY_API_URL}/{self.api_key}/latest/{from_currency}"
        else:
            url = f"{FREE_API_URL}/{from_currency}"

        try:
            data = await self._get_json(url)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"⚠️ Primary exchange rate API failed: {type(e).__name__}")
            return None

        rates = data.get('rates') or data.get('conversion_rates') or {}
        return self._checked_rate(from_currency, to_currency, rates.get(to_currency), 'primary')

    async def _fetch_from_fallback_api(self, from_currency: str, to_currency: str) -> Optional[Decimal]:
        """fawazahmed0 currency API (no key, lower-case codes)"""
        try:
            data = await self._get_json(f"{FALLBACK_API_URL}/{from_currency.lower()}.json")
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"⚠️ Fallback exchange rate API failed: {type(e).__name__}")
            return None

        rates = data.get(from_currency.lower()) or {}
        return self._checked_rate(from_currency, to_currency, rates.get(to_currency.lower()), 'fallback')

    def _checked_rate(self, from_currency: str, to_currency: str, raw: Any, api: str) -> Optional[Decimal]:
        if raw is None:
            logger.warning(f"⚠️ Currency {to_currency} not found in {api} API response")
            return None
        try:
            rate = Decimal(str(raw))
        except InvalidOperation:
            logger.warning(f"⚠️ {api} API returned a non-numeric rate for {from_currency}/{to_currency}")
            return None
        if not validate_rate_bounds(from_currency, to_currency, rate):
            logger.warning(f"⚠️ Rate {rate} for {from_currency}/{to_currency} outside expected bounds")
            return None
        return rate

    # ====================================================================
    # TLD PRICES
    # ====================================================================

    async def refresh_tld_prices(self, tlds: Iterable[str]) -> List[str]:
        """
        Pull registrar prices for each TLD and upsert domain_tld_pricing

        A registrar failure on one TLD is logged and skipped.

        Returns:
            TLDs that were stored
        """
        if self.registrar is None or not self.registrar.is_configured:
            logger.warning("⚠️ Registrar not configured, skipping TLD price sync")
            return []

        stored = []
        for raw_tld in tlds:
            tld = normalize_tld(raw_tld)
            try:
                registration, renewal, transfer = await self._fetch_tld_prices(tld)
            except RegistrarError as e:
                logger.warning(f"⚠️ Skipping {tld} price sync: {e}")
                continue

            await execute_update(
                """INSERT INTO domain_tld_pricing
                       (tld, category, reg_1y, reg_2y, reg_5y, reg_10y, renew_1y, transfer_1y,
                        currency, source, updated_at)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, %s, 'USD', 'enom', CURRENT_TIMESTAMP)
                   ON CONFLICT (tld) DO UPDATE SET
                       category = EXCLUDED.category, reg_1y = EXCLUDED.reg_1y, reg_2y = EXCLUDED.reg_2y,
                       reg_5y = EXCLUDED.reg_5y, reg_10y = EXCLUDED.reg_10y, renew_1y = EXCLUDED.renew_1y,
                       transfer_1y = EXCLUDED.transfer_1y, currency = EXCLUDED.currency,
                       source = EXCLUDED.source, updated_at = EXCLUDED.updated_at""",
                (tld, categorize_tld(tld).value, registration[1], registration.get(2), registration.get(5),
                 registration.get(10), renewal, transfer)
            )
            stored.append(tld)

        logger.info(f"✅ TLD price sync stored {len(stored)} TLD(s)")
        return stored

    async def _fetch_tld_prices(self, tld: str) -> Tuple[Dict[int, Decimal], Optional[Decimal], Optional[Decimal]]:
        registration = {}
        for years in REGISTRATION_TERMS:
            try:
                registration[years] = await self.registrar.get_product_price(tld, years, 'register')
            except RegistrarError:
                if years == 1:
                    raise
        renewal = await self._optional_price(tld, 'renew')
        transfer = await self._optional_price(tld, 'transfer')
        return registration, renewal, transfer

    async def _optional_price(self, tld: str, product: str) -> Optional[Decimal]:
        try:
            return await self.registrar.get_product_price(tld, 1, product)
        except RegistrarError as e:
            logger.info(f"No {product} price for {tld}: {e}")
            return None

    async def run_once(self, pairs: Iterable[Tuple[str, str]], tlds: Iterable[str]) -> Dict[str, Any]:
        rates = {}
        for from_currency, to_currency in pairs:
            rates[f"{from_currency}_TO_{to_currency}"] = await self.refresh_exchange_rate(from_currency, to_currency)
        return {'rates': rates, 'tlds': await self.refresh_tld_prices(tlds)}

def validate_rate_bounds(from_currency: str, to_currency: str, rate: Decimal) -> bool:
    """Validate exchange rate is within reasonable bounds"""
    bounds = RATE_BOUNDS.get(f"{from_currency}_TO_{to_currency}")
    if not bounds:
        return rate > 0
    low, high = bounds
    return low <= rate <= high
