"""
Domain Quote Engine

Computes a locked, margin-adjusted price for a domain registration and its
ID-protection add-on in the settlement currency, and verifies locked quotes
when they come back at checkout.

Pricing:
- domain price = 1-year base price x years (linear, no discount curve)
- ID protection = USD add-on x rate x (1 + margin) x years
- total rounded once, half-up to 2 decimal places
"""

import hashlib
import hmac
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, List, Optional

from models import DomainQuote, TldPriceEntry
from pricing_utils import convert_with_margin, round_money
from services.errors import (
    RegistrarUnavailable, StaleQuoteMismatch, TldNotPriced, ValidationError,
)
from services.exchange_rates import ExchangeRateService
from services.registrar import EnomRegistrarGateway, sanitize_search_term, split_domain
from services.tld_pricing import TldPricingService, normalize_tld

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_TLDS = ('.com', '.co.uk', '.org', '.net')

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

class QuoteEngine:
    """Domain pricing with registrar availability"""

    def __init__(self, tld_pricing: TldPricingService, exchange_rates: ExchangeRateService,
                 registrar: EnomRegistrarGateway, settlement_currency: str, id_protection_usd: Decimal,
                 signing_secret: str, quote_ttl_seconds: int = 1800,
                 clock: Callable[[], datetime] = _utcnow):
        self.tld_pricing = tld_pricing
        self.exchange_rates = exchange_rates
        self.registrar = registrar
        self.settlement_currency = settlement_currency
        self.id_protection_usd = id_protection_usd
        self._signing_key = signing_secret.encode('utf-8')
        self.quote_ttl = timedelta(seconds=quote_ttl_seconds)
        self._clock = clock

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    async def _settlement_base_price(self, entry: TldPriceEntry) -> Decimal:
        if entry.currency.upper() == self.settlement_currency:
            return entry.base_price
        rate = await self.exchange_rates.get_rate(entry.currency, self.settlement_currency)
        return round_money(convert_with_margin(entry.base_price, rate.rate, rate.margin))

    async def price(self, domain: str, years: int, id_protection: bool) -> DomainQuote:
        """
        Price a domain without contacting the registrar

        Returns an unsigned quote with available=False; quote() fills in
        availability and the signature.
        """
        if isinstance(years, bool) or not isinstance(years, int) or years < 1:
            raise ValidationError("years must be an integer >= 1")

        sld, tld = split_domain(domain)
        entry = await self.tld_pricing.get_tld_pricing(tld)
        base_price = await self._settlement_base_price(entry)

        domain_price = base_price * years
        addon_per_year = Decimal('0')
        if id_protection:
            rate = await self.exchange_rates.get_rate('USD', self.settlement_currency)
            addon_per_year = convert_with_margin(self.id_protection_usd, rate.rate, rate.margin)
        addon_total = addon_per_year * years

        now = self._clock()
        return DomainQuote(
            domain=f"{sld}{tld}",
            tld=tld,
            years=years,
            id_protection=id_protection,
            domain_price=round_money(domain_price),
            id_protection_price=round_money(addon_total),
            unit_price=round_money(base_price + addon_per_year),
            total_price=round_money(domain_price + addon_total),
            currency=self.settlement_currency,
            available=False,
            quoted_at=now,
            expires_at=now + self.quote_ttl,
        )

    async def quote(self, domain: str, years: int, id_protection: bool, binding: bool = False) -> DomainQuote:
        """
        Produce a locked quote with availability attached

        Args:
            domain: Full domain, e.g. 'example.co.uk'
            years: Registration term, >= 1
            id_protection: Include the ID-protection add-on
            binding: Fail closed on registrar errors (purchase confirmation)

        Raises:
            TldNotPriced: No pricing row for the TLD
            RegistrarUnavailable: Registrar error on a binding quote
        """
        priced = await self.price(domain, years, id_protection)
        sld = priced.domain[:-len(priced.tld)]

        assumed = False
        premium = False
        try:
            availability = await self.registrar.check_availability(sld, priced.tld)
            available = availability.available
            premium = availability.premium
        except RegistrarUnavailable:
            if binding:
                raise
            logger.warning(f"⚠️ Registrar unavailable for {priced.domain}, assuming available for non-binding quote")
            available = True
            assumed = True

        quote = replace(priced, available=available, premium=premium, availability_assumed=assumed)
        quote = replace(quote, signature=self.sign(quote))
        logger.info(f"✅ Quote {quote.domain} x{years}y: {quote.total_price} {quote.currency} "
                    f"(available={available}{', assumed' if assumed else ''})")
        return quote

    # ------------------------------------------------------------------
    # Locked quotes
    # ------------------------------------------------------------------

    def sign(self, quote: DomainQuote) -> str:
        return hmac.new(self._signing_key, quote.signing_payload().encode('utf-8'), hashlib.sha256).hexdigest()

    async def verify_locked_quote(self, quote: DomainQuote) -> DomainQuote:
        """
        Check a quote submitted at checkout still stands

        Raises:
            StaleQuoteMismatch: Bad signature, expired, or current pricing differs
        """
        if not quote.signature or not hmac.compare_digest(quote.signature, self.sign(quote)):
            logger.warning(f"🔒 Rejected quote for {quote.domain}: signature mismatch")
            raise StaleQuoteMismatch("Quote signature does not match")

        if self._clock() >= quote.expires_at:
            logger.info(f"🔒 Rejected quote for {quote.domain}: expired at {quote.expires_at.isoformat()}")
            raise StaleQuoteMismatch("Quote has expired")

        try:
            current = await self.price(quote.domain, quote.years, quote.id_protection)
        except TldNotPriced:
            raise StaleQuoteMismatch(f"{quote.tld} is no longer priced")

        if current.total_price != quote.total_price or current.currency != quote.currency:
            logger.warning(f"🔒 Rejected quote for {quote.domain}: locked {quote.total_price}, "
                           f"current {current.total_price}")
            raise StaleQuoteMismatch("Price changed since the quote was issued")

        return quote

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(self, query: str, tlds: Optional[List[str]] = None, years: int = 1) -> List[DomainQuote]:
        """
        Non-binding quotes for one search term across several TLDs

        TLDs without a pricing row are skipped rather than guessed.
        """
        sld = sanitize_search_term(query)
        candidates = [normalize_tld(tld) for tld in (tlds or DEFAULT_SEARCH_TLDS)]

        results = []
        for tld in dict.fromkeys(candidates):
            try:
                results.append(await self.quote(f"{sld}{tld}", years, id_protection=False))
            except TldNotPriced:
                logger.info(f"Skipping {tld} in search for {sld}: not priced")
        return results
