"""
Exchange Rate Service for domain and add-on pricing
Read path over materialised currency_rates rows with a documented fallback constant
"""

import logging
from decimal import Decimal
from typing import Dict, Optional, Any

from models import ExchangeRate
from performance_cache import SimpleCache
from services.errors import ConfigurationError
from services.repositories import PricingRepository

logger = logging.getLogger(__name__)

class ExchangeRateService:
    """
    Rate lookups for the quote engine

    Never refreshes rates itself; rows are written out-of-band by pricing_sync.
    When no row exists the configured fallback constant is used so that quoting
    never fails outright on missing rate data.
    """

    def __init__(self, repository: PricingRepository, fallback_rates: Dict[str, Decimal],
                 fallback_margin: Decimal, cache: Optional[SimpleCache] = None):
        self.repository = repository
        self.fallback_rates = dict(fallback_rates)
        self.fallback_margin = fallback_margin
        self.cache = cache

        self._row_hit_count = 0
        self._fallback_usage_count = 0

    async def get_rate(self, from_currency: str, to_currency: str) -> ExchangeRate:
        """
        Get rate and margin for a currency pair

        Args:
            from_currency: Source currency (e.g. 'USD')
            to_currency: Target currency (e.g. 'GBP')

        Returns:
            ExchangeRate with rate and margin

        Raises:
            ConfigurationError: If neither a row nor a fallback constant exists
        """
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()

        if from_currency == to_currency:
            return ExchangeRate(from_currency, to_currency, Decimal('1'), Decimal('0'), source='identity')

        cache_key = f"{from_currency}_{to_currency}"
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached

        rate = await self.repository.get_exchange_rate(from_currency, to_currency)
        if rate is not None:
            self._row_hit_count += 1
            if self.cache is not None:
                self.cache.set(cache_key, rate)
            return rate

        rate = self._get_fallback_rate(from_currency, to_currency)
        self._fallback_usage_count += 1
        logger.warning(f"⚠️ No stored rate for {from_currency}/{to_currency}, using fallback {rate.rate:.6f}")
        return rate

    def _get_fallback_rate(self, from_currency: str, to_currency: str) -> ExchangeRate:
        """Hardcoded fallback rate, with reverse lookup"""
        rate_key = f"{from_currency}_TO_{to_currency}"
        if rate_key in self.fallback_rates:
            return ExchangeRate(from_currency, to_currency, self.fallback_rates[rate_key],
                                self.fallback_margin, source='fallback')

        reverse_key = f"{to_currency}_TO_{from_currency}"
        if reverse_key in self.fallback_rates:
            return ExchangeRate(from_currency, to_currency, Decimal('1') / self.fallback_rates[reverse_key],
                                self.fallback_margin, source='fallback')

        raise ConfigurationError(f"No exchange rate or fallback configured for {from_currency}/{to_currency}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            'row_hit_count': self._row_hit_count,
            'fallback_usage_count': self._fallback_usage_count,
            'cache': self.cache.stats() if self.cache is not None else None,
            'fallback_pairs': list(self.fallback_rates.keys()),
        }
