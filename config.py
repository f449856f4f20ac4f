"""
Runtime configuration for the billing service
All settings come from environment variables and are validated once at startup
"""

import os
import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Mapping, Optional, Tuple

from services.errors import ConfigurationError
from utils.environment import get_public_base_url

logger = logging.getLogger(__name__)

DEFAULT_NAMESERVERS = ('ns1.404codelab.com', 'ns2.404codelab.com')
DEFAULT_RETRY_DELAYS = '0,2,4,8'


class BillingConfig:
    """Configuration for quoting, checkout and reconciliation"""

    def __init__(self, env: Optional[Mapping[str, str]] = None):
        env = os.environ if env is None else env
        self._env = env

        # Pricing
        self.settlement_currency = env.get('SETTLEMENT_CURRENCY', 'GBP').upper()
        self.id_protection_usd = self._decimal('ID_PROTECTION_PRICE_USD', '9.95')
        self.fallback_rates: Dict[str, Decimal] = {
            'USD_TO_GBP': self._decimal('FALLBACK_USD_TO_GBP_RATE', '0.79'),
        }
        self.fallback_margin = self._decimal('FALLBACK_RATE_MARGIN', '0.05')
        self.rate_cache_ttl = self._int('RATE_CACHE_TTL_SECONDS', '0')
        self.exchange_rate_api_key = env.get('EXCHANGE_RATE_API_KEY', '')

        # Quotes
        self.quote_ttl_seconds = self._int('QUOTE_TTL_SECONDS', '1800')
        self.quote_signing_secret = env.get('QUOTE_SIGNING_SECRET', '')

        # Payment provider
        self.stripe_secret_key = env.get('STRIPE_SECRET_KEY', '')
        self.stripe_webhook_secret = env.get('STRIPE_WEBHOOK_SECRET', '')
        self.stripe_timeout = float(self._decimal('STRIPE_TIMEOUT_SECONDS', '15'))
        self.public_base_url = env.get('PUBLIC_BASE_URL') or get_public_base_url()

        # Registrar
        self.enom_api_url = env.get('ENOM_API_URL', 'https://reseller.enom.com/interface.asp')
        self.enom_uid = env.get('ENOM_API_USER', '')
        self.enom_token = env.get('ENOM_API_TOKEN', '')
        self.registrar_timeout = float(self._decimal('REGISTRAR_TIMEOUT_SECONDS', '8'))
        self.default_nameservers: List[str] = self._list('DEFAULT_NAMESERVERS', ','.join(DEFAULT_NAMESERVERS))

        # Reconciliation
        self.verify_retry_delays: Tuple[float, ...] = tuple(
            float(self._decimal_value('VERIFY_RETRY_DELAYS', part)) for part in
            self._list('VERIFY_RETRY_DELAYS', DEFAULT_RETRY_DELAYS)
        )

        # Provisioning activators (optional downstream endpoints)
        self.domain_activation_url = env.get('PROVISIONING_DOMAIN_URL', '')
        self.hosting_activation_url = env.get('PROVISIONING_HOSTING_URL', '')

        # Process
        self.port = self._int('PORT', '5000')
        self.database_url = env.get('DATABASE_URL', '')
        self.pricing_sync_interval = self._int('PRICING_SYNC_INTERVAL_SECONDS', '0')
        self.test_mode = env.get('TEST_MODE', '0') == '1'

        self._validate()
        logger.info(f"✅ Billing config loaded: currency={self.settlement_currency}, "
                    f"retries={len(self.verify_retry_delays) - 1}, test_mode={self.test_mode}")

    # ------------------------------------------------------------------
    # Parsing helpers
    # ------------------------------------------------------------------

    def _decimal(self, key: str, default: str) -> Decimal:
        return self._decimal_value(key, self._env.get(key, default))

    @staticmethod
    def _decimal_value(key: str, raw: str) -> Decimal:
        try:
            return Decimal(str(raw).strip())
        except (InvalidOperation, ValueError):
            raise ConfigurationError(f"{key} must be numeric, got {raw!r}")

    def _int(self, key: str, default: str) -> int:
        raw = self._env.get(key, default)
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise ConfigurationError(f"{key} must be an integer, got {raw!r}")

    def _list(self, key: str, default: str) -> List[str]:
        raw = self._env.get(key, default)
        return [part.strip() for part in raw.split(',') if part.strip()]

    def _validate(self):
        if not self.verify_retry_delays:
            raise ConfigurationError("VERIFY_RETRY_DELAYS must contain at least one delay")
        if any(delay < 0 for delay in self.verify_retry_delays):
            raise ConfigurationError("VERIFY_RETRY_DELAYS cannot contain negative delays")
        if not (Decimal('0') <= self.fallback_margin < Decimal('1')):
            raise ConfigurationError("FALLBACK_RATE_MARGIN must be in [0, 1)")
        for pair, rate in self.fallback_rates.items():
            if rate <= 0:
                raise ConfigurationError(f"Fallback rate {pair} must be positive")
        if self.id_protection_usd < 0:
            raise ConfigurationError("ID_PROTECTION_PRICE_USD cannot be negative")
        if self.quote_ttl_seconds <= 0:
            raise ConfigurationError("QUOTE_TTL_SECONDS must be positive")
        if len(self.settlement_currency) != 3:
            raise ConfigurationError(f"Invalid settlement currency: {self.settlement_currency}")

        if self.test_mode:
            if self.stripe_secret_key.startswith('sk_live_'):
                raise ConfigurationError("Live Stripe credentials are not allowed in TEST_MODE")
        elif not self.quote_signing_secret:
            raise ConfigurationError("QUOTE_SIGNING_SECRET is required outside TEST_MODE")

        if not self.quote_signing_secret:
            # Test runs sign quotes with a fixed key
            self.quote_signing_secret = 'test-quote-signing-secret'
