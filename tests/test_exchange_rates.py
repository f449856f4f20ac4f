"""
Exchange rate and TLD pricing lookup tests
"""

import pytest
from decimal import Decimal

from models import ExchangeRate, TldCategory
from performance_cache import SimpleCache
from services.errors import ConfigurationError, TldNotPriced, ValidationError
from services.exchange_rates import ExchangeRateService
from services.repositories import InMemoryPricingRepository
from services.tld_pricing import TldPricingService, categorize_tld, normalize_tld
from conftest import make_tld_price


@pytest.mark.asyncio
class TestExchangeRateService:

    async def test_stored_row_wins_over_fallback(self):
        repository = InMemoryPricingRepository(rates=[ExchangeRate('USD', 'GBP', Decimal('0.81'), Decimal('0.03'))])
        service = ExchangeRateService(repository, {'USD_TO_GBP': Decimal('0.79')}, Decimal('0.05'))

        rate = await service.get_rate('usd', 'gbp')

        assert rate.rate == Decimal('0.81')
        assert rate.margin == Decimal('0.03')
        assert service.get_stats()['row_hit_count'] == 1

    async def test_fallback_constant_when_row_missing(self):
        service = ExchangeRateService(InMemoryPricingRepository(), {'USD_TO_GBP': Decimal('0.79')}, Decimal('0.05'))

        rate = await service.get_rate('USD', 'GBP')

        assert rate.rate == Decimal('0.79')
        assert rate.margin == Decimal('0.05')
        assert rate.source == 'fallback'
        assert service.get_stats()['fallback_usage_count'] == 1

    async def test_reverse_fallback(self):
        service = ExchangeRateService(InMemoryPricingRepository(), {'USD_TO_GBP': Decimal('0.8')}, Decimal('0.05'))
        rate = await service.get_rate('GBP', 'USD')
        assert rate.rate == Decimal('1.25')

    async def test_identity_pair(self):
        service = ExchangeRateService(InMemoryPricingRepository(), {}, Decimal('0.05'))
        rate = await service.get_rate('GBP', 'GBP')
        assert rate.rate == Decimal('1')
        assert rate.margin == Decimal('0')

    async def test_unknown_pair_is_configuration_error(self):
        service = ExchangeRateService(InMemoryPricingRepository(), {'USD_TO_GBP': Decimal('0.79')}, Decimal('0.05'))
        with pytest.raises(ConfigurationError):
            await service.get_rate('EUR', 'GBP')

    async def test_cached_rate_is_reused(self):
        repository = InMemoryPricingRepository(rates=[ExchangeRate('USD', 'GBP', Decimal('0.81'), Decimal('0.03'))])
        service = ExchangeRateService(repository, {}, Decimal('0.05'), cache=SimpleCache(default_ttl=60))

        await service.get_rate('USD', 'GBP')
        repository._rates.clear()
        rate = await service.get_rate('USD', 'GBP')

        assert rate.rate == Decimal('0.81')
        assert service.get_stats()['row_hit_count'] == 1


class TestExchangeRateRecord:

    def test_rate_record_rejects_invalid_margin(self):
        with pytest.raises(ValidationError):
            ExchangeRate('USD', 'GBP', Decimal('0.79'), Decimal('1.5'))


class TestTldHelpers:

    @pytest.mark.parametrize("raw,expected", [
        ('com', '.com'),
        ('.COM', '.com'),
        (' CO.UK ', '.co.uk'),
    ])
    def test_normalize_tld(self, raw, expected):
        assert normalize_tld(raw) == expected

    def test_normalize_rejects_empty(self):
        with pytest.raises(ValidationError):
            normalize_tld(' . ')

    @pytest.mark.parametrize("tld,category", [
        ('.com', TldCategory.GTLD),
        ('.shop', TldCategory.GTLD),
        ('.uk', TldCategory.CCTLD),
        ('.co.uk', TldCategory.CCTLD),
        ('.museum', TldCategory.STLD),
    ])
    def test_categorize_tld(self, tld, category):
        assert categorize_tld(tld) == category


@pytest.mark.asyncio
class TestTldPricingService:

    async def test_lookup_normalizes_tld(self):
        service = TldPricingService(InMemoryPricingRepository(tld_prices=[make_tld_price(tld='.com')]))
        entry = await service.get_tld_pricing('COM')
        assert entry.base_price == Decimal('12.99')

    async def test_missing_row_raises(self):
        service = TldPricingService(InMemoryPricingRepository())
        with pytest.raises(TldNotPriced) as exc_info:
            await service.get_tld_pricing('.dev')
        assert exc_info.value.tld == '.dev'

    async def test_list_priced_tlds(self):
        service = TldPricingService(InMemoryPricingRepository(tld_prices=[
            make_tld_price(tld='.org'), make_tld_price(tld='.com'),
        ]))
        assert await service.list_priced_tlds() == ['.com', '.org']
