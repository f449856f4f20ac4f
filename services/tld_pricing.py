"""
TLD pricing lookups and TLD categorisation
"""

import logging

from models import TldCategory, TldPriceEntry
from services.errors import TldNotPriced, ValidationError
from services.repositories import PricingRepository

logger = logging.getLogger(__name__)

SPONSORED_TLDS = frozenset({'.aero', '.asia', '.cat', '.int', '.jobs', '.museum', '.travel'})

def normalize_tld(tld: str) -> str:
    """Lower-case a TLD and ensure a single leading dot ('CO.UK' -> '.co.uk')"""
    if not tld or not tld.strip(' .'):
        raise ValidationError("TLD is required")
    return '.' + tld.strip().strip('.').lower()

def categorize_tld(tld: str) -> TldCategory:
    """
    Classify a TLD as sponsored, country-code or generic

    The country-code check looks at the final label, so '.co.uk' is a ccTLD.
    """
    tld = normalize_tld(tld)
    if tld in SPONSORED_TLDS:
        return TldCategory.STLD
    final_label = tld.rsplit('.', 1)[-1]
    if len(final_label) == 2:
        return TldCategory.CCTLD
    return TldCategory.GTLD

class TldPricingService:
    """Read-only TLD price lookups for the quote engine"""

    def __init__(self, repository: PricingRepository):
        self.repository = repository

    async def get_tld_pricing(self, tld: str) -> TldPriceEntry:
        """
        Get the price row for a TLD

        Raises:
            TldNotPriced: If no pricing row exists; never guesses a price
        """
        tld = normalize_tld(tld)
        entry = await self.repository.get_tld_price(tld)
        if entry is None:
            logger.warning(f"⚠️ No pricing row for {tld}")
            raise TldNotPriced(tld)
        return entry

    async def list_priced_tlds(self):
        return await self.repository.list_priced_tlds()
