"""Supported markets and site-wide constants."""

from dataclasses import dataclass

from hm_crawler.errors import ConfigurationError

BASE_URL = "https://www2.hm.com"
COMPANY = "HM"

# Used when a category page exposes no product count
DEFAULT_NUMBER_OF_PRODUCTS = 32
# Site-imposed maximum for the page-size query parameter
MAX_PRODUCTS_PER_PAGE = 128

SCRAPED_PRODUCTS_KEY = "SCRAPED_PRODUCTS"
STATISTICS_KEY = "STATISTICS"
PERSISTENCE_KEY = "SCRAPER_PERSISTENCE"


@dataclass(frozen=True)
class Market:
    """A country storefront."""

    name: str
    code: str
    currency: str

    @property
    def navigation_url(self) -> str:
        return f"{BASE_URL}/{self.code}/apis/navigation/v1/nav-data.json"


SUPPORTED_MARKETS: dict[str, Market] = {
    m.name: m
    for m in (
        Market("UNITED KINGDOM", "en_gb", "GBP"),
        Market("USA", "en_us", "USD"),
        Market("ITALY", "it_it", "EUR"),
        Market("GERMANY", "de_de", "EUR"),
        Market("FRANCE", "fr_fr", "EUR"),
        Market("AUSTRALIA", "en_au", "AUD"),
        Market("SPAIN", "es_es", "EUR"),
        Market("CANADA", "en_ca", "CAD"),
        Market("MEXICO", "es_mx", "MXN"),
    )
}


def resolve_market(name: str) -> Market:
    """Look up a market by name (case-insensitive).

    Raises:
        ConfigurationError: If the market is not supported. The message lists
            every valid name.
    """
    market = SUPPORTED_MARKETS.get(name.strip().upper())
    if market is None:
        valid = ", ".join(SUPPORTED_MARKETS)
        raise ConfigurationError(
            f"Unsupported market '{name}'. Supported markets: {valid}"
        )
    return market
