"""Price Oracle Layer.

Market data access with caching, relay fallback and graceful degradation.

Components:
- PriceOracle: Quotes, batch quotes, search, news and dividends
- PriceCache: Thread-safe TTL cache with stale fallback
- RelayChain / RelayEndpoint: Ordered request relays
- Quote, search, news and dividend sources
"""

from libao_portfolio.oracle.cache import PriceCache
from libao_portfolio.oracle.price_oracle import PriceOracle
from libao_portfolio.oracle.relays import (
    AllOriginsRelay,
    DirectRelay,
    RawRelay,
    RelayChain,
    RelayEndpoint,
    build_relay,
    build_relays,
)
from libao_portfolio.oracle.sources import (
    DividendEvent,
    FeedSpec,
    GoogleFinanceQuoteSource,
    InstrumentCandidate,
    NewsItem,
    QuoteSource,
    RssNewsSource,
    YahooChartQuoteSource,
    YahooDividendSource,
    YahooSearchSource,
)

__all__ = [
    "PriceOracle",
    "PriceCache",
    # Relays
    "RelayChain",
    "RelayEndpoint",
    "DirectRelay",
    "RawRelay",
    "AllOriginsRelay",
    "build_relay",
    "build_relays",
    # Sources
    "QuoteSource",
    "YahooChartQuoteSource",
    "GoogleFinanceQuoteSource",
    "YahooSearchSource",
    "RssNewsSource",
    "YahooDividendSource",
    "FeedSpec",
    # Results
    "InstrumentCandidate",
    "NewsItem",
    "DividendEvent",
]
