"""Resilient price oracle.

Combines the TTL price cache, the relay chains and the upstream sources
into the operations the ledger's callers use: single and batched quotes,
instrument search, news and dividend history. None of the public
operations raise on upstream failure; they degrade to a stale cached
price, None or an empty list.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from libao_portfolio.ledger.models import Market
from libao_portfolio.oracle.cache import PriceCache
from libao_portfolio.oracle.relays import RelayChain, build_relays
from libao_portfolio.oracle.sources import (
    DividendEvent,
    GoogleFinanceQuoteSource,
    InstrumentCandidate,
    NewsItem,
    QuoteSource,
    RssNewsSource,
    YahooChartQuoteSource,
    YahooDividendSource,
    YahooSearchSource,
)
from libao_portfolio.utils.config import Config
from libao_portfolio.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_QUOTE_RELAYS = ("direct", "corsproxy", "allorigins")
DEFAULT_NEWS_RELAYS = ("direct", "allorigins", "corsproxy", "codetabs")

Instrument = Tuple[str, Union[Market, str]]


def _market(value: Union[Market, str]) -> Market:
    return value if isinstance(value, Market) else Market(str(value).upper())


class PriceOracle:
    """Fetches market data through ordered provider and relay fallbacks.

    Quote order per market: TW uses Yahoo chart (.TW then .TWO); US uses
    Yahoo chart JSON first and the Google Finance page scrape second.

    Example:
        >>> oracle = PriceOracle.from_config(load_config())
        >>> oracle.get_price("2330", Market.TW)
        580.0
        >>> oracle.get_prices([("2330", "TW"), ("AAPL", "US")])
        {'2330': 580.0, 'AAPL': 189.5}
    """

    def __init__(
        self,
        cache: Optional[PriceCache] = None,
        relays: Optional[RelayChain] = None,
        news_relays: Optional[RelayChain] = None,
        quote_sources: Optional[Dict[Market, Sequence[QuoteSource]]] = None,
        search_source: Optional[YahooSearchSource] = None,
        news_source: Optional[RssNewsSource] = None,
        dividend_source: Optional[YahooDividendSource] = None,
        max_workers: int = 8,
    ):
        """Initialize price oracle.

        Args:
            cache: Price cache (a fresh 30-second cache by default)
            relays: Relay chain for quote, search and dividend requests
            news_relays: Relay chain for RSS requests (default news relays
                with a 4-second timeout)
            quote_sources: Ordered quote sources per market
            search_source: Instrument search source
            news_source: News source
            dividend_source: Dividend history source
            max_workers: Thread pool size for batched quotes
        """
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")

        self.cache = cache if cache is not None else PriceCache(ttl_seconds=30.0)
        self.relays = relays or RelayChain(build_relays(DEFAULT_QUOTE_RELAYS), timeout=3.5)
        self.news_relays = news_relays or RelayChain(build_relays(DEFAULT_NEWS_RELAYS), timeout=4.0)

        if quote_sources is None:
            yahoo = YahooChartQuoteSource(self.relays)
            quote_sources = {
                Market.TW: (yahoo,),
                Market.US: (yahoo, GoogleFinanceQuoteSource(self.relays)),
            }
        self.quote_sources = quote_sources
        self.search_source = search_source or YahooSearchSource(self.relays)
        self.news_source = news_source or RssNewsSource(self.news_relays)
        self.dividend_source = dividend_source or YahooDividendSource(self.relays)
        self.max_workers = max_workers

    @classmethod
    def from_config(cls, config: Config) -> "PriceOracle":
        """Build an oracle from the `oracle` section of a Config.

        Raises:
            ConfigurationError: If a relay name is unknown
        """
        relays = RelayChain(
            build_relays(config.get("oracle.quote_relays", DEFAULT_QUOTE_RELAYS)),
            timeout=float(config.get("oracle.quote_timeout_seconds", 3.5)),
        )
        news_relays = RelayChain(
            build_relays(config.get("oracle.news_relays", DEFAULT_NEWS_RELAYS)),
            timeout=float(config.get("oracle.news_timeout_seconds", 4.0)),
        )
        return cls(
            cache=PriceCache(ttl_seconds=float(config.get("oracle.price_ttl_seconds", 30.0))),
            relays=relays,
            news_relays=news_relays,
            news_source=RssNewsSource(news_relays, limit=int(config.get("oracle.news_limit", 4))),
            max_workers=int(config.get("oracle.max_workers", 8)),
        )

    def get_price(self, symbol: str, market: Union[Market, str]) -> Optional[float]:
        """Latest price for one instrument.

        Returns the cached price while it is fresh. Otherwise the market's
        quote sources are tried in order; on total failure the last cached
        price is returned even if expired, and None only when nothing was
        ever cached.
        """
        market = _market(market)
        symbol = symbol.strip().upper()
        key = (symbol, market)

        cached, fresh = self.cache.lookup(key)
        if fresh:
            logger.debug("Cache hit for %s (%s)", symbol, market.value)
            return cached

        for source in self.quote_sources.get(market, ()):
            price = source.fetch_price(symbol, market)
            if price is not None:
                self.cache.store(key, price)
                return price
            logger.debug("Quote source %s had no price for %s", source.name, symbol)

        if cached is not None:
            logger.warning(
                "All quote sources failed for %s (%s); using stale price %s",
                symbol,
                market.value,
                cached,
            )
            return cached

        logger.warning("All quote sources failed for %s (%s); no cached price", symbol, market.value)
        return None

    def get_prices(self, instruments: Iterable[Instrument]) -> Dict[str, float]:
        """Fetch many prices in parallel.

        Instruments are deduplicated by (symbol, market) before fetching.
        The call returns once every fetch has resolved.

        Args:
            instruments: (symbol, market) pairs

        Returns:
            Mapping of symbol to price for the instruments that resolved
        """
        unique = list(dict.fromkeys((s.strip().upper(), _market(m)) for s, m in instruments))
        if not unique:
            return {}

        prices: Dict[str, float] = {}
        workers = min(self.max_workers, len(unique))

        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_instrument = {
                executor.submit(self.get_price, symbol, market): (symbol, market)
                for symbol, market in unique
            }
            for future in as_completed(future_to_instrument):
                symbol, market = future_to_instrument[future]
                try:
                    price = future.result()
                except Exception as e:
                    logger.error("Price fetch for %s (%s) crashed: %s", symbol, market.value, e)
                    continue
                if price is not None:
                    prices[symbol] = price

        logger.info("Fetched prices for %d of %d instruments", len(prices), len(unique))
        return prices

    def search_instruments(self, query: str, market: Union[Market, str]) -> List[InstrumentCandidate]:
        """Search listed equities/ETFs; [] on failure."""
        return self.search_source.search(query, _market(market))

    def get_news(
        self,
        symbol: str,
        market: Union[Market, str],
        name: Optional[str] = None,
    ) -> List[NewsItem]:
        """Latest headlines for an instrument, newest first; [] on failure."""
        return self.news_source.fetch_news(symbol.strip().upper(), _market(market), name)

    def get_dividends(self, symbol: str, market: Union[Market, str]) -> List[DividendEvent]:
        """Two-year cash dividend history, newest first; [] on failure."""
        return self.dividend_source.fetch_dividends(symbol.strip().upper(), _market(market))

    def reset_cache(self) -> None:
        self.cache.reset()
