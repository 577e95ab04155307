# chainarb/market_engine.py
import aiohttp
import ccxt.async_support as ccxt
import logging
from typing import Any, Callable, Dict, List, Optional

from .config import network_timeout
from .errors import ConfigError, DataUnavailable
from .models import PriceObservation, QualityTier, SourceQuote

HTTP_HEADERS = {"Accept": "application/json", "User-Agent": "chainarb/0.1"}


class PriceSource:
    """
    One independent read-only data source. Subclasses raise DataUnavailable
    for any HTTP failure or missing field; they never return partial garbage.
    """
    name = "base"

    def __init__(self, spec: Dict[str, Any]):
        self.spec = spec

    async def fetch_quote(self, session: aiohttp.ClientSession, asset: str) -> SourceQuote:
        raise NotImplementedError

    async def close(self):
        pass

    async def _get_json(self, session: aiohttp.ClientSession, url: str, params: Optional[dict] = None) -> Any:
        try:
            async with session.get(url, params=params, headers=HTTP_HEADERS) as resp:
                if resp.status != 200:
                    raise DataUnavailable(self.name, f"HTTP {resp.status}")
                return await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise DataUnavailable(self.name, str(e)) from e
        except ValueError as e:
            raise DataUnavailable(self.name, f"bad JSON: {e}") from e

    def _require(self, key: str) -> Any:
        try:
            return self.spec[key]
        except KeyError:
            raise ConfigError(f"{self.name} source needs '{key}'") from None


def _positive(value: Any, source: str, label: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise DataUnavailable(source, f"missing {label}") from None
    if number <= 0:
        raise DataUnavailable(source, f"non-positive {label}")
    return number


class CoinbaseSource(PriceSource):
    """Single-sided spot rate."""
    name = "coinbase"
    URL = "https://api.coinbase.com/v2/exchange-rates"

    async def fetch_quote(self, session, asset):
        symbol = self.spec.get('symbol', asset)
        data = await self._get_json(session, self.URL, {"currency": symbol})
        try:
            raw = data['data']['rates']['USD']
        except (KeyError, TypeError):
            raise DataUnavailable(self.name, "missing rates.USD") from None
        return SourceQuote(source=self.name, price=_positive(raw, self.name, "price"))


class BinanceSource(PriceSource):
    """24h ticker: best bid/ask, their sizes and quote volume in one call."""
    name = "binance"
    URL = "https://api.binance.com/api/v3/ticker/24hr"

    async def fetch_quote(self, session, asset):
        symbol = self.spec.get('symbol', f"{asset}USDT")
        data = await self._get_json(session, self.URL, {"symbol": symbol})
        try:
            bid = _positive(data['bidPrice'], self.name, "bid")
            ask = _positive(data['askPrice'], self.name, "ask")
            volume = float(data.get('quoteVolume') or 0.0)
            depth = min(float(data.get('bidQty') or 0.0), float(data.get('askQty') or 0.0))
        except (KeyError, TypeError, ValueError):
            raise DataUnavailable(self.name, "missing book fields") from None
        return SourceQuote(source=self.name, price=(bid + ask) / 2, bid=bid, ask=ask,
                           volume=volume, depth=depth or None)


class CcxtSource(PriceSource):
    """Any ccxt exchange; ticker gives bid/ask and (often) top-of-book sizes."""
    name = "ccxt"

    def __init__(self, spec, timeout_ms: int = 10000):
        super().__init__(spec)
        self.exchange_id = self._require('exchange')
        self.name = f"ccxt:{self.exchange_id}"
        self._timeout_ms = timeout_ms
        self._client = None

    def _get_client(self):
        if self._client is None:
            try:
                ex_class = getattr(ccxt, self.exchange_id)
            except AttributeError:
                raise ConfigError(f"Unknown ccxt exchange '{self.exchange_id}'") from None
            self._client = ex_class({
                'timeout': self._timeout_ms,
                'enableRateLimit': True,
                'options': {'defaultType': 'spot'},
            })
        return self._client

    async def fetch_quote(self, session, asset):
        symbol = self.spec.get('symbol', f"{asset}/USDT")
        client = self._get_client()
        try:
            ticker = await client.fetch_ticker(symbol)
        except (ccxt.NetworkError, ccxt.ExchangeError) as e:
            raise DataUnavailable(self.name, str(e)) from e

        bid, ask = ticker.get('bid'), ticker.get('ask')
        last = ticker.get('last') or ticker.get('close')
        volume = ticker.get('quoteVolume')
        if volume is None and ticker.get('baseVolume') is not None and last:
            volume = ticker['baseVolume'] * last
        sizes = [s for s in (ticker.get('bidVolume'), ticker.get('askVolume')) if s]
        depth = min(sizes) if len(sizes) == 2 else None

        if bid and ask:
            return SourceQuote(source=self.name, price=(bid + ask) / 2, bid=float(bid), ask=float(ask),
                               volume=volume, depth=depth)
        return SourceQuote(source=self.name, price=_positive(last, self.name, "last"), volume=volume)

    async def close(self):
        if self._client is not None:
            await self._client.close()
            self._client = None


class DexScreenerSource(PriceSource):
    """On-chain DEX pair price for a specific chain."""
    name = "dexscreener"
    URL = "https://api.dexscreener.com/latest/dex/pairs/{chain_id}/{pair}"

    async def fetch_quote(self, session, asset):
        url = self.URL.format(chain_id=self._require('chain_id'), pair=self._require('pair'))
        data = await self._get_json(session, url)
        try:
            pair = (data.get('pairs') or [data.get('pair')])[0]
            price = _positive(pair['priceUsd'], self.name, "priceUsd")
            volume = float((pair.get('volume') or {}).get('h24') or 0.0)
        except (KeyError, TypeError, IndexError, ValueError, AttributeError):
            raise DataUnavailable(self.name, "missing pair data") from None
        return SourceQuote(source=self.name, price=price, volume=volume)


class PolymarketSource(PriceSource):
    """CLOB order book for one outcome token."""
    name = "polymarket"
    URL = "https://clob.polymarket.com/book"

    async def fetch_quote(self, session, asset):
        data = await self._get_json(session, self.URL, {"token_id": self._require('token_id')})
        try:
            bids = [(float(b['price']), float(b['size'])) for b in data['bids']]
            asks = [(float(a['price']), float(a['size'])) for a in data['asks']]
        except (KeyError, TypeError, ValueError):
            raise DataUnavailable(self.name, "malformed book") from None
        if not bids or not asks:
            raise DataUnavailable(self.name, "empty book side")

        best_bid = max(bids, key=lambda b: b[0])
        best_ask = min(asks, key=lambda a: a[0])
        return SourceQuote(
            source=self.name,
            price=(best_bid[0] + best_ask[0]) / 2,
            bid=best_bid[0],
            ask=best_ask[0],
            volume=self.spec.get('volume'),
            depth=min(best_bid[1], best_ask[1]),
        )


class CoinGeckoHistory(PriceSource):
    """Hourly price/volume history used to seed the technical indicators."""
    name = "coingecko_history"
    URL = "https://api.coingecko.com/api/v3/coins/{coin_id}/market_chart"

    async def fetch_history(self, session, asset: str, chain: str) -> List[PriceObservation]:
        url = self.URL.format(coin_id=self._require('coin_id'))
        data = await self._get_json(session, url, {"vs_currency": "usd", "days": self.spec.get('days', 2)})
        history = []
        try:
            prices = data['prices']
            volumes = data.get('total_volumes') or []
            for i, point in enumerate(prices):
                ts, price = float(point[0]) / 1000.0, float(point[1])
                volume = float(volumes[i][1]) if i < len(volumes) else 0.0
                history.append(PriceObservation(
                    chain=chain, asset_id=asset, price=price, bid=price, ask=price,
                    volume=volume, timestamp=ts, source_name=self.name, quality=QualityTier.MEDIUM,
                ))
        except (KeyError, TypeError, IndexError, ValueError, AttributeError) as e:
            raise DataUnavailable(self.name, f"malformed history: {e!r}") from None
        return history


class FearGreedSource(PriceSource):
    name = "fear_greed"
    URL = "https://api.alternative.me/fng/"

    async def fetch_value(self, session, asset: str) -> float:
        data = await self._get_json(session, self.URL)
        try:
            return float(data['data'][0]['value'])
        except (KeyError, TypeError, IndexError, ValueError):
            raise DataUnavailable(self.name, "missing index value") from None


class CoinGeckoSentiment(PriceSource):
    name = "coingecko_sentiment"
    URL = "https://api.coingecko.com/api/v3/coins/{coin_id}"

    async def fetch_value(self, session, asset: str) -> float:
        url = self.URL.format(coin_id=self._require('coin_id'))
        data = await self._get_json(session, url, {"localization": "false", "tickers": "false"})
        value = data.get('sentiment_votes_up_percentage') if isinstance(data, dict) else None
        if value is None:
            raise DataUnavailable(self.name, "missing sentiment_votes_up_percentage")
        try:
            return float(value)
        except (TypeError, ValueError):
            raise DataUnavailable(self.name, f"bad sentiment value {value!r}") from None


class SourceRegistry:
    """
    Stable string key -> source factory. Built once at startup and injected;
    nothing looks sources up by runtime type.
    """
    def __init__(self):
        self._factories: Dict[str, Callable[[Dict[str, Any]], PriceSource]] = {}

    def register(self, key: str, factory: Callable[[Dict[str, Any]], PriceSource]):
        self._factories[key] = factory

    def keys(self) -> List[str]:
        return sorted(self._factories)

    def create(self, spec: Dict[str, Any]) -> PriceSource:
        key = spec.get('type')
        if key not in self._factories:
            raise ConfigError(f"Unknown source type '{key}'. Known: {', '.join(self.keys())}")
        return self._factories[key](spec)


def default_registry(timeout_ms: int = 10000) -> SourceRegistry:
    registry = SourceRegistry()
    registry.register('coinbase', CoinbaseSource)
    registry.register('binance', BinanceSource)
    registry.register('ccxt', lambda spec: CcxtSource(spec, timeout_ms=timeout_ms))
    registry.register('dexscreener', DexScreenerSource)
    registry.register('polymarket', PolymarketSource)
    registry.register('coingecko_history', CoinGeckoHistory)
    registry.register('fear_greed', FearGreedSource)
    registry.register('coingecko_sentiment', CoinGeckoSentiment)
    return registry


class MarketEngine:
    """
    Owns the HTTP session and every configured source.
    Responsible for building sources from config and closing them on shutdown.
    """
    def __init__(self, config: dict, logger: logging.Logger, registry: Optional[SourceRegistry] = None):
        self.cfg = config
        self.logger = logger
        self.registry = registry or default_registry(config['performance']['network_timeout_ms'])
        self.session: Optional[aiohttp.ClientSession] = None
        # { 'BTC': { 'ethereum': [PriceSource, ...] } }
        self.price_sources: Dict[str, Dict[str, List[PriceSource]]] = {}
        self.history_sources: Dict[str, PriceSource] = {}
        self.sentiment_sources: Dict[str, Dict[str, PriceSource]] = {}

    def build_sources(self):
        """Instantiate sources for every configured asset. Raises ConfigError on bad specs."""
        for asset, spec in self.cfg['assets'].items():
            self.price_sources[asset] = {
                chain: [self.registry.create(s) for s in source_specs]
                for chain, source_specs in spec.get('chains', {}).items()
            }
            if spec.get('history'):
                self.history_sources[asset] = self.registry.create(spec['history'])
            self.sentiment_sources[asset] = {
                role: self.registry.create(s) for role, s in (spec.get('sentiment') or {}).items()
            }

    async def initialize(self):
        self.build_sources()
        timeout = aiohttp.ClientTimeout(total=network_timeout(self.cfg))
        self.session = aiohttp.ClientSession(timeout=timeout)
        total = sum(len(srcs) for chains in self.price_sources.values() for srcs in chains.values())
        self.logger.info(f"📡 {total} price sources ready for {len(self.price_sources)} assets")

    def chains_for(self, asset: str) -> List[str]:
        return list(self.price_sources.get(asset, {}).keys())

    async def shutdown(self):
        for chains in self.price_sources.values():
            for sources in chains.values():
                for src in sources:
                    await src.close()
        if self.session:
            await self.session.close()
            self.session = None
