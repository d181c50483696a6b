import json
import logging
from typing import Any, Callable, Dict, List, Optional

from config import config
from .events import Candle
from .normalizer import (
    NormalizationError,
    normalize_fear_greed,
    normalize_market_tickers,
    normalize_news,
    normalize_rest_kline,
)
from .rest_client import RESTClient


logger = logging.getLogger(__name__)


class RESTPoller:
    """Pull-based snapshots: minute history, market tickers, sentiment and news.

    Each ``refresh_*`` call fetches once, normalizes and hands the result to
    the handler registered under the same name. Errors propagate so the
    periodic runner can log and count them.
    """

    _HANDLER_NAMES = ('history', 'markets', 'fear_greed', 'news')

    def __init__(self, rest_client: RESTClient, symbol: Optional[str] = None):
        self.symbol = symbol or config.section('service').get('symbol', 'BTCUSDT')
        self.candle_cfg = config.section('candles')
        self.markets_cfg = config.section('markets')
        self.fear_cfg = config.section('fear_greed')
        self.news_cfg = config.section('news')
        self._rest = rest_client
        self._handlers: Dict[str, Callable[..., None]] = {}

    def register_handler(self, name: str, handler: Callable[..., None]) -> None:
        if name not in self._HANDLER_NAMES:
            raise ValueError(f"Unknown poller handler {name!r}")
        self._handlers[name] = handler

    def _emit(self, name: str, *args: Any) -> None:
        handler = self._handlers.get(name)
        if handler:
            handler(*args)

    async def fetch_history(self) -> List[Candle]:
        limit = int(self.candle_cfg.get('capacity', 200))
        params = {
            "symbol": self.symbol,
            "interval": self.candle_cfg.get('history_interval', '1m'),
            "limit": limit,
        }
        payload = await self._rest.get(self.candle_cfg.get('history_url'), params=params)
        if not isinstance(payload, list):
            raise NormalizationError("kline history payload is not a list")
        candles = []
        for row in payload:
            try:
                candles.append(normalize_rest_kline(row))
            except NormalizationError as exc:
                logger.debug("Skipping kline row: %s", exc)
        return candles[-limit:]

    async def sync_history(self, force_emit: bool = False) -> None:
        candles = await self.fetch_history()
        if not candles:
            return
        self._emit('history', candles, force_emit)

    async def refresh_markets(self) -> None:
        symbols = list(self.markets_cfg.get('symbols', []))
        params = {"symbols": json.dumps(symbols, separators=(",", ":"))}
        payload = await self._rest.get(self.markets_cfg.get('url'), params=params)
        self._emit('markets', normalize_market_tickers(payload, self.markets_cfg.get('quote', 'USDT')))

    async def refresh_fear_greed(self) -> None:
        payload = await self._rest.get(self.fear_cfg.get('url'))
        self._emit('fear_greed', normalize_fear_greed(payload))

    async def refresh_news(self) -> None:
        payload = await self._rest.get(self.news_cfg.get('url'))
        self._emit('news', normalize_news(payload, int(self.news_cfg.get('limit', 20))))
