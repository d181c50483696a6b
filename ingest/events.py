from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional


@dataclass
class Candle:
    """One OHLCV bucket. ``start_time`` is bucket-aligned epoch milliseconds."""

    start_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    is_closed: bool = False

    def copy(self) -> 'Candle':
        return replace(self)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "startTime": self.start_time,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
            "isClosed": self.is_closed,
        }


@dataclass
class Trade:
    price: float
    qty: float
    ts: int
    side: str
    symbol: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "price": self.price,
            "qty": self.qty,
            "ts": self.ts,
            "side": self.side,
        }


@dataclass
class Kline:
    """A streamed candle update for ``symbol``."""

    candle: Candle
    symbol: Optional[str] = None


@dataclass
class Liquidation:
    exchange_id: str
    symbol: str
    side: str
    price: float
    qty: float
    ts: int
    notional: float = field(init=False)

    def __post_init__(self):
        self.notional = self.price * self.qty

    def as_dict(self) -> Dict[str, Any]:
        return {
            "exchangeId": self.exchange_id,
            "symbol": self.symbol,
            "side": self.side,
            "price": self.price,
            "qty": self.qty,
            "notional": self.notional,
            "ts": self.ts,
        }


@dataclass
class BookLevel:
    price: float
    size: float


@dataclass
class MarketRow:
    symbol: str
    price: float
    change_percent: float
    change_value: float

    def as_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "price": self.price,
            "changePercent": self.change_percent,
            "changeValue": self.change_value,
        }


@dataclass
class SentimentReading:
    value: float
    classification: str
    timestamp: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "classification": self.classification,
            "timestamp": self.timestamp,
        }


@dataclass
class NewsItem:
    id: str
    title: str
    url: str
    source: str
    published_at: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "url": self.url,
            "source": self.source,
            "publishedAt": self.published_at,
        }


def candles_as_dicts(candles: List[Candle]) -> List[Dict[str, Any]]:
    return [c.as_dict() for c in candles]
