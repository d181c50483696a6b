"""Map venue wire payloads onto the canonical event types.

Every mapping function is pure: it either returns canonical events or raises
``NormalizationError`` naming the reason. ``Normalizer.normalize`` is the total
entry point used by the event sink; it never raises and reports rejects
alongside the accepted events.
"""
import json
import math
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

from .events import (
    BookLevel,
    Candle,
    Kline,
    Liquidation,
    MarketRow,
    NewsItem,
    SentimentReading,
    Trade,
)


class NormalizationError(ValueError):
    """Raised when a payload cannot be mapped onto a canonical event."""


Raw = Union[str, bytes, bytearray, Mapping[str, Any], Sequence[Any]]

_MISSING = object()


def now_ms() -> int:
    return int(time.time() * 1000)


def first_present(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the value of the first key that is present and non-empty."""
    if not isinstance(data, Mapping):
        return default
    for key in keys:
        value = data.get(key, _MISSING)
        if value is _MISSING or value is None or value == "":
            continue
        return value
    return default


def to_number(value: Any, default: float = 0.0) -> float:
    """Lenient float conversion; anything non-finite becomes ``default``."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def require_positive(value: Any, name: str) -> float:
    if value is None or value == "":
        raise NormalizationError(f"missing {name}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise NormalizationError(f"non-numeric {name}: {value!r}")
    if not math.isfinite(number):
        raise NormalizationError(f"non-finite {name}")
    if number <= 0:
        raise NormalizationError(f"non-positive {name}: {number}")
    return number


def require_timestamp(value: Any, fallback_now: bool = True) -> int:
    ts = to_number(value, 0.0)
    if ts > 0:
        return int(ts)
    if fallback_now:
        return now_ms()
    raise NormalizationError("missing timestamp")


def normalize_side(value: Any) -> str:
    side = str(value or "").strip().lower()
    if side in ("buy", "sell"):
        return side
    raise NormalizationError(f"unknown side: {value!r}")


# Streaming payloads ---------------------------------------------------------

def normalize_binance_trade(data: Mapping[str, Any]) -> Trade:
    price = require_positive(first_present(data, "p", "price"), "price")
    qty = require_positive(first_present(data, "q", "qty"), "qty")
    ts = require_timestamp(first_present(data, "T", "E"))
    # m: buyer is the maker, so the aggressor sold
    side = "sell" if bool(data.get("m")) else "buy"
    return Trade(price=price, qty=qty, ts=ts, side=side, symbol=data.get("s"))


def normalize_ws_kline(kline: Mapping[str, Any]) -> Kline:
    if not isinstance(kline, Mapping):
        raise NormalizationError("missing kline body")
    start = to_number(kline.get("t"), 0.0)
    if start <= 0:
        raise NormalizationError("missing kline start time")
    close = require_positive(kline.get("c"), "close")
    candle = Candle(
        start_time=int(start),
        open=to_number(kline.get("o"), close),
        high=to_number(kline.get("h"), close),
        low=to_number(kline.get("l"), close),
        close=close,
        volume=to_number(kline.get("v")),
        is_closed=bool(kline.get("x")),
    )
    return Kline(candle=candle, symbol=kline.get("s"))


def normalize_rest_kline(row: Sequence[Any]) -> Candle:
    if not isinstance(row, (list, tuple)) or len(row) < 6:
        raise NormalizationError("kline row must have at least 6 columns")
    start = to_number(row[0], 0.0)
    if start <= 0:
        raise NormalizationError("missing kline start time")
    close = require_positive(row[4], "close")
    return Candle(
        start_time=int(start),
        open=to_number(row[1], close),
        high=to_number(row[2], close),
        low=to_number(row[3], close),
        close=close,
        volume=to_number(row[5]),
        is_closed=True,
    )


def normalize_binance_force_order(payload: Mapping[str, Any]) -> Liquidation:
    order = payload.get("o") if isinstance(payload, Mapping) else None
    if not isinstance(order, Mapping):
        raise NormalizationError("forceOrder payload without order body")
    price = require_positive(first_present(order, "ap", "p"), "price")
    qty = require_positive(first_present(order, "q", "z", "l"), "qty")
    side = "sell" if str(order.get("S", "")).upper() == "SELL" else "buy"
    return Liquidation(
        exchange_id="binance",
        symbol=str(order.get("s") or ""),
        side=side,
        price=price,
        qty=qty,
        ts=require_timestamp(first_present(order, "T") or payload.get("E")),
    )


def normalize_bybit_liquidation(item: Mapping[str, Any], default_symbol: str = "") -> Liquidation:
    price = require_positive(first_present(item, "p", "price"), "price")
    qty = require_positive(first_present(item, "v", "size", "qty"), "qty")
    return Liquidation(
        exchange_id="bybit",
        symbol=str(first_present(item, "s", "symbol", default=default_symbol)),
        side=normalize_side(first_present(item, "S", "side")),
        price=price,
        qty=qty,
        ts=require_timestamp(first_present(item, "T", "updatedTime", "ts")),
    )


def normalize_okx_liquidation(
    entry: Mapping[str, Any],
    detail: Mapping[str, Any],
    contract_size: float = 1.0,
) -> Liquidation:
    price = require_positive(first_present(detail, "bkPx", "px"), "price")
    contracts = require_positive(first_present(detail, "sz", "size"), "qty")
    return Liquidation(
        exchange_id="okx",
        symbol=str(first_present(entry, "instFamily", "uly", "instId", default="")),
        side=normalize_side(detail.get("side")),
        price=price,
        qty=contracts * contract_size,
        ts=require_timestamp(first_present(detail, "ts", "time")),
    )


# REST snapshots -------------------------------------------------------------

def _bids_for_venue(venue_id: str, payload: Any) -> Any:
    if not isinstance(payload, Mapping):
        return None
    if venue_id == "binance":
        return payload.get("bids")
    if venue_id == "bybit":
        result = payload.get("result") or {}
        return first_present(result, "b", "bids")
    if venue_id == "okx":
        data = payload.get("data") or []
        return data[0].get("bids") if data and isinstance(data[0], Mapping) else None
    if venue_id == "kucoin":
        data = payload.get("data") or {}
        return data.get("bids") if isinstance(data, Mapping) else None
    return first_present(payload, "bids", "b")


def parse_bid_levels(venue_id: str, payload: Any) -> List[BookLevel]:
    """Extract resting bids from a venue depth snapshot."""
    raw_bids = _bids_for_venue(venue_id, payload)
    if not isinstance(raw_bids, list):
        raise NormalizationError(f"{venue_id} depth payload has no bid list")
    levels: List[BookLevel] = []
    for item in raw_bids:
        if not isinstance(item, (list, tuple)) or len(item) < 2:
            continue
        levels.append(BookLevel(price=to_number(item[0]), size=to_number(item[1])))
    return levels


def normalize_market_tickers(payload: Any, quote: str = "USDT") -> List[MarketRow]:
    if not isinstance(payload, list):
        raise NormalizationError("ticker payload is not a list")
    rows = []
    for item in payload:
        if not isinstance(item, Mapping) or not item.get("symbol"):
            continue
        row = MarketRow(
            symbol=str(item["symbol"]).replace(quote, ""),
            price=to_number(item.get("lastPrice")),
            change_percent=to_number(item.get("priceChangePercent")),
            change_value=to_number(item.get("priceChange")),
        )
        if row.price > 0:
            rows.append(row)
    return rows


def normalize_fear_greed(payload: Any) -> SentimentReading:
    data = payload.get("data") if isinstance(payload, Mapping) else None
    row = data[0] if isinstance(data, list) and data else None
    if not isinstance(row, Mapping):
        raise NormalizationError("fear & greed payload without data row")
    if row.get("value") in (None, ""):
        raise NormalizationError("missing fear & greed value")
    return SentimentReading(
        value=to_number(row.get("value")),
        classification=row.get("value_classification") or "Unknown",
        timestamp=int(to_number(row.get("timestamp")) * 1000),
    )


def normalize_news(payload: Any, limit: int = 20) -> List[NewsItem]:
    data = first_present(payload, "Data", "data", "results") if isinstance(payload, Mapping) else payload
    if not isinstance(data, list):
        raise NormalizationError("news payload without item list")
    items = []
    for entry in data:
        if not isinstance(entry, Mapping):
            continue
        title = first_present(entry, "title", "headline")
        url = first_present(entry, "url", "link", "guid")
        if not title or not url:
            continue
        source = first_present(entry, "source", "source_name", default="")
        if isinstance(source, Mapping):
            source = first_present(source, "title", "name", default="")
        published = to_number(first_present(entry, "published_on", "publishedAt", "published_at"))
        # seconds vs milliseconds
        if 0 < published < 1e12:
            published *= 1000
        items.append(
            NewsItem(
                id=str(first_present(entry, "id", "guid", default=url)),
                title=str(title),
                url=str(url),
                source=str(source),
                published_at=int(published),
            )
        )
    items.sort(key=lambda item: item.published_at, reverse=True)
    return items[:limit]


# Dispatch -------------------------------------------------------------------

@dataclass
class NormalizeResult:
    events: List[Any] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)


_CONTROL_TEXT = {"pong", "ping"}


def decode_payload(raw: Raw) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise NormalizationError(f"payload is not utf-8: {exc}") from exc
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise NormalizationError(f"invalid json: {exc}") from exc
    return raw


class Normalizer:
    """Route raw payloads keyed by ``(venue, channel)`` to the matching mapper."""

    def __init__(self, symbol: str, okx_family: Optional[str] = None, okx_contract_size: float = 1.0):
        self.symbol = symbol.upper()
        self.okx_family = okx_family
        self.okx_contract_size = float(okx_contract_size)

    def normalize(self, venue: str, channel: str, raw: Raw) -> NormalizeResult:
        result = NormalizeResult()
        if isinstance(raw, str) and raw.strip() in _CONTROL_TEXT:
            return result
        try:
            payload = decode_payload(raw)
            mapper = self._mapper(venue, channel)
            for event in mapper(payload, result):
                result.events.append(event)
        except NormalizationError as exc:
            result.rejected.append(str(exc))
        return result

    def _mapper(self, venue: str, channel: str):
        key = (venue, channel)
        if key == ("binance", "market"):
            return self._binance_market
        if key == ("binance", "liquidations"):
            return self._binance_liquidations
        if key == ("bybit", "liquidations"):
            return self._bybit_liquidations
        if key == ("okx", "liquidations"):
            return self._okx_liquidations
        raise NormalizationError(f"no mapper for {venue}/{channel}")

    def _binance_market(self, payload: Any, result: NormalizeResult) -> Iterable[Any]:
        stream = payload.get("stream") if isinstance(payload, Mapping) else None
        data = payload.get("data") if isinstance(payload, Mapping) else None
        if not isinstance(stream, str) or not stream or not isinstance(data, Mapping):
            raise NormalizationError("combined stream payload without stream/data")
        if stream.endswith("@trade") or stream.endswith("@aggTrade"):
            return [normalize_binance_trade(data)]
        if "@kline_" in stream:
            return [normalize_ws_kline(data.get("k"))]
        raise NormalizationError(f"unhandled stream {stream}")

    def _binance_liquidations(self, payload: Any, result: NormalizeResult) -> Iterable[Any]:
        if isinstance(payload, Mapping) and "data" in payload and "o" not in payload:
            payload = payload["data"]
        return [normalize_binance_force_order(payload)]

    def _bybit_liquidations(self, payload: Any, result: NormalizeResult) -> Iterable[Any]:
        if not isinstance(payload, Mapping):
            raise NormalizationError("bybit payload is not an object")
        if "op" in payload or "success" in payload:
            return []
        topic = str(payload.get("topic") or "")
        if "iquidation" not in topic:
            raise NormalizationError(f"unhandled bybit topic {topic!r}")
        data = payload.get("data")
        items = data if isinstance(data, list) else [data]
        default_symbol = topic.rsplit(".", 1)[-1] if "." in topic else self.symbol
        return self._collect(items, result, lambda item: normalize_bybit_liquidation(item, default_symbol))

    def _okx_liquidations(self, payload: Any, result: NormalizeResult) -> Iterable[Any]:
        if not isinstance(payload, Mapping):
            raise NormalizationError("okx payload is not an object")
        if "event" in payload:
            return []
        data = payload.get("data") or []
        if not isinstance(data, list):
            raise NormalizationError("okx data is not a list")
        events: List[Liquidation] = []
        for entry in data:
            if not isinstance(entry, Mapping):
                continue
            family = first_present(entry, "instFamily", "uly")
            if self.okx_family and family != self.okx_family:
                continue
            details = entry.get("details") or []
            if not isinstance(details, list):
                result.rejected.append("okx details is not a list")
                continue
            events.extend(
                self._collect(
                    details,
                    result,
                    lambda detail, entry=entry: normalize_okx_liquidation(entry, detail, self.okx_contract_size),
                )
            )
        return events

    @staticmethod
    def _collect(items: Iterable[Any], result: NormalizeResult, mapper) -> List[Any]:
        events = []
        for item in items:
            if not isinstance(item, Mapping):
                result.rejected.append("item is not an object")
                continue
            try:
                events.append(mapper(item))
            except NormalizationError as exc:
                result.rejected.append(str(exc))
        return events
