import logging
import threading
from typing import Iterable, List, Optional

from config import config
from ingest.events import Candle, Trade


logger = logging.getLogger(__name__)


def bucket_start(ts: int, interval_ms: int) -> int:
    return (int(ts) // interval_ms) * interval_ms


class CandleSeries:
    """Bounded, time-ordered OHLCV series with upsert-by-bucket semantics.

    The series is always sorted ascending by ``start_time``, holds at most one
    candle per bucket and never exceeds ``capacity``; the oldest candles are
    evicted first. Every mutation re-sorts the whole list, which is cheap at
    the configured capacities.
    """

    def __init__(self, symbol: Optional[str] = None, capacity: Optional[int] = None,
                 interval_ms: Optional[int] = None):
        candle_cfg = config.section('candles')
        self.symbol = symbol or config.section('service').get('symbol', 'BTCUSDT')
        self.capacity = int(capacity or candle_cfg.get('capacity', 200))
        self.interval_ms = int(interval_ms or candle_cfg.get('interval_ms', 60_000))
        if self.capacity <= 0:
            raise ValueError(f"capacity must be positive, got {self.capacity}")
        if self.interval_ms <= 0:
            raise ValueError(f"interval_ms must be positive, got {self.interval_ms}")

        self._candles: List[Candle] = []
        self._lock = threading.Lock()

    # Mutations ----------------------------------------------------------
    def resync_from_authoritative(self, new_series: Iterable[Candle]) -> bool:
        """Replace the series with REST ground truth.

        Returns True when the last candle materially changed (bucket, close or
        volume), which is what decides whether the resync is worth broadcasting.
        An empty ``new_series`` leaves the series untouched.
        """
        by_start = {}
        for candle in new_series:
            by_start[candle.start_time] = candle.copy()
        if not by_start:
            return False
        ordered = sorted(by_start.values(), key=lambda c: c.start_time)[-self.capacity:]

        with self._lock:
            prev_last = self._candles[-1] if self._candles else None
            self._candles = ordered
            now_last = self._candles[-1]

        return (
            prev_last is None
            or prev_last.start_time != now_last.start_time
            or prev_last.close != now_last.close
            or prev_last.volume != now_last.volume
        )

    def upsert(self, candle: Candle) -> Candle:
        candle = candle.copy()
        with self._lock:
            self._upsert_locked(candle)
        return candle.copy()

    def apply_trade(self, trade: Trade, interval_ms: Optional[int] = None) -> Optional[Candle]:
        """Fold a trade into its bucket.

        Opens a candle seeded at the trade price when the bucket is newer than
        the last one, otherwise extends the last candle. Trades older than the
        last bucket are ignored and return None.
        """
        interval = int(interval_ms or self.interval_ms)
        if interval <= 0:
            raise ValueError(f"interval_ms must be positive, got {interval}")
        bucket = bucket_start(trade.ts, interval)
        price = trade.price

        with self._lock:
            last = self._candles[-1] if self._candles else None
            if last is None or bucket > last.start_time:
                candle = Candle(
                    start_time=bucket,
                    open=price,
                    high=price,
                    low=price,
                    close=price,
                    volume=trade.qty,
                    is_closed=False,
                )
                self._upsert_locked(candle)
                return candle.copy()
            if bucket < last.start_time:
                logger.debug(
                    "Ignoring late trade ts=%s for bucket %s (last bucket %s)",
                    trade.ts, bucket, last.start_time,
                )
                return None
            last.high = max(last.high, price)
            last.low = min(last.low, price)
            last.close = price
            last.volume += trade.qty
            return last.copy()

    def _upsert_locked(self, candle: Candle) -> None:
        for idx, existing in enumerate(self._candles):
            if existing.start_time == candle.start_time:
                self._candles[idx] = candle
                return
        self._candles.append(candle)
        self._candles.sort(key=lambda c: c.start_time)
        if len(self._candles) > self.capacity:
            del self._candles[: len(self._candles) - self.capacity]

    # Reads --------------------------------------------------------------
    def last(self) -> Optional[Candle]:
        with self._lock:
            return self._candles[-1].copy() if self._candles else None

    def latest_close(self) -> Optional[float]:
        with self._lock:
            return self._candles[-1].close if self._candles else None

    def snapshot(self, limit: Optional[int] = None) -> List[Candle]:
        with self._lock:
            candles = self._candles[-limit:] if limit else self._candles
            return [c.copy() for c in candles]

    def __len__(self) -> int:
        with self._lock:
            return len(self._candles)
