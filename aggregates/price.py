import threading
import time
from typing import Any, Dict, Optional


class PriceTicker:
    """Latest trade price with once-per-second emission.

    ``record`` stores the price and returns a ``price`` payload only when the
    one-second bucket differs from the last emitted one, so the trade path and
    the heartbeat can both call it without double-emitting within a second.
    """

    def __init__(self):
        self.latest_price: Optional[float] = None
        self.latest_ts: Optional[int] = None
        self._last_second_bucket: Optional[int] = None
        self._lock = threading.Lock()

    def record(self, close: float, ts: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            self.latest_price = close
            self.latest_ts = ts
            second_bucket = int(ts) // 1000
            if second_bucket == self._last_second_bucket:
                return None
            self._last_second_bucket = second_bucket
        return {"close": close, "ts": ts, "source": "second"}

    def heartbeat(self, now_ms: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """Re-emit the latest price stamped with ``now_ms``, if any is known."""
        with self._lock:
            close = self.latest_price
        if close is None:
            return None
        return self.record(close, now_ms if now_ms is not None else int(time.time() * 1000))

    def current(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            if self.latest_price is None:
                return None
            return {"close": self.latest_price, "ts": self.latest_ts, "source": "second"}
