import threading
from typing import List, Optional

from config import config
from ingest.events import Liquidation


class LiquidationFeed:
    """Most-recent-first list of liquidations above a notional floor.

    Re-delivered reports are kept as distinct events; there is no key-based
    de-duplication.
    """

    def __init__(self, capacity: Optional[int] = None, min_notional: Optional[float] = None):
        liq_cfg = config.section('liquidations')
        self.capacity = int(capacity or liq_cfg.get('capacity', 30))
        if self.capacity <= 0:
            raise ValueError(f"capacity must be positive, got {self.capacity}")
        self.min_notional = float(
            min_notional if min_notional is not None else liq_cfg.get('min_notional_usd', 0.0)
        )
        self._items: List[Liquidation] = []
        self._lock = threading.Lock()

    def ingest(self, event: Liquidation) -> bool:
        if event.notional < self.min_notional:
            return False
        with self._lock:
            self._items.insert(0, event)
            del self._items[self.capacity:]
        return True

    def snapshot(self) -> List[Liquidation]:
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
