import threading
import time
from typing import List, Optional

from ingest.events import MarketRow, NewsItem, SentimentReading


class MarketBoard:
    """Latest market tickers, sentiment reading and news list.

    Each slot is replaced wholesale by its poller; readers always get copies.
    """

    def __init__(self, news_limit: int = 20):
        self.news_limit = news_limit
        self._markets: List[MarketRow] = []
        self._markets_updated_at: Optional[int] = None
        self._fear_greed: Optional[SentimentReading] = None
        self._news: List[NewsItem] = []
        self._news_updated_at: Optional[int] = None
        self._lock = threading.Lock()

    def replace_markets(self, rows: List[MarketRow]) -> None:
        with self._lock:
            self._markets = list(rows)
            self._markets_updated_at = int(time.time() * 1000)

    def replace_fear_greed(self, reading: SentimentReading) -> None:
        with self._lock:
            self._fear_greed = reading

    def replace_news(self, items: List[NewsItem]) -> bool:
        """Store the news list; returns True when the set of item ids changed."""
        items = list(items)[: self.news_limit]
        with self._lock:
            changed = [i.id for i in items] != [i.id for i in self._news]
            self._news = items
            self._news_updated_at = int(time.time() * 1000)
        return changed

    def markets(self) -> List[MarketRow]:
        with self._lock:
            return list(self._markets)

    def fear_greed(self) -> Optional[SentimentReading]:
        with self._lock:
            return self._fear_greed

    def news(self) -> List[NewsItem]:
        with self._lock:
            return list(self._news)

    def markets_payload(self) -> dict:
        with self._lock:
            rows = [row.as_dict() for row in self._markets]
        return {"updatedAt": int(time.time() * 1000), "rows": rows}

    def news_payload(self) -> dict:
        with self._lock:
            rows = [item.as_dict() for item in self._news]
            updated_at = self._news_updated_at
        return {"updatedAt": updated_at, "rows": rows}
