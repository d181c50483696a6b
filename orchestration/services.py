import logging
from typing import List, TYPE_CHECKING

from api.metrics import metrics
from aggregates.top_buyers import TopBuyersSnapshot
from ingest.events import Candle, Kline, Liquidation, MarketRow, NewsItem, SentimentReading, Trade, candles_as_dicts

if TYPE_CHECKING:
    from main import FeedService


logger = logging.getLogger(__name__)


class MarketEventService:
    """Apply streamed events to the aggregates and broadcast the result."""

    def __init__(self, feed: 'FeedService'):
        self.feed = feed

    def handle_trade(self, trade: Trade) -> None:
        feed = self.feed
        feed.candles.apply_trade(trade)
        metrics.update_price(trade.price)

        price_payload = feed.price.record(trade.price, trade.ts)
        if price_payload is not None:
            feed.broadcaster.publish('price', price_payload)
        if trade.symbol is None:
            trade.symbol = feed.symbol
        feed.broadcaster.publish('trade', trade.as_dict())

    def handle_kline(self, kline: Kline) -> None:
        feed = self.feed
        updated = feed.candles.upsert(kline.candle)
        metrics.update_candles(len(feed.candles))
        feed.broadcaster.publish('kline', updated.as_dict())

    def handle_liquidation(self, liquidation: Liquidation) -> None:
        accepted = self.feed.liquidations.ingest(liquidation)
        metrics.record_liquidation(liquidation.exchange_id, accepted)
        if not accepted:
            return
        logger.debug(
            "Liquidation %s %s %.4f @ %.2f (%.0f USD)",
            liquidation.exchange_id, liquidation.side, liquidation.qty,
            liquidation.price, liquidation.notional,
        )
        self.feed.broadcaster.publish('liquidation', liquidation.as_dict())

    def heartbeat(self) -> None:
        payload = self.feed.price.heartbeat()
        if payload is not None:
            self.feed.broadcaster.publish('price', payload)


class SnapshotService:
    """Apply polled REST snapshots to the aggregates and broadcast the result."""

    def __init__(self, feed: 'FeedService'):
        self.feed = feed

    def handle_history(self, candles: List[Candle], force_emit: bool = False) -> None:
        feed = self.feed
        changed = feed.candles.resync_from_authoritative(candles)
        metrics.update_candles(len(feed.candles))
        if not (changed or force_emit):
            return
        last = feed.candles.last()
        if last is None:
            return
        logger.info("Minute history resynced (%s candles, last close %.2f)", len(feed.candles), last.close)
        feed.broadcaster.publish('history', candles_as_dicts(feed.candles.snapshot()))
        feed.broadcaster.publish('kline', last.as_dict())
        feed.broadcaster.publish('price', {"close": last.close, "startTime": last.start_time, "source": "minute"})

    def handle_top_buyers(self, snapshot: TopBuyersSnapshot) -> None:
        for status in snapshot.statuses:
            if status.get('status') != 'ok':
                metrics.record_venue_error(status.get('exchangeId', 'unknown'))
        self.feed.broadcaster.publish('topBuyers', snapshot.as_dict())

    def handle_markets(self, rows: List[MarketRow]) -> None:
        board = self.feed.board
        board.replace_markets(rows)
        self.feed.broadcaster.publish('markets', board.markets_payload())

    def handle_fear_greed(self, reading: SentimentReading) -> None:
        self.feed.board.replace_fear_greed(reading)
        self.feed.broadcaster.publish('fearGreed', reading.as_dict())

    def handle_news(self, items: List[NewsItem]) -> None:
        board = self.feed.board
        if board.replace_news(items):
            self.feed.broadcaster.publish('news', board.news_payload())

    def record_poll_failure(self, name: str, exc: Exception) -> None:
        metrics.record_poll_failure(name)
