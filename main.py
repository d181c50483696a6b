import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from aggregates.candles import CandleSeries
from aggregates.liquidations import LiquidationFeed
from aggregates.market_board import MarketBoard
from aggregates.price import PriceTicker
from aggregates.top_buyers import TopBuyersAggregator
from api.broadcaster import Broadcaster
from api.metrics import start_metrics_server
from config import config
from ingest.events import candles_as_dicts
from ingest.market_data_manager import MarketDataManager
from ingest.normalizer import Normalizer
from ingest.rest_client import RESTClient
from ingest.rest_poller import RESTPoller
from ingest.websocket_client import ConnectionSupervisor
from monitoring.async_utils import run_periodically, run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from orchestration.services import MarketEventService, SnapshotService


logger = logging.getLogger(__name__)


class FeedService:
    """Own the aggregates and wire ingestion, polling and fan-out around them."""

    def __init__(
        self,
        config_obj: Optional[Any] = None,
        connect: Optional[Callable[..., Any]] = None,
        rest_client: Optional[RESTClient] = None,
        depth_fetcher: Optional[Callable[..., Any]] = None,
    ):
        self.config = config_obj or config
        self.service_cfg = self.config.section('service')
        self.candle_cfg = self.config.section('candles')
        self.liquidation_cfg = self.config.section('liquidations')
        self.top_buyers_cfg = self.config.section('top_buyers')
        self.broadcaster_cfg = self.config.section('broadcaster')
        self.markets_cfg = self.config.section('markets')
        self.fear_cfg = self.config.section('fear_greed')
        self.news_cfg = self.config.section('news')

        self.symbol = self.service_cfg.get('symbol', 'BTCUSDT')

        self.candles = CandleSeries(self.symbol)
        self.liquidations = LiquidationFeed()
        self.price = PriceTicker()
        self.board = MarketBoard(news_limit=int(self.news_cfg.get('limit', 20)))

        self.rest = rest_client or RESTClient()
        self.top_buyers = TopBuyersAggregator(
            rest_client=self.rest,
            fetcher=depth_fetcher,
            symbol=self.symbol,
        )

        self.broadcaster = Broadcaster(
            self.bootstrap_messages,
            queue_size=int(self.broadcaster_cfg.get('queue_size', 1000)),
        )

        self.events = MarketEventService(self)
        self.snapshots = SnapshotService(self)

        self.normalizer = Normalizer(
            self.symbol,
            okx_family=self.liquidation_cfg.get('okx_family'),
            okx_contract_size=float(self.liquidation_cfg.get('okx_contract_size', 1.0)),
        )
        self.market_data_manager = MarketDataManager(self.normalizer)
        self.market_data_manager.register_handlers(
            trade=self.events.handle_trade,
            kline=self.events.handle_kline,
            liquidation=self.events.handle_liquidation,
        )
        self.supervisor = ConnectionSupervisor(self.market_data_manager.ingest, connect=connect)

        self.rest_poller = RESTPoller(self.rest, self.symbol)
        self.rest_poller.register_handler('history', self.snapshots.handle_history)
        self.rest_poller.register_handler('markets', self.snapshots.handle_markets)
        self.rest_poller.register_handler('fear_greed', self.snapshots.handle_fear_greed)
        self.rest_poller.register_handler('news', self.snapshots.handle_news)

        self.running = False
        self._tasks: List[asyncio.Task] = []
        self._closed = False

    # Lifecycle ----------------------------------------------------------
    async def start(self):
        self.running = True
        self._closed = False
        try:
            await self.rest_poller.sync_history(force_emit=True)
        except Exception as exc:
            logger.error("Initial minute history sync failed: %s", exc)

        if not self.running:
            return

        self.supervisor.open_all()
        self._tasks = [
            asyncio.create_task(self._periodic('price_heartbeat', self.broadcaster_cfg.get('heartbeat_s', 1.0), self._heartbeat, align=True)),
            asyncio.create_task(self._periodic('top_buyers', self.top_buyers_cfg.get('refresh_s', 3), self._refresh_top_buyers)),
            asyncio.create_task(self._periodic('history_sync', self.candle_cfg.get('history_sync_s', 15), self.rest_poller.sync_history, run_immediately=False)),
            asyncio.create_task(self._periodic('markets', self.markets_cfg.get('refresh_s', 5), self.rest_poller.refresh_markets)),
            asyncio.create_task(self._periodic('fear_greed', self.fear_cfg.get('refresh_s', 60), self.rest_poller.refresh_fear_greed)),
            asyncio.create_task(self._periodic('news', self.news_cfg.get('refresh_s', 120), self.rest_poller.refresh_news)),
        ]
        logger.info("Feed service started for %s", self.symbol)

        await run_tasks_with_cleanup(self._tasks, cleanup=self._cleanup)

    async def stop(self):
        self.running = False
        await self.supervisor.shutdown()
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._cleanup()

    async def _cleanup(self):
        if self._closed:
            return
        self._closed = True
        self.broadcaster.close_all()
        await self.rest.close()
        logger.info("Feed service stopped")

    def _periodic(self, name: str, interval_s: float, func, run_immediately: bool = True, align: bool = False):
        return run_periodically(
            name,
            float(interval_s),
            func,
            run_immediately=run_immediately,
            align=align,
            on_error=self.snapshots.record_poll_failure,
        )

    async def _heartbeat(self):
        self.events.heartbeat()

    async def _refresh_top_buyers(self):
        snapshot = await self.top_buyers.refresh()
        self.snapshots.handle_top_buyers(snapshot)

    # Query interface ----------------------------------------------------
    def latest_price(self) -> Optional[Dict[str, Any]]:
        current = self.price.current()
        last = self.candles.last()
        if current is not None:
            current["startTime"] = last.start_time if last else None
            return current
        if last is not None:
            return {"close": last.close, "ts": None, "startTime": last.start_time, "source": "minute"}
        return None

    def candle_history(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return candles_as_dicts(self.candles.snapshot(limit))

    def top_buyers_payload(self) -> Dict[str, Any]:
        return self.top_buyers.snapshot().as_dict()

    def liquidations_payload(self) -> Dict[str, Any]:
        return {
            "updatedAt": int(time.time() * 1000),
            "rows": [item.as_dict() for item in self.liquidations.snapshot()],
        }

    def markets_payload(self) -> Dict[str, Any]:
        return self.board.markets_payload()

    def fear_greed_payload(self) -> Optional[Dict[str, Any]]:
        reading = self.board.fear_greed()
        return reading.as_dict() if reading else None

    def news_payload(self) -> Dict[str, Any]:
        return self.board.news_payload()

    def health(self) -> Dict[str, Any]:
        price = self.price.current()
        return {
            "status": "ok" if self.running else "stopped",
            "connections": self.supervisor.status(),
            "candles": len(self.candles),
            "latestSecondPrice": price["close"] if price else None,
            "topBuyersUpdatedAt": self.top_buyers.snapshot().updated_at,
            "liquidations": len(self.liquidations),
            "subscribers": self.broadcaster.subscriber_count,
        }

    def bootstrap_messages(self) -> List[Tuple[str, Any]]:
        """Current state for a new subscriber, in delivery order."""
        messages: List[Tuple[str, Any]] = []
        history = self.candle_history()
        if history:
            messages.append(('history', history))

        price = self.price.current()
        last = self.candles.last()
        if price is not None:
            messages.append(('price', price))
        elif last is not None:
            messages.append(('price', {"close": last.close, "startTime": last.start_time, "source": "minute"}))

        messages.append(('topBuyers', self.top_buyers_payload()))
        messages.append(('liquidations', self.liquidations_payload()))
        messages.append(('markets', self.markets_payload()))

        fear_greed = self.fear_greed_payload()
        if fear_greed:
            messages.append(('fearGreed', fear_greed))
        news = self.news_payload()
        if news["rows"]:
            messages.append(('news', news))
        return messages


async def main():
    monitoring_cfg = config.section('monitoring')
    if monitoring_cfg.get('metrics_enabled', False):
        start_metrics_server(int(monitoring_cfg.get('metrics_port', 9090)))
    feed = FeedService(config)
    try:
        await feed.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Feed service shutting down on interrupt")
        await feed.stop()


if __name__ == "__main__":
    setup_logging(config.section('monitoring').get('log_level', 'INFO'))
    asyncio.run(main())
