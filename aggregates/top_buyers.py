import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from config import config
from ingest.events import BookLevel
from ingest.normalizer import parse_bid_levels
from ingest.rest_client import RESTClient


logger = logging.getLogger(__name__)


@dataclass
class VenueConfig:
    id: str
    name: str
    url: str


@dataclass
class TopBuyerRow:
    exchange: str
    exchange_id: str
    price: float
    size: float
    notional: float

    def as_dict(self) -> Dict[str, Any]:
        return {
            "exchange": self.exchange,
            "exchangeId": self.exchange_id,
            "price": self.price,
            "size": self.size,
            "notional": self.notional,
        }


@dataclass
class VenueResult:
    """Outcome of one venue fetch: either ``rows`` or an ``error`` reason."""

    venue: VenueConfig
    rows: List[TopBuyerRow] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class TopBuyersSnapshot:
    symbol: str
    min_size: float
    updated_at: Optional[int] = None
    rows: Tuple[TopBuyerRow, ...] = ()
    statuses: Tuple[Dict[str, Any], ...] = ()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "minBtc": self.min_size,
            "updatedAt": self.updated_at,
            "rows": [row.as_dict() for row in self.rows],
            "exchanges": [dict(status) for status in self.statuses],
        }


def rank_bid_levels(
    levels: Iterable[BookLevel],
    venue: VenueConfig,
    min_size: float,
    limit: int,
) -> List[TopBuyerRow]:
    rows = [
        TopBuyerRow(
            exchange=venue.name,
            exchange_id=venue.id,
            price=level.price,
            size=level.size,
            notional=level.price * level.size,
        )
        for level in levels
        if level.price > 0 and level.size >= min_size
    ]
    rows.sort(key=lambda row: row.notional, reverse=True)
    return rows[:limit]


def merge_venue_results(
    results: Sequence[VenueResult],
    limit: int,
) -> Tuple[List[TopBuyerRow], List[Dict[str, Any]]]:
    """Concatenate successful venues, rank globally and build per-venue status."""
    merged: List[TopBuyerRow] = []
    statuses: List[Dict[str, Any]] = []
    for result in results:
        status = {"exchange": result.venue.name, "exchangeId": result.venue.id}
        if result.ok:
            merged.extend(result.rows)
            status["status"] = "ok"
        else:
            status["status"] = "error"
            status["error"] = result.error or "unknown"
        statuses.append(status)
    merged.sort(key=lambda row: row.notional, reverse=True)
    return merged[:limit], statuses


Fetcher = Callable[[VenueConfig], Awaitable[Any]]


class TopBuyersAggregator:
    """Periodic cross-venue ranking of the largest resting bids.

    All venue fetches run concurrently and each one is captured as a
    ``VenueResult``; a failing venue is reported as ``error`` and never
    cancels or delays the others. The published snapshot is swapped in as a
    single immutable object.
    """

    def __init__(
        self,
        rest_client: Optional[RESTClient] = None,
        venues: Optional[Sequence[VenueConfig]] = None,
        fetcher: Optional[Fetcher] = None,
        symbol: Optional[str] = None,
        min_size: Optional[float] = None,
        limit: Optional[int] = None,
        per_venue_limit: Optional[int] = None,
        fetch_timeout_s: Optional[float] = None,
    ):
        tb_cfg = config.section('top_buyers')
        self.symbol = symbol or config.section('service').get('symbol', 'BTCUSDT')
        self.min_size = float(min_size if min_size is not None else tb_cfg.get('min_size', 0.1))
        self.limit = int(limit or tb_cfg.get('limit', 12))
        self.per_venue_limit = int(per_venue_limit or tb_cfg.get('per_venue_limit', self.limit))
        self.fetch_timeout_s = float(fetch_timeout_s or tb_cfg.get('fetch_timeout_s', 5))
        if venues is None:
            venues = [VenueConfig(**dict(v)) for v in tb_cfg.get('venues', [])]
        self.venues: List[VenueConfig] = list(venues)

        self._rest = rest_client
        self._fetcher = fetcher or self._fetch_depth
        self._snapshot = TopBuyersSnapshot(symbol=self.symbol, min_size=self.min_size)
        self._lock = threading.Lock()

    async def _fetch_depth(self, venue: VenueConfig) -> Any:
        if self._rest is None:
            raise RuntimeError("No REST client configured for depth snapshots")
        return await self._rest.get(venue.url, timeout_s=self.fetch_timeout_s)

    async def _fetch_venue(self, venue: VenueConfig) -> VenueResult:
        try:
            payload = await asyncio.wait_for(self._fetcher(venue), timeout=self.fetch_timeout_s)
            levels = parse_bid_levels(venue.id, payload)
            rows = rank_bid_levels(levels, venue, self.min_size, self.per_venue_limit)
            return VenueResult(venue=venue, rows=rows)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            return VenueResult(venue=venue, error=f"timeout after {self.fetch_timeout_s:g}s")
        except Exception as exc:
            return VenueResult(venue=venue, error=str(exc) or type(exc).__name__)

    async def refresh(self) -> TopBuyersSnapshot:
        results = await asyncio.gather(*(self._fetch_venue(v) for v in self.venues))
        for result in results:
            if not result.ok:
                logger.warning("Top buyers fetch failed for %s: %s", result.venue.name, result.error)
        rows, statuses = merge_venue_results(results, self.limit)
        snapshot = TopBuyersSnapshot(
            symbol=self.symbol,
            min_size=self.min_size,
            updated_at=int(time.time() * 1000),
            rows=tuple(rows),
            statuses=tuple(statuses),
        )
        with self._lock:
            self._snapshot = snapshot
        return snapshot

    def snapshot(self) -> TopBuyersSnapshot:
        with self._lock:
            return self._snapshot
