import logging
from typing import Any, Callable, Dict, Mapping, Optional

from api.metrics import metrics
from ingest.events import Kline, Liquidation, Trade
from ingest.normalizer import Normalizer

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]


class MarketDataManager:
    """Event sink for raw upstream payloads keyed by ``(venue, channel)``.

    Payloads are normalized and each canonical event is routed to the handler
    registered for its kind. Rejected payloads are logged and counted; a
    failing handler is logged and never propagates back into the connection.
    """

    _EVENT_KINDS = {
        Trade: 'trade',
        Kline: 'kline',
        Liquidation: 'liquidation',
    }

    _ALIASES = {
        'trade_handler': 'trade',
        'kline_handler': 'kline',
        'liquidation_handler': 'liquidation',
    }

    def __init__(self, normalizer: Normalizer):
        self.normalizer = normalizer
        self._handlers: Dict[str, Handler] = {}

    def register_handlers(self, **handlers: Optional[Handler]) -> None:
        """Register callbacks per event kind (``trade``, ``kline``, ``liquidation``)."""
        for name, handler in self._normalize_handlers(handlers).items():
            if handler is None:
                continue
            self._handlers[name] = handler

    def _normalize_handlers(self, handlers: Mapping[str, Optional[Handler]]) -> Dict[str, Optional[Handler]]:
        return {self._ALIASES.get(key, key): handler for key, handler in handlers.items()}

    def ingest(self, venue: str, channel: str, raw: Any) -> int:
        """Normalize and dispatch one raw payload; returns the number of events routed."""
        result = self.normalizer.normalize(venue, channel, raw)
        if result.rejected:
            metrics.record_reject(venue, channel, len(result.rejected))
            logger.debug(
                "Rejected %s %s/%s payload item(s): %s",
                len(result.rejected), venue, channel, result.rejected[0],
            )
        for event in result.events:
            kind = self._EVENT_KINDS.get(type(event))
            if kind is None:
                continue
            metrics.record_event(venue, kind)
            self._dispatch(kind, event)
        return len(result.events)

    def _dispatch(self, kind: str, event: Any) -> None:
        handler = self._handlers.get(kind)
        if not handler:
            return
        try:
            handler(event)
        except Exception:
            logger.exception("Market data handler %s failed", kind)
