import errno
import logging
from typing import Optional

from prometheus_client import Counter, Gauge, start_http_server

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _get_port_scan_limit() -> int:
    try:
        return int(config.section('monitoring').get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


class MetricsCollector:
    def __init__(self):
        self.messages_received = Counter('feed_messages_received_total', 'Raw upstream messages received', ['connection'])
        self.events_normalized = Counter('feed_events_normalized_total', 'Canonical events produced', ['venue', 'kind'])
        self.events_rejected = Counter('feed_events_rejected_total', 'Upstream payloads rejected by the normalizer', ['venue', 'channel'])

        self.connection_up = Gauge('feed_connection_up', 'Upstream websocket connection state', ['connection'])
        self.reconnects = Counter('feed_reconnects_total', 'Scheduled upstream reconnects', ['connection'])

        self.poll_failures = Counter('feed_poll_failures_total', 'Failed periodic REST polls', ['poller'])
        self.venue_fetch_errors = Counter('feed_venue_fetch_errors_total', 'Failed top-buyers depth fetches', ['venue'])

        self.liquidations_accepted = Counter('feed_liquidations_accepted_total', 'Liquidations retained', ['venue'])
        self.liquidations_dropped = Counter('feed_liquidations_dropped_total', 'Liquidations below the notional floor', ['venue'])

        self.broadcast_events = Counter('feed_broadcast_events_total', 'Events fanned out to subscribers', ['event'])
        self.subscribers = Gauge('feed_subscribers', 'Connected subscribers')
        self.slow_subscribers = Counter('feed_slow_subscribers_total', 'Subscribers dropped for a full queue')

        self.current_price = Gauge('feed_current_price', 'Latest trade price')
        self.candles = Gauge('feed_candles', 'Candles held in the series')

    def record_message(self, connection: str):
        self.messages_received.labels(connection=connection).inc()

    def record_event(self, venue: str, kind: str):
        self.events_normalized.labels(venue=venue, kind=kind).inc()

    def record_reject(self, venue: str, channel: str, count: int = 1):
        self.events_rejected.labels(venue=venue, channel=channel).inc(count)

    def mark_connection(self, connection: str, up: bool):
        self.connection_up.labels(connection=connection).set(1 if up else 0)

    def record_reconnect(self, connection: str):
        self.reconnects.labels(connection=connection).inc()

    def record_poll_failure(self, poller: str):
        self.poll_failures.labels(poller=poller).inc()

    def record_venue_error(self, venue: str):
        self.venue_fetch_errors.labels(venue=venue).inc()

    def record_liquidation(self, venue: str, accepted: bool):
        if accepted:
            self.liquidations_accepted.labels(venue=venue).inc()
        else:
            self.liquidations_dropped.labels(venue=venue).inc()

    def record_broadcast(self, event: str):
        self.broadcast_events.labels(event=event).inc()

    def update_subscribers(self, count: int):
        self.subscribers.set(count)

    def record_slow_subscriber(self):
        self.slow_subscribers.inc()

    def update_price(self, price: float):
        self.current_price.set(price)

    def update_candles(self, count: int):
        self.candles.set(count)


def start_metrics_server(port: int = 9090):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error


metrics = MetricsCollector()
