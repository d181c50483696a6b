import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional

import websockets

from api.metrics import metrics
from config import config


logger = logging.getLogger(__name__)

MessageSink = Callable[[str, str, Any], None]


@dataclass
class ConnectionSpec:
    id: str
    venue: str
    channel: str
    url: str
    subscribe: Optional[Any] = None
    keepalive: Optional[str] = None
    keepalive_interval_s: float = 20.0
    enabled: bool = True


@dataclass
class StreamConnection:
    """Runtime state of one (venue, channel) stream; owned by the supervisor."""

    spec: ConnectionSpec
    socket: Any = None
    reader_task: Optional[asyncio.Task] = None
    keepalive_task: Optional[asyncio.Task] = None
    reconnect_attempt: int = 0
    reconnect_timer: Optional[asyncio.TimerHandle] = None
    last_opened_at: Optional[float] = None
    last_delay: Optional[float] = None

    @property
    def active(self) -> bool:
        return self.reader_task is not None and not self.reader_task.done()

    @property
    def connected(self) -> bool:
        return self.socket is not None


def reconnect_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    return min(max_delay, base_delay * 2 ** max(0, attempt - 1))


class ConnectionSupervisor:
    """Keep one websocket per (venue, channel) alive with exponential backoff.

    Every connection has its own attempt counter and at most one pending
    reconnect timer. A closing connection never touches another connection's
    state, and nothing is rescheduled once ``shutdown`` has started.
    """

    def __init__(
        self,
        sink: MessageSink,
        specs: Optional[Iterable[ConnectionSpec]] = None,
        base_delay_s: Optional[float] = None,
        max_delay_s: Optional[float] = None,
        ping_interval_s: Optional[float] = None,
        connect: Optional[Callable[..., Any]] = None,
    ):
        ws_cfg = config.section('websocket')
        self.base_delay_s = float(base_delay_s or ws_cfg.get('reconnect_base_delay_s', 1.0))
        self.max_delay_s = float(max_delay_s or ws_cfg.get('reconnect_max_delay_s', 15.0))
        self.ping_interval_s = ping_interval_s or ws_cfg.get('ping_interval_s', 20)
        if self.base_delay_s <= 0 or self.max_delay_s < self.base_delay_s:
            raise ValueError(
                f"invalid backoff bounds base={self.base_delay_s} max={self.max_delay_s}"
            )
        if specs is None:
            specs = [ConnectionSpec(**dict(c)) for c in ws_cfg.get('connections', [])]

        self._sink = sink
        self._connect = connect or websockets.connect
        self._shutting_down = False
        self.connections: Dict[str, StreamConnection] = {
            spec.id: StreamConnection(spec=spec) for spec in specs if spec.enabled
        }

    # Lifecycle ----------------------------------------------------------
    def open_all(self) -> None:
        for connection_id in self.connections:
            self.open(connection_id)

    def open(self, connection_id: str) -> None:
        if self._shutting_down:
            return
        conn = self.connections[connection_id]
        if conn.active:
            return
        self._clear_timer(conn)
        conn.reader_task = asyncio.get_running_loop().create_task(
            self._run(conn), name=f"ws:{connection_id}"
        )

    async def shutdown(self) -> None:
        self._shutting_down = True
        pending = []
        for conn in self.connections.values():
            self._clear_timer(conn)
            for task in (conn.keepalive_task, conn.reader_task):
                if task is not None and not task.done():
                    task.cancel()
                    pending.append(task)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for conn in self.connections.values():
            conn.socket = None
            conn.keepalive_task = None
        logger.info("Connection supervisor stopped (%s connections)", len(self.connections))

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    # Connection loop ----------------------------------------------------
    async def _run(self, conn: StreamConnection) -> None:
        spec = conn.spec
        try:
            async with self._connect(spec.url, ping_interval=self.ping_interval_s) as ws:
                self._on_open(conn, ws)
                if spec.subscribe is not None:
                    frame = spec.subscribe if isinstance(spec.subscribe, str) else json.dumps(spec.subscribe)
                    await ws.send(frame)
                if spec.keepalive:
                    conn.keepalive_task = asyncio.create_task(self._keepalive(conn, ws))
                async for raw in ws:
                    self._on_message(conn, raw)
            logger.warning("%s stream closed by remote", spec.id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("%s stream error: %s", spec.id, exc)
        finally:
            self._on_close(conn)

    async def _keepalive(self, conn: StreamConnection, ws: Any) -> None:
        interval = float(conn.spec.keepalive_interval_s)
        try:
            while True:
                await asyncio.sleep(interval)
                await ws.send(conn.spec.keepalive)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("%s keepalive stopped: %s", conn.spec.id, exc)

    def _on_open(self, conn: StreamConnection, ws: Any) -> None:
        conn.socket = ws
        conn.reconnect_attempt = 0
        conn.last_opened_at = time.time()
        metrics.mark_connection(conn.spec.id, True)
        logger.info("Connected to %s (%s)", conn.spec.id, conn.spec.url)

    def _on_message(self, conn: StreamConnection, raw: Any) -> None:
        metrics.record_message(conn.spec.id)
        try:
            self._sink(conn.spec.venue, conn.spec.channel, raw)
        except Exception:
            logger.exception("Failed to handle %s message; dropping it", conn.spec.id)

    def _on_close(self, conn: StreamConnection) -> None:
        conn.socket = None
        if conn.keepalive_task is not None and not conn.keepalive_task.done():
            conn.keepalive_task.cancel()
        conn.keepalive_task = None
        metrics.mark_connection(conn.spec.id, False)
        if self._shutting_down or conn.reconnect_timer is not None:
            return
        self._schedule_reconnect(conn)

    # Backoff ------------------------------------------------------------
    def _schedule_reconnect(self, conn: StreamConnection) -> float:
        conn.reconnect_attempt += 1
        delay = reconnect_delay(conn.reconnect_attempt, self.base_delay_s, self.max_delay_s)
        conn.last_delay = delay
        metrics.record_reconnect(conn.spec.id)
        logger.warning(
            "%s disconnected. Reconnecting in %.1fs (attempt %s)",
            conn.spec.id, delay, conn.reconnect_attempt,
        )
        conn.reconnect_timer = self._call_later(delay, self._fire_reconnect, conn.spec.id)
        return delay

    def _call_later(self, delay: float, callback: Callable[..., None], *args: Any) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback, *args)

    def _fire_reconnect(self, connection_id: str) -> None:
        conn = self.connections[connection_id]
        conn.reconnect_timer = None
        self.open(connection_id)

    @staticmethod
    def _clear_timer(conn: StreamConnection) -> None:
        if conn.reconnect_timer is not None:
            conn.reconnect_timer.cancel()
            conn.reconnect_timer = None

    def status(self) -> Dict[str, Dict[str, Any]]:
        return {
            connection_id: {
                "connected": conn.connected,
                "reconnectAttempt": conn.reconnect_attempt,
                "lastOpenedAt": conn.last_opened_at,
                "reconnectPending": conn.reconnect_timer is not None,
            }
            for connection_id, conn in self.connections.items()
        }
