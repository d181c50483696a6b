#!/usr/bin/env python
"""
Connection supervisor tests with fake websocket connections
"""
import asyncio
import json
import sys
sys.path.insert(0, '.')

import pytest

from ingest.websocket_client import ConnectionSpec, ConnectionSupervisor, reconnect_delay


class FakeTimer:
    def __init__(self):
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class RecordingSupervisor(ConnectionSupervisor):
    """Captures reconnect delays instead of arming real timers."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.delays = []

    def _call_later(self, delay, callback, *args):
        self.delays.append(delay)
        return FakeTimer()


class FakeSocket:
    def __init__(self, messages, hold=False):
        self.messages = list(messages)
        self.hold = hold
        self.sent = []

    async def send(self, data):
        self.sent.append(data)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self.messages:
            yield message
        if self.hold:
            await asyncio.Event().wait()


class FakeConnection:
    def __init__(self, socket):
        self.socket = socket

    async def __aenter__(self):
        if self.socket is None:
            raise OSError("connection refused")
        return self.socket

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeConnect:
    """Hands out scripted sockets; ``None`` entries fail the handshake."""

    def __init__(self, script):
        self.script = list(script)
        self.calls = 0

    def __call__(self, url, **kwargs):
        self.calls += 1
        socket = self.script.pop(0) if self.script else None
        return FakeConnection(socket)


def _spec(**kwargs):
    values = dict(id='binance:market', venue='binance', channel='market', url='wss://fake')
    values.update(kwargs)
    return ConnectionSpec(**values)


async def _settle(conn):
    if conn.reader_task is not None:
        await conn.reader_task


def test_reconnect_delay_schedule():
    assert [reconnect_delay(n, 1.0, 15.0) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 15.0, 15.0]


def test_backoff_doubles_and_caps():
    print("Testing reconnect backoff...")

    async def scenario():
        sup = RecordingSupervisor(lambda *a: None, specs=[_spec()], base_delay_s=0.5, max_delay_s=3.0,
                                  connect=FakeConnect([]))
        conn = sup.connections['binance:market']
        sup.open('binance:market')
        await _settle(conn)
        for _ in range(4):
            sup._fire_reconnect('binance:market')
            await _settle(conn)
        return sup

    sup = asyncio.run(scenario())
    assert sup.delays == [0.5, 1.0, 2.0, 3.0, 3.0]
    assert sup.connections['binance:market'].reconnect_attempt == 5
    print("  ✓ backoff OK")


def test_attempt_resets_after_successful_open():
    print("Testing attempt reset...")
    received = []

    async def scenario():
        socket = FakeSocket(['{"a": 1}', '{"a": 2}'])
        sup = RecordingSupervisor(lambda *a: received.append(a), specs=[_spec()], base_delay_s=1.0,
                                  max_delay_s=15.0, connect=FakeConnect([None, None, socket]))
        conn = sup.connections['binance:market']
        sup.open('binance:market')
        await _settle(conn)
        sup._fire_reconnect('binance:market')
        await _settle(conn)
        sup._fire_reconnect('binance:market')
        await _settle(conn)
        return sup

    sup = asyncio.run(scenario())
    # two failures, then a session that ended normally starts over at base
    assert sup.delays == [1.0, 2.0, 1.0]
    assert sup.connections['binance:market'].last_opened_at is not None
    assert received == [('binance', 'market', '{"a": 1}'), ('binance', 'market', '{"a": 2}')]
    print("  ✓ attempt reset OK")


def test_subscribe_frame_sent_on_open():
    async def scenario():
        socket = FakeSocket([])
        spec = _spec(id='bybit:liquidations', venue='bybit', channel='liquidations',
                     subscribe={"op": "subscribe", "args": ["allLiquidation.BTCUSDT"]})
        sup = RecordingSupervisor(lambda *a: None, specs=[spec], base_delay_s=1.0, max_delay_s=2.0,
                                  connect=FakeConnect([socket]))
        sup.open('bybit:liquidations')
        await _settle(sup.connections['bybit:liquidations'])
        return socket

    socket = asyncio.run(scenario())
    assert json.loads(socket.sent[0]) == {"op": "subscribe", "args": ["allLiquidation.BTCUSDT"]}


def test_no_reconnect_after_shutdown():
    print("Testing shutdown...")

    async def scenario():
        socket = FakeSocket([], hold=True)
        sup = RecordingSupervisor(lambda *a: None, specs=[_spec()], base_delay_s=1.0, max_delay_s=2.0,
                                  connect=FakeConnect([socket]))
        conn = sup.connections['binance:market']
        sup.open('binance:market')
        for _ in range(5):
            await asyncio.sleep(0)
        assert conn.connected
        await sup.shutdown()
        sup.open('binance:market')
        return sup

    sup = asyncio.run(scenario())
    conn = sup.connections['binance:market']
    assert sup.delays == []
    assert conn.reconnect_timer is None
    assert not conn.active
    assert not conn.connected
    print("  ✓ shutdown OK")


def test_close_with_pending_timer_is_noop():
    async def scenario():
        sup = RecordingSupervisor(lambda *a: None, specs=[_spec()], base_delay_s=1.0, max_delay_s=2.0,
                                  connect=FakeConnect([]))
        conn = sup.connections['binance:market']
        sup.open('binance:market')
        await _settle(conn)
        sup._on_close(conn)
        sup._on_close(conn)
        return sup

    sup = asyncio.run(scenario())
    assert sup.delays == [1.0]
    assert sup.connections['binance:market'].reconnect_attempt == 1


def test_failing_sink_does_not_drop_connection():
    calls = []

    def sink(venue, channel, raw):
        calls.append(raw)
        raise ValueError("bad payload")

    async def scenario():
        socket = FakeSocket(['one', 'two'], hold=True)
        sup = RecordingSupervisor(sink, specs=[_spec()], base_delay_s=1.0, max_delay_s=2.0,
                                  connect=FakeConnect([socket]))
        conn = sup.connections['binance:market']
        sup.open('binance:market')
        for _ in range(5):
            await asyncio.sleep(0)
        still_connected = conn.connected
        await sup.shutdown()
        return still_connected

    assert asyncio.run(scenario()) is True
    assert calls == ['one', 'two']


def test_connections_are_independent():
    async def scenario():
        good = FakeSocket([], hold=True)
        specs = [_spec(), _spec(id='okx:liquidations', venue='okx', channel='liquidations')]
        connect = FakeConnect([good, None])
        sup = RecordingSupervisor(lambda *a: None, specs=specs, base_delay_s=1.0, max_delay_s=2.0,
                                  connect=connect)
        sup.open_all()
        for _ in range(5):
            await asyncio.sleep(0)
        status = sup.status()
        await sup.shutdown()
        return status

    status = asyncio.run(scenario())
    assert status['binance:market']['connected'] is True
    assert status['binance:market']['reconnectAttempt'] == 0
    assert status['okx:liquidations']['reconnectPending'] is True
    assert status['okx:liquidations']['reconnectAttempt'] == 1


def test_invalid_backoff_bounds():
    with pytest.raises(ValueError):
        ConnectionSupervisor(lambda *a: None, specs=[], base_delay_s=5.0, max_delay_s=1.0)


if __name__ == "__main__":
    print("\n=== Running Supervisor Tests ===\n")
    test_reconnect_delay_schedule()
    test_backoff_doubles_and_caps()
    test_attempt_resets_after_successful_open()
    test_subscribe_frame_sent_on_open()
    test_no_reconnect_after_shutdown()
    test_close_with_pending_timer_is_noop()
    test_failing_sink_does_not_drop_connection()
    test_connections_are_independent()
    test_invalid_backoff_bounds()
    print("\n=== All Tests Passed ✓ ===\n")
