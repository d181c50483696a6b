#!/usr/bin/env python
"""
Broadcaster tests: bootstrap ordering, fan-out and slow subscribers
"""
import asyncio
import sys
import threading
import time
sys.path.insert(0, '.')

import pytest

from api.broadcaster import Broadcaster, SubscriberState
from ingest.events import Candle, Liquidation


def drain(subscriber):
    """Collect queued messages without waiting."""
    out = []
    while not subscriber.queue.empty():
        batch = subscriber.queue.get_nowait()
        if batch is None:
            break
        out.extend(batch)
    return out


CANDLE = Candle(start_time=1000, open=10, high=12, low=9, close=11)
LIQUIDATIONS = [
    Liquidation('binance', 'BTCUSDT', 'sell', 50_000.0, 0.5, 2),
    Liquidation('bybit', 'BTCUSDT', 'buy', 50_100.0, 0.2, 1),
]


def _bootstrap():
    return [
        ('history', [CANDLE.as_dict()]),
        ('liquidations', {"rows": [liq.as_dict() for liq in LIQUIDATIONS]}),
    ]


def test_bootstrap_precedes_incremental_events():
    print("Testing bootstrap ordering...")

    async def scenario():
        broadcaster = Broadcaster(_bootstrap, queue_size=10)
        subscriber = broadcaster.subscribe()
        assert subscriber.state is SubscriberState.BOOTSTRAPPED
        delivered = broadcaster.publish('kline', {"startTime": 1000, "close": 11.5})
        return delivered, drain(subscriber)

    delivered, messages = asyncio.run(scenario())
    assert delivered == 1
    assert [m["event"] for m in messages] == ['history', 'liquidations', 'kline']
    assert messages[0]["data"] == [{"startTime": 1000, "open": 10, "high": 12, "low": 9,
                                    "close": 11, "volume": 0.0, "isClosed": False}]
    assert len(messages[1]["data"]["rows"]) == 2
    print("  ✓ bootstrap ordering OK")


def test_publish_during_bootstrap_arrives_after_it():
    print("Testing publish racing subscribe...")

    async def scenario():
        holder = {}

        def slow_bootstrap():
            publisher = threading.Thread(target=lambda: holder['broadcaster'].publish('trade', {"price": 1}))
            publisher.start()
            holder['thread'] = publisher
            time.sleep(0.05)
            return _bootstrap()

        broadcaster = Broadcaster(slow_bootstrap, queue_size=10)
        holder['broadcaster'] = broadcaster
        subscriber = broadcaster.subscribe()
        holder['thread'].join()
        return drain(subscriber)

    messages = asyncio.run(scenario())
    assert [m["event"] for m in messages] == ['history', 'liquidations', 'trade']


def test_every_subscriber_sees_the_same_stream():
    async def scenario():
        broadcaster = Broadcaster(lambda: [], queue_size=10)
        first, second = broadcaster.subscribe(), broadcaster.subscribe()
        for i in range(3):
            broadcaster.publish('price', {"close": i})
        return drain(first), drain(second), broadcaster.subscriber_count

    first, second, count = asyncio.run(scenario())
    assert first == second
    assert [m["data"]["close"] for m in first] == [0, 1, 2]
    assert count == 2


def test_slow_subscriber_is_disconnected():
    print("Testing slow subscriber...")

    async def scenario():
        broadcaster = Broadcaster(_bootstrap, queue_size=2)
        slow = broadcaster.subscribe()
        broadcaster.publish('price', {"close": 1})
        delivered = broadcaster.publish('price', {"close": 2})
        received = [m async for m in slow.messages()]
        return broadcaster, slow, delivered, received

    broadcaster, slow, delivered, received = asyncio.run(scenario())
    assert delivered == 0
    assert slow.state is SubscriberState.DISCONNECTED
    assert broadcaster.subscriber_count == 0
    assert received == []
    print("  ✓ slow subscriber OK")


def test_messages_stream_until_closed():
    async def scenario():
        broadcaster = Broadcaster(_bootstrap, queue_size=10)
        subscriber = broadcaster.subscribe()
        broadcaster.publish('liquidation', LIQUIDATIONS[0].as_dict())
        received = []

        async def consume():
            async for message in subscriber.messages():
                received.append(message["event"])
                if len(received) == 3:
                    broadcaster.close_all()

        await asyncio.wait_for(consume(), timeout=1.0)
        return subscriber, received

    subscriber, received = asyncio.run(scenario())
    assert received == ['history', 'liquidations', 'liquidation']
    assert subscriber.state is SubscriberState.DISCONNECTED


def test_queue_size_validation():
    with pytest.raises(ValueError):
        Broadcaster(_bootstrap, queue_size=1)


if __name__ == "__main__":
    print("\n=== Running Broadcaster Tests ===\n")
    test_bootstrap_precedes_incremental_events()
    test_publish_during_bootstrap_arrives_after_it()
    test_every_subscriber_sees_the_same_stream()
    test_slow_subscriber_is_disconnected()
    test_messages_stream_until_closed()
    test_queue_size_validation()
    print("\n=== All Tests Passed ✓ ===\n")
