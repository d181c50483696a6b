#!/usr/bin/env python
"""
HTTP query route tests against a feed service that is not started
"""
import sys
sys.path.insert(0, '.')

from fastapi.testclient import TestClient

import api.fastapi_server as server
from ingest.events import Liquidation, Trade
from main import FeedService
from test_integration import FakeREST, fake_connect, fake_depth


def _client_with_feed():
    feed = FeedService(connect=fake_connect, rest_client=FakeREST(), depth_fetcher=fake_depth)
    server.feed_service = feed
    return TestClient(server.app), feed


def test_routes_before_service_exists():
    server.feed_service = None
    client = TestClient(server.app)
    assert client.get('/health').json()['status'] == 'starting'
    assert client.get('/api/price').status_code == 503


def test_price_and_liquidation_routes():
    print("Testing HTTP routes...")
    client, feed = _client_with_feed()
    try:
        response = client.get('/api/price')
        assert response.status_code == 503

        feed.events.handle_trade(Trade(price=64_000.0, qty=0.1, ts=1_700_000_000_500, side='buy'))
        feed.events.handle_liquidation(Liquidation('okx', 'BTC-USDT', 'sell', 64_000.0, 0.1, 1_700_000_000_600))

        price = client.get('/api/price').json()
        assert price['symbol'] == 'BTCUSDT'
        assert price['close'] == 64_000.0
        assert price['startTime'] == 1_699_999_980_000

        history = client.get('/api/history').json()
        assert history['interval'] == '1m'
        assert len(history['candles']) == 1

        liquidations = client.get('/api/liquidations').json()
        assert liquidations['rows'][0]['exchangeId'] == 'okx'

        top = client.get('/api/top-buyers').json()
        assert top['rows'] == [] and top['updatedAt'] is None

        assert client.get('/api/fear-greed').json() == {}
        assert client.get('/api/news').json()['rows'] == []
        assert client.get('/api/markets').json()['rows'] == []

        health = client.get('/health').json()
        assert health['status'] == 'stopped'
        assert health['candles'] == 1
        assert health['liquidations'] == 1
        assert 'timestamp' in health
    finally:
        server.feed_service = None
    print("  ✓ HTTP routes OK")


if __name__ == "__main__":
    test_routes_before_service_exists()
    test_price_and_liquidation_routes()
