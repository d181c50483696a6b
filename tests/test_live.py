#!/usr/bin/env python
"""
Quick live check - 20 seconds against the real venues
"""
import asyncio
import sys
sys.path.insert(0, '.')


async def main():
    print("\n=== Live Feed Validation ===\n")

    print("1. Testing imports...")
    from config import config
    from ingest.rest_client import RESTClient
    from ingest.rest_poller import RESTPoller
    from aggregates.top_buyers import TopBuyersAggregator
    from main import FeedService
    print("   ✓ All imports successful\n")

    print("2. Testing configuration...")
    symbol = config.section('service').get('symbol')
    print(f"   Symbol: {symbol}")
    print(f"   Streams: {[c['id'] for c in config.section('websocket').get('connections', [])]}")
    print("   ✓ Config loaded\n")

    print("3. Testing REST snapshots...")
    rest = RESTClient()
    try:
        poller = RESTPoller(rest, symbol)
        candles = await poller.fetch_history()
        print(f"   ✓ {len(candles)} minute candles, last close ${candles[-1].close:.2f}")
        snapshot = await TopBuyersAggregator(rest_client=rest, symbol=symbol).refresh()
        for status in snapshot.statuses:
            print(f"   {status['exchange']}: {status['status']} {status.get('error', '')}")
        print(f"   ✓ {len(snapshot.rows)} top buyer rows\n")
    finally:
        await rest.close()

    print("4. Testing full feed (15 seconds)...")
    feed = FeedService()
    task = asyncio.create_task(feed.start())
    await asyncio.sleep(15)
    health = feed.health()
    await feed.stop()
    await asyncio.gather(task, return_exceptions=True)

    for connection_id, status in health['connections'].items():
        print(f"   {connection_id}: connected={status['connected']} attempt={status['reconnectAttempt']}")
    print(f"   Latest second price: {health['latestSecondPrice']}")
    print(f"   Liquidations kept: {health['liquidations']}")
    print("\n=== ✓ LIVE CHECK PASSED ===\n")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nCheck interrupted")
    except Exception as e:
        print(f"\n✗ Check failed: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)
