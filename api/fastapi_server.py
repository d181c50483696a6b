import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.metrics import start_metrics_server
from config import config
from monitoring.logging_utils import setup_logging


logger = logging.getLogger(__name__)

feed_service = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global feed_service
    from main import FeedService
    monitoring_cfg = config.section('monitoring')
    if monitoring_cfg.get('metrics_enabled', False):
        start_metrics_server(int(monitoring_cfg.get('metrics_port', 9090)))
    feed_service = FeedService()
    task = asyncio.create_task(feed_service.start())
    try:
        yield
    finally:
        if feed_service:
            await feed_service.stop()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


app = FastAPI(title="BTC Live Feed", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(config.section('api').get('cors_origins', ["*"])),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _not_ready() -> JSONResponse:
    return JSONResponse(status_code=503, content={"message": "Feed service not initialized"})


@app.get("/health")
def health():
    if not feed_service:
        return {"status": "starting", "timestamp": datetime.utcnow().isoformat()}
    payload = feed_service.health()
    payload["timestamp"] = datetime.utcnow().isoformat()
    return payload


@app.get("/api/price")
def get_price():
    if not feed_service:
        return _not_ready()
    price = feed_service.latest_price()
    if price is None:
        return JSONResponse(status_code=503, content={"message": "Price is not available yet"})
    return {"symbol": feed_service.symbol, **price}


@app.get("/api/history")
def get_history():
    if not feed_service:
        return _not_ready()
    return {
        "symbol": feed_service.symbol,
        "interval": feed_service.candle_cfg.get('history_interval', '1m'),
        "candles": feed_service.candle_history(),
    }


@app.get("/api/top-buyers")
def get_top_buyers():
    if not feed_service:
        return _not_ready()
    return feed_service.top_buyers_payload()


@app.get("/api/liquidations")
def get_liquidations():
    if not feed_service:
        return _not_ready()
    return feed_service.liquidations_payload()


@app.get("/api/markets")
def get_markets():
    if not feed_service:
        return _not_ready()
    return feed_service.markets_payload()


@app.get("/api/fear-greed")
def get_fear_greed():
    if not feed_service:
        return _not_ready()
    return feed_service.fear_greed_payload() or {}


@app.get("/api/news")
def get_news():
    if not feed_service:
        return _not_ready()
    return feed_service.news_payload()


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    if not feed_service:
        await websocket.close(code=1013)
        return

    subscriber = feed_service.broadcaster.subscribe()
    try:
        async for message in subscriber.messages():
            await websocket.send_json(message)
    except WebSocketDisconnect:
        pass
    except Exception as exc:
        logger.info("Subscriber %s dropped: %s", subscriber.subscriber_id, exc)
    finally:
        feed_service.broadcaster.unsubscribe(subscriber)


if __name__ == "__main__":
    import uvicorn
    setup_logging(config.section('monitoring').get('log_level', 'INFO'))
    api_cfg = config.section('api')
    uvicorn.run(
        app,
        host=api_cfg.get('host', '0.0.0.0'),
        port=int(api_cfg.get('port', 3000)),
        log_level="info"
    )
