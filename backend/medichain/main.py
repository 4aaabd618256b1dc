from contextlib import asynccontextmanager
import logging
import os
import time

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Response, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration

from . import pubsub
from .database import Base, engine
from .errors import (
    BatchNotFound,
    ComplianceLogFailed,
    DuplicateBatch,
    InvalidTransition,
    LedgerUnavailable,
    PartyNotAuthorized,
    SupplyChainError,
)
from .ledger import build_ledger_gateway
from .routes import analytics, batches, companies, ledger, sync, verification

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

dsn = os.getenv("SENTRY_DSN")
if dsn:
    sentry_sdk.init(dsn=dsn, integrations=[FastApiIntegration()])

REQUEST_COUNT = Counter("request_count", "Total requests", ["method", "endpoint"])
REQUEST_LATENCY = Histogram(
    "request_latency_seconds", "Request latency", ["endpoint"]
)

# most specific class first
ERROR_STATUS = (
    (DuplicateBatch, 409),
    (InvalidTransition, 409),
    (BatchNotFound, 404),
    (PartyNotAuthorized, 403),
    (ComplianceLogFailed, 502),
    (LedgerUnavailable, 503),
)


def status_for(exc: SupplyChainError) -> int:
    for error_cls, code in ERROR_STATUS:
        if isinstance(exc, error_cls):
            return code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    app.state.ledger = build_ledger_gateway()
    logger.info("Ledger gateway ready (%s)", app.state.ledger.backend)
    try:
        yield
    finally:
        app.state.ledger.close()


app = FastAPI(title="MediChain API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
        if origin.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

limiter = Limiter(key_func=get_remote_address, default_limits=["100/15minutes"])
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, lambda r, e: Response("Too Many Requests", status_code=429))
if os.getenv("TESTING") != "1":
    app.add_middleware(SlowAPIMiddleware)


@app.exception_handler(SupplyChainError)
async def supply_chain_error_handler(request: Request, exc: SupplyChainError):
    code = status_for(exc)
    if code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=code, content={"detail": exc.to_detail()})


@app.middleware("http")
async def record_metrics(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    REQUEST_COUNT.labels(request.method, endpoint).inc()
    REQUEST_LATENCY.labels(endpoint).observe(time.time() - start)
    return response


@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
def health():
    return {"status": "ok", "ledger_backend": app.state.ledger.backend}


app.include_router(batches.router)
app.include_router(verification.router)
app.include_router(ledger.router)
app.include_router(sync.router)
app.include_router(companies.router)
app.include_router(analytics.router)


@app.websocket("/ws/batches/{batch_id}")
async def batch_events(websocket: WebSocket, batch_id: str):
    r = await pubsub.get_redis()
    pub = r.pubsub()
    channel = pubsub.batch_channel(batch_id)
    # subscribe before accepting so no event published after the handshake is missed
    await pub.subscribe(channel)
    await websocket.accept()
    try:
        async for message in pub.listen():
            if message["type"] == "message":
                data = message["data"]
                if isinstance(data, bytes):
                    data = data.decode()
                await websocket.send_text(data)
    except WebSocketDisconnect:
        logger.debug("Websocket for %s disconnected", batch_id)
    finally:
        await pub.unsubscribe(channel)
