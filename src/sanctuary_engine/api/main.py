from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from sanctuary_engine.api.alerts import router as alerts_router
from sanctuary_engine.api.rooms import router as rooms_router
from sanctuary_engine.api.sessions import router as sessions_router
from sanctuary_engine.api.ws import router as ws_router
from sanctuary_engine.config import get_settings
from sanctuary_engine.engine import get_engine
from sanctuary_engine.errors import SanctuaryError
from sanctuary_engine.infrastructure.db import healthcheck, create_all
import json
import logging
import time
import uuid

REQUESTS = Counter('api_requests_total', 'API Requests', ['endpoint', 'status'])
LATENCY = Histogram('api_request_latency_seconds', 'API request latency', ['endpoint'], buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5))

app = FastAPI(title="Sanctuary Session Engine API", version="0.1.0")
app.include_router(sessions_router)
app.include_router(rooms_router)
app.include_router(alerts_router)
app.include_router(ws_router)


@app.exception_handler(SanctuaryError)
async def sanctuary_error_handler(request: Request, exc: SanctuaryError):
    cid = getattr(request.state, "correlation_id", "n/a")
    logging.getLogger("app").info(json.dumps({
        "event": "request_rejected",
        "path": request.url.path,
        "error": exc.code,
        "detail": exc.message,
        "correlation_id": cid,
    }))
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    cid = getattr(request.state, "correlation_id", "n/a")
    logging.getLogger("app").error(json.dumps({
        "event": "error",
        "path": request.url.path,
        "detail": str(exc),
        "correlation_id": cid,
        "type": exc.__class__.__name__,
    }))
    return Response(content=json.dumps({"error": "internal_error", "correlation_id": cid}), media_type="application/json", status_code=500)


@app.middleware("http")
async def correlation_and_metrics(request: Request, call_next):
    cid = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
    request.state.correlation_id = cid
    start = time.time()
    response = await call_next(request)
    duration = time.time() - start
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    REQUESTS.labels(endpoint=endpoint, status=str(response.status_code)).inc()
    LATENCY.labels(endpoint=endpoint).observe(duration)
    response.headers["X-Correlation-ID"] = cid
    logging.getLogger("app").info(json.dumps({
        "event": "request",
        "method": request.method,
        "path": request.url.path,
        "status": response.status_code,
        "duration_ms": int(duration * 1000),
        "correlation_id": cid,
    }))
    return response


@app.on_event("startup")
def startup():
    settings = get_settings()
    # Configure structured logger once
    logger = logging.getLogger("app")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('%(message)s'))  # already JSON
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    if settings.app_env == "dev":
        create_all()
    get_engine()


@app.on_event("shutdown")
def shutdown():
    get_engine().shutdown()


@app.get("/health")
def health():
    return {"db": healthcheck(), "status": "ok"}


@app.get("/metrics")
def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
