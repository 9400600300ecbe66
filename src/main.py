import logging
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from src.config import settings
from src.observability import incr_metric, log_event
from src.rate_limit import client_ip, limiter
from src.routers import (
    internal_delivery,
    keap_webhook,
    subscribe,
)
from src.runtime import get_runtime


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = None
    if settings.retry_worker_enabled:
        try:
            runtime = get_runtime()
        except RuntimeError as exc:
            log_event("retry_worker_not_started", level=logging.WARNING, error=str(exc))
        else:
            runtime.retry_worker.start()
    yield
    if runtime is not None:
        runtime.retry_worker.stop()
        runtime.dispatcher.shutdown(wait=False)


def _cors_origins() -> list[str]:
    origins = [origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()]
    return origins or ["*"]


app = FastAPI(title="Conversions Bridge", version="0.1.0", lifespan=lifespan)
app.state.limiter = limiter

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_exceeded(request: Request, exc: RateLimitExceeded):
    incr_metric("http.rate_limited", path=request.url.path)
    log_event(
        "rate_limit_exceeded",
        level=logging.WARNING,
        request_id=getattr(request.state, "request_id", None),
        path=request.url.path,
        client_ip=client_ip(request),
        limit=str(exc.detail),
    )
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"success": False, "error": "Too many requests, please try again later"},
    )


app.include_router(keap_webhook.router)
app.include_router(subscribe.router)
app.include_router(internal_delivery.router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "conversions-bridge"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
