from __future__ import annotations

from slowapi import Limiter
from starlette.requests import Request

from src.config import settings


def client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


def rate_limit_key(request: Request) -> str:
    return client_ip(request) or "unknown"


limiter = Limiter(key_func=rate_limit_key, enabled=settings.rate_limit_enabled)
