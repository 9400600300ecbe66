from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx

from src.observability import incr_metric, log_event


META_GRAPH_API_BASE = "https://graph.facebook.com/v21.0"
_HASHED_USER_FIELDS = ("em", "ph", "fn", "ln", "external_id", "ct", "st", "zp", "country")


@dataclass
class SendResult:
    success: bool
    latency_ms: int
    http_status: int | None = None
    response_json: str | None = None
    error: str | None = None


def sha256(value: str) -> str:
    normalized = value.strip().lower()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def hash_user_data(**fields: str | None) -> dict[str, str]:
    """Hash the PII fields Meta accepts; empty values are dropped."""
    hashed: dict[str, str] = {}
    for key in _HASHED_USER_FIELDS:
        value = fields.get(key)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            hashed[key] = sha256(text)
    return hashed


def _post_events(
    *,
    url: str,
    access_token: str,
    body: dict[str, Any],
    timeout_seconds: float,
) -> httpx.Response:
    with httpx.Client(timeout=timeout_seconds) as client:
        return client.post(
            url,
            params={"access_token": access_token},
            headers={"Content-Type": "application/json"},
            json=body,
        )


def _response_text(response: httpx.Response) -> str:
    try:
        return json.dumps(response.json(), sort_keys=True)
    except ValueError:
        return response.text[:2000]


def send_event(
    *,
    pixel_id: str,
    access_token: str,
    events: list[dict[str, Any]],
    brand: str | None = None,
    test_event_code: str | None = None,
    base_url: str | None = None,
    timeout_seconds: float = 10.0,
) -> SendResult:
    """Deliver events to the Conversions API. Never raises."""
    url = f"{(base_url or META_GRAPH_API_BASE).rstrip('/')}/{pixel_id}/events"
    body: dict[str, Any] = {"data": events}
    if test_event_code:
        body["test_event_code"] = test_event_code

    started = time.monotonic()
    try:
        response = _post_events(
            url=url,
            access_token=access_token,
            body=body,
            timeout_seconds=timeout_seconds,
        )
    except httpx.HTTPError as exc:
        latency_ms = int((time.monotonic() - started) * 1000)
        incr_metric("meta.send.failed", brand=brand, reason="connectivity")
        log_event(
            "meta_capi_send_failed",
            level=logging.ERROR,
            brand=brand,
            pixel_id=pixel_id,
            error=str(exc),
            latency_ms=latency_ms,
        )
        return SendResult(success=False, latency_ms=latency_ms, error=f"Meta connectivity error: {exc}")
    except (httpx.InvalidURL, TypeError, ValueError) as exc:
        # Malformed URL or a payload that cannot be serialized to JSON.
        latency_ms = int((time.monotonic() - started) * 1000)
        incr_metric("meta.send.failed", brand=brand, reason="invalid_request")
        log_event(
            "meta_capi_send_failed",
            level=logging.ERROR,
            brand=brand,
            pixel_id=pixel_id,
            error=str(exc),
            error_type=type(exc).__name__,
            latency_ms=latency_ms,
        )
        return SendResult(success=False, latency_ms=latency_ms, error=f"Meta request could not be built: {exc}")

    latency_ms = int((time.monotonic() - started) * 1000)
    response_json = _response_text(response)
    if response.status_code >= 400:
        incr_metric("meta.send.failed", brand=brand, reason=f"http_{response.status_code}")
        log_event(
            "meta_capi_send_failed",
            level=logging.ERROR,
            brand=brand,
            pixel_id=pixel_id,
            http_status=response.status_code,
            latency_ms=latency_ms,
        )
        return SendResult(
            success=False,
            latency_ms=latency_ms,
            http_status=response.status_code,
            response_json=response_json,
            error=f"Meta API returned HTTP {response.status_code}: {response.text[:200]}",
        )

    try:
        response.json()
    except ValueError:
        incr_metric("meta.send.failed", brand=brand, reason="non_json")
        log_event(
            "meta_capi_send_failed",
            level=logging.ERROR,
            brand=brand,
            pixel_id=pixel_id,
            http_status=response.status_code,
            latency_ms=latency_ms,
        )
        return SendResult(
            success=False,
            latency_ms=latency_ms,
            http_status=response.status_code,
            response_json=response_json,
            error="Meta returned non-JSON response",
        )

    incr_metric("meta.send.succeeded", brand=brand)
    log_event(
        "meta_capi_send_succeeded",
        brand=brand,
        pixel_id=pixel_id,
        event_count=len(events),
        http_status=response.status_code,
        latency_ms=latency_ms,
    )
    return SendResult(
        success=True,
        latency_ms=latency_ms,
        http_status=response.status_code,
        response_json=response_json,
    )


class MetaSender:
    """Binds the Conversions API defaults from settings."""

    def __init__(self, test_event_code: str | None = None, timeout_seconds: float = 10.0) -> None:
        self._test_event_code = test_event_code
        self._timeout_seconds = timeout_seconds

    def send(
        self,
        *,
        pixel_id: str,
        access_token: str,
        events: list[dict[str, Any]],
        brand: str | None = None,
    ) -> SendResult:
        return send_event(
            pixel_id=pixel_id,
            access_token=access_token,
            events=events,
            brand=brand,
            test_event_code=self._test_event_code,
            timeout_seconds=self._timeout_seconds,
        )
