from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from src.config import settings
from src.domain.delivery import DeliveryMetadata
from src.domain.normalization import SUPPORTED_BRANDS, normalize_brand
from src.models.subscribe import SubscribeRequest, SubscribeResponse
from src.observability import incr_metric, log_event
from src.providers.meta.client import hash_user_data
from src.rate_limit import client_ip, limiter
from src.runtime import Runtime, get_runtime


router = APIRouter(tags=["subscribe"])


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _reject(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": message},
    )


def build_subscribe_event(
    data: SubscribeRequest,
    *,
    ip_address: str | None,
    user_agent: str | None,
    source_url: str | None,
    event_time: int,
) -> dict[str, Any]:
    user_data: dict[str, Any] = hash_user_data(em=data.em, fn=data.fname, external_id=data.keap_contact_id)
    if data.fbp:
        user_data["fbp"] = data.fbp
    if data.fbc:
        user_data["fbc"] = data.fbc
    if ip_address:
        user_data["client_ip_address"] = ip_address
    if user_agent:
        user_data["client_user_agent"] = user_agent

    event: dict[str, Any] = {
        "event_name": "Subscribe",
        "event_time": event_time,
        "action_source": "website",
        "user_data": user_data,
    }
    if data.event_id:
        event["event_id"] = data.event_id
    if source_url:
        event["event_source_url"] = source_url
    return event


@router.post("/subscribe", response_model=SubscribeResponse, response_model_exclude_none=True)
@limiter.limit(settings.subscribe_rate_limit)
def subscribe(
    data: SubscribeRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    req_id = _request_id(request)
    incr_metric("subscribe.received")

    if data.website:
        incr_metric("subscribe.rejected", reason="honeypot")
        log_event("subscribe_honeypot_triggered", level=logging.WARNING, request_id=req_id)
        return _reject("Invalid submission")

    brand = normalize_brand(data.brand)
    if brand is None:
        incr_metric("subscribe.rejected", reason="unknown_brand")
        log_event("subscribe_unknown_brand", level=logging.WARNING, request_id=req_id, brand=data.brand)
        return _reject(f"Unknown brand: {data.brand}. Supported brands: {', '.join(SUPPORTED_BRANDS)}")

    email = data.em.strip().lower()
    ip_address = client_ip(request)
    user_agent = request.headers.get("User-Agent")
    source_url = data.source_url or request.headers.get("Referer")
    pixel_id = data.pixel_id or runtime.pipeline.resolver.get_pixel_id(brand)

    runtime.tracking.insert(
        {
            "created_at": datetime.now(timezone.utc).isoformat(),
            "brand": brand,
            "email": email,
            "keap_contact_id": data.keap_contact_id,
            "pixel_id": pixel_id,
            "fbp": data.fbp,
            "fbc": data.fbc,
            "fbclid": data.fbclid,
            "event_id": data.event_id,
            "utm_source": data.utm_source,
            "utm_medium": data.utm_medium,
            "utm_campaign": data.utm_campaign,
            "utm_content": data.utm_content,
            "utm_term": data.utm_term,
            "source_url": source_url,
            "user_agent": user_agent,
            "ip_address": ip_address,
        }
    )

    event = build_subscribe_event(
        data,
        ip_address=ip_address,
        user_agent=user_agent,
        source_url=source_url,
        event_time=int(time.time()),
    )
    metadata = DeliveryMetadata(
        source="subscribe",
        brand=brand,
        event_name="Subscribe",
        email=email,
        email_hash=event["user_data"].get("em"),
        keap_contact_id=data.keap_contact_id,
        event_id=data.event_id,
        pixel_id=pixel_id,
    )
    runtime.pipeline.submit_enqueue_and_send(metadata, event)

    incr_metric("subscribe.accepted", brand=brand)
    log_event(
        "subscriber_accepted",
        request_id=req_id,
        brand=brand,
        source_id=data.source_id,
        event_id=data.event_id,
        has_pixel=bool(pixel_id),
    )
    return SubscribeResponse(success=True, redirect_url=data.redirect_slug)
