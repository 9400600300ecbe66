from __future__ import annotations

import hmac
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, Response
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from src.config import settings
from src.models.webhooks import KeapWebhookPayload, WebhookAck
from src.observability import incr_metric, log_event
from src.runtime import Runtime, get_runtime


router = APIRouter(prefix="/webhooks/keap", tags=["keap-webhooks"])


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _secret_matches(header_value: str | None) -> bool:
    configured = settings.keap_webhook_secret
    if not configured:
        return True
    return bool(header_value) and hmac.compare_digest(header_value, configured)


def _handle_notifications(payload: KeapWebhookPayload, runtime: Runtime, req_id: str | None) -> WebhookAck:
    ack = WebhookAck()
    known_contact_id: int | None = None

    for payment_id in payload.payment_ids:
        try:
            processed = runtime.processor.process_payment(payment_id)
        except Exception as exc:
            incr_metric("keap_webhook.payments.failed")
            log_event(
                "keap_payment_processing_failed",
                level=logging.ERROR,
                request_id=req_id,
                payment_id=payment_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            ack.details.append({"payment_id": payment_id, "status": "error"})
            continue
        ack.processed += 1
        if processed.contact_id and known_contact_id is None:
            known_contact_id = processed.contact_id
        ack.details.append(
            {
                "payment_id": payment_id,
                "classification": processed.classification.value if processed.classification else None,
                "dispatched": processed.dispatched,
            }
        )

    placeholders = payload.placeholder_count
    if placeholders:
        runtime.reconciler.submit(placeholders, known_contact_id, exclude_ids=payload.payment_ids)
        ack.deferred = placeholders
        incr_metric("keap_webhook.placeholders.deferred", value=placeholders)
        log_event(
            "keap_placeholder_payments_deferred",
            request_id=req_id,
            count=placeholders,
            contact_id=known_contact_id,
        )
    return ack


@router.post("/invoice-payment", response_model=WebhookAck)
async def receive_invoice_payment(
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    req_id = _request_id(request)
    incr_metric("keap_webhook.received")

    hook_secret = request.headers.get("X-Hook-Secret")
    if hook_secret:
        response.headers["X-Hook-Secret"] = hook_secret
        log_event("keap_hook_verification", request_id=req_id)
        return WebhookAck(verification=True)

    if not _secret_matches(request.headers.get("X-Webhook-Secret")):
        incr_metric("keap_webhook.auth_failed")
        log_event("keap_webhook_invalid_secret", level=logging.WARNING, request_id=req_id)
        return WebhookAck()

    raw_body = await request.body()
    try:
        body: Any = json.loads(raw_body.decode("utf-8")) if raw_body else {}
        payload = KeapWebhookPayload.model_validate(body)
    except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
        incr_metric("keap_webhook.invalid_payload")
        log_event("keap_webhook_invalid_payload", level=logging.WARNING, request_id=req_id, error=str(exc))
        return WebhookAck()

    log_event(
        "keap_webhook_received",
        request_id=req_id,
        event_key=payload.event_key,
        object_type=payload.object_type,
        payment_ids=payload.payment_ids,
        placeholders=payload.placeholder_count,
    )
    if not payload.object_keys:
        return WebhookAck()

    try:
        ack = await run_in_threadpool(_handle_notifications, payload, runtime, req_id)
    except Exception as exc:
        incr_metric("keap_webhook.failed")
        log_event(
            "keap_webhook_failed",
            level=logging.ERROR,
            request_id=req_id,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return WebhookAck()

    incr_metric("keap_webhook.processed")
    log_event(
        "keap_webhook_processed",
        request_id=req_id,
        processed=ack.processed,
        deferred=ack.deferred,
    )
    return ack
