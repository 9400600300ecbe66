"""Durable delivery of conversion events.

``enqueue_and_send`` records a PENDING ledger row, makes the first attempt
immediately and records its outcome. The PENDING row is leased for
``pending_lease_seconds`` so the retry worker only picks it up when the first
attempt never recorded a result. Later attempts come from the retry
worker through ``retry``. Every attempt appends exactly one row; ledger write
failures are logged and never propagate to the caller.
"""

from __future__ import annotations

import json
import logging
import random
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Literal, Protocol

from pydantic import BaseModel

from src.domain.destinations import DestinationResolver
from src.domain.dispatch import Dispatcher
from src.domain.ledger import DeliveryStatus, LedgerRow, LedgerStoreError
from src.domain.scheduler import next_state
from src.observability import incr_metric, log_event
from src.providers.meta.client import SendResult


class DeliveryMetadata(BaseModel):
    source: Literal["subscribe", "purchase"]
    brand: str
    event_name: str
    email: str | None = None
    email_hash: str | None = None
    keap_contact_id: str | None = None
    order_id: str | None = None
    event_id: str | None = None
    pixel_id: str | None = None


class Sender(Protocol):
    def send(
        self,
        *,
        pixel_id: str,
        access_token: str,
        events: list[dict[str, Any]],
        brand: str | None = None,
    ) -> SendResult: ...


class LedgerStore(Protocol):
    def append(self, row: LedgerRow) -> None: ...

    def due_for_retry(self, limit: int, now: datetime | None = None) -> list[LedgerRow]: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryPipeline:
    def __init__(
        self,
        *,
        store: LedgerStore,
        sender: Sender,
        resolver: DestinationResolver,
        dispatcher: Dispatcher,
        clock: Callable[[], datetime] = _utcnow,
        rng: random.Random | None = None,
        pending_lease_seconds: float = 60.0,
    ) -> None:
        self.store = store
        self.sender = sender
        self.resolver = resolver
        self.dispatcher = dispatcher
        self._clock = clock
        self._rng = rng
        self._pending_lease = timedelta(seconds=pending_lease_seconds)

    def now(self) -> datetime:
        return self._clock()

    def new_pending_row(self, metadata: DeliveryMetadata, event: dict[str, Any]) -> LedgerRow:
        now = self._clock()
        return LedgerRow(
            created_at=now,
            updated_at=now,
            queue_id=str(uuid.uuid4()),
            source=metadata.source,
            brand=metadata.brand,
            event_name=metadata.event_name,
            email=metadata.email,
            email_hash=metadata.email_hash,
            keap_contact_id=metadata.keap_contact_id,
            order_id=metadata.order_id,
            event_id=metadata.event_id,
            pixel_id=metadata.pixel_id,
            event_time=int(event.get("event_time") or now.timestamp()),
            action_source=str(event.get("action_source") or "website"),
            event_source_url=event.get("event_source_url"),
            capi_payload_json=json.dumps([event], sort_keys=True),
            status=DeliveryStatus.PENDING,
            attempt_count=0,
            # Leased past the first attempt; only an orphaned row becomes due.
            next_attempt_at=now + self._pending_lease,
        )

    def enqueue_and_send(self, metadata: DeliveryMetadata, event: dict[str, Any]) -> SendResult:
        pending = self.new_pending_row(metadata, event)
        self._safe_append(pending)
        incr_metric("delivery.enqueued", source=metadata.source, event_name=metadata.event_name)
        log_event(
            "delivery_enqueued",
            queue_id=pending.queue_id,
            source=metadata.source,
            brand=metadata.brand,
            event_name=metadata.event_name,
            event_id=metadata.event_id,
        )
        outcome = self._attempt(pending, [event])
        self._record_attempt(pending, outcome)
        return outcome

    def submit_enqueue_and_send(self, metadata: DeliveryMetadata, event: dict[str, Any]) -> None:
        self.dispatcher.submit("enqueue_and_send", self.enqueue_and_send, metadata, event)

    def retry(self, row: LedgerRow) -> tuple[SendResult, LedgerRow]:
        events = json.loads(row.capi_payload_json)
        if not isinstance(events, list):
            events = [events]
        outcome = self._attempt(row, events)
        return outcome, self._record_attempt(row, outcome)

    def _attempt(self, row: LedgerRow, events: list[dict[str, Any]]) -> SendResult:
        access_token = self.resolver.get_access_token(row.brand)
        if not access_token:
            return SendResult(success=False, latency_ms=0, error=f"No access token for brand: {row.brand}")
        pixel_id = row.pixel_id or self.resolver.get_pixel_id(row.brand)
        if not pixel_id:
            return SendResult(success=False, latency_ms=0, error=f"No pixel id for brand: {row.brand}")
        return self.sender.send(
            pixel_id=pixel_id,
            access_token=access_token,
            events=events,
            brand=row.brand,
        )

    def _record_attempt(self, prior: LedgerRow, outcome: SendResult) -> LedgerRow:
        now = self._clock()
        status, next_attempt_at = next_state(prior.attempt_count, outcome.success, now=now, rng=self._rng)
        row = prior.successor(
            status=status,
            attempt_count=prior.attempt_count + 1,
            next_attempt_at=next_attempt_at,
            now=now,
            http_status=outcome.http_status,
            error_message=outcome.error,
            response_json=outcome.response_json,
            latency_ms=outcome.latency_ms,
        )
        self._safe_append(row)
        incr_metric("delivery.attempts", status=status)
        if status == DeliveryStatus.DEAD:
            log_event(
                "delivery_dead_lettered",
                level=logging.WARNING,
                queue_id=row.queue_id,
                brand=row.brand,
                event_id=row.event_id,
                attempt_count=row.attempt_count,
                error=outcome.error,
            )
        return row

    def _safe_append(self, row: LedgerRow) -> None:
        try:
            self.store.append(row)
        except LedgerStoreError as exc:
            log_event(
                "ledger_append_failed",
                level=logging.ERROR,
                queue_id=row.queue_id,
                status=row.status,
                attempt_count=row.attempt_count,
                error=str(exc),
            )
