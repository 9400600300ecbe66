"""Append-only delivery ledger.

Every delivery attempt for an outbound conversion event is recorded as a new
row in ``meta_capi_queue``. Rows are never updated: the current state of an
event is the row with the greatest ``updated_at`` for its ``queue_id``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict

from src.observability import incr_metric, log_event


LEDGER_TABLE = "meta_capi_queue"
LEDGER_LATEST_VIEW = "meta_capi_queue_latest"

_MIN_ROW_SPACING = timedelta(microseconds=1)


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    DEAD = "DEAD"


RETRYABLE_STATUSES = (DeliveryStatus.PENDING, DeliveryStatus.FAILED)


class LedgerStoreError(Exception):
    """Raised when the ledger backend rejects a read or an append."""


class LedgerRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    created_at: datetime
    updated_at: datetime
    queue_id: str
    source: str
    brand: str
    event_name: str
    email: str | None = None
    email_hash: str | None = None
    keap_contact_id: str | None = None
    order_id: str | None = None
    event_id: str | None = None
    pixel_id: str | None = None
    event_time: int
    action_source: str
    event_source_url: str | None = None
    capi_payload_json: str
    status: DeliveryStatus
    attempt_count: int = 0
    next_attempt_at: datetime
    last_http_status: int | None = None
    last_error_message: str | None = None
    last_response_json: str | None = None
    last_latency_ms: int | None = None

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    def successor(
        self,
        *,
        status: DeliveryStatus,
        attempt_count: int,
        next_attempt_at: datetime,
        now: datetime,
        http_status: int | None = None,
        error_message: str | None = None,
        response_json: str | None = None,
        latency_ms: int | None = None,
    ) -> "LedgerRow":
        """Build the row that supersedes this one.

        ``updated_at`` is forced past this row's timestamp so the successor
        always wins the latest-row projection, even on a coarse clock.
        """
        updated_at = max(now, self.updated_at + _MIN_ROW_SPACING)
        return self.model_copy(
            update={
                "updated_at": updated_at,
                "status": status,
                "attempt_count": attempt_count,
                "next_attempt_at": next_attempt_at,
                "last_http_status": http_status,
                "last_error_message": error_message,
                "last_response_json": response_json,
                "last_latency_ms": latency_ms,
            }
        )


def fold_latest(rows: Iterable[LedgerRow]) -> LedgerRow | None:
    latest: LedgerRow | None = None
    for row in rows:
        if latest is None or row.updated_at >= latest.updated_at:
            latest = row
    return latest


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SupabaseLedgerStore:
    def __init__(
        self,
        client: Any,
        table: str = LEDGER_TABLE,
        latest_view: str = LEDGER_LATEST_VIEW,
    ) -> None:
        self._client = client
        self._table = table
        self._latest_view = latest_view

    def append(self, row: LedgerRow) -> None:
        try:
            self._client.table(self._table).insert(row.to_record()).execute()
        except Exception as exc:
            incr_metric("ledger.append.failed", status=row.status)
            raise LedgerStoreError(f"ledger append failed for {row.queue_id}: {exc}") from exc
        incr_metric("ledger.append.succeeded", status=row.status)
        log_event(
            "ledger_row_appended",
            queue_id=row.queue_id,
            status=row.status,
            attempt_count=row.attempt_count,
        )

    def history(self, queue_id: str) -> list[LedgerRow]:
        try:
            result = (
                self._client.table(self._table)
                .select("*")
                .eq("queue_id", queue_id)
                .order("updated_at")
                .execute()
            )
        except Exception as exc:
            raise LedgerStoreError(f"ledger history read failed for {queue_id}: {exc}") from exc
        rows = [LedgerRow.model_validate(item) for item in result.data or []]
        return sorted(rows, key=lambda row: row.updated_at)

    def latest_by_identity(self, queue_id: str) -> LedgerRow | None:
        return fold_latest(self.history(queue_id))

    def due_for_retry(self, limit: int, now: datetime | None = None) -> list[LedgerRow]:
        cutoff = (now or _utcnow()).isoformat()
        try:
            result = (
                self._client.table(self._latest_view)
                .select("*")
                .in_("status", [status.value for status in RETRYABLE_STATUSES])
                .lte("next_attempt_at", cutoff)
                .order("next_attempt_at")
                .limit(limit)
                .execute()
            )
        except Exception as exc:
            log_event("ledger_due_scan_failed", level=logging.ERROR, error=str(exc))
            raise LedgerStoreError(f"ledger due-for-retry scan failed: {exc}") from exc
        return [LedgerRow.model_validate(item) for item in result.data or []]

    def list_latest(self, status: DeliveryStatus, limit: int = 100) -> list[LedgerRow]:
        try:
            result = (
                self._client.table(self._latest_view)
                .select("*")
                .eq("status", status.value)
                .order("updated_at", desc=True)
                .limit(limit)
                .execute()
            )
        except Exception as exc:
            raise LedgerStoreError(f"ledger status listing failed: {exc}") from exc
        return [LedgerRow.model_validate(item) for item in result.data or []]
