from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class RetryTickResponse(BaseModel):
    processed: int
    sent: int
    failed: int
    dead: int
    skipped: bool


class LedgerRowResponse(BaseModel):
    queue_id: str
    created_at: datetime
    updated_at: datetime
    source: str
    brand: str
    event_name: str
    event_id: str | None = None
    keap_contact_id: str | None = None
    order_id: str | None = None
    pixel_id: str | None = None
    status: Literal["PENDING", "SENT", "FAILED", "DEAD"]
    attempt_count: int
    next_attempt_at: datetime
    last_http_status: int | None = None
    last_error_message: str | None = None
    last_latency_ms: int | None = None


class DeliveryHistoryResponse(BaseModel):
    queue_id: str
    latest: LedgerRowResponse
    history: list[LedgerRowResponse]


class DeadLetterListResponse(BaseModel):
    count: int
    items: list[LedgerRowResponse]


class ReconcileRequest(BaseModel):
    expected_count: int = Field(default=1, ge=1, le=50)
    contact_id: int | None = None
    run_inline: bool = False


class ReconcileResponse(BaseModel):
    status: Literal["submitted", "RESOLVED", "EXHAUSTED"]
    expected_count: int
    contact_id: int | None = None
    resolved_ids: list[int] = Field(default_factory=list)
    attempts: int = 0


class MetricsResponse(BaseModel):
    counters: dict[str, int]
    retry_worker_running: bool
