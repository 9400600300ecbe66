from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from src.observability import log_event


TRACKING_CONTEXT_TABLE = "tracking_context"
WEBHOOK_LOG_TABLE = "keap_webhook_log"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class TrackingContextStore:
    """Browser attribution captured at signup, looked up again at purchase time."""

    def __init__(self, client: Any, table: str = TRACKING_CONTEXT_TABLE) -> None:
        self._client = client
        self._table = table

    def insert(self, record: dict[str, Any]) -> None:
        payload = dict(record)
        payload.setdefault("created_at", _now_iso())
        try:
            self._client.table(self._table).insert(payload).execute()
        except Exception as exc:
            log_event(
                "tracking_context_insert_failed",
                level=logging.ERROR,
                brand=payload.get("brand"),
                error=str(exc),
            )
            return
        log_event("tracking_context_inserted", brand=payload.get("brand"))

    def _latest(self, column: str, value: str) -> dict[str, Any] | None:
        result = (
            self._client.table(self._table)
            .select("*")
            .eq(column, value)
            .not_.is_("pixel_id", "null")
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    def lookup(self, keap_contact_id: str | None, email: str | None) -> dict[str, Any] | None:
        try:
            if keap_contact_id:
                found = self._latest("keap_contact_id", keap_contact_id)
                if found:
                    return found
            if email:
                return self._latest("email", email.strip().lower())
        except Exception as exc:
            log_event(
                "tracking_context_lookup_failed",
                level=logging.ERROR,
                keap_contact_id=keap_contact_id,
                error=str(exc),
            )
        return None


class ClassificationAuditLog:
    """One row per classified payment, for after-the-fact auditing."""

    def __init__(self, client: Any, table: str = WEBHOOK_LOG_TABLE) -> None:
        self._client = client
        self._table = table

    def record(self, entry: dict[str, Any]) -> None:
        payload = dict(entry)
        payload.setdefault("created_at", _now_iso())
        try:
            self._client.table(self._table).insert(payload).execute()
        except Exception as exc:
            log_event(
                "classification_audit_insert_failed",
                level=logging.ERROR,
                payment_id=payload.get("payment_id"),
                error=str(exc),
            )
