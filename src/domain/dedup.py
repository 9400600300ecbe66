from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from src.domain.ledger import LEDGER_TABLE
from src.observability import log_event


PURCHASE_EVENT_PREFIX = "purchase_txn_"


def purchase_event_id(payment_id: int | str) -> str:
    return f"{PURCHASE_EVENT_PREFIX}{payment_id}"


def transaction_id_from_event_id(event_id: str | None) -> str | None:
    if not event_id or not event_id.startswith(PURCHASE_EVENT_PREFIX):
        return None
    value = event_id[len(PURCHASE_EVENT_PREFIX):]
    return value or None


class DedupIndex:
    """Answers whether a Keap transaction already has a queued or delivered event."""

    def __init__(self, client: Any, table: str = LEDGER_TABLE, window_minutes: int = 30) -> None:
        self._client = client
        self._table = table
        self._window_minutes = window_minutes

    def recent_transaction_ids(
        self,
        minutes_back: int | None = None,
        now: datetime | None = None,
    ) -> set[str]:
        window = self._window_minutes if minutes_back is None else minutes_back
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(minutes=window)
        try:
            result = (
                self._client.table(self._table)
                .select("event_id")
                .eq("source", "purchase")
                .like("event_id", f"{PURCHASE_EVENT_PREFIX}%")
                .gte("created_at", cutoff.isoformat())
                .execute()
            )
        except Exception as exc:
            log_event("dedup_index_query_failed", level=logging.ERROR, error=str(exc))
            return set()
        ids: set[str] = set()
        for row in result.data or []:
            txn_id = transaction_id_from_event_id(row.get("event_id"))
            if txn_id:
                ids.add(txn_id)
        return ids