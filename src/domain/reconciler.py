"""Resolve payment notifications that arrived with a placeholder id (0).

Keap sometimes fires ``invoice.payment.add`` before the transaction id exists.
The reconciler waits, lists recent transactions (for the sibling contact when
one is known, otherwise globally) and feeds every transaction that is neither
in the dedup index nor already handled by this run through the normal payment
processing path. Runs stop once ```expected_count``` transactions are resolved or
the delay schedule is exhausted.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Protocol

from src.domain.dedup import DedupIndex
from src.domain.dispatch import Dispatcher
from src.domain.purchase_events import ProcessedPayment
from src.observability import incr_metric, log_event


CONTACT_SCOPED_DELAYS_SECONDS = (10, 20, 30)
GLOBAL_DELAYS_SECONDS = (15, 30, 60)


class ReconciliationState(str, Enum):
    WAITING = "WAITING"
    RESOLVED = "RESOLVED"
    EXHAUSTED = "EXHAUSTED"


@dataclass
class ReconciliationOutcome:
    state: ReconciliationState
    resolved_ids: list[int] = field(default_factory=list)
    attempts: int = 0


class TransactionSource(Protocol):
    def get_recent_transactions(self, since: datetime, limit: int = 50) -> list[dict[str, Any]]: ...

    def get_recent_transactions_for_contact(self, contact_id: int, limit: int = 10) -> list[dict[str, Any]]: ...


class PaymentProcessor(Protocol):
    def process_payment(self, payment_id: int, now: datetime | None = None) -> ProcessedPayment: ...


def _transaction_id(transaction: dict[str, Any]) -> int | None:
    try:
        value = int(transaction.get("id") or 0)
    except (TypeError, ValueError):
        return None
    return value or None


class Reconciler:
    def __init__(
        self,
        *,
        crm: TransactionSource,
        dedup: DedupIndex,
        processor: PaymentProcessor,
        dispatcher: Dispatcher,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] | None = None,
        global_lookback_minutes: int = 10,
        global_limit: int = 50,
        contact_limit: int = 10,
    ) -> None:
        self._crm = crm
        self._dedup = dedup
        self._processor = processor
        self._dispatcher = dispatcher
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._global_lookback_minutes = global_lookback_minutes
        self._global_limit = global_limit
        self._contact_limit = contact_limit

    def submit(
        self,
        expected_count: int,
        known_contact_id: int | None = None,
        exclude_ids: Iterable[int] = (),
    ) -> None:
        self._dispatcher.submit(
            "reconcile_deferred",
            self.reconcile_deferred,
            expected_count,
            known_contact_id,
            exclude_ids=tuple(exclude_ids),
        )

    def reconcile_deferred(
        self,
        expected_count: int,
        known_contact_id: int | None = None,
        exclude_ids: Iterable[int] = (),
    ) -> ReconciliationOutcome:
        """Poll Keap until ``expected_count`` new transactions are resolved.

        ``exclude_ids`` are real payment ids from the same notification; they
        were handled by the webhook and never count toward ``expected_count``.
        A transaction only becomes handled once it is classified, so a failed
        lookup is retried on the next attempt.
        """
        delays = CONTACT_SCOPED_DELAYS_SECONDS if known_contact_id else GLOBAL_DELAYS_SECONDS
        scope = "contact" if known_contact_id else "global"
        outcome = ReconciliationOutcome(state=ReconciliationState.WAITING)
        handled: set[int] = {int(value) for value in exclude_ids}

        log_event(
            "reconciliation_started",
            expected_count=expected_count,
            contact_id=known_contact_id,
            scope=scope,
            excluded=len(handled),
        )
        for attempt, delay in enumerate(delays, start=1):
            self._sleep(delay)
            outcome.attempts = attempt
            candidates = self._candidates(known_contact_id)
            already_delivered = self._dedup.recent_transaction_ids(now=self._clock())

            new_ids: list[int] = []
            for transaction in candidates:
                txn_id = _transaction_id(transaction)
                if txn_id is None or txn_id in handled or txn_id in new_ids:
                    continue
                if str(txn_id) in already_delivered:
                    continue
                new_ids.append(txn_id)

            for txn_id in new_ids:
                processed = self._processor.process_payment(txn_id, now=self._clock())
                if processed.classification is not None:
                    handled.add(txn_id)
                    outcome.resolved_ids.append(txn_id)

            log_event(
                "reconciliation_attempt",
                attempt=attempt,
                scope=scope,
                candidates=len(candidates),
                new_transactions=len(new_ids),
                resolved=len(outcome.resolved_ids),
                expected_count=expected_count,
            )
            if len(outcome.resolved_ids) >= expected_count:
                outcome.state = ReconciliationState.RESOLVED
                incr_metric("reconciler.runs", state=outcome.state)
                log_event(
                    "reconciliation_resolved",
                    attempts=attempt,
                    resolved_ids=outcome.resolved_ids,
                    scope=scope,
                )
                return outcome

        outcome.state = ReconciliationState.EXHAUSTED
        incr_metric("reconciler.runs", state=outcome.state)
        log_event(
            "reconciliation_exhausted",
            level=logging.WARNING,
            attempts=outcome.attempts,
            expected_count=expected_count,
            resolved=len(outcome.resolved_ids),
            contact_id=known_contact_id,
            scope=scope,
        )
        return outcome

    def _candidates(self, known_contact_id: int | None) -> list[dict[str, Any]]:
        try:
            if known_contact_id:
                return self._crm.get_recent_transactions_for_contact(known_contact_id, limit=self._contact_limit)
            since = self._clock() - timedelta(minutes=self._global_lookback_minutes)
            return self._crm.get_recent_transactions(since, limit=self._global_limit)
        except Exception as exc:
            log_event(
                "reconciliation_query_failed",
                level=logging.WARNING,
                contact_id=known_contact_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return []
