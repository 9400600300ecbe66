from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass

from src.domain.delivery import DeliveryPipeline
from src.domain.ledger import DeliveryStatus, LedgerStoreError
from src.observability import incr_metric, log_event


@dataclass
class RetryTickSummary:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    dead: int = 0
    skipped: bool = False

    def as_dict(self) -> dict[str, int | bool]:
        return asdict(self)


class RetryWorker:
    """Periodically re-drives ledger rows whose next attempt is due."""

    def __init__(
        self,
        pipeline: DeliveryPipeline,
        *,
        interval_seconds: float = 30.0,
        batch_size: int = 50,
    ) -> None:
        self._pipeline = pipeline
        self._interval_seconds = interval_seconds
        self._batch_size = batch_size
        self._tick_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_tick(self) -> RetryTickSummary:
        if not self._tick_lock.acquire(blocking=False):
            incr_metric("retry_worker.ticks.overlapped")
            return RetryTickSummary(skipped=True)
        try:
            return self._process_due()
        finally:
            self._tick_lock.release()

    def _process_due(self) -> RetryTickSummary:
        summary = RetryTickSummary()
        try:
            rows = self._pipeline.store.due_for_retry(self._batch_size, now=self._pipeline.now())
        except LedgerStoreError as exc:
            log_event("retry_worker_tick_failed", level=logging.ERROR, error=str(exc))
            return summary
        if not rows:
            return summary

        for row in rows:
            summary.processed += 1
            try:
                outcome, result_row = self._pipeline.retry(row)
            except Exception as exc:
                summary.failed += 1
                log_event(
                    "retry_worker_event_failed",
                    level=logging.ERROR,
                    queue_id=row.queue_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue
            if outcome.success:
                summary.sent += 1
            else:
                summary.failed += 1
                if result_row.status == DeliveryStatus.DEAD:
                    summary.dead += 1

        incr_metric("retry_worker.ticks.completed")
        log_event("retry_worker_tick_completed", **summary.as_dict())
        return summary

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="retry-worker", daemon=True)
        self._thread.start()
        log_event("retry_worker_started", interval_seconds=self._interval_seconds, batch_size=self._batch_size)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        log_event("retry_worker_stopped")

    def _loop(self) -> None:
        while not self._stop.wait(self._interval_seconds):
            try:
                self.run_tick()
            except Exception as exc:
                log_event("retry_worker_tick_failed", level=logging.ERROR, error=str(exc))
