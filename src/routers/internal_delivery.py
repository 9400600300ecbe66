from __future__ import annotations

import hmac

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from starlette.concurrency import run_in_threadpool

from src.config import settings
from src.domain.ledger import DeliveryStatus, LedgerRow, LedgerStoreError
from src.models.delivery import (
    DeadLetterListResponse,
    DeliveryHistoryResponse,
    LedgerRowResponse,
    MetricsResponse,
    ReconcileRequest,
    ReconcileResponse,
    RetryTickResponse,
)
from src.observability import incr_metric, log_event, metrics_snapshot
from src.runtime import Runtime, get_runtime


router = APIRouter(prefix="/api/internal/delivery", tags=["internal-delivery"])


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def require_scheduler_secret(
    request: Request,
    x_internal_scheduler_secret: str | None = Header(default=None),
) -> None:
    configured_secret = settings.internal_scheduler_secret
    if not configured_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="internal scheduler secret is not configured",
        )
    if not x_internal_scheduler_secret or not hmac.compare_digest(
        x_internal_scheduler_secret,
        configured_secret,
    ):
        incr_metric("internal_delivery.auth_failed")
        log_event("internal_delivery_auth_failed", request_id=_request_id(request))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid scheduler secret",
        )


def _row_response(row: LedgerRow) -> LedgerRowResponse:
    return LedgerRowResponse.model_validate(row.model_dump(mode="json"))


def _ledger_unavailable(exc: LedgerStoreError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"ledger unavailable: {exc}")


@router.post(
    "/retry-tick",
    response_model=RetryTickResponse,
    dependencies=[Depends(require_scheduler_secret)],
)
async def run_retry_tick(request: Request, runtime: Runtime = Depends(get_runtime)):
    summary = await run_in_threadpool(runtime.retry_worker.run_tick)
    log_event("retry_tick_requested", request_id=_request_id(request), **summary.as_dict())
    return RetryTickResponse(**summary.as_dict())


@router.get(
    "/events/{queue_id}",
    response_model=DeliveryHistoryResponse,
    dependencies=[Depends(require_scheduler_secret)],
)
def get_delivery_history(queue_id: str, runtime: Runtime = Depends(get_runtime)):
    try:
        history = runtime.store.history(queue_id)
    except LedgerStoreError as exc:
        raise _ledger_unavailable(exc) from exc
    if not history:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Delivery event not found")
    return DeliveryHistoryResponse(
        queue_id=queue_id,
        latest=_row_response(history[-1]),
        history=[_row_response(row) for row in history],
    )


@router.get(
    "/dead-letters",
    response_model=DeadLetterListResponse,
    dependencies=[Depends(require_scheduler_secret)],
)
def list_dead_letters(
    limit: int = Query(default=50, ge=1, le=500),
    runtime: Runtime = Depends(get_runtime),
):
    try:
        rows = runtime.store.list_latest(DeliveryStatus.DEAD, limit=limit)
    except LedgerStoreError as exc:
        raise _ledger_unavailable(exc) from exc
    return DeadLetterListResponse(count=len(rows), items=[_row_response(row) for row in rows])


@router.post(
    "/reconcile",
    response_model=ReconcileResponse,
    dependencies=[Depends(require_scheduler_secret)],
)
async def run_reconcile(
    data: ReconcileRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    log_event(
        "reconcile_requested",
        request_id=_request_id(request),
        expected_count=data.expected_count,
        contact_id=data.contact_id,
        run_inline=data.run_inline,
    )
    if not data.run_inline:
        runtime.reconciler.submit(data.expected_count, data.contact_id)
        return ReconcileResponse(status="submitted", expected_count=data.expected_count, contact_id=data.contact_id)

    outcome = await run_in_threadpool(runtime.reconciler.reconcile_deferred, data.expected_count, data.contact_id)
    return ReconcileResponse(
        status=outcome.state.value,
        expected_count=data.expected_count,
        contact_id=data.contact_id,
        resolved_ids=outcome.resolved_ids,
        attempts=outcome.attempts,
    )


@router.get(
    "/metrics",
    response_model=MetricsResponse,
    dependencies=[Depends(require_scheduler_secret)],
)
def get_delivery_metrics(runtime: Runtime = Depends(get_runtime)):
    return MetricsResponse(counters=metrics_snapshot(), retry_worker_running=runtime.retry_worker.running)
