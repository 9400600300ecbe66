from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from src.config import Settings, settings
from src.db import get_supabase
from src.domain.classifier import PaymentClassifier
from src.domain.dedup import DedupIndex
from src.domain.delivery import DeliveryPipeline
from src.domain.destinations import DestinationResolver, build_destination_map
from src.domain.dispatch import ThreadPoolDispatcher
from src.domain.ledger import SupabaseLedgerStore
from src.domain.purchase_events import PurchaseEventProcessor
from src.domain.reconciler import Reconciler
from src.domain.retry_worker import RetryWorker
from src.domain.tracking import ClassificationAuditLog, TrackingContextStore
from src.providers.keap.client import KeapClient, KeapTokenManager
from src.providers.meta.client import MetaSender


@dataclass
class Runtime:
    """Process-wide collaborators shared by the routers and the retry worker."""

    store: SupabaseLedgerStore
    dedup: DedupIndex
    tracking: TrackingContextStore
    keap: KeapClient
    pipeline: DeliveryPipeline
    processor: PurchaseEventProcessor
    reconciler: Reconciler
    retry_worker: RetryWorker
    dispatcher: ThreadPoolDispatcher


def build_runtime(config: Settings, client) -> Runtime:
    dispatcher = ThreadPoolDispatcher(max_workers=config.dispatcher_max_workers)
    store = SupabaseLedgerStore(client)
    dedup = DedupIndex(client, window_minutes=config.dedup_window_minutes)
    tracking = TrackingContextStore(client)
    resolver = DestinationResolver(
        build_destination_map(
            shared_access_token=config.meta_access_token,
            access_tokens=config.meta_access_tokens,
            pixel_ids=config.meta_pixel_ids,
        )
    )
    keap = KeapClient(
        KeapTokenManager(
            client_id=config.keap_client_id,
            client_secret=config.keap_client_secret,
            refresh_token=config.keap_refresh_token,
            timeout_seconds=config.keap_timeout_seconds,
        ),
        timeout_seconds=config.keap_timeout_seconds,
    )
    pipeline = DeliveryPipeline(
        store=store,
        sender=MetaSender(
            test_event_code=config.meta_test_event_code,
            timeout_seconds=config.meta_timeout_seconds,
        ),
        resolver=resolver,
        dispatcher=dispatcher,
        # The lease has to outlive a full Meta request.
        pending_lease_seconds=max(config.delivery_pending_lease_seconds, config.meta_timeout_seconds * 2),
    )
    processor = PurchaseEventProcessor(
        classifier=PaymentClassifier(keap, ClassificationAuditLog(client)),
        brands=keap,
        pipeline=pipeline,
        tracking=tracking,
    )
    reconciler = Reconciler(
        crm=keap,
        dedup=dedup,
        processor=processor,
        dispatcher=dispatcher,
        global_lookback_minutes=config.reconcile_global_lookback_minutes,
        global_limit=config.reconcile_global_limit,
        contact_limit=config.reconcile_contact_limit,
    )
    retry_worker = RetryWorker(
        pipeline,
        interval_seconds=config.retry_worker_interval_seconds,
        batch_size=config.retry_worker_batch_size,
    )
    return Runtime(
        store=store,
        dedup=dedup,
        tracking=tracking,
        keap=keap,
        pipeline=pipeline,
        processor=processor,
        reconciler=reconciler,
        retry_worker=retry_worker,
        dispatcher=dispatcher,
    )


@lru_cache(maxsize=1)
def get_runtime() -> Runtime:
    return build_runtime(settings, get_supabase())
