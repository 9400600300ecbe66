import json
import random
from datetime import datetime, timedelta, timezone

from fakes import FakeSender, FakeSupabase, FixedClock, InlineDispatcher, failure, make_resolver
from src.domain.delivery import DeliveryMetadata, DeliveryPipeline
from src.domain.destinations import DestinationResolver, build_destination_map
from src.domain.ledger import LEDGER_TABLE, DeliveryStatus, SupabaseLedgerStore
from src.domain.retry_worker import RetryWorker


NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _event(event_id: str = "purchase_txn_845325") -> dict:
    return {
        "event_name": "Purchase",
        "event_time": int(NOW.timestamp()),
        "action_source": "website",
        "event_id": event_id,
        "user_data": {"em": "a" * 64},
        "custom_data": {"value": 49.0, "currency": "USD"},
    }


def _metadata(**overrides) -> DeliveryMetadata:
    values = {
        "source": "purchase",
        "brand": "hryw",
        "event_name": "Purchase",
        "email": "buyer@example.com",
        "event_id": "purchase_txn_845325",
    }
    values.update(overrides)
    return DeliveryMetadata(**values)


def _pipeline(db, sender, clock=None, resolver=None):
    return DeliveryPipeline(
        store=SupabaseLedgerStore(db),
        sender=sender,
        resolver=resolver or make_resolver(),
        dispatcher=InlineDispatcher(),
        clock=clock or FixedClock(NOW),
        rng=random.Random(3),
    )


def test_enqueue_and_send_records_pending_then_sent():
    db = FakeSupabase()
    sender = FakeSender()
    pipeline = _pipeline(db, sender)

    outcome = pipeline.enqueue_and_send(_metadata(), _event())

    assert outcome.success is True
    rows = db.tables[LEDGER_TABLE]
    assert [row["status"] for row in rows] == ["PENDING", "SENT"]
    assert [row["attempt_count"] for row in rows] == [0, 1]
    assert rows[0]["queue_id"] == rows[1]["queue_id"]
    assert rows[1]["last_http_status"] == 200
    assert rows[1]["event_id"] == "purchase_txn_845325"
    assert json.loads(rows[0]["capi_payload_json"]) == [_event()]
    assert sender.calls[0]["pixel_id"] == "pixel-hryw"
    assert sender.calls[0]["access_token"] == "meta-token"


def test_metadata_pixel_overrides_brand_pixel():
    db = FakeSupabase()
    sender = FakeSender()
    _pipeline(db, sender).enqueue_and_send(_metadata(pixel_id="pixel-from-tracking"), _event())
    assert sender.calls[0]["pixel_id"] == "pixel-from-tracking"


def test_missing_pixel_is_a_synthesized_failure():
    db = FakeSupabase()
    sender = FakeSender()
    outcome = _pipeline(db, sender).enqueue_and_send(_metadata(brand="gkh"), _event())

    assert outcome.success is False
    assert outcome.error == "No pixel id for brand: gkh"
    assert sender.calls == []
    latest = db.tables[LEDGER_TABLE][-1]
    assert latest["status"] == "FAILED"
    assert latest["attempt_count"] == 1


def test_ledger_outage_does_not_break_delivery():
    db = FakeSupabase(failing_tables={LEDGER_TABLE})
    sender = FakeSender()
    outcome = _pipeline(db, sender).enqueue_and_send(_metadata(), _event())
    assert outcome.success is True
    assert len(sender.calls) == 1


def test_six_failures_dead_letter_with_attempt_count_six():
    db = FakeSupabase()
    sender = FakeSender([failure() for _ in range(10)])
    clock = FixedClock(NOW)
    pipeline = _pipeline(db, sender, clock=clock)
    worker = RetryWorker(pipeline, batch_size=50)

    pipeline.enqueue_and_send(_metadata(), _event())
    for _ in range(8):
        clock.now = clock.now + timedelta(hours=2)
        worker.run_tick()

    store = pipeline.store
    queue_id = db.tables[LEDGER_TABLE][0]["queue_id"]
    latest = store.latest_by_identity(queue_id)
    assert latest.status == DeliveryStatus.DEAD
    assert latest.attempt_count == 6
    assert len(sender.calls) == 6
    assert len(store.history(queue_id)) == 7
    assert store.due_for_retry(50, now=clock.now + timedelta(days=1)) == []


def test_attempt_count_matches_sender_calls_after_recovery():
    db = FakeSupabase()
    sender = FakeSender([failure(), failure()])
    clock = FixedClock(NOW)
    pipeline = _pipeline(db, sender, clock=clock)
    worker = RetryWorker(pipeline)

    pipeline.enqueue_and_send(_metadata(), _event())
    for _ in range(4):
        clock.now = clock.now + timedelta(hours=1)
        worker.run_tick()

    queue_id = db.tables[LEDGER_TABLE][0]["queue_id"]
    latest = pipeline.store.latest_by_identity(queue_id)
    assert latest.status == DeliveryStatus.SENT
    assert latest.attempt_count == len(sender.calls) == 3


def test_failed_row_waits_for_backoff():
    db = FakeSupabase()
    sender = FakeSender([failure()])
    clock = FixedClock(NOW)
    pipeline = _pipeline(db, sender, clock=clock)

    pipeline.enqueue_and_send(_metadata(), _event())
    clock.now = NOW + timedelta(minutes=1)
    summary = RetryWorker(pipeline).run_tick()

    assert summary.processed == 0
    assert len(sender.calls) == 1


def test_submit_enqueue_and_send_goes_through_dispatcher():
    db = FakeSupabase()
    pipeline = _pipeline(db, FakeSender())
    pipeline.submit_enqueue_and_send(_metadata(), _event())
    assert pipeline.dispatcher.tasks == ["enqueue_and_send"]
    assert len(db.tables[LEDGER_TABLE]) == 2


def test_retry_tick_during_first_attempt_does_not_resend():
    db = FakeSupabase()
    clock = FixedClock(NOW)
    pipeline = _pipeline(db, FakeSender(), clock=clock)
    worker = RetryWorker(pipeline)
    ticks = []

    class SlowSender(FakeSender):
        def send(self, **kwargs):
            clock.now = NOW + timedelta(seconds=10)
            ticks.append(worker.run_tick())
            return super().send(**kwargs)

    sender = SlowSender()
    pipeline.sender = sender
    pipeline.enqueue_and_send(_metadata(), _event())

    assert ticks[0].processed == 0
    assert len(sender.calls) == 1
    queue_id = db.tables[LEDGER_TABLE][0]["queue_id"]
    latest = pipeline.store.latest_by_identity(queue_id)
    assert latest.status == DeliveryStatus.SENT
    assert latest.attempt_count == 1
    assert len(pipeline.store.history(queue_id)) == 2


def test_orphaned_pending_row_is_picked_up_after_lease():
    db = FakeSupabase()
    sender = FakeSender()
    clock = FixedClock(NOW)
    pipeline = _pipeline(db, sender, clock=clock)
    pending = pipeline.new_pending_row(_metadata(), _event())
    pipeline.store.append(pending)
    worker = RetryWorker(pipeline)

    assert pending.next_attempt_at == NOW + timedelta(seconds=60)
    clock.now = NOW + timedelta(seconds=30)
    assert worker.run_tick().processed == 0

    clock.now = NOW + timedelta(seconds=61)
    summary = worker.run_tick()
    assert summary.sent == 1
    latest = pipeline.store.latest_by_identity(pending.queue_id)
    assert latest.status == DeliveryStatus.SENT
    assert latest.attempt_count == len(sender.calls) == 1


def test_missing_access_token_ages_to_dead_without_sending():
    db = FakeSupabase()
    sender = FakeSender()
    clock = FixedClock(NOW)
    resolver = DestinationResolver(
        build_destination_map(shared_access_token=None, pixel_ids={"hryw": "pixel-hryw"})
    )
    pipeline = _pipeline(db, sender, clock=clock, resolver=resolver)
    worker = RetryWorker(pipeline)

    outcome = pipeline.enqueue_and_send(_metadata(), _event())
    assert outcome.success is False
    assert outcome.error == "No access token for brand: hryw"

    queue_id = db.tables[LEDGER_TABLE][0]["queue_id"]
    first = pipeline.store.latest_by_identity(queue_id)
    assert first.status == DeliveryStatus.FAILED
    assert first.attempt_count == 1
    assert first.next_attempt_at >= NOW + timedelta(minutes=2)

    for _ in range(8):
        clock.now = clock.now + timedelta(hours=2)
        worker.run_tick()

    latest = pipeline.store.latest_by_identity(queue_id)
    assert latest.status == DeliveryStatus.DEAD
    assert latest.attempt_count == 6
    assert latest.last_error_message == "No access token for brand: hryw"
    assert sender.calls == []
