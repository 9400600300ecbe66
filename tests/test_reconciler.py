import logging
from datetime import datetime, timezone

from fakes import FakeKeap, FakeSender, FakeSupabase, FixedClock, InlineDispatcher, RecordingDispatcher, make_resolver
from src.domain.classifier import PaymentClassifier
from src.domain.dedup import DedupIndex
from src.domain.delivery import DeliveryPipeline
from src.domain.ledger import LEDGER_TABLE, SupabaseLedgerStore
from src.domain.purchase_events import PurchaseEventProcessor
from src.domain.reconciler import (
    CONTACT_SCOPED_DELAYS_SECONDS,
    GLOBAL_DELAYS_SECONDS,
    Reconciler,
    ReconciliationState,
)


NOW = datetime(2026, 3, 2, 15, 30, tzinfo=timezone.utc)
TODAY = "2026-03-02T15:20:00.000+0000"


def _keap(recent=None, contact_transactions=None) -> FakeKeap:
    return FakeKeap(
        transactions={
            900050: {"id": 900050, "contact_id": 777, "amount": 19.0, "currency": "USD", "order_ids": "5050"},
            900051: {"id": 900051, "contact_id": 777, "amount": 9.0, "currency": "USD", "order_ids": "5051"},
        },
        contacts={777: {"id": 777, "email_addresses": [{"email": "late@example.com"}]}},
        orders={
            5050: {"id": 5050, "creation_date": TODAY, "order_items": []},
            5051: {"id": 5051, "creation_date": TODAY, "order_items": []},
        },
        brand_by_contact={777: "hryw"},
        recent_transactions=recent if recent is not None else [],
        contact_transactions=contact_transactions or {},
    )


def _reconciler(db, keap, sender, sleeps):
    clock = FixedClock(NOW)
    dispatcher = InlineDispatcher()
    pipeline = DeliveryPipeline(
        store=SupabaseLedgerStore(db),
        sender=sender,
        resolver=make_resolver(),
        dispatcher=dispatcher,
        clock=clock,
    )
    processor = PurchaseEventProcessor(
        classifier=PaymentClassifier(keap),
        brands=keap,
        pipeline=pipeline,
        clock=clock,
    )
    return Reconciler(
        crm=keap,
        dedup=DedupIndex(db),
        processor=processor,
        dispatcher=dispatcher,
        sleep=sleeps.append,
        clock=clock,
    )


def _sent_event_ids(sender) -> list[str]:
    return [call["events"][0]["event_id"] for call in sender.calls]


def test_global_reconciliation_finds_transaction_on_later_attempt():
    polls = iter([[], [{"id": 900050}], [{"id": 900050}]])
    keap = _keap(recent=lambda: next(polls))
    sender = FakeSender()
    sleeps = []
    db = FakeSupabase()

    outcome = _reconciler(db, keap, sender, sleeps).reconcile_deferred(1)

    assert outcome.state == ReconciliationState.RESOLVED
    assert outcome.resolved_ids == [900050]
    assert outcome.attempts == 2
    assert sleeps == list(GLOBAL_DELAYS_SECONDS[:2])
    assert _sent_event_ids(sender) == ["purchase_txn_900050"]


def test_never_found_is_exhausted_with_warning(caplog):
    keap = _keap(recent=[])
    sender = FakeSender()
    sleeps = []

    with caplog.at_level(logging.WARNING, logger="conversions_bridge"):
        outcome = _reconciler(FakeSupabase(), keap, sender, sleeps).reconcile_deferred(1)

    assert outcome.state == ReconciliationState.EXHAUSTED
    assert outcome.attempts == 3
    assert outcome.resolved_ids == []
    assert sleeps == list(GLOBAL_DELAYS_SECONDS)
    assert sender.calls == []
    assert any("reconciliation_exhausted" in record.getMessage() for record in caplog.records)


def test_transactions_already_in_dedup_index_are_not_redelivered():
    db = FakeSupabase(
        {
            LEDGER_TABLE: [
                {"source": "purchase", "event_id": "purchase_txn_900050", "created_at": NOW.isoformat()}
            ]
        }
    )
    keap = _keap(recent=[{"id": 900050}])
    sender = FakeSender()

    outcome = _reconciler(db, keap, sender, []).reconcile_deferred(1)

    assert outcome.state == ReconciliationState.EXHAUSTED
    assert sender.calls == []
    assert ("get_transaction", 900050) not in keap.calls


def test_rerun_after_delivery_is_idempotent():
    keap = _keap(recent=[{"id": 900050}])
    sender = FakeSender()
    db = FakeSupabase()

    first = _reconciler(db, keap, sender, []).reconcile_deferred(1)
    second = _reconciler(db, keap, sender, []).reconcile_deferred(1)

    assert first.state == ReconciliationState.RESOLVED
    assert second.state == ReconciliationState.EXHAUSTED
    assert _sent_event_ids(sender) == ["purchase_txn_900050"]


def test_contact_scoped_reconciliation_uses_short_delays():
    keap = _keap(contact_transactions={777: [{"id": 900051}, {"id": 900050}]})
    sender = FakeSender()
    sleeps = []

    outcome = _reconciler(FakeSupabase(), keap, sender, sleeps).reconcile_deferred(2, known_contact_id=777)

    assert outcome.state == ReconciliationState.RESOLVED
    assert sorted(outcome.resolved_ids) == [900050, 900051]
    assert sleeps == [CONTACT_SCOPED_DELAYS_SECONDS[0]]
    assert ("get_recent_transactions_for_contact", 777) in keap.calls
    assert sorted(_sent_event_ids(sender)) == ["purchase_txn_900050", "purchase_txn_900051"]


def test_crm_query_failure_counts_as_empty_attempt():
    keap = _keap(recent=[{"id": 900050}])
    keap.failing.add("get_recent_transactions")
    outcome = _reconciler(FakeSupabase(), keap, FakeSender(), []).reconcile_deferred(1)
    assert outcome.state == ReconciliationState.EXHAUSTED
    assert outcome.attempts == 3


def test_submit_hands_run_to_dispatcher():
    keap = _keap()
    dispatcher = RecordingDispatcher()
    reconciler = Reconciler(
        crm=keap,
        dedup=DedupIndex(FakeSupabase()),
        processor=None,
        dispatcher=dispatcher,
        sleep=lambda _seconds: None,
    )
    reconciler.submit(2, 777)
    task_name, fn, args, _ = dispatcher.submitted[0]
    assert task_name == "reconcile_deferred"
    assert fn == reconciler.reconcile_deferred
    assert args == (2, 777)


def test_failed_lookup_is_retried_on_next_attempt():
    class FlakyKeap(FakeKeap):
        def get_transaction(self, transaction_id):
            lookups = [call for call in self.calls if call[0] == "get_transaction"]
            if not lookups:
                self.calls.append(("get_transaction", transaction_id))
                raise RuntimeError("keap http 503")
            return super().get_transaction(transaction_id)

    base = _keap(recent=[{"id": 900050}])
    keap = FlakyKeap(
        transactions=base.transactions,
        contacts=base.contacts,
        orders=base.orders,
        brand_by_contact=base.brand_by_contact,
        recent_transactions=[{"id": 900050}],
    )
    sender = FakeSender()

    outcome = _reconciler(FakeSupabase(), keap, sender, []).reconcile_deferred(1)

    assert outcome.state == ReconciliationState.RESOLVED
    assert outcome.attempts == 2
    assert outcome.resolved_ids == [900050]
    assert [call for call in keap.calls if call[0] == "get_transaction"] == [
        ("get_transaction", 900050),
        ("get_transaction", 900050),
    ]
    assert _sent_event_ids(sender) == ["purchase_txn_900050"]


def test_sibling_payments_from_the_notification_are_excluded():
    class PollingKeap(FakeKeap):
        def __init__(self, polls, **kwargs):
            super().__init__(**kwargs)
            self.polls = iter(polls)

        def get_recent_transactions_for_contact(self, contact_id, limit=10):
            self.calls.append(("get_recent_transactions_for_contact", contact_id))
            return next(self.polls)

    base = _keap()
    orders = dict(base.orders)
    orders[5051] = {"id": 5051, "creation_date": "2026-01-10T09:00:00.000+0000", "subscription_plan_id": 7}
    keap = PollingKeap(
        [[{"id": 900051}], [{"id": 900051}, {"id": 900050}], [{"id": 900051}, {"id": 900050}]],
        transactions=base.transactions,
        contacts=base.contacts,
        orders=orders,
        brand_by_contact=base.brand_by_contact,
    )
    sender = FakeSender()

    outcome = _reconciler(FakeSupabase(), keap, sender, []).reconcile_deferred(
        1, known_contact_id=777, exclude_ids=[900051]
    )

    assert outcome.state == ReconciliationState.RESOLVED
    assert outcome.resolved_ids == [900050]
    assert outcome.attempts == 2
    assert ("get_transaction", 900051) not in keap.calls
    assert _sent_event_ids(sender) == ["purchase_txn_900050"]


def test_submit_forwards_excluded_ids():
    dispatcher = RecordingDispatcher()
    reconciler = Reconciler(
        crm=_keap(),
        dedup=DedupIndex(FakeSupabase()),
        processor=None,
        dispatcher=dispatcher,
        sleep=lambda _seconds: None,
    )
    reconciler.submit(1, 777, exclude_ids=[845325])
    _, _, args, kwargs = dispatcher.submitted[0]
    assert args == (1, 777)
    assert kwargs == {"exclude_ids": (845325,)}
