"""Decide which conversion event, if any, a Keap payment represents.

* order without a subscription plan -> ``Purchase``
* subscription order not created today -> ``Skip`` (installment on an order
  that was reported when it was created)
* subscription order created today -> ``Purchase`` for the first paid order on
  the plan, ``RecurringPayment`` when the contact already has paid orders on it

Errors while deciding fall back to ``Purchase``: a possibly mislabeled event is
preferred over a lost one. Every decision is logged and audited.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Protocol

from src.domain.normalization import normalize_currency
from src.domain.tracking import ClassificationAuditLog
from src.observability import incr_metric, log_event


_BASIC_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")


class EventClassification(str, Enum):
    PURCHASE = "Purchase"
    RECURRING_PAYMENT = "RecurringPayment"
    SKIP = "Skip"


class ClassificationError(Exception):
    """The payment could not be resolved far enough to build any event."""


class PaymentCRM(Protocol):
    def get_transaction(self, transaction_id: int) -> dict[str, Any] | None: ...

    def get_contact_by_id(self, contact_id: int) -> dict[str, Any] | None: ...

    def get_order(self, order_id: int) -> dict[str, Any] | None: ...

    def get_orders_by_contact(self, contact_id: int, paid: bool = True, limit: int = 100) -> list[dict[str, Any]]: ...


@dataclass
class PaymentDetails:
    payment_id: int
    contact_id: int
    amount: float | None
    currency: str
    order_id: int | None
    transaction: dict[str, Any]
    contact: dict[str, Any] = field(default_factory=dict)


@dataclass
class ClassificationResult:
    classification: EventClassification
    details: PaymentDetails
    subscription_plan_id: int | None = None
    prior_order_count: int | None = None
    order: dict[str, Any] | None = None
    note: str | None = None

    @property
    def generates_event(self) -> bool:
        return self.classification != EventClassification.SKIP


def _to_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _to_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def extract_order_id(transaction: dict[str, Any]) -> int | None:
    raw = transaction.get("order_ids")
    if raw is None:
        raw = transaction.get("order_id") or transaction.get("orderId")
    if isinstance(raw, (list, tuple)):
        raw = raw[0] if raw else None
    if isinstance(raw, str):
        raw = raw.split(",")[0].strip()
    return _to_int(raw)


def extract_subscription_plan_id(order: dict[str, Any]) -> int | None:
    for key in ("subscription_plan_id", "subscriptionPlanId"):
        plan_id = _to_int(order.get(key))
        if plan_id:
            return plan_id
    for item in order.get("order_items") or []:
        if not isinstance(item, dict):
            continue
        plan = item.get("subscription_plan")
        if isinstance(plan, dict):
            plan_id = _to_int(plan.get("id"))
        else:
            plan_id = _to_int(item.get("subscription_plan_id") or plan)
        if plan_id:
            return plan_id
    return None


def parse_keap_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    text = _BASIC_OFFSET.sub(r"\1:\2", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def payment_details_from_transaction(payment_id: int, transaction: dict[str, Any]) -> PaymentDetails:
    contact_id = _to_int(transaction.get("contact_id") or transaction.get("contactId"))
    if contact_id is None:
        raise ClassificationError(f"Transaction {payment_id} has no contact_id")
    return PaymentDetails(
        payment_id=payment_id,
        contact_id=contact_id,
        amount=_to_float(transaction.get("amount")),
        currency=normalize_currency(transaction.get("currency")),
        order_id=extract_order_id(transaction),
        transaction=transaction,
    )


class PaymentClassifier:
    def __init__(self, crm: PaymentCRM, audit_log: ClassificationAuditLog | None = None) -> None:
        self._crm = crm
        self._audit_log = audit_log

    def classify(self, payment_id: int, now: datetime | None = None) -> ClassificationResult:
        today = (now or datetime.now(timezone.utc)).astimezone(timezone.utc).date()
        try:
            transaction = self._crm.get_transaction(payment_id)
        except Exception as exc:
            raise ClassificationError(f"Transaction {payment_id} lookup failed: {exc}") from exc
        if not transaction:
            raise ClassificationError(f"Transaction {payment_id} not found")

        details = payment_details_from_transaction(payment_id, transaction)
        details.contact = self._load_contact(details.contact_id)

        try:
            result = self._decide(details, today)
        except Exception as exc:
            result = ClassificationResult(
                classification=EventClassification.PURCHASE,
                details=details,
                note=f"defaulted_to_purchase: {exc}",
            )
            incr_metric("classifier.defaulted")
            log_event(
                "payment_classification_defaulted",
                level=logging.WARNING,
                payment_id=payment_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )

        self._audit(result)
        return result

    def _load_contact(self, contact_id: int) -> dict[str, Any]:
        try:
            return self._crm.get_contact_by_id(contact_id) or {}
        except Exception as exc:
            log_event("keap_contact_lookup_failed", level=logging.WARNING, contact_id=contact_id, error=str(exc))
            return {}

    def _decide(self, details: PaymentDetails, today: date) -> ClassificationResult:
        if details.order_id is None:
            return ClassificationResult(EventClassification.PURCHASE, details, note="no_order")

        order = self._crm.get_order(details.order_id)
        if not order:
            return ClassificationResult(EventClassification.PURCHASE, details, note="order_not_found")

        plan_id = extract_subscription_plan_id(order)
        if plan_id is None:
            return ClassificationResult(
                EventClassification.PURCHASE, details, order=order, note="no_subscription_plan"
            )

        created_at = parse_keap_datetime(order.get("creation_date") or order.get("order_date"))
        if created_at is None:
            raise ValueError(f"order {details.order_id} has no parseable creation_date")
        if created_at.date() != today:
            return ClassificationResult(
                EventClassification.SKIP,
                details,
                subscription_plan_id=plan_id,
                order=order,
                note="installment_on_existing_order",
            )

        paid_orders = self._crm.get_orders_by_contact(details.contact_id, paid=True)
        prior = sum(
            1
            for other in paid_orders
            if _to_int(other.get("id")) != details.order_id and extract_subscription_plan_id(other) == plan_id
        )
        classification = EventClassification.RECURRING_PAYMENT if prior else EventClassification.PURCHASE
        return ClassificationResult(
            classification,
            details,
            subscription_plan_id=plan_id,
            prior_order_count=prior,
            order=order,
            note="recurring_billing" if prior else "first_billing",
        )

    def _audit(self, result: ClassificationResult) -> None:
        details = result.details
        incr_metric("classifier.decisions", classification=result.classification)
        log_event(
            "payment_classified",
            payment_id=details.payment_id,
            contact_id=details.contact_id,
            order_id=details.order_id,
            classification=result.classification,
            subscription_plan_id=result.subscription_plan_id,
            prior_order_count=result.prior_order_count,
            amount=details.amount,
            currency=details.currency,
            note=result.note,
        )
        if self._audit_log is None:
            return
        self._audit_log.record(
            {
                "payment_id": details.payment_id,
                "contact_id": details.contact_id,
                "event_name": None if result.classification == EventClassification.SKIP else result.classification.value,
                "subscription_plan_id": result.subscription_plan_id,
                "prior_order_count": result.prior_order_count,
                "order_id": str(details.order_id) if details.order_id is not None else None,
                "amount": details.amount,
                "currency": details.currency,
                "raw_transaction_json": json.dumps(details.transaction, sort_keys=True, default=str),
                "raw_order_json": json.dumps(result.order, sort_keys=True, default=str) if result.order else None,
                "classification_note": result.note,
            }
        )
