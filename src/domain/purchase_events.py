from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from src.domain.classifier import (
    ClassificationError,
    ClassificationResult,
    EventClassification,
    PaymentClassifier,
)
from src.domain.dedup import purchase_event_id
from src.domain.delivery import DeliveryMetadata, DeliveryPipeline
from src.domain.normalization import normalize_brand
from src.domain.tracking import TrackingContextStore
from src.observability import incr_metric, log_event
from src.providers.meta.client import hash_user_data


class BrandDetector(Protocol):
    def detect_brand_from_tags(self, contact_id: int) -> str | None: ...


@dataclass
class ProcessedPayment:
    payment_id: int
    classification: EventClassification | None
    dispatched: bool
    reason: str | None = None
    brand: str | None = None
    event_id: str | None = None
    contact_id: int | None = None


def _first(items: Any, key: str) -> str | None:
    if not isinstance(items, list):
        return None
    for item in items:
        if isinstance(item, dict) and item.get(key):
            return str(item[key])
    return None


def contact_pii(contact: dict[str, Any]) -> dict[str, str | None]:
    """Pull the Meta-matchable fields out of a Keap contact record."""
    addresses = contact.get("addresses") if isinstance(contact.get("addresses"), list) else []
    address = addresses[0] if addresses and isinstance(addresses[0], dict) else {}
    return {
        "em": _first(contact.get("email_addresses"), "email"),
        "fn": contact.get("given_name"),
        "ln": contact.get("family_name"),
        "ph": _first(contact.get("phone_numbers"), "number"),
        "ct": address.get("locality"),
        "st": address.get("region"),
        "zp": address.get("postal_code") or address.get("zip_code"),
        "country": address.get("country_code"),
    }


def build_purchase_event(
    result: ClassificationResult,
    *,
    tracking: dict[str, Any] | None,
    event_time: int,
) -> dict[str, Any]:
    details = result.details
    pii = contact_pii(details.contact)
    if not pii["em"] and tracking:
        pii["em"] = tracking.get("email")
    user_data: dict[str, Any] = hash_user_data(external_id=str(details.contact_id), **pii)
    if tracking:
        for source_key, target_key in (
            ("fbp", "fbp"),
            ("fbc", "fbc"),
            ("ip_address", "client_ip_address"),
            ("user_agent", "client_user_agent"),
        ):
            if tracking.get(source_key):
                user_data[target_key] = tracking[source_key]

    custom_data: dict[str, Any] = {"currency": details.currency}
    if details.amount is not None:
        custom_data["value"] = details.amount
    if details.order_id is not None:
        custom_data["order_id"] = str(details.order_id)

    event: dict[str, Any] = {
        "event_name": result.classification.value,
        "event_time": event_time,
        "action_source": "website",
        "event_id": purchase_event_id(details.payment_id),
        "user_data": user_data,
        "custom_data": custom_data,
    }
    if tracking and tracking.get("source_url"):
        event["event_source_url"] = tracking["source_url"]
    return event


class PurchaseEventProcessor:
    """Classifies one payment and hands any resulting event to the delivery pipeline."""

    def __init__(
        self,
        *,
        classifier: PaymentClassifier,
        brands: BrandDetector,
        pipeline: DeliveryPipeline,
        tracking: TrackingContextStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._classifier = classifier
        self._brands = brands
        self._pipeline = pipeline
        self._tracking = tracking
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def process_payment(self, payment_id: int, now: datetime | None = None) -> ProcessedPayment:
        now = now or self._clock()
        try:
            result = self._classifier.classify(payment_id, now=now)
        except ClassificationError as exc:
            incr_metric("purchase_events.unresolved")
            log_event("payment_unresolved", level=logging.WARNING, payment_id=payment_id, error=str(exc))
            return ProcessedPayment(payment_id, None, False, reason=str(exc))

        details = result.details
        if not result.generates_event:
            incr_metric("purchase_events.skipped", reason="installment")
            return ProcessedPayment(
                payment_id,
                result.classification,
                False,
                reason=result.note,
                contact_id=details.contact_id,
            )

        email = contact_pii(details.contact)["em"]
        tracking = None
        if self._tracking is not None:
            tracking = self._tracking.lookup(str(details.contact_id), email)

        brand = self._brands.detect_brand_from_tags(details.contact_id)
        if not brand and tracking:
            brand = normalize_brand(tracking.get("brand"))
        if not brand:
            incr_metric("purchase_events.skipped", reason="no_brand")
            log_event(
                "purchase_event_skipped_no_brand",
                level=logging.WARNING,
                payment_id=payment_id,
                contact_id=details.contact_id,
            )
            return ProcessedPayment(
                payment_id,
                result.classification,
                False,
                reason="no_brand",
                contact_id=details.contact_id,
            )

        pixel_id = (tracking or {}).get("pixel_id") or self._pipeline.resolver.get_pixel_id(brand)
        event = build_purchase_event(result, tracking=tracking, event_time=int(now.timestamp()))
        metadata = DeliveryMetadata(
            source="purchase",
            brand=brand,
            event_name=result.classification.value,
            email=email,
            email_hash=event["user_data"].get("em"),
            keap_contact_id=str(details.contact_id),
            order_id=str(details.order_id) if details.order_id is not None else None,
            event_id=event["event_id"],
            pixel_id=pixel_id,
        )
        self._pipeline.submit_enqueue_and_send(metadata, event)
        incr_metric("purchase_events.dispatched", event_name=metadata.event_name)
        log_event(
            "purchase_event_dispatched",
            payment_id=payment_id,
            brand=brand,
            event_name=metadata.event_name,
            event_id=metadata.event_id,
            pixel_id=pixel_id,
        )
        return ProcessedPayment(
            payment_id,
            result.classification,
            True,
            reason=result.note,
            brand=brand,
            event_id=metadata.event_id,
            contact_id=details.contact_id,
        )
