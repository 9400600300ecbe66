from __future__ import annotations

import logging
import time
from datetime import datetime
from threading import Lock
from typing import Any

import httpx

from src.domain.normalization import brand_from_tag_name
from src.domain.provider_errors import categorize_provider_message, provider_error_fields
from src.observability import log_event


KEAP_API_BASE = "https://api.infusionsoft.com/crm/rest/v1"
KEAP_TOKEN_URL = "https://api.infusionsoft.com/token"
_TOKEN_REFRESH_MARGIN_SECONDS = 60
_CONTACT_OPTIONAL_PROPERTIES = "custom_fields,phone_numbers,addresses"

_EP_TRANSACTIONS = "/transactions"
_EP_ORDERS = "/orders"
_EP_CONTACTS = "/contacts"
_EP_HOOKS = "/hooks"


class KeapProviderError(Exception):
    """Provider-level exception for Keap integration failures."""

    @property
    def category(self) -> str:
        return categorize_provider_message(
            str(self),
            transient=("connectivity error", "http 429", "http 500", "http 502", "http 503", "http 504"),
            terminal=("missing keap oauth credentials", "invalid keap access token", "endpoint not found"),
        )

    @property
    def retryable(self) -> bool:
        return self.category == "transient"


class KeapTokenManager:
    """Refresh-token grant with in-memory rotation.

    Keap refresh tokens are single use: each refresh response carries the
    token that must be used next time.
    """

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        refresh_token: str | None,
        token_url: str = KEAP_TOKEN_URL,
        timeout_seconds: float = 12.0,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._token_url = token_url
        self._timeout_seconds = timeout_seconds
        self._access_token: str | None = None
        self._expires_at = 0.0
        self._lock = Lock()

    @property
    def refresh_token(self) -> str | None:
        return self._refresh_token

    def get_access_token(self) -> str:
        with self._lock:
            now = time.time()
            if self._access_token and self._expires_at > now + _TOKEN_REFRESH_MARGIN_SECONDS:
                return self._access_token
            if not self._client_id or not self._client_secret or not self._refresh_token:
                raise KeapProviderError("Missing Keap OAuth credentials")
            try:
                with httpx.Client(timeout=self._timeout_seconds) as client:
                    response = client.post(
                        self._token_url,
                        data={"grant_type": "refresh_token", "refresh_token": self._refresh_token},
                        auth=(self._client_id, self._client_secret),
                    )
            except httpx.HTTPError as exc:
                raise KeapProviderError(f"Keap connectivity error: {exc}") from exc
            if response.status_code >= 400:
                raise KeapProviderError(
                    f"Keap token refresh returned HTTP {response.status_code}: {response.text[:200]}"
                )
            try:
                payload = response.json()
            except ValueError as exc:
                raise KeapProviderError("Keap returned non-JSON token response") from exc

            self._access_token = payload["access_token"]
            self._expires_at = now + float(payload.get("expires_in") or 0)
            rotated = payload.get("refresh_token")
            if rotated and rotated != self._refresh_token:
                self._refresh_token = rotated
                log_event("keap_refresh_token_rotated")
            log_event("keap_access_token_refreshed", expires_in=payload.get("expires_in"))
            return self._access_token


def _request_json(
    *,
    method: str,
    path: str,
    access_token: str,
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
    params: dict[str, Any] | None = None,
    json_payload: dict[str, Any] | None = None,
    not_found_ok: bool = False,
) -> Any:
    url = f"{(base_url or KEAP_API_BASE).rstrip('/')}{path}"
    try:
        with httpx.Client(timeout=timeout_seconds) as client:
            response = client.request(
                method=method,
                url=url,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                    "Content-Type": "application/json",
                },
                params=params,
                json=json_payload,
            )
    except httpx.HTTPError as exc:
        raise KeapProviderError(f"Keap connectivity error: {exc}") from exc

    if response.status_code == 404:
        if not_found_ok:
            return None
        raise KeapProviderError(f"Keap endpoint not found: {path}")
    if response.status_code == 401:
        raise KeapProviderError("Invalid Keap access token")
    if response.status_code >= 400:
        raise KeapProviderError(f"Keap API returned HTTP {response.status_code}: {response.text[:200]}")
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError as exc:
        raise KeapProviderError("Keap returned non-JSON response") from exc


class KeapClient:
    def __init__(
        self,
        token_manager: KeapTokenManager,
        base_url: str | None = None,
        timeout_seconds: float = 12.0,
    ) -> None:
        self._tokens = token_manager
        self._base_url = base_url
        self._timeout_seconds = timeout_seconds

    def _get(self, path: str, params: dict[str, Any] | None = None, not_found_ok: bool = False) -> Any:
        return _request_json(
            method="GET",
            path=path,
            access_token=self._tokens.get_access_token(),
            base_url=self._base_url,
            timeout_seconds=self._timeout_seconds,
            params=params,
            not_found_ok=not_found_ok,
        )

    def _post(self, path: str, json_payload: dict[str, Any] | None = None) -> Any:
        return _request_json(
            method="POST",
            path=path,
            access_token=self._tokens.get_access_token(),
            base_url=self._base_url,
            timeout_seconds=self._timeout_seconds,
            json_payload=json_payload,
        )

    def get_transaction(self, transaction_id: int) -> dict[str, Any] | None:
        return self._get(f"{_EP_TRANSACTIONS}/{transaction_id}", not_found_ok=True)

    def get_contact_by_id(self, contact_id: int) -> dict[str, Any] | None:
        return self._get(
            f"{_EP_CONTACTS}/{contact_id}",
            params={"optional_properties": _CONTACT_OPTIONAL_PROPERTIES},
            not_found_ok=True,
        )

    def get_order(self, order_id: int) -> dict[str, Any] | None:
        return self._get(f"{_EP_ORDERS}/{order_id}", not_found_ok=True)

    def get_orders_by_contact(self, contact_id: int, paid: bool = True, limit: int = 100) -> list[dict[str, Any]]:
        data = self._get(
            _EP_ORDERS,
            params={"contact_id": contact_id, "paid": str(paid).lower(), "limit": limit},
        )
        orders = data.get("orders") if isinstance(data, dict) else data
        if not isinstance(orders, list):
            raise KeapProviderError("Unexpected Keap orders response shape")
        return orders

    def get_recent_transactions(self, since: datetime, limit: int = 50) -> list[dict[str, Any]]:
        data = self._get(
            _EP_TRANSACTIONS,
            params={"since": since.isoformat(), "limit": limit},
        )
        transactions = data.get("transactions") if isinstance(data, dict) else data
        if not isinstance(transactions, list):
            raise KeapProviderError("Unexpected Keap transactions response shape")
        return transactions

    def get_recent_transactions_for_contact(self, contact_id: int, limit: int = 10) -> list[dict[str, Any]]:
        data = self._get(
            _EP_TRANSACTIONS,
            params={
                "contact_id": contact_id,
                "limit": limit,
                "order": "date",
                "order_direction": "descending",
            },
        )
        transactions = data.get("transactions") if isinstance(data, dict) else data
        if not isinstance(transactions, list):
            raise KeapProviderError("Unexpected Keap transactions response shape")
        return transactions

    def get_contact_tags(self, contact_id: int) -> list[dict[str, Any]]:
        data = self._get(f"{_EP_CONTACTS}/{contact_id}/tags")
        tags: list[dict[str, Any]] = []
        for item in (data or {}).get("tags") or []:
            tag = item.get("tag") if isinstance(item, dict) else None
            if isinstance(tag, dict):
                tags.append({"id": tag.get("id"), "name": tag.get("name")})
        return tags

    def detect_brand_from_tags(self, contact_id: int) -> str | None:
        try:
            tags = self.get_contact_tags(contact_id)
        except KeapProviderError as exc:
            log_event(
                "keap_contact_tags_failed",
                level=logging.WARNING,
                contact_id=contact_id,
                **provider_error_fields(provider="keap", operation="get_contact_tags", exc=exc),
            )
            return None
        for tag in tags:
            brand = brand_from_tag_name(tag.get("name"))
            if brand:
                return brand
        return None

    def create_hook(self, event_key: str, hook_url: str) -> dict[str, Any]:
        return self._post(_EP_HOOKS, {"eventKey": event_key, "hookUrl": hook_url})

    def verify_hook(self, hook_key: int | str) -> dict[str, Any]:
        return self._post(f"{_EP_HOOKS}/{hook_key}/verify")
