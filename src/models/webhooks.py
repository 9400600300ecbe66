from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class KeapObjectKey(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: int = 0
    api_url: str | None = Field(default=None, alias="apiUrl")
    timestamp: str | None = None


class KeapWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    event_key: str | None = None
    object_type: str | None = None
    object_keys: list[KeapObjectKey] = Field(default_factory=list)

    @property
    def placeholder_count(self) -> int:
        return sum(1 for key in self.object_keys if not key.id)

    @property
    def payment_ids(self) -> list[int]:
        return [key.id for key in self.object_keys if key.id]


class WebhookAck(BaseModel):
    received: bool = True
    processed: int = 0
    deferred: int = 0
    verification: bool = False
    details: list[dict[str, Any]] = Field(default_factory=list)
