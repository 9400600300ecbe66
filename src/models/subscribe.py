from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class SubscribeRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    fname: str = Field(min_length=1)
    em: str = Field(min_length=3)
    brand: str
    source_id: str | None = Field(default=None, alias="sourceId")
    redirect_slug: str | None = Field(default=None, alias="redirectSlug")
    optional_inputs: str | None = Field(default=None, alias="optionalInputs")
    website: str | None = None

    keap_contact_id: str | None = Field(default=None, alias="keapContactId")
    pixel_id: str | None = Field(default=None, alias="pixelId")
    event_id: str | None = Field(default=None, alias="eventId")
    fbp: str | None = None
    fbc: str | None = None
    fbclid: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    utm_content: str | None = None
    utm_term: str | None = None
    source_url: str | None = Field(default=None, alias="sourceUrl")


class SubscribeResponse(BaseModel):
    success: bool
    redirect_url: str | None = Field(default=None, serialization_alias="redirectUrl")
    error: str | None = None
