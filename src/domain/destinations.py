from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from src.domain.normalization import SUPPORTED_BRANDS


@dataclass(frozen=True)
class BrandDestination:
    access_token: str | None = None
    pixel_id: str | None = None


class DestinationResolver:
    """Brand -> Meta credentials, fixed at construction time."""

    def __init__(self, destinations: Mapping[str, BrandDestination]) -> None:
        self._destinations = {key.strip().lower(): value for key, value in destinations.items()}

    def _lookup(self, brand: str | None) -> BrandDestination | None:
        if not brand:
            return None
        return self._destinations.get(brand.strip().lower())

    def get_access_token(self, brand: str | None) -> str | None:
        destination = self._lookup(brand)
        return destination.access_token if destination and destination.access_token else None

    def get_pixel_id(self, brand: str | None) -> str | None:
        destination = self._lookup(brand)
        return destination.pixel_id if destination and destination.pixel_id else None

    def brands(self) -> list[str]:
        return sorted(self._destinations)


def build_destination_map(
    *,
    shared_access_token: str | None,
    access_tokens: Mapping[str, str] | None = None,
    pixel_ids: Mapping[str, str] | None = None,
) -> dict[str, BrandDestination]:
    tokens = {k.strip().lower(): v for k, v in (access_tokens or {}).items()}
    pixels = {k.strip().lower(): v for k, v in (pixel_ids or {}).items()}
    brands = set(SUPPORTED_BRANDS) | set(tokens) | set(pixels)
    return {
        brand: BrandDestination(
            access_token=tokens.get(brand) or shared_access_token,
            pixel_id=pixels.get(brand),
        )
        for brand in sorted(brands)
    }
