from __future__ import annotations

from typing import Literal


NormalizedBrand = Literal["chkh", "hryw", "gkh", "flo"]

SUPPORTED_BRANDS: tuple[NormalizedBrand, ...] = ("chkh", "hryw", "gkh", "flo")
BRAND_TAG_PREFIXES: tuple[str, ...] = ("HRYW", "FLO", "CHKH", "GKH")


def normalize_brand(value: str | None) -> NormalizedBrand | None:
    if not value:
        return None
    key = str(value).strip().lower()
    if key in SUPPORTED_BRANDS:
        return key  # type: ignore[return-value]
    return None


def brand_from_tag_name(tag_name: str | None) -> NormalizedBrand | None:
    if not tag_name:
        return None
    upper = str(tag_name).strip().upper()
    for prefix in BRAND_TAG_PREFIXES:
        if upper == prefix or upper.startswith(f"{prefix}-"):
            return normalize_brand(prefix)
    return None


def normalize_currency(value: str | None) -> str:
    if not value:
        return "USD"
    key = str(value).strip().upper()
    if len(key) != 3 or not key.isalpha():
        return "USD"
    return key
