from __future__ import annotations

from typing import Any


def categorize_provider_message(message: str, *, transient: tuple[str, ...], terminal: tuple[str, ...]) -> str:
    lowered = message.lower()
    if any(marker in lowered for marker in transient):
        return "transient"
    if any(marker in lowered for marker in terminal):
        return "terminal"
    return "unknown"


def provider_error_fields(*, provider: str, operation: str, exc: Exception) -> dict[str, Any]:
    return {
        "provider": provider,
        "operation": operation,
        "category": getattr(exc, "category", "unknown"),
        "retryable": getattr(exc, "retryable", False),
        "error": str(exc),
    }
