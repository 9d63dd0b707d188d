"""Validate CSV headers and enforce field constraints."""

from __future__ import annotations

from typing import Any


class ValidationError(ValueError):
    """Custom exception for CSV validation errors."""

    pass


def validate_headers(headers: list[str] | None, key_column: str) -> None:
    """Ensure CSV contains the key column before processing."""
    if not headers:
        raise ValidationError(f"CSV requires a header row with a '{key_column}' column")
    normalized = [header.strip().lower() for header in headers]
    if key_column.lower() not in normalized:
        raise ValidationError(f"Missing required column: {key_column}")


def normalize_row(row: dict[str, Any], key_column: str) -> dict[str, Any]:
    """Clean individual row (lower-case headers, trim strings, require a key)."""
    cleaned: dict[str, Any] = {}
    for header, value in row.items():
        if header is None:
            # Surplus cells without a header
            continue
        cleaned[header.strip().lower()] = value.strip() if isinstance(value, str) else value

    key = cleaned.get(key_column.lower()) or ""
    if not key:
        raise ValueError(f"Row is missing a value for '{key_column}'")
    return {"key": key, "data": cleaned}
