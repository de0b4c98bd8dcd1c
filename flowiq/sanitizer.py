"""Markup stripping for free-text fields entered by staff or imported from EHRs."""

from typing import Any, Optional

import bleach


def sanitize_text(value: str) -> str:
    """Strip every HTML tag and attribute from *value*."""
    return bleach.clean(value, tags=[], attributes={}, strip=True)


def sanitize_optional(value: Optional[Any]) -> Optional[Any]:
    """Sanitize and trim strings, mapping blanks to ``None``; pass other values through."""
    if isinstance(value, str):
        cleaned = sanitize_text(value).strip()
        return cleaned or None
    return value
