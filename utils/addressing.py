"""Token/wallet identifier normalization helpers."""

from __future__ import annotations


def normalize_token_id(value: str | None) -> str:
    """Normalize mint/wallet keys for internal maps.

    Base58 mint addresses are case sensitive, so only surrounding whitespace
    is stripped.
    """
    return str(value or "").strip()


def short_id(value: str | None, keep: int = 8) -> str:
    text = normalize_token_id(value)
    if len(text) <= keep:
        return text
    return text[:keep]
