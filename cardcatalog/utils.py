"""Utility helpers for the card catalog service."""

from __future__ import annotations

import hashlib
import re
import unicodedata
from datetime import datetime, timezone


TRADEMARK_MARKS = ("®", "℠")
RESERVED_KEY_CHARS_RE = re.compile(r"[/:?&=\\\s]")
MAX_CACHE_KEY_LENGTH = 120


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""

    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes read back from storage as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def clean_card_name(value: str) -> str:
    """Strip registered and service marks from a card name."""

    for mark in TRADEMARK_MARKS:
        value = value.replace(mark, "")
    return value


def slugify(value: str) -> str:
    """Return a URL-friendly slug."""

    value = unicodedata.normalize("NFKD", value)
    value = value.encode("ascii", "ignore").decode("ascii")
    value = re.sub(r"[^a-zA-Z0-9]+", "-", value)
    value = value.strip("-")
    value = re.sub(r"-+", "-", value)
    return value.lower() or "card"


def sanitize_cache_key(key: str, *, max_length: int = MAX_CACHE_KEY_LENGTH) -> str:
    """Return a filesystem-safe name for a card id or URL.

    Reserved characters become underscores; overlong keys are truncated and
    suffixed with a digest of the full key so distinct inputs stay distinct.
    """

    sanitized = RESERVED_KEY_CHARS_RE.sub("_", key.strip())
    if not sanitized:
        sanitized = "_"
    if len(sanitized) <= max_length:
        return sanitized
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]
    return f"{sanitized[: max_length - len(digest) - 1]}_{digest}"


def title_from_card_id(card_id: str) -> str:
    """Turn ``chase-sapphire-reserve`` into ``Chase Sapphire Reserve``."""

    return card_id.replace("-", " ").title()


def issuer_from_card_id(card_id: str) -> str:
    """Return the first dash-separated segment of a card id, capitalised."""

    head = card_id.split("-", 1)[0]
    return head.capitalize()
