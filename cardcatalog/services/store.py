"""Persistent key-value store shared by the catalog services."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import KeyValueEntry
from ..errors import PersistenceError
from ..models import CacheEntry
from ..utils import ensure_aware, utcnow

logger = logging.getLogger(__name__)

CATALOG_KEY = "catalog.cards"
CATALOG_META_KEY = "catalog.meta"
DETAIL_KEY_PREFIX = "detail.card."
DETAIL_META_KEY_PREFIX = "detail.meta."
PROFILES_KEY = "profiles.all"
ACTIVE_PROFILE_KEY = "profiles.active_id"
OWNED_CARDS_KEY = "owned_cards"
IMAGE_MAPPING_KEY = "images.mapping"


def detail_keys(card_id: str) -> tuple[str, str]:
    """Return the value and metadata keys for a card detail."""

    return f"{DETAIL_KEY_PREFIX}{card_id}", f"{DETAIL_META_KEY_PREFIX}{card_id}"


class KeyValueStore:
    """Structured blobs keyed by string, safe for independent-key access."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, key: str) -> Any | None:
        try:
            async with self._session_factory() as session:
                entry = await session.get(KeyValueEntry, key)
                return None if entry is None else entry.value
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to read {key!r}: {exc}") from exc

    async def set(self, key: str, value: Any) -> None:
        try:
            async with self._session_factory() as session:
                entry = await session.get(KeyValueEntry, key)
                if entry is None:
                    session.add(KeyValueEntry(key=key, value=value, updated_at=utcnow()))
                else:
                    entry.value = value
                    entry.updated_at = utcnow()
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to write {key!r}: {exc}") from exc

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            async with self._session_factory() as session:
                await session.execute(
                    delete(KeyValueEntry).where(KeyValueEntry.key.in_(keys))
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to delete {keys!r}: {exc}") from exc

    async def delete_prefix(self, prefix: str) -> int:
        """Delete every entry whose key starts with ``prefix``."""

        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(KeyValueEntry.key).where(KeyValueEntry.key.startswith(prefix))
                )
                keys = list(result.scalars())
                if keys:
                    await session.execute(
                        delete(KeyValueEntry).where(KeyValueEntry.key.in_(keys))
                    )
                    await session.commit()
                return len(keys)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to delete prefix {prefix!r}: {exc}") from exc

    async def keys(self, prefix: str = "") -> list[str]:
        try:
            async with self._session_factory() as session:
                statement = select(KeyValueEntry.key).order_by(KeyValueEntry.key)
                if prefix:
                    statement = statement.where(KeyValueEntry.key.startswith(prefix))
                result = await session.execute(statement)
                return list(result.scalars())
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to list keys: {exc}") from exc

    async def read_cache_entry(self, value_key: str, meta_key: str) -> CacheEntry[Any] | None:
        """Return the stored value with its timestamp, or ``None`` if either half is missing."""

        meta = await self.get(meta_key)
        if not isinstance(meta, dict) or not meta.get("storedAt"):
            return None
        value = await self.get(value_key)
        if value is None:
            return None
        try:
            stored_at = ensure_aware(datetime.fromisoformat(str(meta["storedAt"])))
        except ValueError:
            logger.warning("Ignoring cache metadata with a malformed timestamp under %s", meta_key)
            return None
        return CacheEntry(value=value, stored_at=stored_at)

    async def write_cache_entry(
        self,
        value_key: str,
        meta_key: str,
        value: Any,
        stored_at: datetime,
    ) -> None:
        # Two independent writes; a failure between them leaves the pair inconsistent.
        await self.set(value_key, value)
        await self.set(meta_key, {"storedAt": stored_at.isoformat()})
