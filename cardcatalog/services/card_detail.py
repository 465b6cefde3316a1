"""Per-card detail lookups with summary degradation."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Iterable

from pydantic import ValidationError

from ..config import Settings
from ..errors import REMOTE_ERRORS, InvalidInputError, NotFoundError, PersistenceError
from ..models import CacheEntry, CardDetail
from ..utils import utcnow
from .catalog_cache import CatalogMemoryCache, Clock
from .classifier import categorize_detail
from .remote_catalog import RemoteCatalogClient
from .store import DETAIL_KEY_PREFIX, DETAIL_META_KEY_PREFIX, KeyValueStore, detail_keys

logger = logging.getLogger(__name__)

_FALLBACK_ERRORS = (*REMOTE_ERRORS, NotFoundError)


class CardDetailService:
    """Serve card details from memory, then the store, then the remote API."""

    def __init__(
        self,
        settings: Settings,
        remote: RemoteCatalogClient,
        store: KeyValueStore,
        memory: CatalogMemoryCache,
        *,
        clock: Clock = utcnow,
    ):
        self._settings = settings
        self._remote = remote
        self._store = store
        self._memory = memory
        self._clock = clock

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self._settings.catalog_ttl_seconds)

    async def get_detail(self, card_id: str) -> CardDetail:
        """Return the enriched record for ``card_id``.

        Remote failures degrade to the catalog summary for the same id when
        one is cached; that fallback value is not written to any tier.
        """

        key = (card_id or "").strip()
        if not key:
            raise InvalidInputError("Card id must not be empty")

        now = self._clock()
        entry = await self._memory.get_detail(key)
        if entry is not None and entry.is_valid(now, self.ttl):
            return entry.value

        stored = await self._read_store(key)
        if stored is not None and stored.is_valid(now, self.ttl):
            await self._memory.set_detail(stored.value, stored.stored_at)
            return stored.value

        try:
            detail = await self._fetch_remote(key)
        except _FALLBACK_ERRORS as exc:
            summary = await self._memory.find_summary(key)
            if summary is None:
                raise
            logger.info("Detail fetch for %s failed (%s); using catalog summary", key, exc)
            return CardDetail.from_summary(summary)

        stored_at = self._clock()
        await self._memory.set_detail(detail, stored_at)
        value_key, meta_key = detail_keys(key)
        try:
            await self._store.write_cache_entry(
                value_key, meta_key, detail.model_dump(mode="json"), stored_at
            )
        except PersistenceError as exc:
            logger.warning("Failed to persist detail for %s: %s", key, exc)
        await self._memory.replace_summary(detail)
        return detail

    async def prefetch_details(self, card_ids: Iterable[str]) -> list[CardDetail]:
        """Warm the detail tiers for the first few ids, skipping failures."""

        selected: list[str] = []
        for card_id in card_ids:
            cleaned = (card_id or "").strip()
            if cleaned and cleaned not in selected:
                selected.append(cleaned)
            if len(selected) >= self._settings.prefetch_limit:
                break
        if not selected:
            return []

        semaphore = asyncio.Semaphore(self._settings.prefetch_concurrency)

        async def _fetch(card_id: str) -> CardDetail:
            async with semaphore:
                return await self.get_detail(card_id)

        results = await asyncio.gather(
            *(_fetch(card_id) for card_id in selected), return_exceptions=True
        )
        details: list[CardDetail] = []
        for card_id, result in zip(selected, results):
            if isinstance(result, Exception):
                logger.info("Skipping prefetch of %s: %s", card_id, result)
                continue
            details.append(result)
        logger.info("Prefetched %s of %s card details", len(details), len(selected))
        return details

    async def clear(self) -> None:
        await self._memory.clear_details()
        try:
            await self._store.delete_prefix(DETAIL_KEY_PREFIX)
            await self._store.delete_prefix(DETAIL_META_KEY_PREFIX)
        except PersistenceError as exc:
            logger.warning("Failed to clear persisted details: %s", exc)

    async def _read_store(self, card_id: str) -> CacheEntry[CardDetail] | None:
        value_key, meta_key = detail_keys(card_id)
        try:
            entry = await self._store.read_cache_entry(value_key, meta_key)
        except PersistenceError as exc:
            logger.warning("Persisted detail for %s unavailable: %s", card_id, exc)
            return None
        if entry is None:
            return None
        try:
            detail = CardDetail.model_validate(entry.value)
        except ValidationError:
            logger.warning("Ignoring malformed persisted detail for %s", card_id)
            return None
        return CacheEntry(detail, entry.stored_at)

    async def _fetch_remote(self, card_id: str) -> CardDetail:
        records = await self._remote.fetch_card_detail(card_id)
        if not records:
            raise NotFoundError(f"No details found for card {card_id}")
        detail = records[0].to_detail()
        return detail.model_copy(update={"category": categorize_detail(detail)})
