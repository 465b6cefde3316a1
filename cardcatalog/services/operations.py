"""Operations surface consumed by the HTTP layer and other front ends."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable

from ..errors import CatalogUnavailableError
from ..models import CardDetail, CardSummary, OwnedCard, UserProfile
from .card_detail import CardDetailService
from .catalog_cache import (
    CatalogCacheManager,
    sample_cards,
    search_cards,
    select_popular_cards,
)
from .image_pipeline import CardImage, ImageResolutionPipeline
from .profiles import OwnedCardCollection, OwnedCardStats, ProfileStateSynchronizer

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CatalogView:
    """Catalog cards plus a displayable error for degraded loads."""

    cards: list[CardSummary]
    popular: list[CardSummary] = field(default_factory=list)
    error: str | None = None

    @property
    def has_data(self) -> bool:
        return bool(self.cards)

    def to_payload(self) -> dict[str, Any]:
        return {
            "cards": [card.model_dump(mode="json") for card in self.cards],
            "popular": [card.model_dump(mode="json") for card in self.popular],
            "error": self.error,
            "hasData": self.has_data,
        }


class CatalogOperations:
    """Coordinates the catalog, detail, image and profile services."""

    def __init__(
        self,
        catalog: CatalogCacheManager,
        details: CardDetailService,
        images: ImageResolutionPipeline,
        profiles: ProfileStateSynchronizer,
        owned_cards: OwnedCardCollection,
        *,
        background_prefetch: bool = True,
    ):
        self._catalog = catalog
        self._details = details
        self._images = images
        self._profiles = profiles
        self._owned = owned_cards
        self._background_prefetch = background_prefetch
        self._prefetch_task: asyncio.Task[None] | None = None
        # Guards the working set across flush, switch and load.
        self._profile_lock = asyncio.Lock()
        self._started = False

    @property
    def profiles(self) -> ProfileStateSynchronizer:
        return self._profiles

    @property
    def owned_cards(self) -> OwnedCardCollection:
        return self._owned

    async def start(self) -> None:
        """Load the profile set and the active profile's working set."""

        async with self._profile_lock:
            if self._started:
                return
            active = await self._profiles.active_profile()
            if not await self._owned.restore(active.id):
                await self._owned.load(active.id, active.owned_cards)
            self._started = True

    async def stop(self) -> None:
        """Flush the working set and cancel any pending prefetch."""

        if self._prefetch_task is not None:
            self._prefetch_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._prefetch_task
            self._prefetch_task = None
        if self._started:
            async with self._profile_lock:
                await self._profiles.sync_owned_cards_to_active_profile(self._owned.cards())

    # Catalog

    async def get_catalog(self) -> CatalogView:
        try:
            cards = await self._catalog.get_catalog()
        except CatalogUnavailableError as exc:
            return self._degraded_view(exc, await self._catalog.peek_stale())
        return await self._loaded_view(cards)

    async def force_refresh_catalog(self) -> CatalogView:
        stale = await self._catalog.peek_stale()
        try:
            cards = await self._catalog.force_refresh()
        except CatalogUnavailableError as exc:
            return self._degraded_view(exc, stale)
        return await self._loaded_view(cards)

    async def search_by_term(self, text: str) -> list[CardSummary]:
        try:
            return await self._catalog.search(text)
        except CatalogUnavailableError:
            cards = await self._catalog.peek_stale() or sample_cards()
            if not text.strip():
                return select_popular_cards(cards) or cards
            return search_cards(cards, text)

    async def get_detail(self, card_id: str) -> CardDetail:
        return await self._details.get_detail(card_id)

    async def resolve_image(self, card_id: str) -> CardImage:
        card = await self._catalog.find_summary((card_id or "").strip())
        return await self._images.resolve_image(card_id, card)

    async def clear_all_caches(self) -> None:
        await self._catalog.clear()
        await self._details.clear()
        await self._images.clear()
        logger.info("All catalog, detail and image caches cleared")

    async def _loaded_view(self, cards: list[CardSummary]) -> CatalogView:
        popular = select_popular_cards(cards) or list(cards)
        await self._prefetch(card.id for card in popular)
        return CatalogView(cards=cards, popular=popular)

    @staticmethod
    def _degraded_view(
        exc: CatalogUnavailableError, stale: list[CardSummary] | None
    ) -> CatalogView:
        logger.warning("Serving %s catalog: %s", "stale" if stale else "sample", exc)
        cards = stale or sample_cards()
        return CatalogView(
            cards=cards,
            popular=select_popular_cards(cards) or list(cards),
            error=exc.message,
        )

    async def _prefetch(self, card_ids: Iterable[str]) -> None:
        ids = list(card_ids)
        if not ids:
            return
        if not self._background_prefetch:
            await self._details.prefetch_details(ids)
            return
        if self._prefetch_task is not None and not self._prefetch_task.done():
            return

        async def _runner() -> None:
            try:
                await self._details.prefetch_details(ids)
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Background detail prefetch failed: %s", exc)

        self._prefetch_task = asyncio.create_task(_runner())

    # Profiles

    async def switch_profile(self, profile_id: str) -> UserProfile:
        """Flush the working set, switch, then load the incoming profile's cards."""

        async with self._profile_lock:
            await self._profiles.get_profile(profile_id)
            await self._profiles.sync_owned_cards_to_active_profile(self._owned.cards())
            active = await self._profiles.switch_active_profile(profile_id)
            await self._owned.load(active.id, active.owned_cards)
            return active

    async def set_profile_active(self, profile_id: str) -> UserProfile:
        return await self.switch_profile(profile_id)

    async def delete_profile(self, profile_id: str) -> UserProfile:
        async with self._profile_lock:
            current = await self._profiles.active_profile()
            if current.id != profile_id:
                return await self._profiles.delete_profile(profile_id)
            active = await self._profiles.delete_profile(profile_id)
            await self._owned.load(active.id, active.owned_cards)
            return active

    # Owned cards

    async def add_owned_card(self, card: OwnedCard) -> OwnedCard:
        async with self._profile_lock:
            return await self._owned.add(card)

    async def update_owned_card(self, card: OwnedCard) -> OwnedCard:
        async with self._profile_lock:
            return await self._owned.update(card)

    async def remove_owned_card(self, card_id: str) -> None:
        async with self._profile_lock:
            await self._owned.remove(card_id)

    async def toggle_bonus_achieved(self, card_id: str) -> OwnedCard:
        async with self._profile_lock:
            return await self._owned.toggle_bonus(card_id)

    async def set_owned_card_active(
        self, card_id: str, is_active: bool, *, on: date | None = None
    ) -> OwnedCard:
        async with self._profile_lock:
            return await self._owned.set_active(card_id, is_active, on=on)

    def owned_card_stats(self) -> OwnedCardStats:
        return self._owned.stats()
