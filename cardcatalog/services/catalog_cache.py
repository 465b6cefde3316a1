"""Memory, store and remote tiers for the browsable card catalog."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterable

from pydantic import ValidationError

from ..config import Settings
from ..errors import REMOTE_ERRORS, CatalogError, CatalogUnavailableError, PersistenceError
from ..models import ApiCard, CacheEntry, CardDetail, CardSummary
from ..utils import utcnow
from .classifier import categorize_card, category_from_description
from .remote_catalog import RemoteCatalogClient
from .store import CATALOG_KEY, CATALOG_META_KEY, KeyValueStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

MAJOR_BANKS: tuple[str, ...] = (
    "Chase",
    "Citi",
    "American Express",
    "Amex",
    "Wells Fargo",
    "Capital One",
)
POPULAR_CARD_TYPES: tuple[str, ...] = (
    "sapphire", "gold", "platinum", "venture", "freedom", "cash", "premier",
    "reserve", "preferred", "double", "blue", "propel",
)
POPULAR_CATEGORIES: tuple[str, ...] = (
    "Travel", "Cashback", "Hotel", "Airline", "Groceries", "Dining", "Gas",
)
POPULAR_CATEGORY_LIMIT = 20
POPULAR_MAJOR_BANK_LIMIT = 30


def sample_cards() -> list[CardSummary]:
    """Built-in catalog shown when the remote API returns nothing at all."""

    return [
        CardSummary(
            id="chase-sapphire-reserve",
            name="Sapphire Reserve",
            issuer="Chase",
            category="Travel",
            description=(
                "Premium travel rewards card with 3x points on travel and dining, "
                "$300 annual travel credit."
            ),
            annual_fee=Decimal("550"),
            signup_bonus=60_000,
            apr="21.24% - 28.24% Variable",
            apply_url="https://creditcards.chase.com/rewards-credit-cards/sapphire/reserve",
        ),
        CardSummary(
            id="amex-gold",
            name="American Express Gold",
            issuer="American Express",
            category="Groceries",
            description=(
                "4x on groceries at U.S. supermarkets on up to $25,000 in purchases per year"
            ),
            annual_fee=Decimal("250"),
            signup_bonus=60_000,
            apr="See Terms",
            apply_url="https://www.americanexpress.com/us/credit-cards/card/gold-card/",
        ),
    ]


def sort_cards(cards: Iterable[CardSummary]) -> list[CardSummary]:
    """Order by issuer then name using plain code-point comparison."""

    return sorted(cards, key=lambda card: (card.issuer, card.name))


def dedupe_listing(entries: Iterable[ApiCard]) -> list[ApiCard]:
    """Keep one entry per card key, preferring the highest earn multiplier.

    A later entry replaces an earlier one only when its multiplier is strictly
    greater, so ties keep the first-seen entry.
    """

    unique: dict[str, ApiCard] = {}
    for entry in entries:
        existing = unique.get(entry.card_key)
        if existing is None or existing.earn_multiplier < entry.earn_multiplier:
            unique[entry.card_key] = entry
    return list(unique.values())


def search_cards(cards: Iterable[CardSummary], term: str) -> list[CardSummary]:
    """Case-insensitive substring match on card name or issuer."""

    needle = term.strip().casefold()
    return [
        card
        for card in cards
        if needle in card.name.casefold() or needle in card.issuer.casefold()
    ]


def select_popular_cards(cards: Iterable[CardSummary]) -> list[CardSummary]:
    """Pick the prominent major-bank cards shown before any search."""

    banks = [bank.lower() for bank in MAJOR_BANKS]
    major = [card for card in cards if any(bank in card.issuer.lower() for bank in banks)]

    def _popular_type(card: CardSummary) -> bool:
        name = card.name.lower()
        card_id = card.id.lower()
        return any(kind in name or kind in card_id for kind in POPULAR_CARD_TYPES)

    popular = [card for card in major if _popular_type(card)]
    chosen = {card.id for card in popular}

    categories = {category.lower() for category in POPULAR_CATEGORIES}
    category_cards = [
        card
        for card in major
        if card.id not in chosen and card.category.lower() in categories
    ][:POPULAR_CATEGORY_LIMIT]
    popular.extend(category_cards)
    chosen.update(card.id for card in category_cards)

    remaining = [card for card in major if card.id not in chosen][:POPULAR_MAJOR_BANK_LIMIT]
    popular.extend(remaining)
    return sort_cards(popular)


def group_by_category(cards: Iterable[CardSummary]) -> dict[str, list[CardSummary]]:
    grouped: dict[str, list[CardSummary]] = {}
    for card in cards:
        grouped.setdefault(card.category, []).append(card)
    return grouped


def recommend_for_category(
    cards: Iterable[CardSummary], category: str, limit: int = 5
) -> list[CardSummary]:
    wanted = category.lower()
    matches = [card for card in cards if card.category.lower() == wanted]
    matches.sort(key=lambda card: card.signup_bonus, reverse=True)
    return matches[:limit]


def cards_by_issuer(
    cards: Iterable[CardSummary], issuer: str, limit: int = 10
) -> list[CardSummary]:
    wanted = issuer.lower()
    matches = [card for card in cards if wanted in card.issuer.lower()]
    matches.sort(key=lambda card: card.signup_bonus, reverse=True)
    return matches[:limit]


class CatalogMemoryCache:
    """In-memory catalog and detail maps behind a single lock."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._catalog: CacheEntry[list[CardSummary]] | None = None
        self._details: dict[str, CacheEntry[CardDetail]] = {}

    async def get_catalog(self) -> CacheEntry[list[CardSummary]] | None:
        async with self._lock:
            if self._catalog is None:
                return None
            return CacheEntry(list(self._catalog.value), self._catalog.stored_at)

    async def set_catalog(self, cards: list[CardSummary], stored_at: datetime) -> None:
        async with self._lock:
            self._catalog = CacheEntry(list(cards), stored_at)

    async def clear_catalog(self) -> None:
        async with self._lock:
            self._catalog = None

    async def find_summary(self, card_id: str) -> CardSummary | None:
        async with self._lock:
            if self._catalog is None:
                return None
            for card in self._catalog.value:
                if card.id == card_id:
                    return card
            return None

    async def replace_summary(self, card: CardSummary) -> bool:
        """Swap the catalog entry with the same id in place; never appends."""

        async with self._lock:
            if self._catalog is None:
                return False
            for index, existing in enumerate(self._catalog.value):
                if existing.id == card.id:
                    self._catalog.value[index] = card
                    return True
            return False

    async def get_detail(self, card_id: str) -> CacheEntry[CardDetail] | None:
        async with self._lock:
            return self._details.get(card_id)

    async def set_detail(self, detail: CardDetail, stored_at: datetime) -> None:
        async with self._lock:
            self._details[detail.id] = CacheEntry(detail, stored_at)

    async def remove_detail(self, card_id: str) -> None:
        async with self._lock:
            self._details.pop(card_id, None)

    async def clear_details(self) -> None:
        async with self._lock:
            self._details.clear()


class CatalogCacheManager:
    """Serve the catalog from memory, then the store, then the remote API."""

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

    async def get_catalog(self) -> list[CardSummary]:
        now = self._clock()

        entry = await self._memory.get_catalog()
        if entry is not None and entry.is_valid(now, self.ttl):
            return entry.value

        stored = await self._read_store()
        if stored is not None and stored.is_valid(now, self.ttl):
            await self._memory.set_catalog(stored.value, stored.stored_at)
            return stored.value

        return await self._fetch_and_store()

    async def force_refresh(self) -> list[CardSummary]:
        """Drop every cached tier and fetch the catalog again."""

        await self.clear()
        return await self._fetch_and_store()

    async def clear(self) -> None:
        await self._memory.clear_catalog()
        try:
            await self._store.delete(CATALOG_KEY, CATALOG_META_KEY)
        except PersistenceError as exc:
            logger.warning("Failed to clear persisted catalog: %s", exc)

    async def peek_stale(self) -> list[CardSummary] | None:
        """Return whatever catalog data any tier holds, ignoring age."""

        entry = await self._memory.get_catalog()
        if entry is not None and entry.value:
            return entry.value
        stored = await self._read_store()
        if stored is not None and stored.value:
            return stored.value
        return None

    async def find_summary(self, card_id: str) -> CardSummary | None:
        return await self._memory.find_summary(card_id)

    async def search(self, term: str) -> list[CardSummary]:
        cards = await self.get_catalog()
        if not term.strip():
            return select_popular_cards(cards)
        return search_cards(cards, term)

    async def popular(self) -> list[CardSummary]:
        return select_popular_cards(await self.get_catalog())

    async def by_category(self) -> dict[str, list[CardSummary]]:
        return group_by_category(await self.get_catalog())

    async def recommended(self, category: str, limit: int = 5) -> list[CardSummary]:
        return recommend_for_category(await self.get_catalog(), category, limit)

    async def by_issuer(self, issuer: str, limit: int = 10) -> list[CardSummary]:
        return cards_by_issuer(await self.get_catalog(), issuer, limit)

    async def _read_store(self) -> CacheEntry[list[CardSummary]] | None:
        try:
            entry = await self._store.read_cache_entry(CATALOG_KEY, CATALOG_META_KEY)
        except PersistenceError as exc:
            logger.warning("Persisted catalog unavailable: %s", exc)
            return None
        if entry is None or not isinstance(entry.value, list):
            return None
        try:
            cards = [CardSummary.model_validate(item) for item in entry.value]
        except ValidationError:
            logger.warning("Ignoring malformed persisted catalog")
            return None
        return CacheEntry(cards, entry.stored_at)

    async def _fetch_and_store(self) -> list[CardSummary]:
        cards = await self._fetch_remote()
        if not cards:
            logger.warning("Remote catalog returned no cards, using built-in sample set")
            return sample_cards()

        categorized = sort_cards(
            card.model_copy(update={"category": categorize_card(card)}) for card in cards
        )
        stored_at = self._clock()
        await self._memory.set_catalog(categorized, stored_at)
        try:
            await self._store.write_cache_entry(
                CATALOG_KEY,
                CATALOG_META_KEY,
                [card.model_dump(mode="json") for card in categorized],
                stored_at,
            )
        except PersistenceError as exc:
            logger.warning("Failed to persist catalog: %s", exc)
        logger.info("Catalog refreshed with %s unique cards", len(categorized))
        return categorized

    async def _fetch_remote(self) -> list[CardSummary]:
        """Merge the basic listing with per-term search results."""

        failures: list[CatalogError] = []
        responded = False
        merged: list[CardSummary] = []

        try:
            listing = await self._remote.fetch_cards()
        except REMOTE_ERRORS as exc:
            logger.warning("Basic card listing failed: %s", exc)
            failures.append(exc)
        else:
            responded = True
            merged = [
                entry.to_summary(category_from_description(entry.spend_bonus_desc))
                for entry in dedupe_listing(listing)
            ]

        seen = {card.id for card in merged}
        for term in self._settings.search_terms:
            try:
                results = await self._remote.search_cards(term)
            except REMOTE_ERRORS as exc:
                logger.warning("Card search for %r failed: %s", term, exc)
                failures.append(exc)
                continue
            responded = True
            for result in results:
                if result.card_key in seen:
                    continue
                seen.add(result.card_key)
                merged.append(result.to_summary())

        if not responded:
            raise CatalogUnavailableError(
                "Unable to reach the card catalog service. Showing saved data if available.",
                failures,
            )
        return merged
