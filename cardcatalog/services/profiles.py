"""Per-profile owned cards and preferences with flush-before-switch semantics."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Iterable

from pydantic import ValidationError

from ..errors import InvalidInputError, NotFoundError, PersistenceError
from ..models import CardSummary, OwnedCard, ThemePreference, UserProfile
from .store import ACTIVE_PROFILE_KEY, OWNED_CARDS_KEY, PROFILES_KEY, KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_PROFILE_NAME = "Default Profile"
DEFAULT_PROFILE_EMAIL = "user@example.com"


def default_profile() -> UserProfile:
    return UserProfile(
        name=DEFAULT_PROFILE_NAME,
        email=DEFAULT_PROFILE_EMAIL,
        is_active=True,
    )


class ProfileStateSynchronizer:
    """Owns the profile set and keeps exactly one profile active."""

    def __init__(self, store: KeyValueStore):
        self._store = store
        self._profiles: list[UserProfile] = []
        self._loaded = False
        self._lock = asyncio.Lock()

    async def load(self) -> list[UserProfile]:
        """Load profiles from storage, creating the default one if needed."""

        async with self._lock:
            await self._ensure_loaded()
            return self._snapshot()

    async def profiles(self) -> list[UserProfile]:
        return await self.load()

    async def active_profile(self) -> UserProfile:
        async with self._lock:
            await self._ensure_loaded()
            return self._active().model_copy(deep=True)

    async def get_profile(self, profile_id: str) -> UserProfile:
        async with self._lock:
            await self._ensure_loaded()
            return self._find(profile_id).model_copy(deep=True)

    async def create_profile(
        self,
        name: str,
        *,
        email: str = "",
        avatar: str | None = None,
    ) -> UserProfile:
        cleaned = (name or "").strip()
        if not cleaned:
            raise InvalidInputError("Profile name must not be empty")
        profile = UserProfile(name=cleaned, email=email.strip())
        if avatar:
            profile.avatar = avatar
        async with self._lock:
            await self._ensure_loaded()
            profile.is_active = not self._profiles
            self._profiles.append(profile)
            await self._save()
        return profile.model_copy(deep=True)

    async def update_profile(
        self,
        profile_id: str,
        *,
        name: str | None = None,
        email: str | None = None,
        avatar: str | None = None,
    ) -> UserProfile:
        async with self._lock:
            await self._ensure_loaded()
            profile = self._find(profile_id)
            if name is not None:
                if not name.strip():
                    raise InvalidInputError("Profile name must not be empty")
                profile.name = name.strip()
            if email is not None:
                profile.email = email.strip()
            if avatar is not None:
                profile.avatar = avatar
            await self._save()
            return profile.model_copy(deep=True)

    async def delete_profile(self, profile_id: str) -> UserProfile:
        """Delete a profile; the first remaining one inherits active status."""

        async with self._lock:
            await self._ensure_loaded()
            profile = self._find(profile_id)
            if len(self._profiles) <= 1:
                raise InvalidInputError("Cannot delete the last remaining profile")
            self._profiles = [item for item in self._profiles if item.id != profile.id]
            if profile.is_active:
                self._set_active(self._profiles[0].id)
            await self._save()
            return self._active().model_copy(deep=True)

    async def sync_owned_cards_to_active_profile(self, cards: Iterable[OwnedCard]) -> None:
        """Store the working set into whichever profile is currently active."""

        async with self._lock:
            await self._ensure_loaded()
            self._active().owned_cards = [card.model_copy(deep=True) for card in cards]
            await self._save()

    async def switch_active_profile(self, profile_id: str) -> UserProfile:
        """Flag ``profile_id`` active and every other profile inactive.

        The caller flushes its working set first and loads the incoming
        profile's cards afterwards.
        """

        async with self._lock:
            await self._ensure_loaded()
            self._find(profile_id)
            self._set_active(profile_id)
            await self._save()
            return self._active().model_copy(deep=True)

    async def toggle_favorite(self, card_id: str) -> bool:
        """Flip a catalog card in the active profile's favourites."""

        async with self._lock:
            await self._ensure_loaded()
            favorites = self._active().preferences.favorite_card_ids
            if card_id in favorites:
                favorites.discard(card_id)
                is_favorite = False
            else:
                favorites.add(card_id)
                is_favorite = True
            await self._save()
            return is_favorite

    async def set_hidden(self, card_id: str, hidden: bool) -> None:
        async with self._lock:
            await self._ensure_loaded()
            hidden_ids = self._active().preferences.hidden_card_ids
            if hidden:
                hidden_ids.add(card_id)
            else:
                hidden_ids.discard(card_id)
            await self._save()

    async def add_custom_card(self, card: CardSummary) -> None:
        """Add or replace a user-defined catalog card on the active profile."""

        async with self._lock:
            await self._ensure_loaded()
            custom = self._active().preferences.custom_cards
            custom[:] = [item for item in custom if item.id != card.id]
            custom.append(card)
            await self._save()

    async def update_theme(
        self, *, is_dark_mode: bool | None = None, accent_color: str | None = None
    ) -> ThemePreference:
        async with self._lock:
            await self._ensure_loaded()
            theme = self._active().theme
            if is_dark_mode is not None:
                theme.is_dark_mode = is_dark_mode
            if accent_color is not None:
                theme.accent_color = accent_color
            await self._save()
            return theme.model_copy()

    def _snapshot(self) -> list[UserProfile]:
        return [profile.model_copy(deep=True) for profile in self._profiles]

    def _find(self, profile_id: str) -> UserProfile:
        for profile in self._profiles:
            if profile.id == profile_id:
                return profile
        raise NotFoundError(f"Profile {profile_id} does not exist")

    def _active(self) -> UserProfile:
        for profile in self._profiles:
            if profile.is_active:
                return profile
        # Storage may hold no active profile; promote the first one.
        self._profiles[0].is_active = True
        return self._profiles[0]

    def _set_active(self, profile_id: str) -> None:
        for profile in self._profiles:
            profile.is_active = profile.id == profile_id

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        profiles: list[UserProfile] = []
        active_id: str | None = None
        try:
            payload = await self._store.get(PROFILES_KEY)
            raw_active = await self._store.get(ACTIVE_PROFILE_KEY)
            active_id = raw_active if isinstance(raw_active, str) else None
        except PersistenceError as exc:
            logger.warning("Stored profiles unavailable: %s", exc)
            payload = None
        if isinstance(payload, list):
            try:
                profiles = [UserProfile.model_validate(item) for item in payload]
            except ValidationError:
                logger.warning("Stored profiles are malformed, starting with a default profile")
                profiles = []

        self._profiles = profiles
        self._loaded = True
        if not self._profiles:
            self._profiles = [default_profile()]
            await self._save()
            return

        flagged = [profile.id for profile in self._profiles if profile.is_active]
        ids = {profile.id for profile in self._profiles}
        if active_id not in ids:
            active_id = flagged[0] if flagged else self._profiles[0].id
        if flagged != [active_id]:
            self._set_active(active_id)
            await self._save()

    async def _save(self) -> None:
        active = self._active()
        try:
            await self._store.set(
                PROFILES_KEY,
                [profile.model_dump(mode="json") for profile in self._profiles],
            )
            await self._store.set(ACTIVE_PROFILE_KEY, active.id)
        except PersistenceError as exc:
            logger.warning("Failed to persist profiles: %s", exc)


@dataclass(slots=True)
class OwnedCardStats:
    """Aggregate numbers over a profile's owned cards."""

    total_cards: int = 0
    active_cards: int = 0
    historical_points: int = 0
    points_earned: int = 0
    pending_points: int = 0
    total_annual_fees: Decimal = Decimal("0")
    points_by_year: dict[str, int] = field(default_factory=dict)
    cards_opened_by_year: dict[str, int] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "totalCards": self.total_cards,
            "activeCards": self.active_cards,
            "historicalPoints": self.historical_points,
            "pointsEarned": self.points_earned,
            "pendingPoints": self.pending_points,
            "totalAnnualFees": str(self.total_annual_fees),
            "pointsByYear": dict(self.points_by_year),
            "cardsOpenedByYear": dict(self.cards_opened_by_year),
        }


class OwnedCardCollection:
    """The loaded profile's owned cards, mirrored to storage on every change."""

    def __init__(self, store: KeyValueStore):
        self._store = store
        self._cards: list[OwnedCard] = []
        self._profile_id: str | None = None
        self._lock = asyncio.Lock()

    @property
    def profile_id(self) -> str | None:
        return self._profile_id

    def cards(self) -> list[OwnedCard]:
        return [card.model_copy() for card in self._cards]

    def active_cards(self) -> list[OwnedCard]:
        return [card.model_copy() for card in self._cards if card.is_active]

    def inactive_cards(self) -> list[OwnedCard]:
        return [card.model_copy() for card in self._cards if not card.is_active]

    async def load(self, profile_id: str, cards: Iterable[OwnedCard]) -> None:
        """Replace the working set with another profile's cards."""

        async with self._lock:
            self._profile_id = profile_id
            self._cards = [card.model_copy() for card in cards]
            await self._save()

    async def restore(self, profile_id: str) -> bool:
        """Reload the redundant copy if it belongs to ``profile_id``."""

        try:
            payload = await self._store.get(OWNED_CARDS_KEY)
        except PersistenceError as exc:
            logger.warning("Saved owned cards unavailable: %s", exc)
            return False
        if not isinstance(payload, dict) or payload.get("profileId") != profile_id:
            return False
        try:
            cards = [OwnedCard.model_validate(item) for item in payload.get("cards") or []]
        except ValidationError:
            logger.warning("Ignoring malformed saved owned cards")
            return False
        async with self._lock:
            self._profile_id = profile_id
            self._cards = cards
        return True

    async def add(self, card: OwnedCard) -> OwnedCard:
        async with self._lock:
            if any(existing.id == card.id for existing in self._cards):
                raise InvalidInputError(f"Owned card {card.id} already exists")
            self._cards.append(card.model_copy())
            await self._save()
        return card

    async def update(self, card: OwnedCard) -> OwnedCard:
        async with self._lock:
            index = self._index(card.id)
            self._cards[index] = card.model_copy()
            await self._save()
        return card

    async def remove(self, card_id: str) -> None:
        async with self._lock:
            index = self._index(card_id)
            del self._cards[index]
            await self._save()

    async def toggle_bonus(self, card_id: str) -> OwnedCard:
        async with self._lock:
            index = self._index(card_id)
            card = self._cards[index]
            updated = card.model_copy(update={"bonus_achieved": not card.bonus_achieved})
            self._cards[index] = updated
            await self._save()
            return updated.model_copy()

    async def set_active(
        self, card_id: str, is_active: bool, *, on: date | None = None
    ) -> OwnedCard:
        """Activate or retire a card; retiring stamps the inactivation date."""

        async with self._lock:
            index = self._index(card_id)
            updates: dict[str, Any] = {"is_active": is_active}
            updates["date_inactivated"] = None if is_active else (on or date.today())
            updated = self._cards[index].model_copy(update=updates)
            self._cards[index] = updated
            await self._save()
            return updated.model_copy()

    def stats(self) -> OwnedCardStats:
        stats = OwnedCardStats(total_cards=len(self._cards))
        points_by_year: Counter[str] = Counter()
        opened_by_year: Counter[str] = Counter()
        for card in self._cards:
            year = str(card.date_opened.year)
            opened_by_year[year] += 1
            if card.bonus_achieved:
                stats.historical_points += card.signup_bonus
                points_by_year[year] += card.signup_bonus
            if not card.is_active:
                continue
            stats.active_cards += 1
            stats.total_annual_fees += card.annual_fee
            if card.bonus_achieved:
                stats.points_earned += card.signup_bonus
            else:
                stats.pending_points += card.signup_bonus
        stats.points_by_year = dict(points_by_year)
        stats.cards_opened_by_year = dict(opened_by_year)
        return stats

    def _index(self, card_id: str) -> int:
        for index, card in enumerate(self._cards):
            if card.id == card_id:
                return index
        raise NotFoundError(f"Owned card {card_id} does not exist")

    async def _save(self) -> None:
        try:
            await self._store.set(
                OWNED_CARDS_KEY,
                {
                    "profileId": self._profile_id,
                    "cards": [card.model_dump(mode="json") for card in self._cards],
                },
            )
        except PersistenceError as exc:
            logger.warning("Failed to persist owned cards: %s", exc)
