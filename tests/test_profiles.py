"""Tests for profile state and the owned card working set."""

from __future__ import annotations

import asyncio
from datetime import date
from decimal import Decimal
from typing import cast

import pytest

from cardcatalog.database import Database
from cardcatalog.errors import InvalidInputError, NotFoundError
from cardcatalog.models import CardSummary, OwnedCard, UserProfile
from cardcatalog.services.card_detail import CardDetailService
from cardcatalog.services.catalog_cache import CatalogCacheManager
from cardcatalog.services.image_pipeline import ImageResolutionPipeline
from cardcatalog.services.operations import CatalogOperations
from cardcatalog.services.profiles import (
    DEFAULT_PROFILE_NAME,
    OwnedCardCollection,
    ProfileStateSynchronizer,
)
from cardcatalog.services.store import (
    ACTIVE_PROFILE_KEY,
    OWNED_CARDS_KEY,
    PROFILES_KEY,
    KeyValueStore,
)


async def open_store(database_url: str) -> tuple[Database, KeyValueStore]:
    database = Database(database_url)
    await database.create_all()
    return database, KeyValueStore(database.session_factory)


def build_operations(store: KeyValueStore) -> CatalogOperations:
    return CatalogOperations(
        cast(CatalogCacheManager, object()),
        cast(CardDetailService, object()),
        cast(ImageResolutionPipeline, object()),
        ProfileStateSynchronizer(store),
        OwnedCardCollection(store),
        background_prefetch=False,
    )


def owned(name: str, **kwargs) -> OwnedCard:
    return OwnedCard(name=name, issuer="Chase", **kwargs)


def active_ids(profiles: list[UserProfile]) -> list[str]:
    return [profile.id for profile in profiles if profile.is_active]


@pytest.mark.anyio("asyncio")
async def test_first_load_creates_active_default_profile(database_url: str) -> None:
    database, store = await open_store(database_url)
    profiles = ProfileStateSynchronizer(store)

    loaded = await profiles.load()

    assert [profile.name for profile in loaded] == [DEFAULT_PROFILE_NAME]
    assert loaded[0].is_active
    assert await store.get(ACTIVE_PROFILE_KEY) == loaded[0].id
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_corrupt_profiles_fall_back_to_default(database_url: str) -> None:
    database, store = await open_store(database_url)
    await store.set(PROFILES_KEY, [{"unexpected": True}])

    loaded = await ProfileStateSynchronizer(store).load()

    assert [profile.name for profile in loaded] == [DEFAULT_PROFILE_NAME]
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_stored_active_flags_are_repaired(database_url: str) -> None:
    database, store = await open_store(database_url)
    first = UserProfile(name="First", is_active=True)
    second = UserProfile(name="Second", is_active=True)
    await store.set(PROFILES_KEY, [first.model_dump(mode="json"), second.model_dump(mode="json")])
    await store.set(ACTIVE_PROFILE_KEY, second.id)

    loaded = await ProfileStateSynchronizer(store).load()

    assert active_ids(loaded) == [second.id]
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_exactly_one_profile_is_active_after_every_operation(database_url: str) -> None:
    database, store = await open_store(database_url)
    profiles = ProfileStateSynchronizer(store)
    default = (await profiles.load())[0]

    work = await profiles.create_profile("Work", email=" work@example.com ")
    assert not work.is_active
    assert work.email == "work@example.com"
    assert active_ids(await profiles.load()) == [default.id]

    await profiles.switch_active_profile(work.id)
    assert active_ids(await profiles.load()) == [work.id]

    replacement = await profiles.delete_profile(work.id)
    assert replacement.id == default.id
    assert active_ids(await profiles.load()) == [default.id]

    with pytest.raises(InvalidInputError):
        await profiles.delete_profile(default.id)
    with pytest.raises(NotFoundError):
        await profiles.switch_active_profile("missing")
    with pytest.raises(InvalidInputError):
        await profiles.create_profile("   ")
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_preferences_are_stored_on_the_active_profile(database_url: str) -> None:
    database, store = await open_store(database_url)
    profiles = ProfileStateSynchronizer(store)

    assert await profiles.toggle_favorite("amex-gold") is True
    assert await profiles.toggle_favorite("chase-freedom") is True
    assert await profiles.toggle_favorite("amex-gold") is False
    await profiles.add_custom_card(CardSummary(id="mine", name="Mine", issuer="Me"))
    await profiles.add_custom_card(CardSummary(id="mine", name="Mine v2", issuer="Me"))
    theme = await profiles.update_theme(is_dark_mode=True)

    reloaded = await ProfileStateSynchronizer(store).active_profile()

    assert reloaded.preferences.favorite_card_ids == {"chase-freedom"}
    assert [card.name for card in reloaded.preferences.custom_cards] == ["Mine v2"]
    assert theme.is_dark_mode
    assert reloaded.theme.accent_color == "blue"
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_switching_profiles_flushes_the_working_set(database_url: str) -> None:
    database, store = await open_store(database_url)
    operations = build_operations(store)
    await operations.start()
    profile_a = await operations.profiles.active_profile()
    profile_b = await operations.profiles.create_profile("B")

    for name in ("One", "Two", "Three"):
        await operations.add_owned_card(owned(name))

    await operations.switch_profile(profile_b.id)

    stored_a = await operations.profiles.get_profile(profile_a.id)
    assert [card.name for card in stored_a.owned_cards] == ["One", "Two", "Three"]
    assert operations.owned_cards.cards() == []
    assert operations.owned_cards.profile_id == profile_b.id

    await operations.add_owned_card(owned("B only"))
    await operations.set_profile_active(profile_a.id)

    assert [card.name for card in operations.owned_cards.cards()] == ["One", "Two", "Three"]
    stored_b = await operations.profiles.get_profile(profile_b.id)
    assert [card.name for card in stored_b.owned_cards] == ["B only"]
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_edit_racing_a_switch_is_kept(database_url: str) -> None:
    database, store = await open_store(database_url)
    operations = build_operations(store)
    await operations.start()
    profile_a = await operations.profiles.active_profile()
    profile_b = await operations.profiles.create_profile("B")
    await operations.add_owned_card(owned("Early"))

    await asyncio.gather(
        operations.switch_profile(profile_b.id),
        operations.add_owned_card(owned("Late")),
    )

    stored_a = await operations.profiles.get_profile(profile_a.id)
    stored_b = await operations.profiles.get_profile(profile_b.id)
    names = (
        [card.name for card in stored_a.owned_cards]
        + [card.name for card in stored_b.owned_cards]
        + [card.name for card in operations.owned_cards.cards()]
    )
    assert "Early" in names
    assert "Late" in names
    assert [card.name for card in stored_a.owned_cards] == ["Early"]
    assert [card.name for card in operations.owned_cards.cards()] == ["Late"]
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_deleting_the_active_profile_loads_the_replacement(database_url: str) -> None:
    database, store = await open_store(database_url)
    operations = build_operations(store)
    await operations.start()
    first = await operations.profiles.active_profile()
    second = await operations.profiles.create_profile("Second")
    await operations.add_owned_card(owned("Kept"))
    await operations.switch_profile(second.id)
    await operations.add_owned_card(owned("Discarded"))

    active = await operations.delete_profile(second.id)

    assert active.id == first.id
    assert [card.name for card in operations.owned_cards.cards()] == ["Kept"]
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_working_set_is_restored_from_its_own_copy(database_url: str) -> None:
    database, store = await open_store(database_url)
    operations = build_operations(store)
    await operations.start()
    await operations.add_owned_card(owned("Unsynced"))

    restarted = build_operations(store)
    await restarted.start()

    assert [card.name for card in restarted.owned_cards.cards()] == ["Unsynced"]
    payload = await store.get(OWNED_CARDS_KEY)
    assert payload["profileId"] == (await restarted.profiles.active_profile()).id

    await restarted.stop()
    synced = await ProfileStateSynchronizer(store).active_profile()
    assert [card.name for card in synced.owned_cards] == ["Unsynced"]
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_owned_card_mutations(database_url: str) -> None:
    database, store = await open_store(database_url)
    collection = OwnedCardCollection(store)
    await collection.load("profile", [])
    card = await collection.add(owned("Freedom", signup_bonus=20_000))

    with pytest.raises(InvalidInputError):
        await collection.add(card)

    toggled = await collection.toggle_bonus(card.id)
    assert toggled.bonus_achieved

    retired = await collection.set_active(card.id, False, on=date(2024, 5, 1))
    assert retired.date_inactivated == date(2024, 5, 1)
    assert collection.active_cards() == []
    assert [item.id for item in collection.inactive_cards()] == [card.id]

    reactivated = await collection.set_active(card.id, True)
    assert reactivated.date_inactivated is None

    renamed = card.model_copy(update={"name": "Freedom Flex"})
    await collection.update(renamed)
    assert collection.cards()[0].name == "Freedom Flex"

    await collection.remove(card.id)
    assert collection.cards() == []
    with pytest.raises(NotFoundError):
        await collection.remove(card.id)
    await database.dispose()


def test_owned_card_stats() -> None:
    collection = OwnedCardCollection(cast(KeyValueStore, object()))
    collection._cards = [
        owned("A", signup_bonus=60_000, bonus_achieved=True, annual_fee=Decimal("95"),
              date_opened=date(2022, 1, 10)),
        owned("B", signup_bonus=20_000, annual_fee=Decimal("0"), date_opened=date(2023, 6, 1)),
        owned("C", signup_bonus=50_000, bonus_achieved=True, annual_fee=Decimal("550"),
              date_opened=date(2023, 2, 1), is_active=False, date_inactivated=date(2024, 2, 1)),
    ]

    stats = collection.stats()

    assert stats.total_cards == 3
    assert stats.active_cards == 2
    assert stats.historical_points == 110_000
    assert stats.points_earned == 60_000
    assert stats.pending_points == 20_000
    assert stats.total_annual_fees == Decimal("95")
    assert stats.points_by_year == {"2022": 60_000, "2023": 50_000}
    assert stats.cards_opened_by_year == {"2022": 1, "2023": 2}
    assert stats.to_payload()["totalAnnualFees"] == "95"


def test_concurrent_edits_are_serialised(tmp_path) -> None:
    async def runner() -> None:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'concurrent.db'}")
        await database.create_all()
        collection = OwnedCardCollection(KeyValueStore(database.session_factory))
        await collection.load("profile", [])

        await asyncio.gather(*(collection.add(owned(f"Card {index}")) for index in range(5)))

        assert len(collection.cards()) == 5
        payload = await KeyValueStore(database.session_factory).get(OWNED_CARDS_KEY)
        assert len(payload["cards"]) == 5
        await database.dispose()

    asyncio.run(runner())
