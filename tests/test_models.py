from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from cardcatalog.models import (
    ApiCard,
    ApiCardDetail,
    ApiSearchResult,
    CacheEntry,
    CardDetail,
    CardSummary,
    JsonKind,
    JsonVariant,
)

SEVEN_DAYS = timedelta(days=7)
STORED_AT = datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_cache_entry_valid_just_before_ttl():
    entry = CacheEntry(value=[1], stored_at=STORED_AT)

    assert entry.is_valid(STORED_AT + SEVEN_DAYS - timedelta(microseconds=1), SEVEN_DAYS)


def test_cache_entry_expires_exactly_at_ttl():
    entry = CacheEntry(value=[1], stored_at=STORED_AT)

    assert not entry.is_valid(STORED_AT + SEVEN_DAYS, SEVEN_DAYS)
    assert not entry.is_valid(STORED_AT + SEVEN_DAYS + timedelta(seconds=1), SEVEN_DAYS)


def test_json_variant_decodes_every_shape():
    variant = JsonVariant.decode(
        {"annualSpendDesc": "Bonus", "count": 2, "flag": True, "none": None, "tags": ["a"]}
    )

    assert variant.kind is JsonKind.MAP
    assert variant.value["annualSpendDesc"].kind is JsonKind.STRING
    assert variant.value["count"].kind is JsonKind.NUMBER
    assert variant.value["flag"].kind is JsonKind.BOOL
    assert variant.value["none"].kind is JsonKind.NULL
    assert variant.value["tags"].kind is JsonKind.LIST
    assert variant.describe() == "Bonus"
    assert variant.to_python() == {
        "annualSpendDesc": "Bonus",
        "count": 2,
        "flag": True,
        "none": None,
        "tags": ["a"],
    }


def test_json_variant_rejects_non_json_values():
    with pytest.raises(TypeError):
        JsonVariant.decode(object())


def test_api_card_summary_uses_listing_conventions():
    card = ApiCard.model_validate(
        {
            "cardKey": "chase-sapphire",
            "cardName": "Sapphire Preferred®",
            "cardIssuer": "Chase",
            "earnMultiplier": 2.5,
            "spendBonusDesc": "2x on travel",
        }
    )

    summary = card.to_summary("Travel")

    assert summary.name == "Sapphire Preferred"
    assert summary.signup_bonus == 25_000
    assert summary.annual_fee == Decimal("0")
    assert summary.apr == "Variable"
    assert summary.apply_url == ""
    assert summary.description == "2x on travel"


def test_search_result_summary_is_marked_unknown():
    result = ApiSearchResult.model_validate(
        {"cardKey": "citi-premier", "cardIssuer": "Citi", "cardName": "Premier℠"}
    )

    summary = result.to_summary()

    assert summary.name == "Premier"
    assert summary.category == "Unknown"
    assert summary.description == "Details will be loaded when selected"
    assert summary.apr == "See issuer website"


def test_api_detail_converts_nested_lists():
    payload = {
        "cardKey": "amex-gold",
        "cardIssuer": "American Express",
        "cardName": "Gold Card®",
        "cardUrl": "https://example.com/gold",
        "annualFee": 250,
        "isSignupBonus": 1,
        "signupBonusAmount": "60000",
        "signupBonusDesc": "Earn 60,000 points",
        "isLoungeAccess": 0,
        "isFreeCheckedBag": 1,
        "benefit": [
            {"benefitTitle": "Dining credit", "benefitDesc": "Up to $120 per year"},
            {"benefitTitle": "Uber cash", "benefitDesc": "Up to $120 per year"},
            {"benefitTitle": "Third", "benefitDesc": "Ignored in summary"},
        ],
        "spendBonusCategory": [
            {"spendBonusCategoryGroup": "Dining", "earnMultiplier": 4, "spendBonusDesc": "4x dining"},
            {"spendBonusCategoryGroup": "Groceries", "earnMultiplier": 4, "spendBonusDesc": "4x groceries"},
        ],
        "annualSpend": [{"annualSpendDesc": "Spend bonus"}],
    }

    detail = ApiCardDetail.model_validate(payload).to_detail("Dining")

    assert detail.name == "Gold Card"
    assert detail.signup_bonus == 60_000
    assert detail.annual_fee == Decimal("250")
    assert detail.apply_url == "https://example.com/gold"
    assert detail.features.free_checked_bag
    assert not detail.features.lounge_access
    assert [benefit.title for benefit in detail.benefits] == [
        "Dining credit",
        "Uber cash",
        "Third",
    ]
    assert detail.description.startswith("Earn 60,000 points")
    assert "Third" not in detail.description
    assert detail.top_bonus_category().group == "Dining"
    assert detail.annual_spend_bonuses[0].describe() == "Spend bonus"


def test_detail_round_trips_through_json_dump():
    detail = CardDetail(
        id="x",
        name="X",
        issuer="Y",
        annual_spend_bonuses=[{"annualSpendDesc": "Bonus"}, "plain", 3],
    )

    restored = CardDetail.model_validate(detail.model_dump(mode="json"))

    assert restored == detail
    assert [item.kind for item in restored.annual_spend_bonuses] == [
        JsonKind.MAP,
        JsonKind.STRING,
        JsonKind.NUMBER,
    ]


def test_detail_from_summary_keeps_summary_fields():
    summary = CardSummary(id="x", name="X Card", issuer="Bank", category="Gas", signup_bonus=5)

    detail = CardDetail.from_summary(summary)

    assert detail.id == "x"
    assert detail.category == "Gas"
    assert detail.signup_bonus == 5
    assert detail.benefits == []
    assert detail.bonus_categories == []
    assert detail.signup_bonus_terms is None
