"""Keyword-based classification of cards into reward categories."""

from __future__ import annotations

from enum import Enum

from ..models import CardDetail, CardSummary


class Category(str, Enum):
    """Category labels in tie-breaking precedence order."""

    TRAVEL = "Travel"
    AIRLINE = "Airline"
    HOTEL = "Hotel"
    CASHBACK = "Cashback"
    DINING = "Dining"
    GROCERIES = "Groceries"
    GAS = "Gas"
    BUSINESS = "Business"
    STUDENT = "Student"
    LUXURY = "Luxury"
    GENERAL = "General"


CATEGORY_KEYWORDS: dict[Category, tuple[str, ...]] = {
    Category.TRAVEL: (
        "travel", "point", "mile", "adventure", "journey", "trip", "vacation", "rewards",
    ),
    Category.AIRLINE: (
        "airline", "flight", "aviation", "aircraft", "airplane", "airport", "delta",
        "united", "southwest", "american airlines", "jetblue", "alaska air",
    ),
    Category.HOTEL: (
        "hotel", "lodging", "accommodation", "hospitality", "marriott", "hilton",
        "hyatt", "ihg", "wyndham", "radisson", "stay",
    ),
    Category.CASHBACK: (
        "cash", "back", "rebate", "refund", "return", "money", "dollar", "percent",
        "unlimited", "freedom",
    ),
    Category.DINING: (
        "dining", "restaurant", "food", "eat", "cafe", "cuisine", "meal", "culinary",
    ),
    Category.GROCERIES: (
        "grocery", "groceries", "supermarket", "store", "shopping", "market",
    ),
    Category.GAS: ("gas", "fuel", "petrol", "station", "pump", "drive", "road"),
    Category.BUSINESS: (
        "business", "corporate", "company", "enterprise", "commercial", "professional",
        "ink", "spark",
    ),
    Category.STUDENT: (
        "student", "college", "university", "campus", "education", "school",
        "academic", "journey", "young",
    ),
    Category.LUXURY: (
        "platinum", "reserve", "prestige", "elite", "premium", "luxury", "priority",
        "exclusive", "privilege", "black card",
    ),
}

# Alias rules applied by ``standardize`` after an exact label match fails.
_ALIAS_RULES: tuple[tuple[Category, tuple[str, ...], tuple[str, ...]], ...] = (
    (Category.CASHBACK, ("cash",), ("back", "reward")),
    (Category.TRAVEL, ("travel", "point", "mile"), ()),
    (Category.AIRLINE, ("air", "flight", "airline"), ()),
    (Category.HOTEL, ("hotel", "lodging", "stay"), ()),
    (Category.DINING, ("dining", "restaurant", "food"), ()),
    (Category.GROCERIES, ("grocer", "supermarket"), ()),
    (Category.GAS, ("gas", "fuel"), ()),
    (Category.BUSINESS, ("business", "corporate"), ()),
)

_LABELS: dict[str, Category] = {category.value.lower(): category for category in Category}

# Display colours (0-1 RGB) used by placeholder artwork.
CATEGORY_COLORS: dict[Category, tuple[float, float, float]] = {
    Category.TRAVEL: (0.2, 0.4, 0.8),
    Category.CASHBACK: (0.2, 0.6, 0.3),
    Category.BUSINESS: (0.5, 0.3, 0.7),
    Category.HOTEL: (0.9, 0.5, 0.2),
    Category.AIRLINE: (0.8, 0.2, 0.2),
    Category.GROCERIES: (0.4, 0.7, 0.3),
    Category.DINING: (0.8, 0.4, 0.2),
    Category.GAS: (0.6, 0.4, 0.7),
}


def classify(text: str) -> Category:
    """Return the first category whose keywords occur in ``text``."""

    lowered = (text or "").lower()
    for category, keywords in CATEGORY_KEYWORDS.items():
        if any(keyword in lowered for keyword in keywords):
            return category
    if ("point" in lowered or "mile" in lowered) and not (
        "cash" in lowered and "back" in lowered
    ):
        return Category.TRAVEL
    return Category.GENERAL


def is_known_category(label: str) -> bool:
    return (label or "").strip().lower() in _LABELS


def standardize(label: str) -> str:
    """Map a free-form label onto a category name, or return it unchanged."""

    lowered = (label or "").strip().lower()
    known = _LABELS.get(lowered)
    if known is not None:
        return known.value

    for category, any_of, with_any in _ALIAS_RULES:
        if any(token in lowered for token in any_of) and (
            not with_any or any(token in lowered for token in with_any)
        ):
            return category.value
    return label


def category_from_description(description: str) -> str:
    """Quick guess for listing entries that only carry a bonus description."""

    lowered = (description or "").lower()
    if "groceries" in lowered or "supermarket" in lowered:
        return Category.GROCERIES.value
    if "dining" in lowered or "restaurant" in lowered:
        return Category.DINING.value
    if "travel" in lowered or "flight" in lowered or "hotel" in lowered:
        return Category.TRAVEL.value
    if "airline" in lowered:
        return Category.AIRLINE.value
    if "resort" in lowered:
        return Category.HOTEL.value
    if "gas" in lowered or "fuel" in lowered:
        return Category.GAS.value
    if "cash" in lowered or "back" in lowered:
        return Category.CASHBACK.value
    if "business" in lowered:
        return Category.BUSINESS.value
    return Category.GENERAL.value


def categorize_card(card: CardSummary) -> str:
    """Derive the category label of a card, keeping a valid existing one."""

    if is_known_category(card.category):
        return standardize(card.category)

    bonus_categories = card.bonus_categories if isinstance(card, CardDetail) else []
    if bonus_categories:
        top = card.top_bonus_category()
        if top is not None:
            derived = classify(top.group)
            if derived is not Category.GENERAL:
                return derived.value
        for bonus in bonus_categories:
            derived = classify(f"{bonus.description} {bonus.group}")
            if derived is not Category.GENERAL:
                return derived.value

    derived = classify(f"{card.name} {card.description}")
    if derived is not Category.GENERAL:
        return derived.value

    issuer = card.issuer.lower()
    if "business" in issuer or "ink" in issuer:
        return Category.BUSINESS.value
    if "student" in issuer or "college" in issuer:
        return Category.STUDENT.value
    return Category.GENERAL.value


def _detail_hint(detail: CardDetail) -> str | None:
    terms = detail.signup_bonus_terms
    if terms is not None and terms.category:
        lowered = terms.category.lower()
        if any(token in lowered for token in ("travel", "hotel", "airline")):
            return standardize(terms.category)

    for benefit in detail.benefits:
        text = benefit.description.lower()
        if any(token in text for token in ("travel credit", "hotel credit", "lounge access")):
            return Category.TRAVEL.value
        if "free night" in text or "hotel status" in text:
            return Category.HOTEL.value
        if "companion pass" in text or "free checked bag" in text:
            return Category.AIRLINE.value
    return None


def categorize_detail(detail: CardDetail) -> str:
    """Re-derive a detail's category from its bonus categories first."""

    top = detail.top_bonus_category()
    if top is not None and top.group:
        label = standardize(top.group)
        if is_known_category(label):
            return label
        derived = classify(top.group)
        if derived is not Category.GENERAL:
            return derived.value

    hint = _detail_hint(detail)
    if hint is not None and is_known_category(hint):
        return hint

    cleared = detail.model_copy(update={"category": ""})
    return categorize_card(cleared)


def category_color(label: str) -> tuple[float, float, float] | None:
    """Return the display colour of a category label, if it has one."""

    standardized = standardize(label)
    category = _LABELS.get(standardized.lower())
    if category is None:
        return None
    return CATEGORY_COLORS.get(category)
