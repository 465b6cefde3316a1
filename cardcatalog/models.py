"""Pydantic models describing catalog, image and profile payloads."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
)

from .utils import clean_card_name, utcnow

T = TypeVar("T")


class JsonKind(str, Enum):
    """Discriminator for :class:`JsonVariant`."""

    STRING = "string"
    NUMBER = "number"
    BOOL = "bool"
    NULL = "null"
    LIST = "list"
    MAP = "map"


@dataclass(slots=True, frozen=True)
class JsonVariant:
    """A JSON value whose shape is only known at runtime."""

    kind: JsonKind
    value: Any = None

    @classmethod
    def decode(cls, raw: object) -> "JsonVariant":
        """Decode an already-parsed JSON value into a tagged variant."""

        if raw is None:
            return cls(JsonKind.NULL)
        # bool is checked before numbers since it subclasses int
        if isinstance(raw, bool):
            return cls(JsonKind.BOOL, raw)
        if isinstance(raw, (int, float)):
            return cls(JsonKind.NUMBER, raw)
        if isinstance(raw, str):
            return cls(JsonKind.STRING, raw)
        if isinstance(raw, (list, tuple)):
            return cls(JsonKind.LIST, tuple(cls.decode(item) for item in raw))
        if isinstance(raw, dict):
            return cls(
                JsonKind.MAP,
                {str(key): cls.decode(item) for key, item in raw.items()},
            )
        raise TypeError(f"Unsupported JSON value of type {type(raw).__name__}")

    def to_python(self) -> Any:
        """Return the plain JSON-compatible value."""

        if self.kind is JsonKind.LIST:
            return [item.to_python() for item in self.value]
        if self.kind is JsonKind.MAP:
            return {key: item.to_python() for key, item in self.value.items()}
        return self.value

    def describe(self) -> str | None:
        """Return a display string for annual spend bonus entries."""

        if self.kind is JsonKind.STRING:
            return self.value or None
        if self.kind is JsonKind.MAP:
            text = self.value.get("annualSpendDesc")
            if text is not None and text.kind is JsonKind.STRING:
                return text.value or None
        return None


@dataclass(slots=True)
class CacheEntry(Generic[T]):
    """A cached value paired with the moment it was stored."""

    value: T
    stored_at: datetime

    def is_valid(self, now: datetime, ttl: timedelta) -> bool:
        """Return whether the entry is still fresh; the boundary is exclusive."""

        return now < self.stored_at + ttl


class CardSummary(BaseModel):
    """A browsable catalog entry."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    issuer: str
    category: str = "General"
    description: str = ""
    annual_fee: Decimal = Field(default=Decimal("0"), alias="annualFee")
    signup_bonus: int = Field(default=0, alias="signupBonus")
    apr: str = "Variable"
    apply_url: str = Field(default="", alias="applyURL")


class Benefit(BaseModel):
    title: str
    description: str = ""


class BonusCategory(BaseModel):
    group: str = ""
    name: str = ""
    multiplier: float = 0.0
    description: str = ""


class SignupBonusTerms(BaseModel):
    """Structured signup offer terms from the detail endpoint."""

    amount: int = 0
    type: str = ""
    category: str = ""
    item: str = ""
    spend: int = 0
    length: int = 0
    length_period: str = ""
    description: str = ""
    annual_fee_waived: bool = False
    statement_credit: int = 0


class CardFeatures(BaseModel):
    lounge_access: bool = False
    free_hotel_night: bool = False
    free_checked_bag: bool = False
    trusted_traveler: bool = False


class CardDetail(CardSummary):
    """The enriched per-card record; a superset of :class:`CardSummary`."""

    network: str | None = None
    card_type: str | None = None
    credit_range: str | None = None
    fx_fee: float | None = None
    signup_bonus_terms: SignupBonusTerms | None = None
    benefits: list[Benefit] = Field(default_factory=list)
    bonus_categories: list[BonusCategory] = Field(default_factory=list)
    features: CardFeatures = Field(default_factory=CardFeatures)
    annual_spend_bonuses: list[JsonVariant] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    @field_validator("annual_spend_bonuses", mode="before")
    @classmethod
    def _decode_annual_spend(cls, value: object) -> list[JsonVariant]:
        if value is None:
            return []
        if not isinstance(value, (list, tuple)):
            value = [value]
        return [
            item if isinstance(item, JsonVariant) else JsonVariant.decode(item)
            for item in value
        ]

    @field_serializer("annual_spend_bonuses")
    def _serialize_annual_spend(self, value: list[JsonVariant]) -> list[Any]:
        return [item.to_python() for item in value]

    @classmethod
    def from_summary(cls, summary: CardSummary) -> "CardDetail":
        """Upgrade a summary to a detail-shaped value with empty optional fields."""

        if isinstance(summary, CardDetail):
            return summary.model_copy(deep=True)
        return cls.model_validate(summary.model_dump())

    def top_bonus_category(self) -> BonusCategory | None:
        """Return the bonus category with the highest multiplier, first wins ties."""

        best: BonusCategory | None = None
        for bonus in self.bonus_categories:
            if best is None or bonus.multiplier > best.multiplier:
                best = bonus
        return best


class ImageSource(str, Enum):
    API = "api"
    MANUAL = "manual"
    DEFAULT = "default"
    MATCHED = "matched"
    PENDING = "pending"


class ImageRecord(BaseModel):
    """Mapping from a card id to a known remote image."""

    card_id: str
    issuer: str = ""
    name: str = ""
    remote_url: str = ""
    local_path: str | None = None
    last_updated: datetime = Field(default_factory=utcnow)
    source: ImageSource = ImageSource.API

    @property
    def lookup_text(self) -> str:
        return f"{self.issuer}-{self.name}".lower()


class OwnedCard(BaseModel):
    """A card held by one profile."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    issuer: str
    date_opened: date = Field(default_factory=date.today)
    signup_bonus: int = 0
    bonus_achieved: bool = False
    annual_fee: Decimal = Decimal("0")
    notes: str = ""
    is_active: bool = True
    date_inactivated: date | None = None


class CatalogPreferences(BaseModel):
    favorite_card_ids: set[str] = Field(default_factory=set)
    hidden_card_ids: set[str] = Field(default_factory=set)
    preferred_categories: list[str] = Field(default_factory=list)
    preferred_issuers: list[str] = Field(default_factory=list)
    custom_cards: list[CardSummary] = Field(default_factory=list)


class ThemePreference(BaseModel):
    is_dark_mode: bool = False
    accent_color: str = "blue"


class UserProfile(BaseModel):
    """An isolated local identity with its own owned cards."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    avatar: str = "person.circle.fill"
    email: str = ""
    is_active: bool = False
    owned_cards: list[OwnedCard] = Field(default_factory=list)
    preferences: CatalogPreferences = Field(default_factory=CatalogPreferences)
    theme: ThemePreference = Field(default_factory=ThemePreference)


# Remote wire formats. Only the identifying fields are required; anything
# else missing from a payload falls back to an empty value.


class _ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ApiCard(_ApiModel):
    """Entry from ``GET /cards``."""

    card_key: str = Field(alias="cardKey")
    card_name: str = Field(alias="cardName")
    card_issuer: str = Field(alias="cardIssuer")
    spend_type: str = Field(default="", alias="spendType")
    earn_multiplier: float = Field(default=0.0, alias="earnMultiplier")
    earn_multiplier_value: float = Field(default=0.0, alias="earnMultiplierValue")
    spend_bonus_desc: str = Field(default="", alias="spendBonusDesc")
    limit_begin_date: str = Field(default="", alias="limitBeginDate")
    limit_end_date: str = Field(default="", alias="limitEndDate")
    is_spend_limit: int = Field(default=0, alias="isSpendLimit")
    spend_limit: float = Field(default=0.0, alias="spendLimit")
    spend_limit_reset_period: str = Field(default="", alias="spendLimitResetPeriod")

    def to_summary(self, category: str) -> CardSummary:
        return CardSummary(
            id=self.card_key,
            name=clean_card_name(self.card_name),
            issuer=self.card_issuer,
            category=category,
            description=self.spend_bonus_desc,
            annual_fee=Decimal("0"),
            signup_bonus=int(self.earn_multiplier * 10_000),
            apr="Variable",
            apply_url="",
        )


class ApiSearchResult(_ApiModel):
    """Entry from ``GET /creditcard-detail-namesearch/{term}``."""

    card_key: str = Field(alias="cardKey")
    card_issuer: str = Field(alias="cardIssuer")
    card_name: str = Field(alias="cardName")

    def to_summary(self) -> CardSummary:
        return CardSummary(
            id=self.card_key,
            name=clean_card_name(self.card_name),
            issuer=self.card_issuer,
            category="Unknown",
            description="Details will be loaded when selected",
            apr="See issuer website",
        )


class ApiBenefit(_ApiModel):
    benefit_title: str = Field(default="", alias="benefitTitle")
    benefit_desc: str = Field(default="", alias="benefitDesc")


class ApiSpendBonusCategory(_ApiModel):
    category_type: str = Field(default="", alias="spendBonusCategoryType")
    category_name: str = Field(default="", alias="spendBonusCategoryName")
    category_id: int = Field(default=0, alias="spendBonusCategoryId")
    category_group: str = Field(default="", alias="spendBonusCategoryGroup")
    subcategory_group: str = Field(default="", alias="spendBonusSubcategoryGroup")
    description: str = Field(default="", alias="spendBonusDesc")
    earn_multiplier: float = Field(default=0.0, alias="earnMultiplier")


class ApiCardDetail(_ApiModel):
    """Element of ``GET /creditcard-detail-bycard/{cardKey}``."""

    card_key: str = Field(alias="cardKey")
    card_issuer: str = Field(alias="cardIssuer")
    card_name: str = Field(alias="cardName")
    card_network: str = Field(default="", alias="cardNetwork")
    card_type: str = Field(default="", alias="cardType")
    card_url: str = Field(default="", alias="cardUrl")
    annual_fee: Decimal = Field(default=Decimal("0"), alias="annualFee")
    fx_fee: float = Field(default=0.0, alias="fxFee")
    credit_range: str = Field(default="", alias="creditRange")
    base_spend_earn_category: str = Field(default="", alias="baseSpendEarnCategory")

    is_signup_bonus: int = Field(default=0, alias="isSignupBonus")
    signup_bonus_amount: str = Field(default="", alias="signupBonusAmount")
    signup_bonus_type: str = Field(default="", alias="signupBonusType")
    signup_bonus_category: str = Field(default="", alias="signupBonusCategory")
    signup_bonus_item: str = Field(default="", alias="signUpBonusItem")
    signup_bonus_spend: int = Field(default=0, alias="signupBonusSpend")
    signup_bonus_length: int = Field(default=0, alias="signupBonusLength")
    signup_bonus_length_period: str = Field(default="", alias="signupBonusLengthPeriod")
    is_signup_annual_fee_waived: int = Field(default=0, alias="isSignupAnnualFeeWaived")
    signup_statement_credit: int = Field(default=0, alias="signupStatementCredit")
    signup_bonus_desc: str = Field(default="", alias="signupBonusDesc")

    is_trusted_traveler: int = Field(default=0, alias="isTrustedTraveler")
    is_lounge_access: int = Field(default=0, alias="isLoungeAccess")
    is_free_hotel_night: int = Field(default=0, alias="isFreeHotelNight")
    is_free_checked_bag: int = Field(default=0, alias="isFreeCheckedBag")

    benefit: list[ApiBenefit] = Field(default_factory=list)
    spend_bonus_category: list[ApiSpendBonusCategory] = Field(
        default_factory=list, alias="spendBonusCategory"
    )
    annual_spend: list[Any] = Field(default_factory=list, alias="annualSpend")

    @field_validator("signup_bonus_amount", mode="before")
    @classmethod
    def _coerce_amount(cls, value: object) -> object:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(int(value))
        return value

    def parsed_bonus_amount(self) -> int:
        try:
            return int(self.signup_bonus_amount.replace(",", "").strip())
        except ValueError:
            return 0

    def build_description(self) -> str:
        """Combine the signup offer, two key benefits and three earn rates."""

        parts: list[str] = []
        if self.is_signup_bonus == 1 and self.signup_bonus_desc:
            parts.append(self.signup_bonus_desc)
        if self.benefit:
            lines = ["Key Benefits:"]
            for benefit in self.benefit[:2]:
                lines.append(f"• {benefit.benefit_title}: {benefit.benefit_desc[:100]}...")
            parts.append("\n".join(lines))
        if self.spend_bonus_category:
            lines = ["Earn:"]
            for category in self.spend_bonus_category[:3]:
                lines.append(f"• {category.description}")
            parts.append("\n".join(lines))
        return "\n\n".join(parts)

    def to_detail(self, category: str = "") -> CardDetail:
        return CardDetail(
            id=self.card_key,
            name=clean_card_name(self.card_name),
            issuer=self.card_issuer,
            category=category,
            description=self.build_description(),
            annual_fee=self.annual_fee,
            signup_bonus=self.parsed_bonus_amount(),
            apr="See issuer website for details",
            apply_url=self.card_url,
            network=self.card_network or None,
            card_type=self.card_type or None,
            credit_range=self.credit_range or None,
            fx_fee=self.fx_fee,
            signup_bonus_terms=SignupBonusTerms(
                amount=self.parsed_bonus_amount(),
                type=self.signup_bonus_type,
                category=self.signup_bonus_category,
                item=self.signup_bonus_item,
                spend=self.signup_bonus_spend,
                length=self.signup_bonus_length,
                length_period=self.signup_bonus_length_period,
                description=self.signup_bonus_desc,
                annual_fee_waived=self.is_signup_annual_fee_waived == 1,
                statement_credit=self.signup_statement_credit,
            )
            if self.is_signup_bonus == 1
            else None,
            benefits=[
                Benefit(title=item.benefit_title, description=item.benefit_desc)
                for item in self.benefit
            ],
            bonus_categories=[
                BonusCategory(
                    group=item.category_group,
                    name=item.category_name,
                    multiplier=item.earn_multiplier,
                    description=item.description,
                )
                for item in self.spend_bonus_category
            ],
            features=CardFeatures(
                lounge_access=self.is_lounge_access == 1,
                free_hotel_night=self.is_free_hotel_night == 1,
                free_checked_bag=self.is_free_checked_bag == 1,
                trusted_traveler=self.is_trusted_traveler == 1,
            ),
            annual_spend_bonuses=self.annual_spend,
        )


class ApiCardImage(_ApiModel):
    """Element of ``GET /creditcard-card-image/{cardKey}``."""

    card_key: str = Field(default="", alias="cardKey")
    card_name: str = Field(default="", alias="cardName")
    card_image_url: str = Field(default="", alias="cardImageUrl")
