"""Domain models for the product catalog.

Records travel between the stores and the rest of the application as
:class:`Product` instances. Persisted rows keep ``active_ingredient`` as one
``" + "`` joined string; the model exposes it as an ordered list.
"""

from __future__ import annotations

import datetime
import math
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

INGREDIENT_SEPARATOR = " + "
FERTILIZER_GROUP = "Fertilizers"
PESTICIDE_GROUP = "Pesticides"
ALL_CATEGORIES = "All"
LOW_STOCK_THRESHOLD = 10
EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.UTC)

TEXT_FIELDS = (
    "name",
    "category",
    "description",
    "package_size",
    "carton_size",
    "origin",
    "unit_type",
    "image_url",
)
PRODUCT_FIELDS = TEXT_FIELDS + ("price", "stock", "active_ingredient", "expiration_date")


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def coerce_price(value: Any) -> float:
    """Parse a price, defaulting to 0 for missing, unparsable or negative input."""

    if isinstance(value, bool):
        return 0.0
    try:
        number = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number) or math.isinf(number) or number < 0:
        return 0.0
    return number


def coerce_stock(value: Any) -> int:
    """Parse a stock count, defaulting to 0 like :func:`coerce_price`."""

    return int(coerce_price(value))


def encode_ingredients(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return INGREDIENT_SEPARATOR.join(str(part).strip() for part in value if str(part).strip())


def decode_ingredients(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(INGREDIENT_SEPARATOR)
    return [str(part).strip() for part in value if str(part).strip()]


def parse_timestamp(value: Any) -> Optional[datetime.datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime.datetime):
        stamp = value
    else:
        try:
            stamp = datetime.datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if stamp.tzinfo is None:
        # SQL and BSON drivers hand back naive UTC values.
        stamp = stamp.replace(tzinfo=datetime.UTC)
    return stamp


def is_fertilizer(category: Optional[str]) -> bool:
    return FERTILIZER_GROUP.lower() in (category or "").lower()


def category_group(category: Optional[str]) -> str:
    return FERTILIZER_GROUP if is_fertilizer(category) else PESTICIDE_GROUP


def stock_status(stock: int) -> str:
    if stock <= 0:
        return "out"
    if stock < LOW_STOCK_THRESHOLD:
        return "low"
    return "in"


class Product(BaseModel):
    id: str
    name: str
    category: str = ""
    price: float = 0.0
    stock: int = 0
    active_ingredient: list[str] = Field(default_factory=list)
    package_size: Optional[str] = None
    carton_size: Optional[str] = None
    origin: Optional[str] = None
    unit_type: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    expiration_date: Optional[datetime.date] = None
    created_at: datetime.datetime = EPOCH
    updated_at: Optional[datetime.datetime] = None

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, value):
        return str(value)

    @field_validator("category", mode="before")
    @classmethod
    def default_category(cls, value):
        return value or ""

    @field_validator("price", mode="before")
    @classmethod
    def normalise_price(cls, value):
        return coerce_price(value)

    @field_validator("stock", mode="before")
    @classmethod
    def normalise_stock(cls, value):
        return coerce_stock(value)

    @field_validator("active_ingredient", mode="before")
    @classmethod
    def split_ingredients(cls, value):
        return decode_ingredients(value)

    @field_validator("expiration_date", mode="before")
    @classmethod
    def lenient_date(cls, value):
        return parse_date(value, strict=False)

    @field_validator("created_at", mode="before")
    @classmethod
    def aware_created_at(cls, value):
        return parse_timestamp(value) or EPOCH

    @field_validator("updated_at", mode="before")
    @classmethod
    def aware_updated_at(cls, value):
        return parse_timestamp(value)

    @property
    def recency(self) -> datetime.datetime:
        return self.updated_at or self.created_at

    @property
    def category_group(self) -> str:
        return category_group(self.category)

    @property
    def stock_status(self) -> str:
        return stock_status(self.stock)

    def is_expired(self, today: Optional[datetime.date] = None) -> bool:
        if self.expiration_date is None:
            return False
        return self.expiration_date < (today or utcnow().date())

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Product":
        return cls.model_validate(dict(record))

    def to_record(self) -> dict[str, Any]:
        """Return the persisted shape with the ingredient list joined."""

        record = self.model_dump(mode="json")
        record["active_ingredient"] = encode_ingredients(self.active_ingredient)
        return record


def parse_date(value: Any, *, strict: bool = True) -> Optional[datetime.date]:
    """Parse ``YYYY-MM-DD`` (a trailing time part is ignored).

    Blank input is ``None``. Unparsable input raises ``ValueError`` when
    ``strict`` and becomes ``None`` otherwise.
    """

    if value in (None, ""):
        return None
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.date.fromisoformat(text[:10])
    except ValueError:
        if strict:
            raise ValueError(f"Invalid date: {text!r}") from None
        return None


class Admin(BaseModel):
    username: str
    role: str = "admin"


class ProductQuery(BaseModel):
    """Normalised search parameters."""

    text: Optional[str] = None
    category: Optional[str] = None

    @field_validator("text", "category", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @field_validator("category")
    @classmethod
    def all_means_none(cls, value):
        if value == ALL_CATEGORIES:
            return None
        return value

    def matches(self, record: Mapping[str, Any]) -> bool:
        """Evaluate the filter against a persisted record."""

        if self.text:
            needle = self.text.lower()
            haystacks = (
                str(record.get("name") or ""),
                encode_ingredients(record.get("active_ingredient")),
            )
            if not any(needle in hay.lower() for hay in haystacks):
                return False
        if self.category == FERTILIZER_GROUP:
            return is_fertilizer(record.get("category"))
        if self.category == PESTICIDE_GROUP:
            return not is_fertilizer(record.get("category"))
        if self.category:
            return (record.get("category") or "") == self.category
        return True


def sort_by_recency(products: list[Product]) -> list[Product]:
    """Newest first; ``sorted`` is stable so ties keep store order."""

    return sorted(products, key=lambda product: product.recency, reverse=True)
