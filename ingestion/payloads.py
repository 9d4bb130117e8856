"""
Typed payloads for staged entities.

A staged entity is one of four variants (venue, dish, promotion,
availability) sharing the StagedEntity envelope. Each variant is a frozen
dataclass that validates itself on construction, so a payload that made it
into the database has already been checked.

Usage:
    payload = payload_from_dict("venue", request_item["data"])
    store.stage(entity_type="venue", payload=payload, ...)
"""

from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Type

from ingestion.exceptions import ValidationError
from ingestion.models import EntityType

VENUE_TYPES = {
    "restaurant", "cafe", "bar", "food_truck", "canteen",
    "catering", "retail", "delivery_kitchen", "other",
}
PROMO_TYPES = {"discount", "bundle", "loyalty", "launch", "seasonal", "limited_time"}
AVAILABILITY_TYPES = {"permanent", "limited", "seasonal"}


def _require(condition: bool, message: str, field_name: str) -> None:
    if not condition:
        raise ValidationError(message, details={"field": field_name})


def _parse_date(value: Any, field_name: str) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"Invalid date for {field_name}: {value}", details={"field": field_name})


@dataclass(frozen=True)
class Address:
    street: str
    city: str
    postal_code: str
    country: str
    raw_address: str = ""

    def __post_init__(self):
        _require(bool(self.city.strip()), "Address city is required", "address.city")
        _require(
            len(self.country) == 2 and self.country.isalpha(),
            "Address country must be a 2-letter ISO code",
            "address.country",
        )
        object.__setattr__(self, "country", self.country.upper())


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float

    def __post_init__(self):
        _require(-90 <= self.lat <= 90, "Latitude out of range", "coordinates.lat")
        _require(-180 <= self.lng <= 180, "Longitude out of range", "coordinates.lng")


@dataclass(frozen=True)
class Price:
    amount: float
    currency: str

    def __post_init__(self):
        _require(self.amount >= 0, "Price amount cannot be negative", "price.amount")
        _require(len(self.currency) == 3, "Currency must be a 3-letter code", "price.currency")
        object.__setattr__(self, "currency", self.currency.upper())


@dataclass(frozen=True)
class VenuePayload:
    name: str
    address: Address
    venue_type: str = "restaurant"
    chain_id: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    opening_hours: Dict[str, Any] = field(default_factory=dict)
    contact: Dict[str, str] = field(default_factory=dict)
    delivery_partners: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    entity_type = EntityType.VENUE

    def __post_init__(self):
        _require(bool(self.name.strip()), "Venue name is required", "name")
        _require(self.venue_type in VENUE_TYPES, f"Unknown venue type: {self.venue_type}", "venue_type")

    @property
    def display_name(self) -> str:
        return self.name

    @property
    def country(self) -> str:
        return self.address.country

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VenuePayload":
        address = data.get("address") or {}
        coordinates = data.get("coordinates")
        return cls(
            name=str(data.get("name", "")),
            address=Address(
                street=str(address.get("street", "")),
                city=str(address.get("city", "")),
                postal_code=str(address.get("postal_code", "")),
                country=str(address.get("country", "")),
                raw_address=str(address.get("raw_address", "")),
            ),
            venue_type=data.get("venue_type") or data.get("type") or "restaurant",
            chain_id=data.get("chain_id"),
            coordinates=Coordinates(float(coordinates["lat"]), float(coordinates["lng"])) if coordinates else None,
            opening_hours=data.get("opening_hours") or {},
            contact=data.get("contact") or {},
            delivery_partners=list(data.get("delivery_partners") or []),
            metadata=data.get("metadata") or {},
        )


@dataclass(frozen=True)
class DishPayload:
    name: str
    price: Price
    product_skus: List[str]
    description: str = ""
    dietary_tags: List[str] = field(default_factory=list)
    cuisine_type: str = ""
    image_url: str = ""
    availability_type: str = "permanent"
    country: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    entity_type = EntityType.DISH

    def __post_init__(self):
        _require(bool(self.name.strip()), "Dish name is required", "name")
        _require(bool(self.product_skus), "At least one product SKU is required", "product_skus")
        _require(
            self.availability_type in AVAILABILITY_TYPES,
            f"Unknown availability type: {self.availability_type}",
            "availability_type",
        )

    @property
    def display_name(self) -> str:
        return self.name

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DishPayload":
        price = data.get("price") or {}
        availability = data.get("availability") or {}
        return cls(
            name=str(data.get("name", "")),
            price=Price(float(price.get("amount", 0)), str(price.get("currency", ""))),
            product_skus=list(data.get("product_skus") or data.get("planted_products") or []),
            description=data.get("description") or "",
            dietary_tags=list(data.get("dietary_tags") or []),
            cuisine_type=data.get("cuisine_type") or "",
            image_url=data.get("image_url") or "",
            availability_type=data.get("availability_type") or availability.get("type") or "permanent",
            country=(data.get("country") or "").upper(),
            metadata=data.get("metadata") or {},
        )


@dataclass(frozen=True)
class PromotionPayload:
    title: str
    promo_type: str
    product_skus: List[str]
    valid_from: date
    valid_until: date
    description: str = ""
    discount_type: str = ""
    discount_value: Optional[float] = None
    terms: str = ""
    chain_id: Optional[str] = None
    country: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    entity_type = EntityType.PROMOTION

    def __post_init__(self):
        _require(bool(self.title.strip()), "Promotion title is required", "title")
        _require(self.promo_type in PROMO_TYPES, f"Unknown promotion type: {self.promo_type}", "promo_type")
        _require(self.valid_until >= self.valid_from, "valid_until precedes valid_from", "valid_until")
        if self.discount_type:
            _require(self.discount_type in ("percent", "fixed"), "Unknown discount type", "discount.type")
            _require(
                self.discount_value is not None and self.discount_value > 0,
                "Discount value must be positive",
                "discount.value",
            )

    @property
    def display_name(self) -> str:
        return self.title

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PromotionPayload":
        discount = data.get("discount") or {}
        valid_from = _parse_date(data.get("valid_from"), "valid_from")
        valid_until = _parse_date(data.get("valid_until"), "valid_until")
        _require(valid_from is not None, "valid_from is required", "valid_from")
        _require(valid_until is not None, "valid_until is required", "valid_until")
        return cls(
            title=str(data.get("title", "")),
            promo_type=data.get("promo_type", ""),
            product_skus=list(data.get("product_skus") or []),
            valid_from=valid_from,
            valid_until=valid_until,
            description=data.get("description") or "",
            discount_type=discount.get("type") or data.get("discount_type") or "",
            discount_value=discount.get("value", data.get("discount_value")),
            terms=data.get("terms") or "",
            chain_id=data.get("chain_id"),
            country=(data.get("country") or "").upper(),
            metadata=data.get("metadata") or {},
        )


@dataclass(frozen=True)
class AvailabilityPayload:
    product_sku: str
    in_stock: bool
    regular_price: Optional[float] = None
    sale_price: Optional[float] = None
    currency: str = ""
    promotion_ref: str = ""
    shelf_location: str = ""
    verified_at: Optional[date] = None
    country: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    entity_type = EntityType.AVAILABILITY

    def __post_init__(self):
        _require(bool(self.product_sku.strip()), "product_sku is required", "product_sku")
        if self.regular_price is not None or self.sale_price is not None:
            _require(len(self.currency) == 3, "Currency is required with a price", "price.currency")
        if self.regular_price is not None and self.sale_price is not None:
            _require(self.sale_price <= self.regular_price, "Sale price exceeds regular price", "price.sale")

    @property
    def display_name(self) -> str:
        return self.product_sku

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AvailabilityPayload":
        price = data.get("price") or {}
        return cls(
            product_sku=str(data.get("product_sku", "")),
            in_stock=bool(data.get("in_stock", False)),
            regular_price=price.get("regular", data.get("regular_price")),
            sale_price=price.get("sale", data.get("sale_price")),
            currency=(price.get("currency") or data.get("currency") or "").upper(),
            promotion_ref=data.get("promotion_ref") or "",
            shelf_location=data.get("shelf_location") or "",
            verified_at=_parse_date(data.get("verified_at"), "verified_at"),
            country=(data.get("country") or "").upper(),
            metadata=data.get("metadata") or {},
        )


PAYLOAD_TYPES: Dict[str, Type] = {
    EntityType.VENUE: VenuePayload,
    EntityType.DISH: DishPayload,
    EntityType.PROMOTION: PromotionPayload,
    EntityType.AVAILABILITY: AvailabilityPayload,
}


def payload_from_dict(entity_type: str, data: Dict[str, Any]):
    """
    Build and validate the payload dataclass for an entity type.

    Raises:
        ValidationError: unknown entity type or invalid data
    """
    payload_cls = PAYLOAD_TYPES.get(entity_type)
    if payload_cls is None:
        raise ValidationError(f"Unknown entity type: {entity_type}", details={"field": "entity_type"})
    if not isinstance(data, dict):
        raise ValidationError("Payload must be an object", details={"field": "data"})
    try:
        return payload_cls.from_dict(data)
    except (TypeError, ValueError, KeyError) as e:
        raise ValidationError(f"Invalid {entity_type} payload: {e}", details={"field": "data"})


def payload_to_dict(payload) -> Dict[str, Any]:
    """Serialize a payload dataclass for JSON storage (dates as ISO strings)."""
    data = asdict(payload)
    for key, value in data.items():
        if isinstance(value, date):
            data[key] = value.isoformat()
    return data
