"""
Confidence Scorer - weighted trust score for staged entities.

score_confidence() is a pure function: it takes named factors, each with a
0-100 score and a weight, and returns the weighted aggregate plus the
breakdown so reviewers can see why a score was assigned. It never touches the
database; callers persist the result with StagingStore.update_confidence().

Missing-data policy (the only one used anywhere):
- A factor whose score is None had no input data. It is left out and the
  remaining weights are renormalised to sum to 1.
- Present scores are clamped to 0-100.
- The total is rounded half-up to one decimal place.
- With no present factor at all the total is 0.

The *_factors() builders turn raw signals (geocoding confidence, names,
prices, dates, platform, partner quality) into factor lists with the default
weights for each entity type.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from django.utils import timezone
from rapidfuzz import fuzz

from ingestion.utils.numbers import clamp, round_half_up

logger = logging.getLogger(__name__)

# Default weights per entity type
VENUE_WEIGHTS = {
    "completeness": 0.15,
    "geocoding": 0.30,
    "name_match": 0.20,
    "source_reliability": 0.20,
    "partner_quality": 0.15,
}

DISH_WEIGHTS = {
    "completeness": 0.15,
    "product_mapping": 0.30,
    "price_plausibility": 0.20,
    "venue_link": 0.20,
    "source_reliability": 0.15,
}

PROMOTION_WEIGHTS = {
    "completeness": 0.20,
    "date_validity": 0.30,
    "product_mapping": 0.25,
    "venue_link": 0.25,
}

AVAILABILITY_WEIGHTS = {
    "completeness": 0.20,
    "price_plausibility": 0.25,
    "venue_link": 0.35,
    "partner_quality": 0.20,
}

# Reliability of each source platform (0-100)
SOURCE_RELIABILITY = {
    "partner_feed": 85,
    "uber_eats": 75,
    "wolt": 75,
    "lieferando": 70,
    "just_eat": 70,
    "deliveroo": 70,
    "smood": 65,
    "google_places": 60,
    "web": 45,
}
UNKNOWN_SOURCE_RELIABILITY = 50

# Plausible dish price band per currency (min, max)
PRICE_RANGES = {
    "CHF": (8.0, 45.0),
    "EUR": (6.0, 38.0),
    "GBP": (5.0, 32.0),
    "USD": (6.0, 42.0),
    "SEK": (70.0, 400.0),
    "DKK": (60.0, 350.0),
    "PLN": (25.0, 150.0),
}

# Plausible retail pack price band per currency (min, max)
RETAIL_PRICE_RANGES = {
    "CHF": (2.5, 15.0),
    "EUR": (2.0, 12.0),
    "GBP": (1.5, 10.0),
    "USD": (2.0, 14.0),
}


@dataclass(frozen=True)
class ConfidenceFactor:
    """A named signal with its 0-100 score (None = no data) and weight."""

    name: str
    score: Optional[float]
    weight: float = 1.0


@dataclass
class ConfidenceResult:
    """Aggregate score plus the breakdown that produced it."""

    score: float
    breakdown: Dict[str, float] = field(default_factory=dict)
    weights: Dict[str, float] = field(default_factory=dict)
    missing: List[str] = field(default_factory=list)

    def to_breakdown_dict(self) -> Dict[str, Any]:
        """Shape stored in StagedEntity.confidence_breakdown."""
        return {
            "factors": dict(self.breakdown),
            "weights": dict(self.weights),
            "missing": list(self.missing),
        }


def score_confidence(factors: Iterable[ConfidenceFactor]) -> ConfidenceResult:
    """
    Compute the weighted confidence score for a set of factors.

    Args:
        factors: Factors to combine. Names must be unique.

    Returns:
        ConfidenceResult with total 0-100 (one decimal), per-factor scores,
        renormalised weights and the names of factors that had no data

    Raises:
        ValueError: duplicate factor names or a negative weight
    """
    factors = list(factors)
    names = [f.name for f in factors]
    if len(names) != len(set(names)):
        raise ValueError(f"Duplicate confidence factors: {names}")
    if any(f.weight < 0 for f in factors):
        raise ValueError("Confidence factor weights cannot be negative")

    present = [f for f in factors if f.score is not None and f.weight > 0]
    missing = [f.name for f in factors if f.score is None]

    total_weight = sum(f.weight for f in present)
    if not present or total_weight == 0:
        return ConfidenceResult(score=0.0, missing=missing)

    breakdown = {}
    weights = {}
    weighted_sum = 0.0
    for factor in present:
        factor_score = float(clamp(factor.score))
        weight = factor.weight / total_weight
        breakdown[factor.name] = round_half_up(factor_score, 1)
        weights[factor.name] = round_half_up(weight, 4)
        weighted_sum += factor_score * weight

    return ConfidenceResult(
        score=round_half_up(clamp(weighted_sum), 1),
        breakdown=breakdown,
        weights=weights,
        missing=missing,
    )


# ============================================================
# Individual signal scores
# ============================================================


def name_similarity(candidate: Optional[str], reference: Optional[str]) -> Optional[float]:
    """Fuzzy similarity of two names (0-100), None when either is missing."""
    if not candidate or not reference:
        return None
    return float(fuzz.token_sort_ratio(candidate.lower(), reference.lower()))


def source_reliability(platform: Optional[str]) -> Optional[float]:
    """Reliability of the producing platform, None when no platform is known."""
    if not platform:
        return None
    key = platform.lower().replace("-", "_")
    return float(SOURCE_RELIABILITY.get(key, UNKNOWN_SOURCE_RELIABILITY))


def price_plausibility(
    amount: Optional[float],
    currency: Optional[str],
    ranges: Optional[Dict[str, tuple]] = None,
) -> Optional[float]:
    """
    Score a price against the plausible band for its currency.

    Inside the band scores 100, within a factor of two of it 50, otherwise 10.
    Unknown currency or no price returns None.
    """
    if amount is None or not currency:
        return None
    band = (ranges or PRICE_RANGES).get(currency.upper())
    if band is None:
        return None
    low, high = band
    if low <= amount <= high:
        return 100.0
    if low / 2 <= amount <= high * 2:
        return 50.0
    return 10.0


def date_validity(valid_from: Optional[date], valid_until: Optional[date], today: Optional[date] = None) -> Optional[float]:
    """Running promotions score 100, upcoming 80, expired 0."""
    if valid_from is None or valid_until is None:
        return None
    today = today or timezone.now().date()
    if valid_until < today:
        return 0.0
    if valid_from > today:
        return 80.0
    return 100.0


def venue_link(production_venue_id: Optional[str], staged_venue_id: Optional[Any]) -> float:
    """Linked to a catalog venue 100, to a staged venue 70, unlinked 20."""
    if production_venue_id:
        return 100.0
    if staged_venue_id:
        return 70.0
    return 20.0


def completeness(values: Iterable[Any]) -> float:
    """Share of provided values that are non-empty, as 0-100."""
    values = list(values)
    if not values:
        return 0.0
    filled = sum(1 for v in values if v not in (None, "", [], {}))
    return 100.0 * filled / len(values)


def _factors(weights: Dict[str, float], scores: Dict[str, Optional[float]]) -> List[ConfidenceFactor]:
    return [ConfidenceFactor(name, scores.get(name), weight) for name, weight in weights.items()]


# ============================================================
# Builders per entity type
# ============================================================


def venue_factors(
    payload,
    geocoding_confidence: Optional[float] = None,
    reference_name: Optional[str] = None,
    platform: Optional[str] = None,
    partner_quality: Optional[float] = None,
) -> List[ConfidenceFactor]:
    """Factors for a VenuePayload."""
    address = payload.address
    return _factors(VENUE_WEIGHTS, {
        "completeness": completeness([
            payload.name, address.street, address.city, address.postal_code,
            payload.coordinates, payload.opening_hours, payload.contact,
        ]),
        "geocoding": geocoding_confidence,
        "name_match": name_similarity(payload.name, reference_name),
        "source_reliability": source_reliability(platform),
        "partner_quality": partner_quality,
    })


def dish_factors(
    payload,
    mapping_confidence: Optional[float] = None,
    production_venue_id: Optional[str] = None,
    staged_venue_id: Optional[Any] = None,
    platform: Optional[str] = None,
) -> List[ConfidenceFactor]:
    """Factors for a DishPayload."""
    return _factors(DISH_WEIGHTS, {
        "completeness": completeness([
            payload.name, payload.description, payload.product_skus,
            payload.image_url, payload.dietary_tags,
        ]),
        "product_mapping": mapping_confidence,
        "price_plausibility": price_plausibility(payload.price.amount, payload.price.currency),
        "venue_link": venue_link(production_venue_id, staged_venue_id),
        "source_reliability": source_reliability(platform),
    })


def promotion_factors(
    payload,
    mapping_confidence: Optional[float] = None,
    production_venue_id: Optional[str] = None,
    staged_venue_id: Optional[Any] = None,
    today: Optional[date] = None,
) -> List[ConfidenceFactor]:
    """Factors for a PromotionPayload. Chain-wide promotions count as linked."""
    linked_venue = production_venue_id or payload.chain_id
    return _factors(PROMOTION_WEIGHTS, {
        "completeness": completeness([
            payload.title, payload.description, payload.product_skus, payload.terms,
        ]),
        "date_validity": date_validity(payload.valid_from, payload.valid_until, today),
        "product_mapping": mapping_confidence,
        "venue_link": venue_link(linked_venue, staged_venue_id),
    })


def availability_factors(
    payload,
    production_venue_id: Optional[str] = None,
    staged_venue_id: Optional[Any] = None,
    partner_quality: Optional[float] = None,
) -> List[ConfidenceFactor]:
    """Factors for an AvailabilityPayload."""
    price = payload.sale_price if payload.sale_price is not None else payload.regular_price
    return _factors(AVAILABILITY_WEIGHTS, {
        "completeness": completeness([
            payload.product_sku, payload.regular_price, payload.shelf_location, payload.verified_at,
        ]),
        "price_plausibility": price_plausibility(price, payload.currency, RETAIL_PRICE_RANGES),
        "venue_link": venue_link(production_venue_id, staged_venue_id),
        "partner_quality": partner_quality,
    })
