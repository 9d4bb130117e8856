"""
Tests for the ingestion models and typed payloads.
"""

from datetime import date

import pytest

from ingestion.exceptions import ValidationError
from ingestion.models import DiscoveryRun, Partner, RunStatus, StagedEntity, Strategy
from ingestion.payloads import (
    AvailabilityPayload,
    DishPayload,
    PromotionPayload,
    VenuePayload,
    payload_from_dict,
    payload_to_dict,
)


class TestPayloads:
    """Tests for payload parsing and validation."""

    def test_venue_normalises_country(self, venue_payload):
        payload = payload_from_dict("venue", dict(venue_payload, address=dict(venue_payload["address"], country="ch")))

        assert isinstance(payload, VenuePayload)
        assert payload.country == "CH"
        assert payload.coordinates.lat == 47.3654

    def test_venue_rejects_bad_coordinates_and_type(self, venue_payload):
        with pytest.raises(ValidationError):
            payload_from_dict("venue", dict(venue_payload, coordinates={"lat": 91, "lng": 8}))
        with pytest.raises(ValidationError):
            payload_from_dict("venue", dict(venue_payload, venue_type="spaceship"))

    def test_dish_accepts_legacy_product_key(self, dish_payload):
        data = dict(dish_payload)
        data["planted_products"] = data.pop("product_skus")

        payload = payload_from_dict("dish", data)

        assert isinstance(payload, DishPayload)
        assert payload.product_skus == ["planted-chicken"]
        assert payload.price.currency == "CHF"

    def test_promotion_dates(self):
        data = {
            "title": "Launch week",
            "promo_type": "launch",
            "product_skus": ["planted-kebab"],
            "valid_from": "2026-11-01",
            "valid_until": "2026-11-07T23:59:00Z",
            "discount": {"type": "percent", "value": 20},
        }

        payload = payload_from_dict("promotion", data)

        assert isinstance(payload, PromotionPayload)
        assert payload.valid_until == date(2026, 11, 7)
        assert payload_to_dict(payload)["valid_from"] == "2026-11-01"

        with pytest.raises(ValidationError):
            payload_from_dict("promotion", dict(data, valid_until="2026-10-01"))
        with pytest.raises(ValidationError):
            payload_from_dict("promotion", dict(data, discount={"type": "percent", "value": 0}))

    def test_availability_prices(self):
        payload = payload_from_dict(
            "availability",
            {"product_sku": "planted-chicken", "in_stock": True, "price": {"regular": 4.95, "sale": 3.95, "currency": "chf"}},
        )

        assert isinstance(payload, AvailabilityPayload)
        assert payload.currency == "CHF"
        with pytest.raises(ValidationError):
            payload_from_dict("availability", {"product_sku": "x", "in_stock": True, "price": {"regular": 2, "sale": 3, "currency": "CHF"}})

    def test_unknown_type_and_non_dict(self):
        with pytest.raises(ValidationError):
            payload_from_dict("menu", {})
        with pytest.raises(ValidationError):
            payload_from_dict("venue", ["not", "a", "dict"])


@pytest.mark.django_db
class TestModels:
    """Tests for model properties."""

    def test_strategy_active_until_deprecated(self, strategy, services):
        assert strategy.is_active is True
        assert "uber-eats" in str(strategy)

        services.strategies.deprecate(strategy.id, "retired")

        assert Strategy.objects.get(pk=strategy.pk).is_active is False

    def test_run_terminal_states(self):
        run = DiscoveryRun(status=RunStatus.RUNNING)

        assert run.is_terminal is False
        for status in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED):
            run.status = status
            assert run.is_terminal is True

    def test_partner_authenticates_like_a_user(self, partner):
        assert isinstance(partner, Partner)
        assert partner.is_authenticated is True
        assert str(partner) == "Green Kitchen (active)"

    def test_review_is_none_until_decided(self, services, venue_payload):
        entity, _ = services.staging.stage("venue", venue_payload)
        assert entity.review is None

        services.staging.reject(entity.id, reviewer="a@example.com", reason="closed")

        review = StagedEntity.objects.get(pk=entity.pk).review
        assert review["reviewed_by"] == "a@example.com"
        assert review["decision"] == "rejected"
        assert review["notes"] == "closed"

    def test_get_payload(self, services, dish_payload):
        entity, _ = services.staging.stage("dish", dish_payload)

        assert entity.get_payload().name == "Planted Chicken Curry"
