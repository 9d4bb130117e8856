"""
Pytest configuration and fixtures for the Catalog Ingestion test suite.
"""

import pytest


@pytest.fixture(autouse=True)
def fresh_services():
    """Rebuild the service container and clear the cache for every test."""
    from django.core.cache import cache

    from ingestion.services import reset_services

    cache.clear()
    reset_services()
    yield
    reset_services()


@pytest.fixture
def services(db):
    """The wired service container."""
    from ingestion.services import get_services

    return get_services()


@pytest.fixture
def api_client():
    """Create a test API client."""
    from rest_framework.test import APIClient

    return APIClient()


@pytest.fixture
def staff_user(db):
    """Staff user allowed to use the admin API."""
    from django.contrib.auth import get_user_model

    return get_user_model().objects.create_user(
        username="reviewer",
        email="reviewer@example.com",
        password="secret-password",
        is_staff=True,
    )


@pytest.fixture
def staff_client(api_client, staff_user):
    """API client logged in as a staff user."""
    api_client.force_authenticate(user=staff_user)
    return api_client


@pytest.fixture
def partner_creation(services):
    """Active independent partner with fresh credentials."""
    creation = services.partners.create(
        name="Green Kitchen",
        partner_type="independent",
        contact={"email": "ops@greenkitchen.example"},
        markets=["CH", "DE"],
        allowed_entity_types=["venue", "dish", "promotion"],
    )
    services.partners.activate(creation.partner.id)
    creation.partner.refresh_from_db()
    return creation


@pytest.fixture
def partner(partner_creation):
    return partner_creation.partner


@pytest.fixture
def strategy(services):
    """Platform-wide discovery strategy for uber-eats in Switzerland."""
    return services.strategies.create(
        platform="uber-eats",
        country="CH",
        config={"query_template": "site:ubereats.com/ch planted {city}"},
    )


@pytest.fixture
def venue_payload():
    """Valid venue payload."""
    return {
        "name": "Tibits Zurich",
        "address": {"street": "Seefeldstrasse 2", "city": "Zurich", "postal_code": "8008", "country": "CH"},
        "coordinates": {"lat": 47.3654, "lng": 8.5472},
        "venue_type": "restaurant",
        "delivery_partners": ["uber-eats"],
    }


@pytest.fixture
def dish_payload():
    """Valid dish payload."""
    return {
        "name": "Planted Chicken Curry",
        "description": "Curry with planted.chicken",
        "product_skus": ["planted-chicken"],
        "price": {"amount": 24.5, "currency": "CHF"},
    }
