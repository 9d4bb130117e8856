"""
Tests for the Catalog Sync service and its periodic task.
"""

import pytest

from ingestion.exceptions import ValidationError
from ingestion.models import CatalogRecord, CatalogSync, RunTrigger, StagingStatus
from ingestion.services.catalog_sync import SCHEDULED_EXECUTOR
from ingestion.services.confidence import ConfidenceFactor, score_confidence
from ingestion.tasks import promote_approved_entities


@pytest.fixture
def approved_venue(services, venue_payload):
    """Venue auto-approved by confidence routing."""
    entity, _ = services.staging.stage(
        "venue", venue_payload, confidence=score_confidence([ConfidenceFactor("geocoding", 99)]),
    )
    return services.staging.route_by_confidence(entity.id)


@pytest.fixture
def approved_dish(services, approved_venue, dish_payload):
    entity, _ = services.staging.stage("dish", dish_payload, staged_venue=approved_venue)
    return services.staging.approve(entity.id, reviewer="a@example.com")


@pytest.fixture
def blocked_dish(services, venue_payload, dish_payload):
    """Approved dish whose venue is still waiting for review."""
    venue, _ = services.staging.stage("venue", dict(venue_payload, name="Hiltl Zurich"))
    entity, _ = services.staging.stage("dish", dict(dish_payload, name="Planted Kebab"), staged_venue=venue)
    return services.staging.approve(entity.id, reviewer="a@example.com")


@pytest.mark.django_db
class TestPreview:
    """Tests for the sync preview."""

    def test_groups_additions_and_blocked_children(self, services, approved_venue, approved_dish, blocked_dish):
        preview = services.sync.preview()

        assert [item["id"] for item in preview["additions"]["venue"]] == [str(approved_venue.id)]
        assert [item["id"] for item in preview["additions"]["dish"]] == [str(approved_dish.id)]
        assert [item["id"] for item in preview["blocked"]] == [str(blocked_dish.id)]
        assert "pending" in preview["blocked"][0]["reason"]
        assert preview["stats"] == {
            "total": 2,
            "blocked": 1,
            "by_type": {"venue": 1, "dish": 1, "promotion": 0, "availability": 0},
        }

    def test_preview_writes_nothing(self, services, approved_venue):
        services.sync.preview()

        assert not CatalogSync.objects.exists()
        assert not CatalogRecord.objects.exists()


@pytest.mark.django_db
class TestExecute:
    """Tests for a promotion pass."""

    def test_auto_approved_entities_reach_the_catalog(self, services, approved_dish, approved_venue):
        result = services.sync.execute("a@example.com")

        assert result.promoted == 2
        assert result.failed == 0
        assert [outcome.entity_type for outcome in result.outcomes] == ["venue", "dish"]

        approved_venue.refresh_from_db()
        approved_dish.refresh_from_db()
        assert approved_venue.status == StagingStatus.PROMOTED
        assert approved_venue.production_id
        dish_record = CatalogRecord.objects.get(id=approved_dish.production_id)
        assert dish_record.production_venue_id == approved_venue.production_id

    def test_blocked_child_stays_approved(self, services, blocked_dish):
        result = services.sync.execute("a@example.com")

        outcome = result.outcomes[0]
        assert outcome.promoted is False
        assert "not in the catalog yet" in outcome.error
        blocked_dish.refresh_from_db()
        assert blocked_dish.status == StagingStatus.APPROVED

    def test_pass_is_recorded(self, services, approved_venue, blocked_dish):
        result = services.sync.execute("a@example.com")

        sync = CatalogSync.objects.get(id=result.sync_id)
        assert sync.executed_by == "a@example.com"
        assert sync.triggered_by == RunTrigger.MANUAL
        assert (sync.requested, sync.promoted, sync.failed) == (2, 1, 1)
        assert sync.counts_by_type["venue"] == 1
        assert sync.promoted_ids == [str(approved_venue.id)]
        assert sync.errors[0]["id"] == str(blocked_dish.id)
        assert sync.completed_at is not None

    def test_only_selected_ids(self, services, approved_venue, blocked_dish):
        result = services.sync.execute("a@example.com", ids=[blocked_dish.id])

        assert [outcome.id for outcome in result.outcomes] == [str(blocked_dish.id)]
        approved_venue.refresh_from_db()
        assert approved_venue.status == StagingStatus.APPROVED

    def test_result_dict(self, services, approved_venue):
        data = services.sync.execute("a@example.com").to_dict()

        assert data["summary"] == {"requested": 1, "promoted": 1, "failed": 0}
        assert data["results"][0]["production_id"]
        assert "error" not in data["results"][0]

    def test_executor_and_ids_required(self, services):
        with pytest.raises(ValidationError):
            services.sync.execute("")
        with pytest.raises(ValidationError):
            services.sync.execute("a@example.com", ids=[])


@pytest.mark.django_db
class TestHistory:
    """Tests for the sync history."""

    def test_newest_first_with_recent_totals(self, services, approved_venue):
        first = services.sync.execute("a@example.com")
        second = services.sync.execute("b@example.com")

        history = services.sync.history(limit=1)

        assert [str(sync.id) for sync in history["items"]] == [second.sync_id]
        assert history["total"] == 2
        assert history["has_more"] is True
        assert str(history["last_sync"].id) == second.sync_id
        assert history["recent"] == {"days": 30, "syncs": 2, "promoted": 1, "failed": 0}
        assert first.promoted == 1

    def test_limit_bounds(self, services):
        with pytest.raises(ValidationError):
            services.sync.history(limit=0)


@pytest.mark.django_db
class TestPromoteApprovedEntitiesTask:
    """Tests for the periodic promotion task."""

    def test_promotes_and_reports(self, approved_venue, blocked_dish):
        result = promote_approved_entities()

        assert result["requested"] == 2
        assert result["promoted"] == 1
        assert result["failed"] == 1
        sync = CatalogSync.objects.get(id=result["sync_id"])
        assert sync.executed_by == SCHEDULED_EXECUTOR
        assert sync.triggered_by == RunTrigger.SCHEDULED

    def test_nothing_to_promote(self, services):
        result = promote_approved_entities()

        assert result["requested"] == 0
        assert CatalogSync.objects.count() == 1
