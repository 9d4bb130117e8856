"""
Tests for the staff API views.

Covers the review endpoints, budget and discovery controls, strategies,
feedback stats and partner management.
"""

import pytest
from django.contrib.auth import get_user_model
from django.urls import reverse

from ingestion.models import DiscoveryRun, Partner, RunStatus, StagingStatus


def url(name, *args):
    return reverse(f"ingestion_api:{name}", args=args)


@pytest.fixture
def staged_venue(services, venue_payload):
    entity, _ = services.staging.stage("venue", venue_payload)
    return entity


@pytest.fixture
def staged_dish(services, staged_venue, dish_payload):
    entity, _ = services.staging.stage("dish", dish_payload, staged_venue=staged_venue)
    return entity


@pytest.mark.django_db
class TestPermissions:
    """Staff-only access."""

    def test_anonymous_rejected(self, api_client):
        response = api_client.get(url("review_queue"))

        assert response.status_code == 403

    def test_non_staff_rejected(self, api_client):
        user = get_user_model().objects.create_user(username="visitor", password="secret-password")
        api_client.force_authenticate(user=user)

        assert api_client.get(url("budget_status")).status_code == 403
        assert api_client.post(url("partners"), {"name": "X"}, format="json").status_code == 403


@pytest.mark.django_db
class TestReviewEndpoints:
    """Tests for queue listing and review actions."""

    def test_queue_lists_open_entities(self, staff_client, staged_venue, staged_dish):
        response = staff_client.get(url("review_queue"), {"entity_type": "dish"})

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["items"][0]["id"] == str(staged_dish.id)
        assert data["items"][0]["staged_venue"] == str(staged_venue.id)
        assert data["has_more"] is False

    def test_queue_rejects_invalid_params(self, staff_client):
        response = staff_client.get(url("review_queue"), {"limit": 0})

        assert response.status_code == 400

    def test_counts(self, staff_client, staged_venue, staged_dish):
        response = staff_client.get(url("review_counts"))

        assert response.status_code == 200
        assert response.json()["pending"] == 2

    def test_detail_with_children(self, staff_client, staged_venue, staged_dish):
        response = staff_client.get(url("staged_entity_detail", staged_venue.id))

        assert response.status_code == 200
        data = response.json()
        assert data["entity"]["name"] == "Tibits Zurich"
        assert [child["id"] for child in data["children"]] == [str(staged_dish.id)]
        assert data["decisions"] == []

    def test_detail_not_found(self, staff_client):
        response = staff_client.get(url("staged_entity_detail", "00000000-0000-0000-0000-000000000000"))

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_approve_records_reviewer(self, staff_client, staged_venue):
        response = staff_client.post(url("approve_entity", staged_venue.id), {"notes": "Looks right"}, format="json")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == StagingStatus.PROMOTED
        assert data["review"]["reviewed_by"] == "reviewer@example.com"
        assert data["production_id"]

    def test_reject_then_reject_again_conflicts(self, staff_client, staged_venue):
        first = staff_client.post(url("reject_entity", staged_venue.id), {"reason": "closed"}, format="json")
        second = staff_client.post(url("reject_entity", staged_venue.id), {"reason": "closed"}, format="json")

        assert first.status_code == 200
        assert first.json()["status"] == StagingStatus.REJECTED
        assert second.status_code == 409
        assert second.json()["error"] == "invalid_transition"

    def test_flag_moves_to_review(self, staff_client, staged_venue):
        response = staff_client.post(url("flag_entity", staged_venue.id), {"flag": "wrong_city"}, format="json")

        assert response.status_code == 200
        assert response.json()["status"] == StagingStatus.NEEDS_REVIEW
        assert "wrong_city" in response.json()["flags"]

    def test_partial_approve(self, staff_client, staged_venue, staged_dish):
        response = staff_client.post(
            url("partial_approve", staged_venue.id),
            {"dish_updates": [{"dish_id": str(staged_dish.id), "approved": True}]},
            format="json",
        )

        assert response.status_code == 200
        data = response.json()
        assert data["venue"]["status"] == StagingStatus.PROMOTED
        assert data["counts"]["approved"] == 1

    def test_bulk_approve(self, staff_client, staged_venue, staged_dish):
        missing = "00000000-0000-0000-0000-000000000000"

        response = staff_client.post(
            url("bulk_approve"), {"ids": [str(staged_venue.id), missing]}, format="json",
        )

        assert response.status_code == 200
        summary = response.json()["summary"]
        assert summary["success"] == 1
        assert summary["not_found"] == 1
        assert summary["total"] == 2

    def test_bulk_reject_limit(self, staff_client, staged_venue, staged_dish, settings):
        settings.BULK_REVIEW_LIMIT = 1

        response = staff_client.post(
            url("bulk_reject"), {"ids": [str(staged_venue.id), str(staged_dish.id)]}, format="json",
        )

        assert response.status_code == 400

    def test_assign_chain(self, staff_client, staged_venue):
        response = staff_client.post(
            url("assign_chain"), {"ids": [str(staged_venue.id)], "chain_id": "tibits"}, format="json",
        )

        assert response.status_code == 200
        assert response.json()["summary"]["success"] == 1
        staged_venue.refresh_from_db()
        assert staged_venue.chain_id == "tibits"


@pytest.mark.django_db
class TestBudgetAndDiscovery:
    """Tests for budget status and run control."""

    def test_budget_status(self, staff_client, services):
        services.budget.record_cost("search_paid", 1.5, count=300)

        response = staff_client.get(url("budget_status"))

        assert response.status_code == 200
        data = response.json()
        assert data["today"]["search_queries_paid"] == 300
        assert data["limits"]["daily"] == 50.0
        assert data["throttle"]["throttled"] is False

    def test_start_run(self, staff_client, django_capture_on_commit_callbacks):
        body = {
            "config": {"platforms": ["wolt"], "cities": ["Zurich"]},
            "estimated_search_queries": 10,
            "estimated_ai_calls": 20,
        }

        with django_capture_on_commit_callbacks() as callbacks:
            response = staff_client.post(url("discovery_runs"), body, format="json")

        assert response.status_code == 201
        data = response.json()
        assert data["run"]["status"] == RunStatus.PENDING
        assert data["run"]["triggered_by_user"] == "reviewer@example.com"
        assert data["estimated_cost"] >= 0
        assert DiscoveryRun.objects.filter(id=data["run"]["id"]).exists()
        assert len(callbacks) == 1

    def test_start_run_refused_when_throttled(self, staff_client, services):
        services.budget.record_cost("ai_claude", 45.0)

        response = staff_client.post(url("discovery_runs"), {"config": {"platforms": ["wolt"]}}, format="json")

        assert response.status_code == 429
        assert response["Retry-After"] == "3600"
        assert response.json()["error"] == "budget_exceeded"
        assert not DiscoveryRun.objects.exists()

    def test_list_detail_and_cancel(self, staff_client, services):
        run = services.runs.create(config={"platforms": ["wolt"]})

        listed = staff_client.get(url("discovery_runs"))
        detail = staff_client.get(url("discovery_run_detail", run.id))
        cancelled = staff_client.post(url("cancel_discovery_run", run.id))
        again = staff_client.post(url("cancel_discovery_run", run.id))

        assert [r["id"] for r in listed.json()] == [str(run.id)]
        assert detail.json()["config"] == {"platforms": ["wolt"]}
        assert cancelled.status_code == 202
        assert cancelled.json()["status"] == RunStatus.CANCELLED
        assert cancelled.json()["cancelled_by"] == "reviewer@example.com"
        assert again.status_code == 409

    def test_list_rejects_invalid_limit(self, staff_client):
        for limit in ("abc", "-1", "0", "101"):
            response = staff_client.get(url("discovery_runs"), {"limit": limit})

            assert response.status_code == 400, limit

    def test_list_respects_limit_and_kind(self, staff_client, services):
        services.runs.create()
        services.runs.create()

        response = staff_client.get(url("discovery_runs"), {"limit": "1", "kind": "discovery"})

        assert response.status_code == 200
        assert len(response.json()) == 1


@pytest.mark.django_db
class TestSyncAndAnalytics:
    """Catalog sync and review analytics endpoints."""

    @pytest.fixture
    def approved_venue(self, services, staged_venue):
        return services.staging.approve(staged_venue.id, reviewer="a@example.com")

    def test_preview_then_execute(self, staff_client, approved_venue):
        preview = staff_client.get(url("sync_preview"))
        executed = staff_client.post(url("sync_execute"), {}, format="json")

        assert preview.status_code == 200
        assert preview.json()["stats"]["total"] == 1
        assert executed.status_code == 200
        assert executed.json()["summary"] == {"requested": 1, "promoted": 1, "failed": 0}
        approved_venue.refresh_from_db()
        assert approved_venue.status == StagingStatus.PROMOTED

    def test_execute_selected_ids(self, staff_client, approved_venue):
        response = staff_client.post(url("sync_execute"), {"ids": [str(approved_venue.id)]}, format="json")

        assert response.json()["results"][0]["id"] == str(approved_venue.id)

    def test_execute_rejects_empty_id_list(self, staff_client):
        response = staff_client.post(url("sync_execute"), {"ids": []}, format="json")

        assert response.status_code == 400

    def test_history_records_executor(self, staff_client, approved_venue):
        staff_client.post(url("sync_execute"), {}, format="json")

        response = staff_client.get(url("sync_history"))

        data = response.json()
        assert data["total"] == 1
        assert data["items"][0]["executed_by"] == "reviewer@example.com"
        assert data["items"][0]["promoted"] == 1
        assert data["last_sync"]["id"] == data["items"][0]["id"]

    def test_history_rejects_invalid_limit(self, staff_client):
        assert staff_client.get(url("sync_history"), {"limit": "abc"}).status_code == 400

    def test_kpis_and_rejections(self, staff_client, staged_venue):
        kpis = staff_client.get(url("analytics_kpis"), {"period": "7d"})
        rejections = staff_client.get(url("analytics_rejections"))

        assert kpis.status_code == 200
        assert kpis.json()["discovery"]["total"] == 1
        assert kpis.json()["backlog"] == 1
        assert rejections.status_code == 200
        assert rejections.json()["period"] == "30d"

    def test_analytics_rejects_unknown_period(self, staff_client):
        assert staff_client.get(url("analytics_kpis"), {"period": "1y"}).status_code == 400
        assert staff_client.get(url("analytics_rejections"), {"period": "1y"}).status_code == 400

    def test_sync_is_staff_only(self, api_client):
        assert api_client.post(url("sync_execute"), {}, format="json").status_code == 403


@pytest.mark.django_db
class TestStrategiesAndFeedback:
    def test_strategy_tiers(self, staff_client, strategy):
        response = staff_client.get(url("strategy_tiers"))

        assert response.status_code == 200
        data = response.json()
        assert data["counts"]["untested"] == 1
        assert data["untested"][0]["id"] == str(strategy.id)

    def test_feedback_stats(self, staff_client, services, strategy):
        services.feedback.record_search(
            query="planted Zurich", platform="uber-eats", result_type="no_results", strategy=strategy,
        )

        overall = staff_client.get(url("feedback_stats"))
        per_strategy = staff_client.get(url("feedback_stats"), {"strategy_id": str(strategy.id)})

        assert overall.json()["total_searches"] == 1
        assert per_strategy.status_code == 200


@pytest.mark.django_db
class TestPartnerManagement:
    """Tests for partner endpoints."""

    def test_create_returns_credentials_once(self, staff_client):
        response = staff_client.post(
            url("partners"),
            {"name": "Hiltl", "partner_type": "chain", "markets": ["CH"]},
            format="json",
        )

        assert response.status_code == 201
        data = response.json()
        assert data["api_key"].startswith("pad_live_")
        assert data["webhook_secret"].startswith("whsec_")
        assert data["partner"]["status"] == "onboarding"
        assert "api_key" not in data["partner"]

        listed = staff_client.get(url("partners")).json()
        assert listed["stats"]["total"] == 1
        assert "api_key" not in listed["partners"][0]

    def test_create_rejects_invalid_body(self, staff_client):
        response = staff_client.post(url("partners"), {"name": "X", "partner_type": "franchise"}, format="json")

        assert response.status_code == 400
        assert not Partner.objects.exists()

    def test_lifecycle(self, staff_client, services):
        partner = services.partners.create(name="Hiltl").partner

        activated = staff_client.post(url("activate_partner", partner.id))
        rotated = staff_client.post(url("rotate_partner_credentials", partner.id))
        suspended = staff_client.post(url("suspend_partner", partner.id), {"reason": "audit"}, format="json")

        assert activated.json()["status"] == "active"
        assert rotated.json()["api_key"].startswith("pad_live_")
        assert rotated.json()["previous_valid_until"]
        assert suspended.json()["status"] == "suspended"
        assert suspended.json()["suspended_reason"] == "audit"

    def test_unknown_partner(self, staff_client):
        response = staff_client.post(url("activate_partner", "00000000-0000-0000-0000-000000000000"))

        assert response.status_code == 404
