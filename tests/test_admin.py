"""
Tests for Django Admin functionality.

Admin actions must go through the services so review decisions follow the
same state machine as the API.
"""

import pytest
from django.contrib.admin.sites import AdminSite
from django.contrib.auth import get_user_model
from django.contrib.messages import get_messages
from django.contrib.messages.storage.fallback import FallbackStorage
from django.contrib.sessions.middleware import SessionMiddleware
from django.test import RequestFactory


@pytest.fixture
def admin_user(db):
    """Create an admin user for testing."""
    User = get_user_model()
    return User.objects.create_superuser(
        username="admin",
        email="admin@example.com",
        password="testpass123",
    )


@pytest.fixture
def admin_request(admin_user):
    """Create an admin request with user and messages support attached."""
    request = RequestFactory().get("/admin/")
    request.user = admin_user

    middleware = SessionMiddleware(lambda x: None)
    middleware.process_request(request)
    request.session.save()

    setattr(request, "_messages", FallbackStorage(request))
    return request


@pytest.mark.django_db
class TestStagedEntityAdmin:
    """Tests for the review actions."""

    def test_approve_selected_promotes(self, admin_request, services, venue_payload):
        from ingestion.admin import StagedEntityAdmin
        from ingestion.models import StagedEntity, StagingStatus

        entity, _ = services.staging.stage("venue", venue_payload)
        model_admin = StagedEntityAdmin(StagedEntity, AdminSite())

        model_admin.approve_selected(admin_request, StagedEntity.objects.filter(pk=entity.pk))

        entity.refresh_from_db()
        assert entity.status == StagingStatus.PROMOTED
        assert entity.reviewed_by == "admin@example.com"
        assert "Approved 1 of 1" in str(list(get_messages(admin_request))[0])

    def test_reject_selected_reports_already_processed(self, admin_request, services, venue_payload, dish_payload):
        from ingestion.admin import StagedEntityAdmin
        from ingestion.models import StagedEntity, StagingStatus

        venue, _ = services.staging.stage("venue", venue_payload)
        dish, _ = services.staging.stage("dish", dish_payload)
        services.staging.reject(dish.id, reviewer="a@example.com")
        model_admin = StagedEntityAdmin(StagedEntity, AdminSite())

        model_admin.reject_selected(admin_request, StagedEntity.objects.all())

        venue.refresh_from_db()
        assert venue.status == StagingStatus.REJECTED
        assert venue.review_notes == "Rejected in admin"
        assert "1 already processed" in str(list(get_messages(admin_request))[0])

    def test_status_badge(self, services, venue_payload):
        from ingestion.admin import StagedEntityAdmin
        from ingestion.models import StagedEntity

        entity, _ = services.staging.stage("venue", venue_payload)
        model_admin = StagedEntityAdmin(StagedEntity, AdminSite())

        assert "Pending" in model_admin.status_badge(entity)


@pytest.mark.django_db
class TestStrategyAndRunAdmin:
    """Tests for strategy deprecation and run cancellation."""

    def test_deprecate_selected(self, admin_request, strategy):
        from ingestion.admin import StrategyAdmin
        from ingestion.models import Strategy

        model_admin = StrategyAdmin(Strategy, AdminSite())

        model_admin.deprecate_selected(admin_request, Strategy.objects.all())

        strategy.refresh_from_db()
        assert strategy.is_active is False
        assert "admin" in strategy.deprecation_reason

    def test_cancel_selected_skips_finished_runs(self, admin_request, services):
        from ingestion.admin import DiscoveryRunAdmin
        from ingestion.models import DiscoveryRun, RunStatus

        pending = services.runs.create()
        finished = services.runs.create()
        services.runs.request_cancel(finished.id)
        model_admin = DiscoveryRunAdmin(DiscoveryRun, AdminSite())

        model_admin.cancel_selected(admin_request, DiscoveryRun.objects.all())

        pending.refresh_from_db()
        assert pending.status == RunStatus.CANCELLED
        assert pending.cancelled_by == "admin"
        texts = [str(m) for m in get_messages(admin_request)]
        assert "Cancellation requested for 1 run(s)." in texts

    def test_run_admin_has_no_add(self, admin_request):
        from ingestion.admin import DiscoveryRunAdmin
        from ingestion.models import DiscoveryRun

        assert DiscoveryRunAdmin(DiscoveryRun, AdminSite()).has_add_permission(admin_request) is False
