"""
Tests for the ingestion Celery tasks.

Tasks are called directly; dispatch of follow-up work is checked through
the captured on_commit callbacks.
"""

from unittest.mock import patch

import pytest

from ingestion.models import DiscoveryRun, RunStatus, RunTrigger
from ingestion.services.discovery_runner import CandidateSource, SourceResult
from ingestion.tasks import deprecate_underperforming_strategies, run_discovery, start_scheduled_discovery

SCHEDULED_CONFIG = {"platforms": ["uber-eats", "wolt"], "countries": ["CH"], "cities": ["Zurich"]}


class EmptySource(CandidateSource):
    def find_candidates(self, target, strategy, query, kind):
        return SourceResult()


@pytest.mark.django_db
class TestStartScheduledDiscovery:
    """Tests for the periodic discovery trigger."""

    def test_skipped_without_config(self):
        assert start_scheduled_discovery() == {"started": False, "reason": "not_configured"}
        assert not DiscoveryRun.objects.exists()

    def test_creates_scheduled_run(self, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks() as callbacks:
            result = start_scheduled_discovery(config=SCHEDULED_CONFIG)

        assert result["started"] is True
        run = DiscoveryRun.objects.get(id=result["run_id"])
        assert run.status == RunStatus.PENDING
        assert run.triggered_by == RunTrigger.SCHEDULED
        assert run.config == SCHEDULED_CONFIG
        assert len(callbacks) == 1

    def test_uses_configured_default(self, settings):
        settings.DISCOVERY_SCHEDULED_CONFIG = SCHEDULED_CONFIG

        result = start_scheduled_discovery()

        assert result["started"] is True

    def test_refused_when_budget_throttled(self, services):
        services.budget.record_cost("ai_claude", 45.0)

        result = start_scheduled_discovery(config=SCHEDULED_CONFIG)

        assert result["started"] is False
        assert "Daily budget" in result["reason"]
        assert result["retry_after_seconds"] == 3600
        assert not DiscoveryRun.objects.exists()
        assert len(services.budget.get_day().throttle_events) == 1

    def test_skipped_while_run_in_progress(self, services):
        active = services.runs.create(config=SCHEDULED_CONFIG)
        services.runs.start(active.id)

        result = start_scheduled_discovery(config=SCHEDULED_CONFIG)

        assert result == {"started": False, "reason": "run_in_progress", "run_id": str(active.id)}
        assert DiscoveryRun.objects.count() == 1


@pytest.mark.django_db
class TestRunDiscovery:
    """Tests for the worker task."""

    def test_executes_pending_run(self, services):
        run = services.runs.create(config={"platforms": ["wolt"], "cities": ["Bern"]})

        with patch("ingestion.tasks.load_candidate_source", return_value=EmptySource()) as loader:
            result = run_discovery(str(run.id))

        loader.assert_called_once_with(None)
        assert result["run_id"] == str(run.id)
        assert result["status"] == RunStatus.COMPLETED
        assert result["stats"]["queries_executed"] == 1

    def test_unknown_run_not_started(self):
        with patch("ingestion.tasks.load_candidate_source", return_value=EmptySource()):
            result = run_discovery("00000000-0000-0000-0000-000000000000")

        assert result["status"] == "not_started"
        assert "error" in result


@pytest.mark.django_db
class TestDeprecateUnderperformingStrategies:
    def test_deprecates_failing_strategies(self, services):
        weak = services.strategies.create(platform="wolt", config={"q": "weak"})
        fresh = services.strategies.create(platform="wolt", config={"q": "fresh"})
        for _ in range(10):
            services.strategies.record_usage(weak.id, success=False)

        result = deprecate_underperforming_strategies()

        assert result == {"deprecated": [str(weak.id)]}
        fresh.refresh_from_db()
        assert fresh.is_active

    def test_thresholds_override_settings(self, services):
        strategy = services.strategies.create(platform="wolt", config={})
        for _ in range(3):
            services.strategies.record_usage(strategy.id, success=False)

        assert deprecate_underperforming_strategies()["deprecated"] == []
        assert deprecate_underperforming_strategies(min_uses=3)["deprecated"] == [str(strategy.id)]


class TestCeleryConfig:
    """Routing and beat schedule of the ingestion tasks."""

    def test_discovery_runs_on_own_queue(self):
        from config.celery import app

        assert app.conf.task_routes["ingestion.tasks.run_discovery"] == {"queue": "discovery"}
        assert run_discovery.name == "ingestion.tasks.run_discovery"

    def test_periodic_tasks_scheduled(self):
        from config.celery import app

        scheduled = {entry["task"] for entry in app.conf.beat_schedule.values()}
        assert scheduled == {
            "ingestion.tasks.start_scheduled_discovery",
            "ingestion.tasks.deprecate_underperforming_strategies",
            "ingestion.tasks.promote_approved_entities",
        }

    def test_catalog_sync_routed_to_default_queue(self):
        from config.celery import app

        assert app.conf.task_routes["ingestion.tasks.promote_approved_entities"] == {"queue": "default"}
