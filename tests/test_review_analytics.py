"""
Tests for the Review Analytics service.

Decisions are logged by post-commit hooks, so the fixtures run the staging
calls inside captured on_commit callbacks.
"""

from datetime import date

import pytest

from ingestion.exceptions import ValidationError
from ingestion.services.confidence import ConfidenceFactor, score_confidence
from ingestion.services.review_analytics import by_day, period_days, rate, rejection_reason


@pytest.fixture
def decided(services, venue_payload, dish_payload, django_capture_on_commit_callbacks):
    """Two manual chain rejections, one automatic rejection and two approvals."""
    with django_capture_on_commit_callbacks(execute=True):
        for name, reason in (("Tibits Bern", "Closed Down"), ("Tibits Basel", "closed down ")):
            entity, _ = services.staging.stage("venue", dict(venue_payload, name=name))
            services.staging.assign_chain(entity.id, "tibits")
            services.staging.reject(entity.id, reviewer="a@example.com", reason=reason)

        weak, _ = services.staging.stage(
            "venue", dict(venue_payload, name="Somewhere"),
            confidence=score_confidence([ConfidenceFactor("geocoding", 10)]),
        )
        services.staging.route_by_confidence(weak.id)

        venue, _ = services.staging.stage("venue", dict(venue_payload, name="Hiltl Zurich"))
        services.staging.approve(venue.id, reviewer="a@example.com")
        dish, _ = services.staging.stage("dish", dish_payload)
        services.staging.approve(dish.id, reviewer="a@example.com")


class TestHelpers:
    def test_period_days(self):
        assert period_days("7d") == 7
        assert period_days("90d") == 90
        with pytest.raises(ValidationError):
            period_days("1y")

    def test_rate_rounds_half_up(self):
        assert rate(1, 8) == 13
        assert rate(3, 0) == 0

    def test_by_day_zero_fills(self):
        days = by_day([{"day": date(2026, 6, 2), "total": 4}], date(2026, 6, 1), date(2026, 6, 3))

        assert days == [
            {"date": "2026-06-01", "count": 0},
            {"date": "2026-06-02", "count": 4},
            {"date": "2026-06-03", "count": 0},
        ]

    def test_rejection_reason_buckets(self):
        assert rejection_reason({"automatic": True, "notes": "whatever"}) == "low_confidence"
        assert rejection_reason({"automatic": False, "notes": " Wrong City "}) == "wrong city"
        assert rejection_reason({"automatic": False, "notes": ""}) == "unspecified"


@pytest.mark.django_db
class TestKpis:
    """Tests for the KPI summary."""

    def test_counts_discovery_and_decisions(self, services, decided):
        kpis = services.analytics.kpis("7d")

        assert kpis["period"] == "7d"
        assert kpis["discovery"]["total"] == 5
        assert kpis["discovery"]["by_type"]["venue"] == 4
        assert kpis["discovery"]["by_type"]["dish"] == 1
        assert kpis["discovery"]["rate"] == 0.7
        assert len(kpis["discovery"]["by_day"]) == 8
        assert sum(day["count"] for day in kpis["discovery"]["by_day"]) == 5

        approval = kpis["approval"]
        assert (approval["approved"], approval["rejected"]) == (2, 3)
        assert (approval["automatic"], approval["manual"]) == (1, 4)
        assert approval["rate"] == 40
        assert approval["by_type"]["dish"] == {"approved": 1, "rejected": 0, "rate": 100}
        assert approval["by_type"]["promotion"]["rate"] == 0

        assert kpis["backlog"] == 0
        assert kpis["promoted"] == 0
        assert kpis["trend"]["second_half"] == 5

    def test_search_precision(self, services, strategy):
        for result_type in ("true_positive", "true_positive", "true_positive", "false_positive"):
            services.feedback.record_search(
                query="planted Zurich", platform="uber-eats", result_type=result_type, strategy=strategy,
            )

        search = services.analytics.kpis()["search"]

        assert search["attempts"] == 4
        assert search["precision"] == 75

    def test_unknown_period(self, services):
        with pytest.raises(ValidationError):
            services.analytics.kpis("1y")


@pytest.mark.django_db
class TestRejections:
    """Tests for the rejection breakdown."""

    def test_reasons_per_type(self, services, decided):
        report = services.analytics.rejections("30d")

        assert report["summary"] == {"total": 3, "automatic": 1, "manual": 2, "rejection_rate": 60}
        venues = report["by_type"]["venue"]
        assert venues["total"] == 3
        assert venues["top_reason"] == "closed down"
        assert [(r["reason"], r["count"], r["percentage"]) for r in venues["reasons"]] == [
            ("closed down", 2, 67),
            ("low_confidence", 1, 33),
        ]
        assert set(venues["reasons"][0]["examples"]) == {"Tibits Bern", "Tibits Basel"}
        assert report["by_type"]["dish"] == {"total": 0, "reasons": [], "top_reason": None}

    def test_top_chains(self, services, decided):
        report = services.analytics.rejections()

        assert report["top_chains"] == [{"chain_id": "tibits", "count": 2}]
        assert sum(day["count"] for day in report["by_day"]) == 3

    def test_empty_period(self, services):
        report = services.analytics.rejections("7d")

        assert report["summary"]["total"] == 0
        assert report["summary"]["rejection_rate"] == 0
        assert report["top_chains"] == []
