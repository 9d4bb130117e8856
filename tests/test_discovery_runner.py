"""
Tests for the Discovery Runner.

A static CandidateSource stands in for the scraper service so the tests can
drive every per-target outcome: candidates, no results and source failures.
"""

from unittest.mock import MagicMock, patch

import httpx
import pytest

from ingestion.exceptions import ValidationError
from ingestion.models import (
    BudgetDay,
    IngestionBatch,
    RunKind,
    RunStatus,
    SearchFeedback,
    StagedEntity,
    StagingStatus,
)
from ingestion.services.discovery_runner import (
    Candidate,
    CandidateSource,
    DiscoveryRunner,
    DiscoveryTarget,
    HttpCandidateSource,
    SourceResult,
    build_query,
    targets_from_config,
)


class StaticSource(CandidateSource):
    """Returns canned results per city (or venue id); exceptions are raised."""

    def __init__(self, results=None, on_call=None):
        self.results = results or {}
        self.on_call = on_call
        self.calls = []

    def find_candidates(self, target, strategy, query, kind):
        self.calls.append({"target": target, "strategy": strategy, "query": query, "kind": kind})
        if self.on_call:
            self.on_call(target)
        result = self.results.get(target.city or target.venue_id, SourceResult())
        if isinstance(result, Exception):
            raise result
        return result


def venue_candidate(venue_payload, **overrides):
    values = {
        "entity_type": "venue",
        "data": venue_payload,
        "external_id": "ubereats:tibits-zurich",
        "geocoding_confidence": 95,
        "reference_name": venue_payload["name"],
    }
    values.update(overrides)
    return Candidate(**values)


def make_runner(services, run, source):
    return DiscoveryRunner(
        run.id,
        source,
        tracker=services.runs,
        registry=services.strategies,
        staging=services.staging,
        feedback=services.feedback,
        budget=services.budget,
    )


class TestTargetsFromConfig:
    """Tests for config expansion."""

    def test_cross_product(self):
        targets = targets_from_config({
            "platforms": ["uber-eats", "wolt"],
            "countries": ["ch"],
            "cities": ["Zurich", "Basel"],
        })

        assert len(targets) == 4
        assert targets[0] == DiscoveryTarget(platform="uber-eats", country="CH", city="Zurich")

    def test_explicit_targets_ignore_unknown_keys(self):
        targets = targets_from_config({"targets": [{"platform": "wolt", "venue_id": "cat-1", "note": "x"}]})

        assert targets == [DiscoveryTarget(platform="wolt", venue_id="cat-1")]

    def test_max_targets(self):
        targets = targets_from_config({"platforms": ["a", "b", "c"], "max_targets": 2})

        assert [t.platform for t in targets] == ["a", "b"]

    def test_empty_config_rejected(self):
        with pytest.raises(ValidationError):
            targets_from_config({})
        with pytest.raises(ValidationError):
            targets_from_config({"targets": [{"city": "Zurich"}]})


class TestBuildQuery:
    def test_fills_template(self):
        strategy = MagicMock(config={"query_template": "planted {chain} {city}"})
        target = DiscoveryTarget(platform="wolt", city="Bern", chain_name="Tibits")

        assert build_query(strategy, target) == "planted Tibits Bern"

    def test_unknown_placeholder_keeps_template(self):
        strategy = MagicMock(config={"query_template": "planted {district}"})

        assert build_query(strategy, DiscoveryTarget(platform="wolt")) == "planted {district}"

    def test_without_strategy(self):
        assert build_query(None, DiscoveryTarget(platform="wolt", city="Bern")) == "wolt Bern"


@pytest.mark.django_db
class TestExecute:
    """Tests for complete runs."""

    def test_discovery_run(self, services, strategy, venue_payload):
        run = services.runs.create(config={"platforms": ["uber-eats"], "countries": ["CH"], "cities": ["Zurich", "Basel"]})
        source = StaticSource({
            "Zurich": SourceResult(candidates=[venue_candidate(venue_payload)], search_queries_paid=1, ai_calls_gemini=2),
        })

        finished = make_runner(services, run, source).execute()

        assert finished.status == RunStatus.COMPLETED
        assert finished.stats["queries_executed"] == 2
        assert finished.stats["queries_successful"] == 2
        assert finished.stats["venues_discovered"] == 1
        assert finished.stats["venues_verified"] == 1
        assert finished.strategies_used == [str(strategy.id)]
        assert source.calls[0]["query"] == "site:ubereats.com/ch planted Zurich"

        venue = StagedEntity.objects.get()
        assert venue.status == StagingStatus.APPROVED
        assert venue.discovered_by_strategy_id == strategy.id
        assert venue.discovery_run_id == run.id

        result_types = sorted(SearchFeedback.objects.values_list("result_type", flat=True))
        assert result_types == ["no_results", "true_positive"]

        day = BudgetDay.objects.get()
        assert day.search_queries_paid == 1
        assert day.ai_calls_gemini == 2

        batch = IngestionBatch.objects.get(discovery_run=run)
        assert batch.items_received == 1
        assert batch.items_accepted == 1

    def test_empty_search_counts_against_strategy(self, services, strategy):
        run = services.runs.create(config={"platforms": ["uber-eats"], "countries": ["CH"]})

        make_runner(services, run, StaticSource()).execute()

        strategy.refresh_from_db()
        assert strategy.total_uses == 1
        assert strategy.failed_uses == 1

    def test_source_failure_is_recorded_not_fatal(self, services, venue_payload):
        run = services.runs.create(config={"platforms": ["wolt"], "cities": ["Zurich", "Bern"]})
        source = StaticSource({
            "Zurich": httpx.ConnectError("connection refused"),
            "Bern": SourceResult(candidates=[venue_candidate(venue_payload)]),
        })

        finished = make_runner(services, run, source).execute()

        assert finished.status == RunStatus.COMPLETED
        assert finished.stats["queries_failed"] == 1
        assert finished.stats["queries_successful"] == 1
        assert "connection refused" in finished.errors[0]["message"]
        assert SearchFeedback.objects.filter(result_type="error").count() == 1

    def test_cancellation_between_targets(self, services):
        run = services.runs.create(config={"platforms": ["wolt"], "cities": ["Zurich", "Bern", "Basel"]})
        source = StaticSource(on_call=lambda target: services.runs.request_cancel(run.id, "reviewer@example.com"))

        finished = make_runner(services, run, source).execute()

        assert finished.status == RunStatus.CANCELLED
        assert len(source.calls) == 1

    def test_invalid_config_fails_run(self, services):
        run = services.runs.create(config={})

        finished = make_runner(services, run, StaticSource()).execute()

        assert finished.status == RunStatus.FAILED
        assert "no targets" in finished.errors[-1]["message"]

    def test_invalid_candidate_rejected_individually(self, services, venue_payload):
        run = services.runs.create(config={"platforms": ["wolt"], "cities": ["Zurich"]})
        broken = venue_candidate(venue_payload, data={"name": ""}, external_id="broken")
        promotion = Candidate(entity_type="promotion", data={"title": "2 for 1"})
        source = StaticSource({
            "Zurich": SourceResult(candidates=[broken, promotion, venue_candidate(venue_payload)]),
        })

        finished = make_runner(services, run, source).execute()

        assert finished.status == RunStatus.COMPLETED
        assert StagedEntity.objects.count() == 1
        assert len(finished.errors) == 2
        assert all(e["message"].startswith("Rejected candidate") for e in finished.errors)

    def test_only_pending_runs_execute(self, services):
        run = services.runs.create(config={"platforms": ["wolt"]})
        services.runs.request_cancel(run.id)

        with pytest.raises(ValidationError):
            make_runner(services, run, StaticSource()).execute()

    def test_dish_extraction_run(self, services, venue_payload, dish_payload):
        run = services.runs.create(
            kind=RunKind.DISH_EXTRACTION,
            config={"targets": [{"platform": "wolt", "venue_id": "cat-venue-1", "venue_url": "https://wolt.com/x"}]},
        )
        dish = Candidate(entity_type="dish", data=dish_payload, external_id="wolt:curry", mapping_confidence=90)
        source = StaticSource({"cat-venue-1": SourceResult(candidates=[dish])})

        finished = make_runner(services, run, source).execute()

        assert finished.stats["dishes_extracted"] == 1
        assert finished.stats["prices_found"] == 1
        assert finished.stats["venues_successful"] == 1
        staged = StagedEntity.objects.get()
        assert staged.production_venue_id == "cat-venue-1"
        assert source.calls[0]["kind"] == RunKind.DISH_EXTRACTION


class TestHttpCandidateSource:
    """Tests for the HTTP-backed source."""

    def test_parses_candidates_and_usage(self):
        response = MagicMock()
        response.json.return_value = {
            "candidates": [{"entity_type": "venue", "data": {"name": "Tibits"}, "external_id": 42}],
            "usage": {"search_queries_paid": 3},
        }
        client = MagicMock()
        client.__enter__.return_value = client
        client.post.return_value = response

        with patch("ingestion.services.discovery_runner.httpx.Client", return_value=client):
            source = HttpCandidateSource(base_url="http://scraper.local/", api_key="k")
            result = source.find_candidates(DiscoveryTarget(platform="wolt", city="Bern"), None, "wolt Bern", "discovery")

        client.post.assert_called_once()
        assert client.post.call_args[0][0] == "http://scraper.local/candidates"
        assert client.post.call_args[1]["json"]["target"] == {"platform": "wolt", "city": "Bern"}
        assert result.candidates[0].external_id == "42"
        assert result.search_queries_paid == 3
        assert result.ai_calls_claude == 0
