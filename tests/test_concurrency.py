"""
Concurrent writers against the shared counters and the staging dedup check.

Each worker thread opens its own database connection, so these tests need
committed data and run with transaction=True against the file-backed test
database.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest
from django.db import connection

from ingestion.models import BudgetDay, StagedEntity, Strategy

WORKERS = 8


def run_in_threads(func, calls):
    """Run func(i) for i in range(calls) on a thread pool and return the results."""

    def worker(i):
        try:
            return func(i)
        finally:
            connection.close()

    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        return list(pool.map(worker, range(calls)))


@pytest.mark.django_db(transaction=True)
class TestConcurrentStrategyUsage:
    """record_usage must never lose an increment."""

    def test_hundred_parallel_uses(self, services):
        strategy = services.strategies.create(platform="wolt", config={"q": "planted {city}"})

        run_in_threads(lambda i: services.strategies.record_usage(strategy.id, success=i % 4 != 0), 100)

        strategy = Strategy.objects.get(pk=strategy.pk)
        assert strategy.total_uses == 100
        assert strategy.successful_uses == 75
        assert strategy.failed_uses == 25
        assert strategy.success_rate == 75


@pytest.mark.django_db(transaction=True)
class TestConcurrentBudget:
    """record_cost must add up under concurrent workers."""

    def test_parallel_costs_on_a_new_day(self, services):
        run_in_threads(lambda i: services.budget.record_cost("search_paid", 0.25, count=2), 100)

        day = BudgetDay.objects.get()
        assert day.search_queries_paid == 200
        assert day.cost_search == pytest.approx(25.0)
        assert day.cost_total == pytest.approx(25.0)


@pytest.mark.django_db(transaction=True)
class TestConcurrentStaging:
    """The same external id staged by different runs ends up as one record."""

    def test_runs_share_the_dedup_key(self, services, venue_payload):
        runs = [services.runs.create(), services.runs.create()]

        results = run_in_threads(
            lambda i: services.staging.stage(
                "venue",
                dict(venue_payload, name=f"Tibits Zurich {i}"),
                external_id="ubereats-4711",
                discovery_run=runs[i % 2],
            ),
            20,
        )

        assert StagedEntity.objects.filter(external_id="ubereats-4711").count() == 1
        assert sum(1 for _, created in results if created) == 1
