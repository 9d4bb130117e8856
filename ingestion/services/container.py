"""
Service wiring.

Builds one instance of every service over a shared QueryCache and connects
the post-commit hooks between them (review decisions feed the Feedback
Recorder, which feeds the Strategy Registry). Views and tasks get their
services from get_services() instead of constructing them.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ingestion.services.budget import BudgetLedger
from ingestion.services.cache import QueryCache
from ingestion.services.catalog_sync import CatalogSyncService
from ingestion.services.discovery_runs import DiscoveryRunTracker
from ingestion.services.feedback_recorder import FeedbackRecorder
from ingestion.services.partners import PartnerAccounts
from ingestion.services.review import ReviewService
from ingestion.services.review_analytics import ReviewAnalytics
from ingestion.services.staging import StagingStore
from ingestion.services.strategy_registry import StrategyRegistry
from ingestion.services.webhook_intake import WebhookIntake

logger = logging.getLogger(__name__)


@dataclass
class Services:
    cache: QueryCache
    budget: BudgetLedger
    strategies: StrategyRegistry
    runs: DiscoveryRunTracker
    staging: StagingStore
    feedback: FeedbackRecorder
    partners: PartnerAccounts
    review: ReviewService
    webhooks: WebhookIntake
    sync: CatalogSyncService
    analytics: ReviewAnalytics


def build_services(cache: Optional[QueryCache] = None) -> Services:
    """Construct and wire a fresh set of services."""
    cache = cache or QueryCache()
    strategies = StrategyRegistry(cache=cache)
    feedback = FeedbackRecorder(strategy_registry=strategies)
    staging = StagingStore(cache=cache, decision_hooks=[feedback.record_review_decision])
    partners = PartnerAccounts(cache=cache)

    return Services(
        cache=cache,
        budget=BudgetLedger(cache=cache),
        strategies=strategies,
        runs=DiscoveryRunTracker(),
        staging=staging,
        feedback=feedback,
        partners=partners,
        review=ReviewService(staging, cache=cache),
        webhooks=WebhookIntake(partners, staging),
        sync=CatalogSyncService(staging),
        analytics=ReviewAnalytics(),
    )


_services: Optional[Services] = None


def get_services() -> Services:
    """Get or create the process-wide services."""
    global _services
    if _services is None:
        _services = build_services()
        logger.debug("Built ingestion services")
    return _services


def reset_services() -> None:
    """Drop the cached services so the next call rebuilds them from settings."""
    global _services
    _services = None
