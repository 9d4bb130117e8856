"""
Discovery Runner - executes one discovery or dish-extraction run.

Flow per run:
1. pending -> running
2. Expand the run config into targets (platform x country x city, or an
   explicit target list)
3. For each target:
   a. Stop if cancellation was requested (run -> cancelled)
   b. Pick the best strategy from the Strategy Registry
   c. Ask the candidate source for candidates
   d. Record costs, search feedback and stats
   e. Score, stage and auto-route every candidate
4. running -> completed (or failed on an unexpected error)

The HTML/DOM scraping itself lives behind CandidateSource. The runner only
sees structured candidates, so sources can be swapped through the
DISCOVERY_CANDIDATE_SOURCE setting (a dotted path).
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from itertools import product
from typing import Any, Dict, List, Optional

import httpx
from django.conf import settings
from django.db import transaction
from django.utils import timezone
from django.utils.module_loading import import_string

from ingestion.exceptions import IngestionError, ValidationError
from ingestion.models import (
    BatchSource,
    BatchStatus,
    DiscoveryRun,
    EntityType,
    FeedbackResultType,
    IngestionBatch,
    RunKind,
    StagedEntity,
    StagingStatus,
    Strategy,
)
from ingestion.monitoring import add_ingestion_breadcrumb, capture_ingestion_error
from ingestion.payloads import payload_from_dict
from ingestion.repository import Repository
from ingestion.services.budget import BudgetLedger
from ingestion.services.confidence import dish_factors, score_confidence, venue_factors
from ingestion.services.discovery_runs import DiscoveryRunTracker
from ingestion.services.feedback_recorder import FeedbackRecorder
from ingestion.services.hooks import run_best_effort
from ingestion.services.staging import StagingStore
from ingestion.services.strategy_registry import StrategyRegistry

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryTarget:
    """One unit of work: a platform in a city, or one venue's menu."""

    platform: str
    country: str = ""
    city: str = ""
    chain_id: Optional[str] = None
    chain_name: str = ""
    venue_id: str = ""
    venue_url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v not in (None, "")}


@dataclass
class Candidate:
    """A structured fact found by a candidate source."""

    entity_type: str
    data: Dict[str, Any]
    external_id: str = ""
    venue_external_id: str = ""
    source_url: str = ""
    geocoding_confidence: Optional[float] = None
    reference_name: Optional[str] = None
    mapping_confidence: Optional[float] = None
    flags: List[str] = field(default_factory=list)


@dataclass
class SourceResult:
    """Candidates plus the billable operations spent finding them."""

    candidates: List[Candidate] = field(default_factory=list)
    search_queries_free: int = 0
    search_queries_paid: int = 0
    ai_calls_gemini: int = 0
    ai_calls_claude: int = 0
    ai_calls_other: int = 0

    @property
    def usage(self) -> Dict[str, int]:
        return {
            "search_queries_free": self.search_queries_free,
            "search_queries_paid": self.search_queries_paid,
            "ai_calls_gemini": self.ai_calls_gemini,
            "ai_calls_claude": self.ai_calls_claude,
            "ai_calls_other": self.ai_calls_other,
        }


class CandidateSource(ABC):
    """Produces candidates for a target using a strategy's config."""

    @abstractmethod
    def find_candidates(
        self,
        target: DiscoveryTarget,
        strategy: Optional[Strategy],
        query: str,
        kind: str,
    ) -> SourceResult:
        """
        Search or extract for one target.

        Raises:
            Any exception on failure; the runner records it against the run.
        """


class HttpCandidateSource(CandidateSource):
    """
    Candidate source backed by the scraper service over HTTP.

    POSTs {kind, target, query, strategy_config} to DISCOVERY_SOURCE_URL and
    expects {"candidates": [...], "usage": {...}} back.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None, api_key: Optional[str] = None):
        self.base_url = base_url or getattr(settings, "DISCOVERY_SOURCE_URL", "")
        self.timeout = timeout or getattr(settings, "DISCOVERY_SOURCE_TIMEOUT", 60)
        self.api_key = api_key or getattr(settings, "DISCOVERY_SOURCE_API_KEY", "")
        if not self.base_url:
            logger.warning("DISCOVERY_SOURCE_URL not set - discovery runs will fail")

    def find_candidates(self, target, strategy, query, kind) -> SourceResult:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        body = {
            "kind": kind,
            "target": target.to_dict(),
            "query": query,
            "strategy_config": strategy.config if strategy is not None else {},
        }
        with httpx.Client(timeout=httpx.Timeout(self.timeout), headers=headers) as client:
            response = client.post(f"{self.base_url.rstrip('/')}/candidates", json=body)
            response.raise_for_status()
            data = response.json()

        usage = data.get("usage") or {}
        return SourceResult(
            candidates=[
                Candidate(
                    entity_type=item["entity_type"],
                    data=item.get("data") or {},
                    external_id=str(item.get("external_id") or ""),
                    venue_external_id=str(item.get("venue_external_id") or ""),
                    source_url=item.get("source_url") or "",
                    geocoding_confidence=item.get("geocoding_confidence"),
                    reference_name=item.get("reference_name"),
                    mapping_confidence=item.get("mapping_confidence"),
                    flags=list(item.get("flags") or []),
                )
                for item in data.get("candidates") or []
            ],
            **{k: int(usage.get(k, 0)) for k in SourceResult().usage},
        )


def load_candidate_source(path: Optional[str] = None) -> CandidateSource:
    """Instantiate the configured candidate source class."""
    path = path or getattr(
        settings,
        "DISCOVERY_CANDIDATE_SOURCE",
        "ingestion.services.discovery_runner.HttpCandidateSource",
    )
    return import_string(path)()


def targets_from_config(config: Dict[str, Any]) -> List[DiscoveryTarget]:
    """
    Expand a run config into targets.

    Accepts an explicit "targets" list, or "platforms" x "countries" x
    "cities" (cities optional). "max_targets" caps the result.

    Raises:
        ValidationError: config names no targets
    """
    if config.get("targets"):
        targets = [
            DiscoveryTarget(**{k: v for k, v in t.items() if k in DiscoveryTarget.__dataclass_fields__})
            for t in config["targets"]
        ]
    else:
        platforms = config.get("platforms") or []
        countries = config.get("countries") or [""]
        cities = config.get("cities") or [""]
        targets = [
            DiscoveryTarget(platform=p, country=c.upper(), city=city)
            for p, c, city in product(platforms, countries, cities)
        ]

    if not targets:
        raise ValidationError("Run config names no targets", details={"field": "config"})
    if any(not t.platform for t in targets):
        raise ValidationError("Every target needs a platform", details={"field": "config.targets"})

    max_targets = config.get("max_targets")
    return targets[:max_targets] if max_targets else targets


def build_query(strategy: Optional[Strategy], target: DiscoveryTarget) -> str:
    """Fill the strategy's query template with target fields."""
    template = (strategy.config or {}).get("query_template", "") if strategy is not None else ""
    if not template:
        return " ".join(p for p in (target.platform, target.chain_name, target.city, target.venue_url) if p)
    values = {
        "city": target.city,
        "country": target.country,
        "chain": target.chain_name or target.chain_id or "",
        "platform": target.platform,
    }
    try:
        return template.format(**values)
    except (KeyError, IndexError):
        logger.warning(f"Query template {template!r} has unknown placeholders")
        return template


class DiscoveryRunner:
    """
    Executes one DiscoveryRun end to end.

    Args:
        run_id: Run to execute (must be pending)
        candidate_source: Source of candidates for each target
        tracker, registry, staging, feedback, budget: Services, defaults built
            when omitted
    """

    def __init__(
        self,
        run_id,
        candidate_source: CandidateSource,
        tracker: Optional[DiscoveryRunTracker] = None,
        registry: Optional[StrategyRegistry] = None,
        staging: Optional[StagingStore] = None,
        feedback: Optional[FeedbackRecorder] = None,
        budget: Optional[BudgetLedger] = None,
        batches: Optional[Repository] = None,
    ):
        self.run_id = run_id
        self.source = candidate_source
        self.tracker = tracker or DiscoveryRunTracker()
        self.registry = registry or StrategyRegistry()
        self.staging = staging or StagingStore()
        self.feedback = feedback or FeedbackRecorder(strategy_registry=self.registry)
        self.budget = budget or BudgetLedger()
        self.batches = batches or Repository(IngestionBatch)
        self._venues: Dict[str, StagedEntity] = {}

    def execute(self) -> DiscoveryRun:
        """
        Run every target and return the finished run.

        Unexpected errors mark the run failed instead of propagating.
        """
        run = self.tracker.start(self.run_id)
        add_ingestion_breadcrumb("discovery", f"Starting {run.kind} run {run.id}")
        batch = self.batches.create(
            discovery_run=run,
            source=BatchSource.DISCOVERY,
            status=BatchStatus.PROCESSING,
        )

        try:
            targets = targets_from_config(run.config or {})
            for target in targets:
                if self.tracker.is_cancel_requested(run.pk):
                    logger.info(f"Run {run.id} cancelled before target {target.to_dict()}")
                    self._close_batch(batch, BatchStatus.COMPLETED)
                    return self.tracker.mark_cancelled(run.pk)
                self._process_target(run, target, batch)
        except Exception as e:
            logger.exception(f"Run {run.id} failed")
            capture_ingestion_error(e, operation="discovery_run", entity_id=str(run.id))
            self._close_batch(batch, BatchStatus.FAILED)
            return self.tracker.fail(run.pk, str(e), {"type": type(e).__name__})

        self._close_batch(batch, BatchStatus.COMPLETED)
        return self.tracker.complete(run.pk)

    def _close_batch(self, batch: IngestionBatch, status: str) -> None:
        entities = self.staging.get_by_batch(batch.pk)
        rejected = sum(1 for e in entities if e.status == StagingStatus.REJECTED)
        self.batches.update(
            batch.pk,
            status=status,
            items_received=len(entities),
            items_accepted=len(entities) - rejected,
            items_rejected=rejected,
            completed_at=timezone.now(),
        )

    # --------------------------------------------------------
    # Targets
    # --------------------------------------------------------

    def _process_target(self, run: DiscoveryRun, target: DiscoveryTarget, batch: IngestionBatch) -> None:
        strategy = self.registry.get_strategy(
            target.platform,
            chain_id=target.chain_id,
            kind=run.kind,
            country=target.country or None,
        )
        if strategy is not None:
            self.tracker.add_strategy_used(run.pk, strategy.id)
        query = build_query(strategy, target)

        try:
            result = self.source.find_candidates(target, strategy, query, run.kind)
        except Exception as e:
            logger.warning(f"Candidate source failed for {target.to_dict()}: {e}")
            self.tracker.add_error(run.pk, f"Candidate source failed: {e}", {"target": target.to_dict(), "query": query})
            self._count(run, failed=True)
            self._record_search(run, target, strategy, query, FeedbackResultType.ERROR)
            self._record_failed_use(strategy)
            return

        self.budget.record_usage(**result.usage)

        if not result.candidates:
            self._count(run, failed=False)
            self._record_search(run, target, strategy, query, FeedbackResultType.NO_RESULTS)
            self._record_failed_use(strategy)
            return

        staged = []
        for candidate in result.candidates:
            outcome = self._stage_candidate(run, target, strategy, candidate, batch)
            if outcome is not None:
                staged.append(outcome)

        self._count(run, failed=not staged, staged=staged)
        self._record_search(
            run, target, strategy, query,
            FeedbackResultType.TRUE_POSITIVE if staged else FeedbackResultType.FALSE_POSITIVE,
            staged_entity=staged[0][0] if staged else None,
        )

    def _record_search(self, run, target, strategy, query, result_type, staged_entity=None) -> None:
        run_best_effort(
            "search_feedback",
            self.feedback.record_search,
            query=query or target.platform,
            platform=target.platform,
            result_type=result_type,
            country=target.country,
            strategy=strategy,
            discovery_run=run,
            staged_entity=staged_entity,
        )

    def _record_failed_use(self, strategy: Optional[Strategy]) -> None:
        # Successful uses are credited when a reviewer decides on the candidates
        if strategy is not None:
            run_best_effort("strategy_usage", self.registry.record_usage, strategy.id, success=False)

    def _count(self, run: DiscoveryRun, failed: bool, staged: Optional[List] = None) -> None:
        staged = staged or []
        created = [entity for entity, was_created in staged if was_created]
        refreshed = [entity for entity, was_created in staged if not was_created]
        approved = sum(1 for entity, _ in staged if entity.status == StagingStatus.APPROVED)
        rejected = sum(1 for entity, _ in staged if entity.status == StagingStatus.REJECTED)

        if run.kind == RunKind.DISCOVERY:
            venues = [e for e in created if e.entity_type == EntityType.VENUE]
            self.tracker.increment_stats(
                run.pk,
                queries_executed=1,
                queries_successful=0 if failed else 1,
                queries_failed=1 if failed else 0,
                venues_discovered=len(venues),
                venues_verified=approved,
                venues_rejected=rejected,
                chains_detected=len({e.chain_id for e in venues if e.chain_id}),
            )
        else:
            dishes = [e for e, _ in staged if e.entity_type == EntityType.DISH]
            self.tracker.increment_stats(
                run.pk,
                venues_processed=1,
                venues_successful=0 if failed else 1,
                venues_failed=1 if failed else 0,
                dishes_extracted=sum(1 for e in created if e.entity_type == EntityType.DISH),
                dishes_updated=sum(1 for e in refreshed if e.entity_type == EntityType.DISH),
                prices_found=sum(1 for e in dishes if (e.payload.get("price") or {}).get("amount")),
                errors=1 if failed else 0,
            )

    # --------------------------------------------------------
    # Candidates
    # --------------------------------------------------------

    def _stage_candidate(
        self,
        run: DiscoveryRun,
        target: DiscoveryTarget,
        strategy: Optional[Strategy],
        candidate: Candidate,
        batch: IngestionBatch,
    ):
        """Score, stage and route one candidate. Returns (entity, created) or None."""
        try:
            with transaction.atomic():
                payload = payload_from_dict(candidate.entity_type, candidate.data)
                staged_venue = self._venues.get(candidate.venue_external_id) if candidate.venue_external_id else None
                production_venue_id = target.venue_id if candidate.entity_type != EntityType.VENUE else ""

                if candidate.entity_type == EntityType.VENUE:
                    factors = venue_factors(
                        payload,
                        geocoding_confidence=candidate.geocoding_confidence,
                        reference_name=candidate.reference_name,
                        platform=target.platform,
                    )
                elif candidate.entity_type == EntityType.DISH:
                    factors = dish_factors(
                        payload,
                        mapping_confidence=candidate.mapping_confidence,
                        production_venue_id=production_venue_id,
                        staged_venue_id=staged_venue.id if staged_venue else None,
                        platform=target.platform,
                    )
                else:
                    raise ValidationError(
                        f"Discovery does not produce {candidate.entity_type} records",
                        details={"field": "entity_type"},
                    )

                entity, created = self.staging.stage(
                    candidate.entity_type,
                    payload,
                    batch=batch,
                    external_id=candidate.external_id or candidate.source_url,
                    production_venue_id=production_venue_id,
                    staged_venue=staged_venue,
                    discovered_by_strategy=strategy,
                    discovery_run=run,
                    confidence=score_confidence(factors),
                    flags=candidate.flags,
                )
                if entity.status in (StagingStatus.PENDING, StagingStatus.VALIDATING):
                    entity = self.staging.route_by_confidence(entity.pk)
        except IngestionError as e:
            self.tracker.add_error(
                run.pk,
                f"Rejected candidate: {e.message}",
                {"target": target.to_dict(), "external_id": candidate.external_id},
            )
            return None

        if entity.entity_type == EntityType.VENUE and candidate.external_id:
            self._venues[candidate.external_id] = entity
        return entity, created
