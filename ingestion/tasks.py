"""
Celery tasks for the ingestion service.

- run_discovery: Worker task executing one discovery run
- start_scheduled_discovery: Periodic task creating and dispatching a run
  when the budget admits it
- deprecate_underperforming_strategies: Periodic strategy maintenance
- promote_approved_entities: Periodic catalog sync of approved entities
"""

import logging
from typing import Any, Dict, Optional

from celery import shared_task
from django.conf import settings
from django.db import transaction

from ingestion.exceptions import BudgetExceededError, IngestionError
from ingestion.models import RunKind, RunTrigger
from ingestion.monitoring import capture_ingestion_error
from ingestion.services import get_services
from ingestion.services.catalog_sync import SCHEDULED_EXECUTOR
from ingestion.services.discovery_runner import DiscoveryRunner, load_candidate_source

logger = logging.getLogger(__name__)


@shared_task(name="ingestion.tasks.run_discovery")
def run_discovery(run_id: str, candidate_source_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Execute a pending discovery run.

    Args:
        run_id: DiscoveryRun id
        candidate_source_path: Dotted path overriding DISCOVERY_CANDIDATE_SOURCE

    Returns:
        Dict with the run id, final status and stats
    """
    services = get_services()
    logger.info(f"Executing discovery run {run_id}")

    try:
        runner = DiscoveryRunner(
            run_id,
            load_candidate_source(candidate_source_path),
            tracker=services.runs,
            registry=services.strategies,
            staging=services.staging,
            feedback=services.feedback,
            budget=services.budget,
        )
        run = runner.execute()
    except IngestionError as e:
        # Run missing or not pending; nothing to mark failed
        logger.error(f"Discovery run {run_id} could not start: {e}")
        capture_ingestion_error(e, operation="run_discovery", entity_id=str(run_id))
        return {"run_id": str(run_id), "status": "not_started", "error": str(e)}

    return {"run_id": str(run.id), "status": run.status, "stats": run.stats}


@shared_task(name="ingestion.tasks.start_scheduled_discovery")
def start_scheduled_discovery(config: Optional[Dict[str, Any]] = None, kind: str = RunKind.DISCOVERY) -> Dict[str, Any]:
    """
    Periodic task: start a scheduled run if the budget allows it.

    The run config defaults to DISCOVERY_SCHEDULED_CONFIG. Admission is
    estimated from the number of targets; a denied admission is logged and
    recorded as a throttle event, not raised.

    Returns:
        Dict with started flag, run id or the denial reason
    """
    services = get_services()
    config = dict(config or getattr(settings, "DISCOVERY_SCHEDULED_CONFIG", {}))
    if not config:
        logger.info("No scheduled discovery config, skipping")
        return {"started": False, "reason": "not_configured"}

    active = services.runs.get_active_run(kind=kind)
    if active is not None:
        logger.info(f"Run {active.id} still running, skipping scheduled discovery")
        return {"started": False, "reason": "run_in_progress", "run_id": str(active.id)}

    estimated_queries = len(config.get("platforms") or []) * len(config.get("cities") or [None]) * len(
        config.get("countries") or [None]
    ) or len(config.get("targets") or [])

    try:
        services.budget.require_admission(
            estimated_search_queries=estimated_queries,
            estimated_ai_calls=estimated_queries * getattr(settings, "DISCOVERY_AI_CALLS_PER_QUERY", 2),
            use_free_tier=config.get("use_free_tier", True),
        )
    except BudgetExceededError as e:
        logger.warning(f"Scheduled discovery not admitted: {e.reason}")
        return {"started": False, "reason": e.reason, "retry_after_seconds": e.retry_after_seconds}

    run = services.runs.create(kind=kind, config=config, triggered_by=RunTrigger.SCHEDULED)
    transaction.on_commit(lambda: run_discovery.delay(str(run.id)))
    logger.info(f"Scheduled {kind} run {run.id} created")
    return {"started": True, "run_id": str(run.id)}


@shared_task(name="ingestion.tasks.deprecate_underperforming_strategies")
def deprecate_underperforming_strategies(min_uses: Optional[int] = None, max_success_rate: Optional[int] = None) -> Dict[str, Any]:
    """Periodic task: deprecate strategies that keep failing."""
    services = get_services()
    deprecated = services.strategies.deprecate_underperformers(
        min_uses=min_uses or getattr(settings, "STRATEGY_DEPRECATION_MIN_USES", 10),
        max_success_rate=max_success_rate
        if max_success_rate is not None
        else getattr(settings, "STRATEGY_DEPRECATION_MAX_SUCCESS_RATE", 20),
    )
    logger.info(f"Deprecated {len(deprecated)} underperforming strategies")
    return {"deprecated": [str(s.id) for s in deprecated]}


@shared_task(name="ingestion.tasks.promote_approved_entities")
def promote_approved_entities() -> Dict[str, Any]:
    """
    Periodic task: promote every approved staged entity to the catalog.

    Picks up auto-approved candidates from discovery runs and partner
    webhooks. Failed items stay approved and are retried on the next pass.
    """
    result = get_services().sync.execute(SCHEDULED_EXECUTOR, triggered_by=RunTrigger.SCHEDULED)
    summary = result.to_dict()["summary"]
    if result.failed:
        logger.warning(f"Catalog sync {result.sync_id}: {result.failed} approved entities not promoted")
    return dict(summary, sync_id=result.sync_id)
