"""
Discovery Run Tracker - lifecycle of one discovery or dish-extraction batch.

Status transitions:
    pending -> running -> completed | failed | cancelled
    pending -> failed | cancelled

started_at is only set on pending -> running; completed_at only when a
terminal status is entered. Stats counters never decrease, and errors,
strategies_used and learned_patterns are append-only lists that keep
insertion order. All list and stats updates happen under a row lock so
concurrent writers never lose an entry.

Cancellation is cooperative: request_cancel() only sets a flag that the
discovery runner polls between targets.
"""

import logging
from typing import Any, Dict, List, Optional

from django.db import transaction
from django.utils import timezone

from ingestion.exceptions import InvalidTransitionError, ValidationError
from ingestion.models import DiscoveryRun, RunKind, RunStatus, RunTrigger
from ingestion.repository import Repository
from ingestion.utils.numbers import round_half_up

logger = logging.getLogger(__name__)

DISCOVERY_STATS = (
    "queries_executed",
    "queries_successful",
    "queries_failed",
    "venues_discovered",
    "venues_verified",
    "venues_rejected",
    "chains_detected",
    "new_strategies_created",
)

EXTRACTION_STATS = (
    "venues_processed",
    "venues_successful",
    "venues_failed",
    "dishes_extracted",
    "dishes_updated",
    "prices_found",
    "errors",
)

STATS_BY_KIND = {
    RunKind.DISCOVERY: DISCOVERY_STATS,
    RunKind.DISH_EXTRACTION: EXTRACTION_STATS,
}

RUN_TRANSITIONS = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED},
    RunStatus.RUNNING: {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED},
    RunStatus.COMPLETED: set(),
    RunStatus.FAILED: set(),
    RunStatus.CANCELLED: set(),
}


def empty_stats(kind: str) -> Dict[str, int]:
    return {name: 0 for name in STATS_BY_KIND[kind]}


class DiscoveryRunTracker:
    """
    Creates and mutates DiscoveryRun records.

    Args:
        runs: Repository over DiscoveryRun
    """

    def __init__(self, runs: Optional[Repository] = None):
        self.runs = runs or Repository(DiscoveryRun)

    def _transition(self, run_id, target: str, **changes) -> DiscoveryRun:
        with transaction.atomic():
            run = self.runs.lock(run_id)
            if target not in RUN_TRANSITIONS[run.status]:
                raise InvalidTransitionError(run.id, run.status, target)
            now = timezone.now()
            if target == RunStatus.RUNNING:
                changes["started_at"] = now
            if target in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED):
                changes["completed_at"] = now
            run = self.runs.update(run.pk, status=target, **changes)
        logger.info(f"Run {run.id} -> {target}")
        return run

    # --------------------------------------------------------
    # Lifecycle
    # --------------------------------------------------------

    def create(
        self,
        kind: str = RunKind.DISCOVERY,
        config: Optional[Dict[str, Any]] = None,
        triggered_by: str = RunTrigger.MANUAL,
        triggered_by_user: str = "",
    ) -> DiscoveryRun:
        """
        Create a pending run. The config is fixed from here on.

        Raises:
            ValidationError: unknown kind or trigger
        """
        if kind not in STATS_BY_KIND:
            raise ValidationError(f"Unknown run kind: {kind}", details={"field": "kind"})
        if triggered_by not in RunTrigger.values:
            raise ValidationError(f"Unknown trigger: {triggered_by}", details={"field": "triggered_by"})

        run = self.runs.create(
            kind=kind,
            status=RunStatus.PENDING,
            config=config or {},
            stats=empty_stats(kind),
            triggered_by=triggered_by,
            triggered_by_user=triggered_by_user or "",
        )
        logger.info(f"Created {kind} run {run.id} ({triggered_by})")
        return run

    def start(self, run_id) -> DiscoveryRun:
        return self._transition(run_id, RunStatus.RUNNING)

    def complete(self, run_id, learned_patterns: Optional[List[Dict[str, Any]]] = None) -> DiscoveryRun:
        """Mark a running run completed, appending any final learned patterns."""
        with transaction.atomic():
            if learned_patterns:
                for pattern in learned_patterns:
                    self.add_learned_pattern(run_id, pattern)
            return self._transition(run_id, RunStatus.COMPLETED)

    def fail(self, run_id, message: str, details: Optional[Dict[str, Any]] = None) -> DiscoveryRun:
        """Record a final error and mark the run failed."""
        with transaction.atomic():
            self.add_error(run_id, message, details)
            return self._transition(run_id, RunStatus.FAILED)

    def request_cancel(self, run_id, cancelled_by: str = "") -> DiscoveryRun:
        """
        Ask a run to stop.

        A pending run is cancelled immediately. A running run keeps running
        until the runner sees the flag between targets.

        Raises:
            InvalidTransitionError: run already finished
        """
        with transaction.atomic():
            run = self.runs.lock(run_id)
            if run.is_terminal:
                raise InvalidTransitionError(run.id, run.status, RunStatus.CANCELLED)
            if run.cancel_requested_at is None:
                run = self.runs.update(
                    run.pk,
                    cancel_requested_at=timezone.now(),
                    cancelled_by=cancelled_by or "",
                )
            if run.status == RunStatus.PENDING:
                run = self._transition(run.pk, RunStatus.CANCELLED)
        logger.info(f"Cancellation requested for run {run.id} by {cancelled_by or 'unknown'}")
        return run

    def is_cancel_requested(self, run_id) -> bool:
        return self.runs.exists({"pk": run_id, "cancel_requested_at__isnull": False})

    def mark_cancelled(self, run_id) -> DiscoveryRun:
        return self._transition(run_id, RunStatus.CANCELLED)

    # --------------------------------------------------------
    # Progress
    # --------------------------------------------------------

    def increment_stats(self, run_id, **increments: int) -> DiscoveryRun:
        """
        Add to stats counters.

        Raises:
            ValidationError: unknown counter for the run's kind or negative increment
        """
        with transaction.atomic():
            run = self.runs.lock(run_id)
            allowed = STATS_BY_KIND[run.kind]
            stats = dict(run.stats or {})
            for name, amount in increments.items():
                if name not in allowed:
                    raise ValidationError(f"Unknown {run.kind} stat: {name}", details={"field": name})
                if amount < 0:
                    raise ValidationError("Stats never decrease", details={"field": name})
                stats[name] = stats.get(name, 0) + amount
            return self.runs.update(run.pk, stats=stats)

    def add_strategy_used(self, run_id, strategy_id) -> DiscoveryRun:
        """Append a strategy id unless it is already listed."""
        with transaction.atomic():
            run = self.runs.lock(run_id)
            used = list(run.strategies_used or [])
            if str(strategy_id) in used:
                return run
            used.append(str(strategy_id))
            return self.runs.update(run.pk, strategies_used=used)

    def add_learned_pattern(self, run_id, pattern: Dict[str, Any]) -> DiscoveryRun:
        with transaction.atomic():
            run = self.runs.lock(run_id)
            patterns = list(run.learned_patterns or [])
            patterns.append(dict(pattern, recorded_at=timezone.now().isoformat()))
            return self.runs.update(run.pk, learned_patterns=patterns)

    def add_error(self, run_id, message: str, details: Optional[Dict[str, Any]] = None) -> DiscoveryRun:
        with transaction.atomic():
            run = self.runs.lock(run_id)
            errors = list(run.errors or [])
            errors.append({
                "timestamp": timezone.now().isoformat(),
                "message": message,
                "details": details or {},
            })
            return self.runs.update(run.pk, errors=errors)

    # --------------------------------------------------------
    # Reads
    # --------------------------------------------------------

    def get(self, run_id) -> Optional[DiscoveryRun]:
        return self.runs.get(run_id)

    def get_or_raise(self, run_id) -> DiscoveryRun:
        return self.runs.get_or_raise(run_id)

    def get_recent_runs(self, limit: int = 10, kind: Optional[str] = None) -> List[DiscoveryRun]:
        filters = {"kind": kind} if kind else None
        return self.runs.query(filters, order_by=["-created_at"], limit=limit)

    def get_by_status(self, status: str) -> List[DiscoveryRun]:
        return self.runs.query({"status": status}, order_by=["-created_at"])

    def get_active_run(self, kind: Optional[str] = None) -> Optional[DiscoveryRun]:
        filters = {"status": RunStatus.RUNNING}
        if kind:
            filters["kind"] = kind
        runs = self.runs.query(filters, order_by=["-started_at"], limit=1)
        return runs[0] if runs else None

    def get_aggregate_stats(self) -> Dict[str, Any]:
        """Totals across discovery runs, for the dashboard."""
        runs = self.runs.query({"kind": RunKind.DISCOVERY})
        completed = [r for r in runs if r.status == RunStatus.COMPLETED]
        discovered = sum((r.stats or {}).get("venues_discovered", 0) for r in completed)
        verified = sum((r.stats or {}).get("venues_verified", 0) for r in completed)
        return {
            "total_runs": len(runs),
            "successful_runs": len(completed),
            "failed_runs": sum(1 for r in runs if r.status == RunStatus.FAILED),
            "cancelled_runs": sum(1 for r in runs if r.status == RunStatus.CANCELLED),
            "total_venues_discovered": discovered,
            "total_venues_verified": verified,
            "average_venues_per_run": round_half_up(discovered / len(completed)) if completed else 0,
        }
