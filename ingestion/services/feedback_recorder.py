"""
Feedback Recording for strategy learning.

Two append-only logs feed the Strategy Registry:

- SearchFeedback: one row per search or extraction attempt, written whether
  or not anyone ever reviews it. Human feedback (was_useful, corrections,
  notes) is attached later; result_type never changes and every earlier
  feedback version is kept in feedback_history.
- ReviewDecision: one row per approve/reject of a staged entity, human or
  automatic.

Aggregates (get_strategy_performance, get_stats) are folds over the log, so
strategy decisions can be replayed against the history at any time.
"""

import logging
from collections import Counter
from datetime import timedelta
from typing import Any, Dict, List, Optional

from django.db import transaction
from django.utils import timezone

from ingestion.exceptions import ValidationError
from ingestion.models import (
    FeedbackResultType,
    ReviewDecision,
    ReviewDecisionChoices,
    SearchFeedback,
    StagedEntity,
)
from ingestion.repository import Repository
from ingestion.services.hooks import run_best_effort
from ingestion.utils.numbers import percentage, round_half_up

logger = logging.getLogger(__name__)

FEEDBACK_FIELDS = {"was_useful", "corrections", "notes", "tags"}


class FeedbackRecorder:
    """
    Records search outcomes and review decisions.

    Args:
        feedback: Repository over SearchFeedback
        decisions: Repository over ReviewDecision
        strategy_registry: Registry fed with usage from review decisions
    """

    def __init__(
        self,
        feedback: Optional[Repository] = None,
        decisions: Optional[Repository] = None,
        strategy_registry=None,
    ):
        self.feedback = feedback or Repository(SearchFeedback)
        self.decisions = decisions or Repository(ReviewDecision)
        self.strategy_registry = strategy_registry

    # --------------------------------------------------------
    # Search feedback
    # --------------------------------------------------------

    def record_search(
        self,
        query: str,
        platform: str,
        result_type: str,
        country: str = "",
        strategy=None,
        discovery_run=None,
        staged_entity: Optional[StagedEntity] = None,
    ) -> SearchFeedback:
        """
        Append one search attempt to the log.

        Raises:
            ValidationError: empty query/platform or unknown result type
        """
        if not query or not platform:
            raise ValidationError("query and platform are required", details={"field": "query"})
        if result_type not in FeedbackResultType.values:
            raise ValidationError(f"Unknown result type: {result_type}", details={"field": "result_type"})

        return self.feedback.create(
            query=query,
            platform=platform,
            country=(country or "").upper(),
            result_type=result_type,
            strategy=strategy,
            discovery_run=discovery_run,
            staged_entity=staged_entity,
        )

    def add_feedback(self, feedback_id, details: Dict[str, Any], reviewer: str) -> SearchFeedback:
        """
        Attach a human judgment to a search attempt.

        A previous judgment is moved to feedback_history, never dropped.

        Raises:
            NotFoundError: feedback row does not exist
            ValidationError: unknown detail keys or missing reviewer
        """
        if not reviewer:
            raise ValidationError("Reviewer is required", details={"field": "reviewer"})
        unknown = set(details or {}) - FEEDBACK_FIELDS
        if unknown:
            raise ValidationError(f"Unknown feedback fields: {sorted(unknown)}", details={"field": "details"})

        now = timezone.now()
        with transaction.atomic():
            row = self.feedback.lock(feedback_id)
            history = list(row.feedback_history or [])
            if row.feedback:
                history.append(row.feedback)
            entry = dict(details, reviewer=reviewer, submitted_at=now.isoformat())
            return self.feedback.update(
                row.pk,
                feedback=entry,
                feedback_history=history,
                reviewed_by=reviewer,
                reviewed_at=now,
            )

    def get_by_strategy(self, strategy_id) -> List[SearchFeedback]:
        return self.feedback.query({"strategy_id": strategy_id}, order_by=["-created_at"])

    def get_by_result_type(self, result_type: str, limit: Optional[int] = None) -> List[SearchFeedback]:
        return self.feedback.query({"result_type": result_type}, order_by=["-created_at"], limit=limit)

    def get_unreviewed(self, limit: int = 50) -> List[SearchFeedback]:
        return self.feedback.query({"reviewed_at__isnull": True}, order_by=["-created_at"], limit=limit)

    def get_by_platform_and_country(self, platform: str, country: str) -> List[SearchFeedback]:
        return self.feedback.query(
            {"platform": platform, "country": country.upper()},
            order_by=["-created_at"],
        )

    def get_recent_false_positives(self, limit: int = 20) -> List[SearchFeedback]:
        return self.get_by_result_type(FeedbackResultType.FALSE_POSITIVE, limit=limit)

    def get_for_entity(self, entity_id) -> List[SearchFeedback]:
        """Searches that led to a staged entity."""
        return self.feedback.query({"staged_entity_id": entity_id}, order_by=["created_at"])

    def get_for_learning(self, days: int = 7) -> List[SearchFeedback]:
        """Reviewed feedback from the last N days."""
        cutoff = timezone.now() - timedelta(days=days)
        return self.feedback.query(
            {"created_at__gte": cutoff, "reviewed_at__isnull": False},
            order_by=["-created_at"],
        )

    def get_strategy_performance(self, strategy_id) -> Dict[str, Any]:
        """Fold one strategy's feedback into outcome counts and rates."""
        rows = self.get_by_strategy(strategy_id)
        by_type = Counter(row.result_type for row in rows)
        reviewed = [row for row in rows if row.feedback]
        useful = sum(1 for row in reviewed if row.feedback.get("was_useful"))
        total = len(rows)

        return {
            "total": total,
            "true_positives": by_type[FeedbackResultType.TRUE_POSITIVE],
            "false_positives": by_type[FeedbackResultType.FALSE_POSITIVE],
            "no_results": by_type[FeedbackResultType.NO_RESULTS],
            "errors": by_type[FeedbackResultType.ERROR],
            "reviewed_count": len(reviewed),
            "useful_count": useful,
            "success_rate": round_half_up(percentage(by_type[FeedbackResultType.TRUE_POSITIVE], total)),
            "average_usefulness": round_half_up(percentage(useful, len(reviewed))),
        }

    def get_stats(self) -> Dict[str, Any]:
        """Fold the whole log into counts by result type, platform and country."""
        by_type = Counter()
        by_platform = Counter()
        by_country = Counter()
        reviewed = 0
        total = 0

        for row in self.feedback.all().only("result_type", "platform", "country", "reviewed_at").iterator():
            total += 1
            by_type[row.result_type] += 1
            by_platform[row.platform] += 1
            by_country[row.country or "unknown"] += 1
            if row.reviewed_at:
                reviewed += 1

        return {
            "total_searches": total,
            "by_result_type": {t: by_type.get(t, 0) for t in FeedbackResultType.values},
            "by_platform": dict(by_platform),
            "by_country": dict(by_country),
            "overall_success_rate": round_half_up(percentage(by_type[FeedbackResultType.TRUE_POSITIVE], total)),
            "reviewed_percentage": round_half_up(percentage(reviewed, total)),
        }

    # --------------------------------------------------------
    # Review decisions
    # --------------------------------------------------------

    def record_review_decision(
        self,
        entity: StagedEntity,
        decision: str,
        reviewer: str,
        automatic: bool = False,
    ) -> ReviewDecision:
        """
        Log a review decision and feed the discovering strategy.

        Runs as a post-commit hook of the staging decision. The strategy
        update is best-effort on its own so the log row survives a failing
        or deprecated strategy.
        """
        if decision not in ReviewDecisionChoices.values:
            raise ValidationError(f"Unknown decision: {decision}", details={"field": "decision"})

        row = self.decisions.create(
            staged_entity=entity,
            entity_type=entity.entity_type,
            decision=decision,
            reviewer=reviewer,
            automatic=automatic,
            confidence_score=entity.confidence_score,
            strategy_id=entity.discovered_by_strategy_id,
            notes=entity.review_notes or "",
        )

        strategy_id = entity.discovered_by_strategy_id
        if strategy_id and self.strategy_registry is not None:
            strategy = self.strategy_registry.get(strategy_id)
            if strategy is not None and strategy.is_active:
                approved = decision == ReviewDecisionChoices.APPROVED
                run_best_effort(
                    "strategy_usage",
                    self.strategy_registry.record_usage,
                    strategy_id,
                    success=approved,
                    false_positive=not approved,
                )
            else:
                logger.debug(f"Skipping usage for inactive strategy {strategy_id}")

        return row

    def get_decisions(self, entity_id) -> List[ReviewDecision]:
        return self.decisions.query({"staged_entity_id": entity_id}, order_by=["created_at"])
