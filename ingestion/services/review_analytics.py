"""
Review Analytics - KPIs and rejection analysis for the review dashboard.

Computed from the staged entities, the review decision log and the search
feedback log over a period of 7, 30 or 90 days:

- kpis: discovery volume and rate, approval rate (overall and per type,
  automatic vs manual), search precision, promotions, open backlog and the
  volume trend between the two halves of the period
- rejections: rejection reasons with counts, percentages and example
  names per entity type, rejections per day and the chains rejected most
"""

import logging
from collections import Counter
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from django.db.models import Count, Q
from django.db.models.functions import TruncDate
from django.utils import timezone

from ingestion.exceptions import ValidationError
from ingestion.models import (
    EntityType,
    FeedbackResultType,
    ReviewDecision,
    ReviewDecisionChoices,
    SearchFeedback,
    StagedEntity,
)
from ingestion.services.staging import OPEN_STATUSES
from ingestion.utils.numbers import round_half_up

logger = logging.getLogger(__name__)

PERIODS = {"7d": 7, "30d": 30, "90d": 90}

UNSPECIFIED_REASON = "unspecified"
LOW_CONFIDENCE_REASON = "low_confidence"
MAX_EXAMPLES = 3
TOP_CHAINS = 10


def period_days(period: str) -> int:
    """
    Days covered by a period name.

    Raises:
        ValidationError: period is not 7d, 30d or 90d
    """
    if period not in PERIODS:
        raise ValidationError(
            f"Unknown period: {period}",
            details={"field": "period", "allowed": sorted(PERIODS)},
        )
    return PERIODS[period]


def rate(part: int, whole: int) -> int:
    """Whole-number percentage, 0 when there is nothing to compare."""
    return round_half_up(100 * part / whole) if whole else 0


def by_day(rows: Iterable[Dict[str, Any]], since: date, until: date) -> List[Dict[str, Any]]:
    """Zero-filled daily counts from {"day", "total"} rows."""
    counts = {row["day"]: row["total"] for row in rows if row["day"] is not None}
    days = []
    current = since
    while current <= until:
        days.append({"date": current.isoformat(), "count": counts.get(current, 0)})
        current += timedelta(days=1)
    return days


def _local_dates(since: datetime, until: datetime):
    # TruncDate groups in the current time zone
    return timezone.localtime(since).date(), timezone.localtime(until).date()


def _daily(qs, field_name: str):
    return qs.annotate(day=TruncDate(field_name)).values("day").annotate(total=Count("id")).order_by("day")


def rejection_reason(decision: Dict[str, Any]) -> str:
    """Reason bucket of one rejection. Automatic rejections are low-confidence ones."""
    if decision["automatic"]:
        return LOW_CONFIDENCE_REASON
    notes = (decision["notes"] or "").strip()
    return notes.lower() if notes else UNSPECIFIED_REASON


class ReviewAnalytics:
    """Read-only aggregates over review activity."""

    def _window(self, period: str, now: Optional[datetime] = None):
        now = now or timezone.now()
        since = now - timedelta(days=period_days(period))
        return since, now

    # --------------------------------------------------------
    # KPIs
    # --------------------------------------------------------

    def kpis(self, period: str = "30d", now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Key performance indicators of the review pipeline.

        Raises:
            ValidationError: unknown period
        """
        since, now = self._window(period, now)
        days = period_days(period)

        staged = StagedEntity.objects.filter(created_at__gte=since, created_at__lte=now)
        staged_by_type = {entity_type: 0 for entity_type in EntityType.values}
        for row in staged.order_by().values("entity_type").annotate(total=Count("id")):
            staged_by_type[row["entity_type"]] = row["total"]
        discovered = sum(staged_by_type.values())

        decisions = ReviewDecision.objects.filter(created_at__gte=since, created_at__lte=now)
        approval_by_type = {}
        for entity_type in EntityType.values:
            typed = decisions.filter(entity_type=entity_type)
            approved = typed.filter(decision=ReviewDecisionChoices.APPROVED).count()
            rejected = typed.filter(decision=ReviewDecisionChoices.REJECTED).count()
            approval_by_type[entity_type] = {
                "approved": approved,
                "rejected": rejected,
                "rate": rate(approved, approved + rejected),
            }
        approved = sum(t["approved"] for t in approval_by_type.values())
        rejected = sum(t["rejected"] for t in approval_by_type.values())
        automatic = decisions.filter(automatic=True).count()

        feedback = SearchFeedback.objects.filter(created_at__gte=since, created_at__lte=now)
        feedback_counts = {result_type: 0 for result_type in FeedbackResultType.values}
        for row in feedback.order_by().values("result_type").annotate(total=Count("id")):
            feedback_counts[row["result_type"]] = row["total"]
        true_positives = feedback_counts[FeedbackResultType.TRUE_POSITIVE]
        false_positives = feedback_counts[FeedbackResultType.FALSE_POSITIVE]

        midpoint = since + (now - since) / 2
        first_half = staged.filter(created_at__lt=midpoint).count()
        second_half = discovered - first_half
        change = rate(second_half - first_half, first_half)

        return {
            "period": period,
            "discovery": {
                "total": discovered,
                "by_type": staged_by_type,
                "by_day": by_day(_daily(staged, "created_at"), *_local_dates(since, now)),
                "rate": round_half_up(discovered / days, 1),
                "rate_unit": "items/day",
            },
            "approval": {
                "approved": approved,
                "rejected": rejected,
                "automatic": automatic,
                "manual": approved + rejected - automatic,
                "rate": rate(approved, approved + rejected),
                "by_type": approval_by_type,
            },
            "search": {
                "attempts": sum(feedback_counts.values()),
                "by_result": feedback_counts,
                "precision": rate(true_positives, true_positives + false_positives),
            },
            "promoted": StagedEntity.objects.filter(promoted_at__gte=since, promoted_at__lte=now).count(),
            "backlog": StagedEntity.objects.filter(status__in=OPEN_STATUSES).count(),
            "trend": {
                "first_half": first_half,
                "second_half": second_half,
                "change": change,
                "direction": "up" if change > 0 else "down" if change < 0 else "stable",
            },
        }

    # --------------------------------------------------------
    # Rejections
    # --------------------------------------------------------

    def rejections(self, period: str = "30d", now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Rejection analysis: reasons per entity type, daily volume, chains.

        Raises:
            ValidationError: unknown period
        """
        since, now = self._window(period, now)

        decisions = ReviewDecision.objects.filter(created_at__gte=since, created_at__lte=now)
        rejected_qs = decisions.filter(decision=ReviewDecisionChoices.REJECTED)
        rows = list(
            rejected_qs.order_by("-created_at").values(
                "entity_type", "notes", "automatic", "staged_entity__name", "staged_entity__chain_id",
            )
        )

        types: Dict[str, Dict[str, Any]] = {}
        for entity_type in EntityType.values:
            typed = [row for row in rows if row["entity_type"] == entity_type]
            counts: Counter = Counter()
            examples: Dict[str, List[str]] = {}
            for row in typed:
                reason = rejection_reason(row)
                counts[reason] += 1
                name = row["staged_entity__name"]
                if name and len(examples.setdefault(reason, [])) < MAX_EXAMPLES and name not in examples[reason]:
                    examples[reason].append(name)
            reasons = [
                {
                    "reason": reason,
                    "count": count,
                    "percentage": rate(count, len(typed)),
                    "examples": examples.get(reason, []),
                }
                for reason, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
            ]
            types[entity_type] = {
                "total": len(typed),
                "reasons": reasons,
                "top_reason": reasons[0]["reason"] if reasons else None,
            }

        chains = Counter(row["staged_entity__chain_id"] for row in rows if row["staged_entity__chain_id"])
        automatic = sum(1 for row in rows if row["automatic"])
        total_decisions = decisions.count()

        return {
            "period": period,
            "summary": {
                "total": len(rows),
                "automatic": automatic,
                "manual": len(rows) - automatic,
                "rejection_rate": rate(len(rows), total_decisions),
            },
            "by_type": types,
            "by_day": by_day(_daily(rejected_qs, "created_at"), *_local_dates(since, now)),
            "top_chains": [
                {"chain_id": chain_id, "count": count}
                for chain_id, count in sorted(chains.items(), key=lambda item: (-item[1], item[0]))[:TOP_CHAINS]
            ],
            "false_positives": SearchFeedback.objects.filter(
                Q(created_at__gte=since) & Q(created_at__lte=now),
                result_type=FeedbackResultType.FALSE_POSITIVE,
            ).count(),
        }
