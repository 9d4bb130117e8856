"""
Budget Ledger & Throttle Controller - tracks paid API spend and gates new runs.

Every paid operation (search queries, AI inference calls) is recorded against
today's BudgetDay row. Counters and costs are incremented with F() expressions
so several workers recording at the same time never lose an update.

Throttling is a soft admission gate:
- throttled when today's total >= daily_limit * threshold
- or when this month's total >= monthly_limit
- in-flight runs are never aborted, only new runs are refused

Configuration (Django settings, read from the environment in base.py):
    DAILY_BUDGET_LIMIT         USD per day (default 50)
    MONTHLY_BUDGET_LIMIT       USD per month (default 1000)
    BUDGET_THROTTLE_THRESHOLD  fraction of the daily limit (default 0.8)
    BUDGET_UNIT_COSTS          USD per operation, overrides DEFAULT_UNIT_COSTS
"""

import calendar
import logging
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Dict, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from ingestion.exceptions import BudgetExceededError, ValidationError
from ingestion.models import BudgetDay
from ingestion.monitoring import capture_alert
from ingestion.repository import Repository
from ingestion.services.cache import BUDGET_STATUS
from ingestion.utils.numbers import percentage

logger = logging.getLogger(__name__)

# USD per single operation
DEFAULT_UNIT_COSTS = {
    "search_free": 0.0,
    "search_paid": 0.005,  # $5 per 1000 queries
    "ai_gemini": 0.0001,
    "ai_claude": 0.0003,
    "ai_other": 0.0002,
}

# category -> (counter field, cost field)
COST_CATEGORIES = {
    "search_free": ("search_queries_free", "cost_search"),
    "search_paid": ("search_queries_paid", "cost_search"),
    "ai_gemini": ("ai_calls_gemini", "cost_ai"),
    "ai_claude": ("ai_calls_claude", "cost_ai"),
    "ai_other": ("ai_calls_other", "cost_ai"),
}

DEFAULT_RETRY_AFTER_SECONDS = 3600


@dataclass
class ThrottleStatus:
    """Result of a throttle check."""

    throttled: bool
    reason: Optional[str]
    current_cost: float
    daily_limit: float
    monthly_limit: float
    percentage_used: float
    remaining_budget: float
    monthly_cost: float = 0.0
    monthly_percentage_used: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AdmissionDecision:
    """Whether a new discovery/extraction run may start."""

    allowed: bool
    estimated_cost: float
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class BudgetLedger:
    """
    Per-day cost ledger and throttle controller.

    Args:
        days: Repository over BudgetDay (built from the cache when omitted)
        cache: QueryCache used for the dashboard status read
        daily_limit, monthly_limit, threshold: Override settings
        unit_costs: Override per-operation prices
    """

    def __init__(
        self,
        days: Optional[Repository] = None,
        cache=None,
        daily_limit: Optional[float] = None,
        monthly_limit: Optional[float] = None,
        threshold: Optional[float] = None,
        unit_costs: Optional[Dict[str, float]] = None,
    ):
        self.cache = cache
        self.days = days or Repository(BudgetDay, cache=cache, cache_namespaces=[BUDGET_STATUS])
        self.daily_limit = float(
            daily_limit if daily_limit is not None else getattr(settings, "DAILY_BUDGET_LIMIT", 50)
        )
        self.monthly_limit = float(
            monthly_limit if monthly_limit is not None else getattr(settings, "MONTHLY_BUDGET_LIMIT", 1000)
        )
        self.threshold = float(
            threshold if threshold is not None else getattr(settings, "BUDGET_THROTTLE_THRESHOLD", 0.8)
        )
        self.unit_costs = dict(DEFAULT_UNIT_COSTS)
        self.unit_costs.update(getattr(settings, "BUDGET_UNIT_COSTS", {}) or {})
        if unit_costs:
            self.unit_costs.update(unit_costs)

        if self.daily_limit <= 0 or self.monthly_limit <= 0:
            raise ValidationError("Budget limits must be positive")
        if not 0 < self.threshold <= 1:
            raise ValidationError("Throttle threshold must be in (0, 1]")

    @property
    def throttle_at(self) -> float:
        return self.daily_limit * self.threshold

    def _today(self) -> date:
        return timezone.now().date()

    def _get_or_create_day(self, day: Optional[date] = None) -> BudgetDay:
        record, created = self.days.get_or_create(date=day or self._today())
        if created:
            logger.info(f"Created budget record for {record.date}")
        return record

    # --------------------------------------------------------
    # Recording
    # --------------------------------------------------------

    def record_cost(self, category: str, amount: float, count: int = 1) -> None:
        """
        Atomically add a cost to today's counters.

        Args:
            category: One of COST_CATEGORIES
            amount: Cost in USD (>= 0)
            count: Number of operations the cost covers

        Raises:
            ValidationError: unknown category or negative amount/count
        """
        if category not in COST_CATEGORIES:
            raise ValidationError(f"Unknown cost category: {category}", details={"field": "category"})
        if amount < 0 or count < 0:
            raise ValidationError("Costs and counts cannot be negative", details={"field": "amount"})

        counter_field, cost_field = COST_CATEGORIES[category]
        day = self._get_or_create_day()
        self.days.increment(
            day.pk,
            **{counter_field: count, cost_field: float(amount), "cost_total": float(amount)},
        )
        logger.debug(f"Recorded {count} {category} operations costing ${amount:.4f}")

    def record_usage(
        self,
        search_queries_free: int = 0,
        search_queries_paid: int = 0,
        ai_calls_gemini: int = 0,
        ai_calls_claude: int = 0,
        ai_calls_other: int = 0,
    ) -> float:
        """
        Record operation counts from a run, priced with the unit costs.

        Returns:
            Total USD recorded
        """
        counts = {
            "search_free": search_queries_free,
            "search_paid": search_queries_paid,
            "ai_gemini": ai_calls_gemini,
            "ai_claude": ai_calls_claude,
            "ai_other": ai_calls_other,
        }
        total = 0.0
        with transaction.atomic():
            for category, count in counts.items():
                if not count:
                    continue
                amount = count * self.unit_costs[category]
                self.record_cost(category, amount, count=count)
                total += amount
        return total

    def record_throttle_event(self, reason: str) -> None:
        """Append a throttle event to today's record."""
        day = self._get_or_create_day()
        with transaction.atomic():
            locked = self.days.lock(day.pk)
            events = list(locked.throttle_events or [])
            events.append({"timestamp": timezone.now().isoformat(), "reason": reason})
            self.days.update(day.pk, throttle_events=events)
        logger.warning(f"Budget throttle: {reason}")
        capture_alert(f"Budget throttle: {reason}", level="warning", extra_data={"date": day.date.isoformat()})

    # --------------------------------------------------------
    # Reads
    # --------------------------------------------------------

    def get_day(self, day: Optional[date] = None) -> Optional[BudgetDay]:
        records = self.days.query({"date": day or self._today()}, limit=1)
        return records[0] if records else None

    def get_monthly_totals(self, year: int, month: int) -> Dict[str, Any]:
        """
        Sum the daily records of one month.

        Returns:
            Dict with counters, costs and the number of days recorded
        """
        last_day = calendar.monthrange(year, month)[1]
        filters = {"date__gte": date(year, month, 1), "date__lte": date(year, month, last_day)}
        fields = [
            "search_queries_free", "search_queries_paid",
            "ai_calls_gemini", "ai_calls_claude", "ai_calls_other",
            "cost_search", "cost_ai", "cost_total",
        ]
        sums = self.days.aggregate(filters, **{name: Sum(name) for name in fields})
        totals = {name: (sums[name] or 0) for name in fields}
        totals["days_recorded"] = self.days.count(filters)
        totals["year"] = year
        totals["month"] = month
        return totals

    def is_throttled(self) -> ThrottleStatus:
        """
        Check the throttle state. Pure read: throttle events are only recorded
        when admission is actually denied.
        """
        today = self.get_day()
        current_cost = today.cost_total if today else 0.0
        now = timezone.now()
        monthly_cost = self.get_monthly_totals(now.year, now.month)["cost_total"]

        status = ThrottleStatus(
            throttled=False,
            reason=None,
            current_cost=current_cost,
            daily_limit=self.daily_limit,
            monthly_limit=self.monthly_limit,
            percentage_used=percentage(current_cost, self.daily_limit),
            remaining_budget=max(0.0, self.daily_limit - current_cost),
            monthly_cost=monthly_cost,
            monthly_percentage_used=percentage(monthly_cost, self.monthly_limit),
        )

        if current_cost >= self.throttle_at:
            status.throttled = True
            status.reason = (
                f"Daily budget at {status.percentage_used:.1f}% "
                f"({current_cost:.2f}/{self.daily_limit:g} USD). "
                f"Throttle threshold: {self.threshold * 100:.0f}%"
            )
        elif monthly_cost >= self.monthly_limit:
            status.throttled = True
            status.reason = (
                f"Monthly budget exceeded: {monthly_cost:.2f}/{self.monthly_limit:g} USD"
            )
        return status

    def estimate_run_cost(
        self,
        estimated_search_queries: int = 0,
        estimated_ai_calls: int = 0,
        use_free_tier: bool = True,
    ) -> float:
        """Estimate a run's cost. AI calls are assumed split evenly between providers."""
        search_cost = 0.0 if use_free_tier else estimated_search_queries * self.unit_costs["search_paid"]
        half = estimated_ai_calls / 2
        ai_cost = half * self.unit_costs["ai_gemini"] + half * self.unit_costs["ai_claude"]
        return search_cost + ai_cost

    # --------------------------------------------------------
    # Admission
    # --------------------------------------------------------

    def admit_new_run(
        self,
        estimated_search_queries: int = 0,
        estimated_ai_calls: int = 0,
        use_free_tier: bool = True,
    ) -> AdmissionDecision:
        """
        Decide whether a new run may start. Denials are recorded as throttle events.
        """
        estimated_cost = self.estimate_run_cost(estimated_search_queries, estimated_ai_calls, use_free_tier)
        status = self.is_throttled()

        reason = None
        if status.throttled:
            reason = status.reason
        elif estimated_cost > status.remaining_budget:
            reason = (
                f"Estimated cost (${estimated_cost:.2f}) exceeds remaining daily budget "
                f"(${status.remaining_budget:.2f})"
            )

        if reason:
            self.record_throttle_event(reason)
            return AdmissionDecision(allowed=False, estimated_cost=estimated_cost, reason=reason)
        return AdmissionDecision(allowed=True, estimated_cost=estimated_cost)

    def require_admission(self, **estimate) -> AdmissionDecision:
        """
        Like admit_new_run() but raises when denied.

        Raises:
            BudgetExceededError: admission denied (retry later)
        """
        decision = self.admit_new_run(**estimate)
        if not decision.allowed:
            retry_after = getattr(settings, "BUDGET_RETRY_AFTER_SECONDS", DEFAULT_RETRY_AFTER_SECONDS)
            raise BudgetExceededError(decision.reason, retry_after_seconds=retry_after)
        return decision

    def get_status(self) -> Dict[str, Any]:
        """Budget overview for the admin dashboard."""
        def load():
            today = self.get_day()
            now = timezone.now()
            return {
                "today": {
                    "date": self._today().isoformat(),
                    "search_queries_free": today.search_queries_free if today else 0,
                    "search_queries_paid": today.search_queries_paid if today else 0,
                    "ai_calls_gemini": today.ai_calls_gemini if today else 0,
                    "ai_calls_claude": today.ai_calls_claude if today else 0,
                    "ai_calls_other": today.ai_calls_other if today else 0,
                    "cost_search": today.cost_search if today else 0.0,
                    "cost_ai": today.cost_ai if today else 0.0,
                    "cost_total": today.cost_total if today else 0.0,
                    "throttle_events": list(today.throttle_events) if today else [],
                },
                "month": self.get_monthly_totals(now.year, now.month),
                "limits": {
                    "daily": self.daily_limit,
                    "monthly": self.monthly_limit,
                    "throttle_threshold": self.threshold,
                },
                "throttle": self.is_throttled().to_dict(),
            }

        if self.cache is None:
            return load()
        return self.cache.get_or_set(BUDGET_STATUS, {"date": self._today().isoformat()}, load)
