"""
Strategy Registry - learned discovery and dish-extraction strategies.

A strategy is a search query template or extraction config for one platform,
optionally specialised for a chain. The registry tracks how often each one
worked so discovery runs can prefer the strategies with evidence behind them.

Invariants:
- total_uses == successful_uses + failed_uses
- success_rate == round_half_up(100 * successful / total) once used, else the
  value it was created with (50 for seeds, the parent's rate for evolved ones)
- deprecation is terminal: usage recording raises StrategyDeprecatedError
- tiers only trust a success rate after MIN_USES_FOR_TIER uses
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from ingestion.exceptions import StrategyDeprecatedError, ValidationError
from ingestion.models import Strategy, StrategyKind, StrategyOrigin
from ingestion.repository import Repository
from ingestion.services.cache import STRATEGIES
from ingestion.utils.numbers import round_half_up

logger = logging.getLogger(__name__)

MIN_USES_FOR_TIER = 5
HIGH_TIER_MIN_RATE = 70
MEDIUM_TIER_MIN_RATE = 40


def compute_success_rate(successful: int, total: int, default: int = Strategy.NEUTRAL_SUCCESS_RATE) -> int:
    """100 * successful / total rounded half-up, default when never used."""
    if total <= 0:
        return default
    return round_half_up(100 * successful / total)


@dataclass
class StrategyTiers:
    """Active strategies grouped by how well they perform."""

    high: List[Strategy] = field(default_factory=list)
    medium: List[Strategy] = field(default_factory=list)
    low: List[Strategy] = field(default_factory=list)
    untested: List[Strategy] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        return {
            "high": len(self.high),
            "medium": len(self.medium),
            "low": len(self.low),
            "untested": len(self.untested),
        }


class StrategyRegistry:
    """
    Catalog of strategies with success-rate bookkeeping.

    Args:
        strategies: Repository over Strategy
        cache: QueryCache invalidated on mutation
    """

    def __init__(self, strategies: Optional[Repository] = None, cache=None):
        self.strategies = strategies or Repository(Strategy, cache=cache, cache_namespaces=[STRATEGIES])

    def _active(self, kind: str, platform: Optional[str] = None, country: Optional[str] = None):
        qs = self.strategies.all().filter(kind=kind, deprecated_at__isnull=True)
        if platform:
            qs = qs.filter(platform=platform)
        if country:
            qs = qs.filter(Q(country=country.upper()) | Q(country=""))
        return qs

    # --------------------------------------------------------
    # Creation
    # --------------------------------------------------------

    def create(
        self,
        platform: str,
        config: Dict[str, Any],
        kind: str = StrategyKind.DISCOVERY,
        country: str = "",
        chain_id: Optional[str] = None,
        tags: Optional[List[str]] = None,
        success_rate: int = Strategy.NEUTRAL_SUCCESS_RATE,
    ) -> Strategy:
        """
        Create a seed strategy.

        Raises:
            ValidationError: unknown kind, empty platform or rate outside 0-100
        """
        if kind not in StrategyKind.values:
            raise ValidationError(f"Unknown strategy kind: {kind}", details={"field": "kind"})
        if not platform:
            raise ValidationError("Platform is required", details={"field": "platform"})
        if not 0 <= success_rate <= 100:
            raise ValidationError("success_rate must be 0-100", details={"field": "success_rate"})

        strategy = self.strategies.create(
            kind=kind,
            platform=platform,
            country=(country or "").upper(),
            chain_id=chain_id or None,
            config=config or {},
            tags=list(tags or []),
            success_rate=success_rate,
            origin=StrategyOrigin.SEED,
        )
        logger.info(f"Created {kind} strategy {strategy.id} for {platform}")
        return strategy

    def evolve(self, parent_id, new_config: Dict[str, Any], tags: Optional[List[str]] = None) -> Strategy:
        """
        Create a child strategy from a parent.

        The child starts with zero usage and the parent's current success rate
        as its prior, so an untested variant is not judged by the parent's
        full history.

        Raises:
            NotFoundError: parent does not exist
            StrategyDeprecatedError: parent is deprecated
        """
        parent = self.strategies.get_or_raise(parent_id)
        if not parent.is_active:
            raise StrategyDeprecatedError(parent.id, parent.deprecation_reason)

        child = self.strategies.create(
            kind=parent.kind,
            platform=parent.platform,
            country=parent.country,
            chain_id=parent.chain_id,
            config=new_config or {},
            tags=list(tags if tags is not None else parent.tags),
            success_rate=parent.success_rate,
            origin=StrategyOrigin.EVOLVED,
            parent_strategy=parent,
        )
        logger.info(f"Evolved strategy {child.id} from {parent.id}")
        return child

    def seed_strategies(self, definitions: Iterable[Dict[str, Any]]) -> int:
        """
        Create seed strategies that do not exist yet.

        A definition already exists when a strategy with the same kind,
        platform, country, chain and config is stored (deprecated included,
        so reseeding never resurrects a retired strategy).

        Returns:
            Number of strategies created
        """
        created = 0
        for definition in definitions:
            kind = definition.get("kind", StrategyKind.DISCOVERY)
            platform = definition["platform"]
            country = (definition.get("country") or "").upper()
            chain_id = definition.get("chain_id") or None
            config = definition.get("config") or {}

            existing = self.strategies.query({
                "kind": kind,
                "platform": platform,
                "country": country,
                "chain_id": chain_id,
            })
            if any(s.config == config for s in existing):
                continue

            self.create(
                platform=platform,
                config=config,
                kind=kind,
                country=country,
                chain_id=chain_id,
                tags=definition.get("tags"),
                success_rate=definition.get("success_rate", Strategy.NEUTRAL_SUCCESS_RATE),
            )
            created += 1

        logger.info(f"Seeded {created} strategies")
        return created

    # --------------------------------------------------------
    # Lookup
    # --------------------------------------------------------

    def get(self, strategy_id) -> Optional[Strategy]:
        return self.strategies.get(strategy_id)

    def get_strategy(
        self,
        platform: str,
        chain_id: Optional[str] = None,
        kind: str = StrategyKind.DISCOVERY,
        country: Optional[str] = None,
    ) -> Optional[Strategy]:
        """
        Best active strategy for a platform.

        Prefers an active chain-specific strategy, then the platform-wide
        strategy with the highest success rate. Deprecated strategies are
        never returned.
        """
        active = self._active(kind, platform, country)
        ordering = ("-success_rate", "-total_uses", "created_at")

        if chain_id:
            chain_strategy = active.filter(chain_id=chain_id).order_by(*ordering).first()
            if chain_strategy is not None:
                return chain_strategy

        return active.filter(chain_id__isnull=True).order_by(*ordering).first()

    def get_active_strategies(
        self,
        platform: Optional[str] = None,
        kind: str = StrategyKind.DISCOVERY,
        country: Optional[str] = None,
        min_success_rate: Optional[int] = None,
        tags: Optional[List[str]] = None,
    ) -> List[Strategy]:
        """Active strategies, best first, optionally filtered by rate and any-of tags."""
        qs = self._active(kind, platform, country)
        if min_success_rate is not None:
            qs = qs.filter(success_rate__gte=min_success_rate)
        strategies = list(qs.order_by("-success_rate", "created_at"))
        if tags:
            strategies = [s for s in strategies if any(tag in (s.tags or []) for tag in tags)]
        return strategies

    def get_top_strategies(self, limit: int = 10, kind: str = StrategyKind.DISCOVERY) -> List[Strategy]:
        """Best tested strategies (at least MIN_USES_FOR_TIER uses)."""
        qs = self._active(kind).filter(total_uses__gte=MIN_USES_FOR_TIER)
        return list(qs.order_by("-success_rate", "-total_uses")[:limit])

    def get_undertested_strategies(self, max_uses: int = MIN_USES_FOR_TIER, kind: str = StrategyKind.DISCOVERY) -> List[Strategy]:
        """Active strategies that still need exploration, least used first."""
        qs = self._active(kind).filter(total_uses__lt=max_uses)
        return list(qs.order_by("total_uses", "-success_rate"))

    def get_strategy_tiers(self, kind: Optional[str] = None) -> StrategyTiers:
        """Group active strategies into high / medium / low / untested."""
        qs = self.strategies.all().filter(deprecated_at__isnull=True)
        if kind:
            qs = qs.filter(kind=kind)

        tiers = StrategyTiers()
        for strategy in qs.order_by("-success_rate"):
            if strategy.total_uses < MIN_USES_FOR_TIER:
                tiers.untested.append(strategy)
            elif strategy.success_rate >= HIGH_TIER_MIN_RATE:
                tiers.high.append(strategy)
            elif strategy.success_rate >= MEDIUM_TIER_MIN_RATE:
                tiers.medium.append(strategy)
            else:
                tiers.low.append(strategy)
        return tiers

    # --------------------------------------------------------
    # Usage and lifecycle
    # --------------------------------------------------------

    def record_usage(self, strategy_id, success: bool, false_positive: bool = False) -> Strategy:
        """
        Record one use of a strategy and recompute its success rate.

        Counters are incremented with F() expressions while the row is locked,
        and the rate is derived from the counters read back afterwards, so
        concurrent callers never lose an update.

        Args:
            strategy_id: Strategy to update
            success: Whether the use produced a verified result
            false_positive: Failure that produced a wrong candidate

        Raises:
            NotFoundError: strategy does not exist
            StrategyDeprecatedError: strategy is deprecated
        """
        with transaction.atomic():
            strategy = self.strategies.lock(strategy_id)
            if not strategy.is_active:
                raise StrategyDeprecatedError(strategy.id, strategy.deprecation_reason)

            deltas = {"total_uses": 1}
            if success:
                deltas["successful_uses"] = 1
            else:
                deltas["failed_uses"] = 1
                if false_positive:
                    deltas["false_positives"] = 1
            self.strategies.increment(strategy.pk, **deltas)

            strategy.refresh_from_db(fields=["total_uses", "successful_uses"])
            strategy = self.strategies.update(
                strategy.pk,
                success_rate=compute_success_rate(strategy.successful_uses, strategy.total_uses),
                last_used_at=timezone.now(),
            )

        logger.debug(
            f"Strategy {strategy.id} used ({'success' if success else 'failure'}), "
            f"rate {strategy.success_rate}% over {strategy.total_uses} uses"
        )
        return strategy

    def deprecate(self, strategy_id, reason: str) -> Strategy:
        """
        Retire a strategy. Deprecating twice keeps the first timestamp and reason.

        Raises:
            NotFoundError: strategy does not exist
        """
        with transaction.atomic():
            strategy = self.strategies.lock(strategy_id)
            if not strategy.is_active:
                return strategy
            strategy = self.strategies.update(
                strategy.pk,
                deprecated_at=timezone.now(),
                deprecation_reason=reason,
            )
        logger.info(f"Deprecated strategy {strategy.id}: {reason}")
        return strategy

    def deprecate_underperformers(self, min_uses: int = 10, max_success_rate: int = 20) -> List[Strategy]:
        """
        Deprecate tested strategies whose success rate stayed below max_success_rate.

        Returns:
            The strategies deprecated by this call
        """
        candidates = self.strategies.query({
            "deprecated_at__isnull": True,
            "total_uses__gte": min_uses,
            "success_rate__lt": max_success_rate,
        })
        deprecated = []
        for strategy in candidates:
            reason = (
                f"Success rate {strategy.success_rate}% after {strategy.total_uses} uses "
                f"(below {max_success_rate}%)"
            )
            deprecated.append(self.deprecate(strategy.pk, reason))
        if deprecated:
            logger.info(f"Deprecated {len(deprecated)} underperforming strategies")
        return deprecated

