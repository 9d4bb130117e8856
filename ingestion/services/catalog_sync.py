"""
Catalog Sync - promotes approved staged entities to the production catalog.

Auto-routing and manual approval without promotion leave entities in
"approved". A sync pass picks them up:

- preview: what a pass would promote, grouped by entity type, plus the
  children that are blocked because their venue is not in the catalog yet
- execute: promote every approved entity (or the given ids), venues first
  so their dishes, promotions and availability records can be linked to
  the new catalog venue. Each entity is promoted in its own transaction;
  one failure never undoes the others.
- history: past passes, newest first, with aggregates over recent days

Every executed pass is recorded as a CatalogSync row.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

from django.db.models import Sum
from django.utils import timezone

from ingestion.exceptions import IngestionError, ValidationError
from ingestion.models import CatalogSync, EntityType, RunTrigger, StagedEntity, StagingStatus
from ingestion.repository import Repository
from ingestion.services.staging import StagingStore

logger = logging.getLogger(__name__)

# Venues go first so children can resolve their catalog venue
PROMOTION_ORDER = (
    EntityType.VENUE,
    EntityType.DISH,
    EntityType.PROMOTION,
    EntityType.AVAILABILITY,
)

SCHEDULED_EXECUTOR = "system:scheduled-sync"


@dataclass
class SyncOutcome:
    """Result of promoting one staged entity."""

    id: str
    entity_type: str
    promoted: bool
    production_id: Optional[str] = None
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = {"id": self.id, "entity_type": self.entity_type, "promoted": self.promoted}
        if self.production_id:
            data["production_id"] = self.production_id
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class SyncResult:
    sync_id: str
    outcomes: List[SyncOutcome] = field(default_factory=list)

    @property
    def promoted(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.promoted)

    @property
    def failed(self) -> int:
        return len(self.outcomes) - self.promoted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sync_id": self.sync_id,
            "results": [outcome.to_dict() for outcome in self.outcomes],
            "summary": {
                "requested": len(self.outcomes),
                "promoted": self.promoted,
                "failed": self.failed,
            },
        }


def _blocked_reason(entity: StagedEntity, parent_approved_ok: bool = False) -> str:
    """
    Why a child entity cannot be promoted yet, or "" when it can.

    parent_approved_ok accepts an approved parent venue, which a pass
    promotes before its children.
    """
    if entity.entity_type == EntityType.VENUE or entity.production_venue_id:
        return ""
    parent = entity.staged_venue
    if parent is None or parent.status == StagingStatus.PROMOTED:
        return ""
    if parent_approved_ok and parent.status == StagingStatus.APPROVED:
        return ""
    return f"Venue {parent.id} is not in the catalog yet ({parent.status})"


class CatalogSyncService:
    """
    Promotion passes over approved staged entities.

    Args:
        staging: StagingStore that performs each promotion
        syncs: Repository over CatalogSync
    """

    def __init__(self, staging: StagingStore, syncs: Optional[Repository] = None):
        self.staging = staging
        self.syncs = syncs or Repository(CatalogSync)

    def _approved(self, ids: Optional[Sequence[Any]] = None) -> List[StagedEntity]:
        qs = (
            StagedEntity.objects.filter(status=StagingStatus.APPROVED)
            .select_related("staged_venue")
            .order_by("created_at", "id")
        )
        if ids is not None:
            qs = qs.filter(pk__in=[str(i) for i in ids])
        order = {entity_type: index for index, entity_type in enumerate(PROMOTION_ORDER)}
        return sorted(qs, key=lambda entity: order.get(entity.entity_type, len(order)))

    # --------------------------------------------------------
    # Preview
    # --------------------------------------------------------

    def preview(self) -> Dict[str, Any]:
        """
        Approved entities a pass would promote.

        Returns:
            Dict with "additions" per entity type, "blocked" children and
            "stats" counts
        """
        additions: Dict[str, List[Dict[str, Any]]] = {entity_type: [] for entity_type in PROMOTION_ORDER}
        blocked: List[Dict[str, Any]] = []

        for entity in self._approved():
            summary = {
                "id": str(entity.id),
                "name": entity.name,
                "country": entity.country,
                "chain_id": entity.chain_id,
                "confidence_score": entity.confidence_score,
                "reviewed_by": entity.reviewed_by,
                "reviewed_at": entity.reviewed_at,
            }
            if entity.staged_venue_id:
                summary["staged_venue_id"] = str(entity.staged_venue_id)
            reason = _blocked_reason(entity, parent_approved_ok=True)
            if reason:
                blocked.append(dict(summary, entity_type=entity.entity_type, reason=reason))
            else:
                additions[entity.entity_type].append(summary)

        by_type = {entity_type: len(items) for entity_type, items in additions.items()}
        return {
            "additions": additions,
            "blocked": blocked,
            "stats": {
                "total": sum(by_type.values()),
                "blocked": len(blocked),
                "by_type": by_type,
            },
        }

    # --------------------------------------------------------
    # Execute
    # --------------------------------------------------------

    def execute(
        self,
        executed_by: str,
        ids: Optional[Sequence[Any]] = None,
        triggered_by: str = RunTrigger.MANUAL,
    ) -> SyncResult:
        """
        Promote approved entities and record the pass.

        Args:
            executed_by: Reviewer email or system identifier
            ids: Only these staged entities (None for every approved one).
                Ids that are not approved are ignored.
            triggered_by: manual or scheduled

        Raises:
            ValidationError: empty executor or an empty id list
        """
        if not executed_by:
            raise ValidationError("executed_by is required", details={"field": "executed_by"})
        if ids is not None and not ids:
            raise ValidationError("No ids given", details={"field": "ids"})

        sync = self.syncs.create(executed_by=executed_by, triggered_by=triggered_by)
        result = SyncResult(sync_id=str(sync.id))

        for entity in self._approved(ids):
            result.outcomes.append(self._promote_one(entity))

        counts_by_type = {entity_type: 0 for entity_type in PROMOTION_ORDER}
        for outcome in result.outcomes:
            if outcome.promoted:
                counts_by_type[outcome.entity_type] = counts_by_type.get(outcome.entity_type, 0) + 1

        self.syncs.update(
            sync.pk,
            requested=len(result.outcomes),
            promoted=result.promoted,
            failed=result.failed,
            counts_by_type=counts_by_type,
            promoted_ids=[outcome.id for outcome in result.outcomes if outcome.promoted],
            errors=[
                {"id": outcome.id, "entity_type": outcome.entity_type, "error": outcome.error}
                for outcome in result.outcomes if not outcome.promoted
            ],
            completed_at=timezone.now(),
        )
        logger.info(
            f"Catalog sync {sync.id} by {executed_by}: "
            f"{result.promoted} promoted, {result.failed} failed"
        )
        return result

    def _promote_one(self, entity: StagedEntity) -> SyncOutcome:
        outcome = SyncOutcome(id=str(entity.id), entity_type=entity.entity_type, promoted=False)

        # Re-read the parent: it may have been promoted earlier in this pass
        if entity.staged_venue_id:
            entity.staged_venue = self.staging.get(entity.staged_venue_id)
        reason = _blocked_reason(entity)
        if reason:
            outcome.error = reason
            return outcome

        try:
            promoted, _ = self.staging.promote(entity.pk)
        except IngestionError as e:
            outcome.error = e.message
            return outcome
        except Exception as e:
            logger.exception(f"Catalog sync failed for {entity.id}")
            outcome.error = str(e)
            return outcome

        outcome.promoted = True
        outcome.production_id = promoted.production_id
        return outcome

    # --------------------------------------------------------
    # History
    # --------------------------------------------------------

    def history(self, limit: int = 50, offset: int = 0, days: int = 30) -> Dict[str, Any]:
        """
        Past sync passes, newest first.

        Returns:
            Dict with "items", "total", "has_more", "last_sync" and
            aggregate totals over the last `days` days
        """
        if not 1 <= limit <= 200:
            raise ValidationError("limit must be 1-200", details={"field": "limit"})

        items = self.syncs.query(order_by=["-created_at"], limit=limit, offset=offset)
        total = self.syncs.count()
        last = self.syncs.query(order_by=["-created_at"], limit=1)

        since = timezone.now() - timedelta(days=days)
        recent = {"created_at__gte": since}
        sums = self.syncs.aggregate(recent, promoted=Sum("promoted"), failed=Sum("failed"))
        return {
            "items": items,
            "total": total,
            "has_more": offset + len(items) < total,
            "last_sync": last[0] if last else None,
            "recent": {
                "days": days,
                "syncs": self.syncs.count(recent),
                "promoted": sums["promoted"] or 0,
                "failed": sums["failed"] or 0,
            },
        }
