"""
Staging Store - staged entities and the staging state machine.

Everything a scraper or partner produces is held here until it has been
scored and reviewed. Only promote() writes to the production catalog.

State machine:

    pending      -> validating, needs_review, approved, rejected
    validating   -> needs_review, approved, rejected
    needs_review -> approved, rejected
    approved     -> promoted, needs_review (flag added)
    rejected     -> needs_review (flag added)
    promoted     -> (terminal)

Rules:
- pending is the only entry state
- approved / rejected always carry a review (reviewer, decision, timestamp)
- promoted requires a production_id and is terminal; add_flag is a no-op there
- add_flag forces needs_review from every other state

Deduplication on insert:
    An open record (pending, validating, needs_review) with the same
    (partner, entity_type, external_id), or for availability the same
    (production_venue_id, product_sku), is updated instead of duplicated:
    the newer payload wins, flags are merged and the confidence score is
    reset to the newly supplied value. The check runs under row locks on
    StagingKeyLock rows for those keys, so concurrent submissions of the same
    fact serialize even when they come from different discovery runs.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from django.conf import settings
from django.db import transaction
from django.db.models import Count, Q
from django.utils import timezone

from ingestion.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from ingestion.models import (
    CatalogRecord,
    DiscoveryRun,
    EntityType,
    Partner,
    ReviewDecisionChoices,
    StagedEntity,
    StagingKeyLock,
    StagingStatus,
)
from ingestion.payloads import payload_from_dict, payload_to_dict
from ingestion.repository import Repository
from ingestion.services.cache import REVIEW_QUEUE
from ingestion.services.confidence import ConfidenceResult
from ingestion.services.hooks import after_commit

logger = logging.getLogger(__name__)

S = StagingStatus

TRANSITIONS = {
    S.PENDING: {S.VALIDATING, S.NEEDS_REVIEW, S.APPROVED, S.REJECTED},
    S.VALIDATING: {S.NEEDS_REVIEW, S.APPROVED, S.REJECTED},
    S.NEEDS_REVIEW: {S.APPROVED, S.REJECTED},
    S.APPROVED: {S.PROMOTED, S.NEEDS_REVIEW},
    S.REJECTED: {S.NEEDS_REVIEW},
    S.PROMOTED: set(),
}

OPEN_STATUSES = (S.PENDING, S.VALIDATING, S.NEEDS_REVIEW)
REVIEWABLE_STATUSES = (S.PENDING, S.VALIDATING, S.NEEDS_REVIEW)

AUTO_REVIEWER = "system:auto-route"


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, set())


def merge_flags(existing: Iterable[str], new: Iterable[str]) -> List[str]:
    """Ordered union of two flag lists."""
    merged = list(existing or [])
    for flag in new or []:
        if flag and flag not in merged:
            merged.append(flag)
    return merged


def dedup_keys(
    entity_type: str,
    partner: Optional[Partner],
    external_id: str,
    production_venue_id: str = "",
    product_sku: str = "",
) -> List[str]:
    """
    Lock keys for the facts a staged candidate could duplicate.

    Scraper candidates share the partner-less key space, so the same
    external_id staged by two discovery runs maps to one key.
    """
    keys = []
    if external_id:
        owner = str(partner.pk) if partner is not None else "-"
        keys.append(f"ext:{entity_type}:{owner}:{external_id}")
    if entity_type == EntityType.AVAILABILITY and production_venue_id and product_sku:
        keys.append(f"sku:{production_venue_id}:{product_sku}")
    # Sorted so two callers needing the same keys lock them in one order
    return sorted(k[:255] for k in keys)


@dataclass
class StagingPage:
    """One page of a staging query."""

    items: List[StagedEntity]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


DecisionHook = Callable[[StagedEntity, str, str, bool], Any]


class StagingStore:
    """
    Staged entity persistence plus the state machine and promotion.

    Args:
        entities: Repository over StagedEntity
        catalog: Repository over CatalogRecord
        cache: QueryCache, invalidated for the review queue on every mutation
        decision_hooks: Callables run best-effort after each approve/reject
            commits, called as hook(entity, decision, reviewer, automatic)
    """

    def __init__(
        self,
        entities: Optional[Repository] = None,
        catalog: Optional[Repository] = None,
        cache=None,
        decision_hooks: Optional[Sequence[DecisionHook]] = None,
    ):
        self.entities = entities or Repository(StagedEntity, cache=cache, cache_namespaces=[REVIEW_QUEUE])
        self.catalog = catalog or Repository(CatalogRecord)
        self.decision_hooks = list(decision_hooks or [])

    def add_decision_hook(self, hook: DecisionHook) -> None:
        self.decision_hooks.append(hook)

    # --------------------------------------------------------
    # Internal helpers
    # --------------------------------------------------------

    def _transition(self, entity: StagedEntity, target: str, **changes) -> StagedEntity:
        if not can_transition(entity.status, target):
            raise InvalidTransitionError(entity.id, entity.status, target)
        return self.entities.update(entity.pk, status=target, **changes)

    def _find_open_duplicate(
        self,
        entity_type: str,
        partner: Optional[Partner],
        external_id: str,
        production_venue_id: str,
        product_sku: str,
    ) -> Optional[StagedEntity]:
        open_entities = self.entities.all().filter(entity_type=entity_type, status__in=OPEN_STATUSES)

        if entity_type == EntityType.AVAILABILITY and production_venue_id and product_sku:
            match = (
                open_entities.filter(production_venue_id=production_venue_id, product_sku=product_sku)
                .order_by("created_at")
                .first()
            )
            if match is not None:
                return match

        if external_id:
            return (
                open_entities.filter(partner=partner, external_id=external_id)
                .order_by("created_at")
                .first()
            )
        return None

    @staticmethod
    def _lock_keys(keys: Sequence[str]) -> None:
        """Row-lock the dedup keys. Must be called inside transaction.atomic()."""
        for key in keys:
            lock, _ = StagingKeyLock.objects.get_or_create(key=key)
            StagingKeyLock.objects.select_for_update().get(pk=lock.pk)

    # --------------------------------------------------------
    # Insert / dedup
    # --------------------------------------------------------

    def stage(
        self,
        entity_type: str,
        payload,
        partner: Optional[Partner] = None,
        batch=None,
        external_id: str = "",
        production_venue_id: str = "",
        staged_venue: Optional[StagedEntity] = None,
        discovered_by_strategy=None,
        discovery_run: Optional[DiscoveryRun] = None,
        confidence: Optional[ConfidenceResult] = None,
        flags: Optional[Iterable[str]] = None,
        geocoding: Optional[Dict[str, Any]] = None,
    ) -> Tuple[StagedEntity, bool]:
        """
        Stage a candidate, or refresh the open record for the same fact.

        Args:
            entity_type: venue, dish, promotion or availability
            payload: Payload dataclass or a dict to validate into one
            partner: Submitting partner (None for scraper candidates)
            external_id: Producer's own key for idempotent upsert
            confidence: Score to store (None leaves the score at 0)

        Returns:
            Tuple of (entity, created)

        Raises:
            ValidationError: unknown entity type, invalid payload or a
                payload of another entity type
        """
        if isinstance(payload, dict):
            payload = payload_from_dict(entity_type, payload)
        if payload.entity_type != entity_type:
            raise ValidationError(
                f"Payload is a {payload.entity_type}, expected {entity_type}",
                details={"field": "entity_type"},
            )

        product_sku = getattr(payload, "product_sku", "") or ""
        flags = merge_flags([], flags or [])
        fields = {
            "payload": payload_to_dict(payload),
            "name": payload.display_name[:300],
            "country": (payload.country or "")[:2],
            "chain_id": getattr(payload, "chain_id", None) or "",
            "confidence_score": confidence.score if confidence else 0.0,
            "confidence_breakdown": confidence.to_breakdown_dict() if confidence else {},
        }
        if geocoding is not None:
            fields["geocoding"] = geocoding

        with transaction.atomic():
            self._lock_keys(dedup_keys(entity_type, partner, external_id, production_venue_id, product_sku))
            existing = self._find_open_duplicate(
                entity_type, partner, external_id, production_venue_id, product_sku,
            )

            if existing is not None:
                merged = merge_flags(existing.flags, flags)
                status = existing.status
                if merged and status != S.NEEDS_REVIEW:
                    status = S.NEEDS_REVIEW
                elif not merged and status == S.VALIDATING:
                    status = S.PENDING
                entity = self.entities.update(
                    existing.pk,
                    status=status,
                    flags=merged,
                    batch=batch or existing.batch,
                    discovery_run=discovery_run or existing.discovery_run,
                    discovered_by_strategy=discovered_by_strategy or existing.discovered_by_strategy,
                    **fields,
                )
                logger.info(f"Refreshed open staged {entity_type} {entity.id} (external_id={external_id!r})")
                return entity, False

            entity = self.entities.create(
                entity_type=entity_type,
                status=S.NEEDS_REVIEW if flags else S.PENDING,
                flags=flags,
                partner=partner,
                batch=batch,
                external_id=external_id or "",
                production_venue_id=production_venue_id or "",
                product_sku=product_sku,
                staged_venue=staged_venue,
                discovered_by_strategy=discovered_by_strategy,
                discovery_run=discovery_run,
                **fields,
            )
        logger.info(f"Staged {entity_type} {entity.id} '{entity.name}'")
        return entity, True

    # --------------------------------------------------------
    # Scoring and validation
    # --------------------------------------------------------

    def begin_validation(self, entity_id) -> StagedEntity:
        """pending -> validating while scoring or geocoding is in flight."""
        with transaction.atomic():
            entity = self.entities.lock(entity_id)
            return self._transition(entity, S.VALIDATING)

    def update_confidence(self, entity_id, result: ConfidenceResult) -> StagedEntity:
        """
        Persist a confidence result.

        Raises:
            InvalidTransitionError: entity is promoted
        """
        with transaction.atomic():
            entity = self.entities.lock(entity_id)
            if entity.status == S.PROMOTED:
                raise InvalidTransitionError(entity.id, entity.status, entity.status)
            return self.entities.update(
                entity.pk,
                confidence_score=result.score,
                confidence_breakdown=result.to_breakdown_dict(),
            )

    def update_geocoding(self, entity_id, geocoding: Dict[str, Any]) -> StagedEntity:
        """Store a geocoding result on a venue."""
        with transaction.atomic():
            entity = self.entities.lock(entity_id)
            if entity.entity_type != EntityType.VENUE:
                raise ValidationError("Only venues are geocoded", details={"field": "entity_type"})
            if entity.status == S.PROMOTED:
                raise InvalidTransitionError(entity.id, entity.status, entity.status)
            return self.entities.update(entity.pk, geocoding=dict(geocoding))

    def correct_payload(self, entity_id, corrections: Dict[str, Any]) -> StagedEntity:
        """
        Apply reviewer corrections to an open entity's payload.

        The corrected payload is validated again before it is stored.
        """
        with transaction.atomic():
            entity = self.entities.lock(entity_id)
            if entity.status not in REVIEWABLE_STATUSES:
                raise InvalidTransitionError(entity.id, entity.status, entity.status)
            merged = dict(entity.payload)
            merged.update(corrections)
            payload = payload_from_dict(entity.entity_type, merged)
            return self.entities.update(
                entity.pk,
                payload=payload_to_dict(payload),
                name=payload.display_name[:300],
            )

    def add_flag(self, entity_id, flag: str) -> StagedEntity:
        """
        Append a flag and force the entity into needs_review.

        Promoted entities are terminal: the call is a no-op and the entity is
        returned unchanged.
        """
        if not flag:
            raise ValidationError("Flag cannot be empty", details={"field": "flag"})

        with transaction.atomic():
            entity = self.entities.lock(entity_id)
            if entity.status == S.PROMOTED:
                logger.debug(f"Ignoring flag '{flag}' on promoted entity {entity.id}")
                return entity

            flags = merge_flags(entity.flags, [flag])
            if entity.status == S.NEEDS_REVIEW:
                return self.entities.update(entity.pk, flags=flags)
            entity = self._transition(entity, S.NEEDS_REVIEW, flags=flags)

        logger.info(f"Flagged {entity.entity_type} {entity.id}: {flag}")
        return entity

    def route_by_confidence(self, entity_id, reviewer: str = AUTO_REVIEWER) -> StagedEntity:
        """
        Auto-route an entity on its confidence score.

        - approved when score >= partner threshold, no flags and the partner
          does not require manual review
        - rejected when score < STAGING_AUTO_REJECT_THRESHOLD
        - needs_review otherwise
        """
        with transaction.atomic():
            entity = self.entities.lock(entity_id)
            if entity.status not in (S.PENDING, S.VALIDATING):
                raise InvalidTransitionError(entity.id, entity.status, "routed")

            partner = entity.partner
            threshold = (
                partner.auto_approve_threshold
                if partner is not None
                else getattr(settings, "STAGING_DEFAULT_AUTO_APPROVE_THRESHOLD", 85)
            )
            manual_review = partner.requires_manual_review if partner is not None else False
            reject_below = getattr(settings, "STAGING_AUTO_REJECT_THRESHOLD", 25)
            score = entity.confidence_score

            if score >= threshold and not entity.flags and not manual_review:
                return self._decide(
                    entity, ReviewDecisionChoices.APPROVED, reviewer,
                    notes=f"Auto-approved at confidence {score}", automatic=True,
                )
            if score < reject_below:
                return self._decide(
                    entity, ReviewDecisionChoices.REJECTED, reviewer,
                    notes=f"Auto-rejected at confidence {score}", automatic=True,
                )
            return self._transition(entity, S.NEEDS_REVIEW)

    # --------------------------------------------------------
    # Review decisions
    # --------------------------------------------------------

    def _decide(
        self,
        entity: StagedEntity,
        decision: str,
        reviewer: str,
        notes: str = "",
        automatic: bool = False,
    ) -> StagedEntity:
        if not reviewer:
            raise ValidationError("Reviewer is required", details={"field": "reviewer"})
        target = S.APPROVED if decision == ReviewDecisionChoices.APPROVED else S.REJECTED
        entity = self._transition(
            entity,
            target,
            reviewed_by=reviewer,
            review_decision=decision,
            review_notes=notes or "",
            reviewed_at=timezone.now(),
        )
        for hook in self.decision_hooks:
            after_commit(
                getattr(hook, "__name__", "decision_hook"),
                hook, entity, decision, reviewer, automatic,
            )
        logger.info(f"{entity.entity_type} {entity.id} {decision} by {reviewer}")
        return entity

    def approve(self, entity_id, reviewer: str, notes: str = "", automatic: bool = False) -> StagedEntity:
        """
        Approve an open entity.

        Raises:
            NotFoundError: entity does not exist
            InvalidTransitionError: entity is not open for review
        """
        with transaction.atomic():
            entity = self.entities.lock(entity_id)
            return self._decide(entity, ReviewDecisionChoices.APPROVED, reviewer, notes, automatic)

    def reject(self, entity_id, reviewer: str, reason: str = "", automatic: bool = False) -> StagedEntity:
        """
        Reject an open entity.

        Raises:
            NotFoundError: entity does not exist
            InvalidTransitionError: entity is not open for review
        """
        with transaction.atomic():
            entity = self.entities.lock(entity_id)
            return self._decide(entity, ReviewDecisionChoices.REJECTED, reviewer, reason, automatic)

    # --------------------------------------------------------
    # Promotion
    # --------------------------------------------------------

    def mark_promoted(self, entity_id, production_id: str) -> StagedEntity:
        """
        approved -> promoted with an already minted production id.

        Raises:
            ValidationError: empty production id
            InvalidTransitionError: entity is not approved
        """
        if not production_id:
            raise ValidationError("production_id is required", details={"field": "production_id"})
        with transaction.atomic():
            entity = self.entities.lock(entity_id)
            entity = self._transition(
                entity,
                S.PROMOTED,
                production_id=str(production_id),
                promoted_at=timezone.now(),
            )
        logger.info(f"Promoted {entity.entity_type} {entity.id} as {production_id}")
        return entity

    def promote(self, entity_id) -> Tuple[StagedEntity, CatalogRecord]:
        """
        Write an approved entity to the production catalog.

        Mints the CatalogRecord and marks the entity promoted in one
        transaction. Promoting a venue links its staged children to the new
        catalog id.

        Raises:
            InvalidTransitionError: entity is not approved
        """
        with transaction.atomic():
            entity = self.entities.lock(entity_id)
            if not can_transition(entity.status, S.PROMOTED):
                raise InvalidTransitionError(entity.id, entity.status, S.PROMOTED)

            production_venue_id = entity.production_venue_id
            if not production_venue_id and entity.staged_venue_id:
                parent = self.entities.get(entity.staged_venue_id)
                production_venue_id = (parent.production_id or "") if parent else ""

            record = self.catalog.create(
                entity_type=entity.entity_type,
                payload=entity.payload,
                name=entity.name,
                country=entity.country,
                chain_id=entity.chain_id,
                production_venue_id=production_venue_id,
                source_staged_entity=entity,
            )
            entity = self.mark_promoted(entity.pk, str(record.id))

            if entity.entity_type == EntityType.VENUE:
                self.entities.update_where(
                    Q(staged_venue=entity) & ~Q(status=S.PROMOTED),
                    production_venue_id=str(record.id),
                )
        return entity, record

    def link_to_production(self, entity_id, production_venue_id: str) -> StagedEntity:
        """Attach a dish, promotion or availability record to a catalog venue."""
        with transaction.atomic():
            entity = self.entities.lock(entity_id)
            if entity.entity_type == EntityType.VENUE:
                raise ValidationError("Venues are not linked to a parent venue", details={"field": "entity_type"})
            if entity.status == S.PROMOTED:
                raise InvalidTransitionError(entity.id, entity.status, entity.status)
            return self.entities.update(entity.pk, production_venue_id=production_venue_id)

    def assign_chain(self, entity_id, chain_id: str) -> StagedEntity:
        """Set the chain of a venue (or chain-wide promotion)."""
        with transaction.atomic():
            entity = self.entities.lock(entity_id)
            if entity.status == S.PROMOTED:
                raise InvalidTransitionError(entity.id, entity.status, entity.status)
            payload = dict(entity.payload)
            if entity.entity_type in (EntityType.VENUE, EntityType.PROMOTION):
                payload["chain_id"] = chain_id
            return self.entities.update(entity.pk, chain_id=chain_id or "", payload=payload)

    # --------------------------------------------------------
    # Reads
    # --------------------------------------------------------

    def get(self, entity_id) -> Optional[StagedEntity]:
        return self.entities.get(entity_id)

    def get_or_raise(self, entity_id) -> StagedEntity:
        entity = self.entities.get(entity_id)
        if entity is None:
            raise NotFoundError("StagedEntity", entity_id)
        return entity

    def query(
        self,
        status: Optional[Sequence[str]] = None,
        entity_type: Optional[str] = None,
        country: Optional[str] = None,
        partner_id=None,
        chain_id: Optional[str] = None,
        min_confidence: Optional[float] = None,
        max_confidence: Optional[float] = None,
        search: Optional[str] = None,
        batch_id=None,
        discovery_run_id=None,
        order_by: Optional[Sequence[str]] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> StagingPage:
        """Filtered, paged listing used by the review queue."""
        filters = Q()
        if status:
            statuses = [status] if isinstance(status, str) else list(status)
            filters &= Q(status__in=statuses)
        if entity_type:
            filters &= Q(entity_type=entity_type)
        if country:
            filters &= Q(country=country.upper())
        if partner_id:
            filters &= Q(partner_id=partner_id)
        if chain_id:
            filters &= Q(chain_id=chain_id)
        if min_confidence is not None:
            filters &= Q(confidence_score__gte=min_confidence)
        if max_confidence is not None:
            filters &= Q(confidence_score__lte=max_confidence)
        if search:
            filters &= Q(name__icontains=search) | Q(external_id__iexact=search)
        if batch_id:
            filters &= Q(batch_id=batch_id)
        if discovery_run_id:
            filters &= Q(discovery_run_id=discovery_run_id)

        items = self.entities.query(
            filters,
            order_by=list(order_by or ["-created_at", "id"]),
            limit=limit,
            offset=offset,
        )
        return StagingPage(items=items, total=self.entities.count(filters), limit=limit, offset=offset)

    def get_pending_review(self, limit: int = 50, entity_type: Optional[str] = None) -> List[StagedEntity]:
        """Entities waiting for a human, lowest confidence last."""
        filters = {"status": S.NEEDS_REVIEW}
        if entity_type:
            filters["entity_type"] = entity_type
        return self.entities.query(filters, order_by=["-confidence_score", "created_at"], limit=limit)

    def get_by_batch(self, batch_id) -> List[StagedEntity]:
        return self.entities.query({"batch_id": batch_id}, order_by=["created_at"])

    def get_children(self, venue_id, entity_type: Optional[str] = None) -> List[StagedEntity]:
        filters = {"staged_venue_id": venue_id}
        if entity_type:
            filters["entity_type"] = entity_type
        return self.entities.query(filters, order_by=["created_at"])

    def count_by_status(self, entity_type: Optional[str] = None) -> Dict[str, int]:
        """Counts for every status, zero-filled."""
        qs = self.entities.all()
        if entity_type:
            qs = qs.filter(entity_type=entity_type)
        counts = {status: 0 for status in S.values}
        for row in qs.order_by().values("status").annotate(total=Count("id")):
            counts[row["status"]] = row["total"]
        return counts

    def delete_by_batch(self, batch_id) -> int:
        """Delete a batch's staged entities. Promoted entities are kept."""
        deleted = self.entities.delete_where(Q(batch_id=batch_id) & ~Q(status=S.PROMOTED))
        logger.info(f"Deleted {deleted} staged entities from batch {batch_id}")
        return deleted
