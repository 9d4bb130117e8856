"""
Review Service - admin review queue and review actions.

Wraps the Staging Store with the operations the admin dashboard needs:

- review_queue: filtered, paged listing (offset or opaque cursor)
- approve_item / reject_item: one decision; approval promotes to the catalog
- partial_approve: approve a venue while correcting, approving or rejecting
  its dishes individually
- bulk_approve / bulk_reject / assign_chain: up to BULK_REVIEW_LIMIT ids,
  one outcome per id, never fails as a whole

Each item runs in its own transaction so one failing item never rolls back
the others. Learning updates (review decision log, strategy usage) are
post-commit hooks on the Staging Store and cannot fail a decision.
"""

import base64
import binascii
import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from django.conf import settings
from django.db import transaction

from ingestion.exceptions import (
    IngestionError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from ingestion.models import EntityType, StagedEntity, StagingStatus
from ingestion.services.cache import REVIEW_QUEUE
from ingestion.services.staging import REVIEWABLE_STATUSES, StagingStore

logger = logging.getLogger(__name__)

# Per-item outcome statuses
SUCCESS = "success"
ALREADY_PROCESSED = "already_processed"
NOT_FOUND = "not_found"
ERROR = "error"

PROCESSED_STATUSES = (StagingStatus.APPROVED, StagingStatus.REJECTED, StagingStatus.PROMOTED)

QUEUE_FILTERS = {
    "status",
    "entity_type",
    "country",
    "partner_id",
    "chain_id",
    "min_confidence",
    "max_confidence",
    "search",
    "batch_id",
    "discovery_run_id",
}


def encode_cursor(offset: int) -> str:
    raw = json.dumps({"o": offset}).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> int:
    """
    Offset stored in an opaque queue cursor.

    Raises:
        ValidationError: cursor was not produced by encode_cursor
    """
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        offset = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))["o"]
    except (binascii.Error, ValueError, KeyError, TypeError, UnicodeError):
        raise ValidationError("Invalid cursor", details={"field": "cursor"})
    if not isinstance(offset, int) or offset < 0:
        raise ValidationError("Invalid cursor", details={"field": "cursor"})
    return offset


@dataclass
class ItemOutcome:
    """Result of one item of a bulk or partial operation."""

    id: str
    status: str
    message: str = ""
    entity_status: Optional[str] = None
    production_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v not in (None, "")}


@dataclass
class BulkResult:
    """Per-item outcomes plus counts per outcome status."""

    results: List[ItemOutcome] = field(default_factory=list)

    @property
    def summary(self) -> Dict[str, int]:
        counts = {SUCCESS: 0, ALREADY_PROCESSED: 0, NOT_FOUND: 0, ERROR: 0}
        for outcome in self.results:
            counts[outcome.status] += 1
        counts["total"] = len(self.results)
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [outcome.to_dict() for outcome in self.results],
            "summary": self.summary,
        }


class ReviewService:
    """
    Review actions over staged entities.

    Args:
        staging: StagingStore the decisions go through
        cache: QueryCache for queue counts
    """

    def __init__(self, staging: StagingStore, cache=None):
        self.staging = staging
        self.cache = cache

    @property
    def bulk_limit(self) -> int:
        return getattr(settings, "BULK_REVIEW_LIMIT", 100)

    # --------------------------------------------------------
    # Queue
    # --------------------------------------------------------

    def review_queue(
        self,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 50,
        offset: int = 0,
        cursor: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        One page of the review queue.

        Defaults to entities that are still open for review. A cursor, when
        given, wins over offset.

        Returns:
            Dict with items, total, limit, offset, has_more and next_cursor
        """
        filters = {k: v for k, v in (filters or {}).items() if v not in (None, "", [])}
        unknown = set(filters) - QUEUE_FILTERS
        if unknown:
            raise ValidationError(f"Unknown queue filters: {sorted(unknown)}", details={"field": "filters"})
        if not 1 <= limit <= 200:
            raise ValidationError("limit must be 1-200", details={"field": "limit"})
        if cursor:
            offset = decode_cursor(cursor)

        filters.setdefault("status", list(REVIEWABLE_STATUSES))
        page = self.staging.query(limit=limit, offset=offset, **filters)
        return {
            "items": page.items,
            "total": page.total,
            "limit": page.limit,
            "offset": page.offset,
            "has_more": page.has_more,
            "next_cursor": encode_cursor(offset + len(page.items)) if page.has_more else None,
        }

    def queue_counts(self, entity_type: Optional[str] = None) -> Dict[str, int]:
        """Status counts for the queue header, cached until the next staging write."""
        if self.cache is None:
            return self.staging.count_by_status(entity_type)
        return self.cache.get_or_set(
            REVIEW_QUEUE,
            {"counts": entity_type or "all"},
            lambda: self.staging.count_by_status(entity_type),
        )

    # --------------------------------------------------------
    # Single item
    # --------------------------------------------------------

    def approve_item(
        self,
        entity_id,
        reviewer: str,
        notes: str = "",
        promote: bool = True,
    ) -> StagedEntity:
        """
        Approve an entity and, by default, promote it to the catalog.

        An entity that is already approved (auto-routed, or approved without
        promotion) is promoted without a second decision.

        Raises:
            NotFoundError: entity does not exist
            InvalidTransitionError: entity was already decided
        """
        with transaction.atomic():
            entity = self.staging.get_or_raise(entity_id)
            if not (promote and entity.status == StagingStatus.APPROVED):
                entity = self.staging.approve(entity_id, reviewer, notes)
            if promote:
                entity, _ = self.staging.promote(entity.pk)
        return entity

    def reject_item(self, entity_id, reviewer: str, reason: str = "") -> StagedEntity:
        """
        Reject an entity.

        Raises:
            NotFoundError: entity does not exist
            InvalidTransitionError: entity was already decided
        """
        return self.staging.reject(entity_id, reviewer, reason)

    def partial_approve(
        self,
        venue_id,
        reviewer: str,
        dish_updates: Optional[Sequence[Dict[str, Any]]] = None,
        dish_ids_to_reject: Optional[Sequence[Any]] = None,
        notes: str = "",
    ) -> Dict[str, Any]:
        """
        Approve a venue and decide its dishes one by one.

        Each dish update is {"dish_id", "updates", "approved"}: updates are
        applied as payload corrections first, then the dish is approved
        (and promoted under the venue) or rejected. Ids in
        dish_ids_to_reject are rejected. A failing dish is reported and
        never undoes the venue decision.

        Returns:
            Dict with the venue, per-dish outcomes and counts

        Raises:
            NotFoundError: venue does not exist
            ValidationError: entity is not a venue
            InvalidTransitionError: venue was already decided
        """
        venue = self.staging.get_or_raise(venue_id)
        if venue.entity_type != EntityType.VENUE:
            raise ValidationError("partial_approve needs a venue", details={"field": "venue_id"})

        venue = self.approve_item(venue.pk, reviewer, notes)
        children = {str(child.id) for child in self.staging.get_children(venue.pk)}

        outcomes: List[Dict[str, Any]] = []
        instructions = [dict(update) for update in dish_updates or []]
        instructions += [{"dish_id": dish_id, "approved": False} for dish_id in dish_ids_to_reject or []]

        for instruction in instructions:
            dish_id = str(instruction.get("dish_id", ""))
            if dish_id not in children:
                outcomes.append({"dish_id": dish_id, "status": ERROR, "message": "Dish does not belong to this venue"})
                continue
            outcomes.append(self._decide_dish(dish_id, instruction, reviewer))

        counts = {"approved": 0, "rejected": 0, "updated": 0, "errors": 0}
        for outcome in outcomes:
            if outcome["status"] == ERROR:
                counts["errors"] += 1
            else:
                counts[outcome["status"]] += 1

        logger.info(f"Partially approved venue {venue.id}: {counts}")
        return {"venue": venue, "dishes": outcomes, "counts": counts}

    def _decide_dish(self, dish_id: str, instruction: Dict[str, Any], reviewer: str) -> Dict[str, Any]:
        updates = instruction.get("updates") or {}
        approved = instruction.get("approved")
        try:
            with transaction.atomic():
                if updates:
                    self.staging.correct_payload(dish_id, updates)
                if approved is True:
                    dish = self.approve_item(dish_id, reviewer, notes="Approved with venue")
                    return {"dish_id": dish_id, "status": "approved", "production_id": dish.production_id}
                if approved is False:
                    self.staging.reject(dish_id, reviewer, reason="Rejected in partial approval")
                    return {"dish_id": dish_id, "status": "rejected"}
                return {"dish_id": dish_id, "status": "updated"}
        except IngestionError as e:
            return {"dish_id": dish_id, "status": ERROR, "message": str(e)}

    # --------------------------------------------------------
    # Bulk
    # --------------------------------------------------------

    def _check_bulk(self, ids: Sequence[Any]) -> List[str]:
        if not ids:
            raise ValidationError("No ids given", details={"field": "ids"})
        if len(ids) > self.bulk_limit:
            raise ValidationError(
                f"At most {self.bulk_limit} ids per bulk request",
                details={"field": "ids", "limit": self.bulk_limit},
            )
        # Duplicates would report already_processed for their second occurrence
        return list(dict.fromkeys(str(i) for i in ids))

    def _run_bulk(self, ids: Sequence[Any], action, skip_statuses=PROCESSED_STATUSES) -> BulkResult:
        result = BulkResult()
        for entity_id in self._check_bulk(ids):
            entity = self.staging.get(entity_id)
            if entity is None:
                result.results.append(ItemOutcome(entity_id, NOT_FOUND, "Entity not found"))
                continue
            if entity.status in skip_statuses:
                result.results.append(
                    ItemOutcome(entity_id, ALREADY_PROCESSED, entity_status=entity.status)
                )
                continue
            try:
                entity = action(entity_id)
                result.results.append(
                    ItemOutcome(
                        entity_id,
                        SUCCESS,
                        entity_status=entity.status,
                        production_id=entity.production_id,
                    )
                )
            except InvalidTransitionError as e:
                # Decided by someone else between the read and the lock
                result.results.append(ItemOutcome(entity_id, ALREADY_PROCESSED, str(e)))
            except NotFoundError as e:
                result.results.append(ItemOutcome(entity_id, NOT_FOUND, str(e)))
            except Exception as e:
                logger.exception(f"Bulk review failed for {entity_id}")
                result.results.append(ItemOutcome(entity_id, ERROR, str(e)))
        logger.info(f"Bulk review finished: {result.summary}")
        return result

    def bulk_approve(self, ids: Sequence[Any], reviewer: str, notes: str = "") -> BulkResult:
        """
        Approve and promote up to BULK_REVIEW_LIMIT entities.

        Entities that are already approved are promoted; rejected and
        promoted ones report already_processed.

        Raises:
            ValidationError: no ids or too many ids
        """
        return self._run_bulk(
            ids,
            lambda entity_id: self.approve_item(entity_id, reviewer, notes),
            skip_statuses=(StagingStatus.REJECTED, StagingStatus.PROMOTED),
        )

    def bulk_reject(self, ids: Sequence[Any], reviewer: str, reason: str = "") -> BulkResult:
        """
        Reject up to BULK_REVIEW_LIMIT entities.

        Raises:
            ValidationError: no ids or too many ids
        """
        return self._run_bulk(ids, lambda entity_id: self.staging.reject(entity_id, reviewer, reason))

    def assign_chain(self, ids: Sequence[Any], chain_id: str) -> BulkResult:
        """Set the chain on several entities. Promoted entities report already_processed."""
        if not chain_id:
            raise ValidationError("chain_id is required", details={"field": "chain_id"})

        result = BulkResult()
        for entity_id in self._check_bulk(ids):
            try:
                entity = self.staging.assign_chain(entity_id, chain_id)
                result.results.append(ItemOutcome(entity_id, SUCCESS, entity_status=entity.status))
            except NotFoundError as e:
                result.results.append(ItemOutcome(entity_id, NOT_FOUND, str(e)))
            except InvalidTransitionError as e:
                result.results.append(ItemOutcome(entity_id, ALREADY_PROCESSED, str(e)))
            except Exception as e:
                logger.exception(f"Chain assignment failed for {entity_id}")
                result.results.append(ItemOutcome(entity_id, ERROR, str(e)))
        return result
