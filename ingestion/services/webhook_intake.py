"""
Partner webhook intake - turns one partner submission into staged entities.

Submission body:

    {
        "type": "venue_update" | "menu_update" | "promotion" | "availability",
        "idempotency_key": "optional, also accepted as X-Idempotency-Key",
        "venues": [...], "dishes": [...], "promotions": [...], "availability": [...]
    }

Each list holds at most MAX_ITEMS items. An item is either the payload fields
themselves or {"external_id", "venue_external_id", "data": {...}}.
Venues are processed first so dishes, promotions and availability records
can reference a venue from the same submission by venue_external_id.

Every item is validated, scored, staged (deduplicated on the partner's
external_id) and auto-routed on its confidence. One item failing never
affects the others: the response lists the outcome per item. The whole
submission is recorded as an IngestionBatch, and the partner's quality
metrics are updated after the batch commits.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from django.db import transaction
from django.utils import timezone

from ingestion.exceptions import DuplicateError, IngestionError, ValidationError
from ingestion.models import (
    BatchSource,
    BatchStatus,
    EntityType,
    IngestionBatch,
    Partner,
    StagedEntity,
    StagingStatus,
)
from ingestion.monitoring import add_ingestion_breadcrumb, capture_ingestion_error
from ingestion.payloads import payload_from_dict
from ingestion.repository import Repository
from ingestion.services.confidence import (
    availability_factors,
    dish_factors,
    promotion_factors,
    score_confidence,
    venue_factors,
)
from ingestion.services.hooks import after_commit
from ingestion.services.partners import PartnerAccounts
from ingestion.services.staging import StagingStore
from ingestion.utils.numbers import round_half_up

logger = logging.getLogger(__name__)

MAX_ITEMS = 100

SUBMISSION_TYPES = {"venue_update", "menu_update", "promotion", "availability"}

# Body list -> entity type, in processing order
SECTIONS = (
    ("venues", EntityType.VENUE),
    ("dishes", EntityType.DISH),
    ("promotions", EntityType.PROMOTION),
    ("availability", EntityType.AVAILABILITY),
)

ENVELOPE_KEYS = {"external_id", "venue_external_id", "production_venue_id", "data", "mapping_confidence"}

PARTNER_PLATFORM = "partner_feed"

ACCEPTED = "accepted"
REJECTED = "rejected"
ERRORED = "error"


def body_digest(body: Dict[str, Any]) -> str:
    """SHA-256 of a submission, ignoring its idempotency key and key order."""
    content = {k: v for k, v in body.items() if k != "idempotency_key"}
    canonical = json.dumps(content, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class ItemResult:
    """Outcome of one submitted item."""

    index: int
    entity_type: str
    status: str
    external_id: str = ""
    entity_id: Optional[str] = None
    staging_status: Optional[str] = None
    confidence: Optional[float] = None
    created: Optional[bool] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "index": self.index,
            "entity_type": self.entity_type,
            "status": self.status,
            "external_id": self.external_id,
        }
        if self.entity_id:
            data.update(
                entity_id=self.entity_id,
                staging_status=self.staging_status,
                confidence=self.confidence,
                created=self.created,
            )
        if self.errors:
            data["errors"] = self.errors
        return data


@dataclass
class IntakeResult:
    """Response of one webhook submission."""

    batch_id: str
    idempotent: bool = False
    items: List[ItemResult] = field(default_factory=list)
    summary: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "batch_id": self.batch_id,
            "idempotent": self.idempotent,
            "summary": self.summary,
            "items": [item.to_dict() for item in self.items],
        }


class WebhookIntake:
    """
    Processes authenticated partner submissions.

    Args:
        partners: PartnerAccounts for permission checks and quality metrics
        staging: StagingStore the items are staged into
        batches: Repository over IngestionBatch
    """

    def __init__(
        self,
        partners: PartnerAccounts,
        staging: StagingStore,
        batches: Optional[Repository] = None,
    ):
        self.partners = partners
        self.staging = staging
        self.batches = batches or Repository(IngestionBatch)

    # --------------------------------------------------------
    # Validation
    # --------------------------------------------------------

    @staticmethod
    def validate_body(body: Any) -> int:
        """
        Check the submission shape.

        Returns:
            Number of items across all sections

        Raises:
            ValidationError: unknown type, non-list section, too many items or no items
        """
        if not isinstance(body, dict):
            raise ValidationError("Submission must be a JSON object", details={"field": "body"})
        submission_type = body.get("type")
        if submission_type not in SUBMISSION_TYPES:
            raise ValidationError(
                f"Unknown submission type: {submission_type}",
                details={"field": "type", "allowed": sorted(SUBMISSION_TYPES)},
            )

        total = 0
        for section, _ in SECTIONS:
            items = body.get(section) or []
            if not isinstance(items, list):
                raise ValidationError(f"{section} must be a list", details={"field": section})
            if len(items) > MAX_ITEMS:
                raise ValidationError(
                    f"{section} holds {len(items)} items, at most {MAX_ITEMS} allowed",
                    details={"field": section, "max_items": MAX_ITEMS},
                )
            total += len(items)

        if total == 0:
            raise ValidationError("Submission contains no items", details={"field": "body", "reason": "empty_payload"})
        return total

    # --------------------------------------------------------
    # Processing
    # --------------------------------------------------------

    def process(
        self,
        partner: Partner,
        body: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> IntakeResult:
        """
        Stage every item of a submission.

        A submission whose idempotency key matches an earlier batch of the
        same partner is not processed again; the earlier batch is returned
        with idempotent=True.

        Raises:
            ValidationError: malformed submission (nothing is staged)
            DuplicateError: idempotency key already used for a different body
        """
        total = self.validate_body(body)
        key = str(body.get("idempotency_key") or idempotency_key or "")[:100]
        digest = body_digest(body)

        if key:
            previous = self.batches.query({"partner": partner, "idempotency_key": key}, limit=1)
            if previous:
                if previous[0].body_digest and previous[0].body_digest != digest:
                    raise DuplicateError(
                        "Idempotency key was already used for a different submission",
                        details={"idempotency_key": key, "batch_id": str(previous[0].id)},
                    )
                logger.info(f"Idempotent replay of batch {previous[0].id} for partner {partner.id}")
                return self._replay(previous[0])

        batch = self.batches.create(
            partner=partner,
            source=BatchSource.WEBHOOK,
            status=BatchStatus.PROCESSING,
            idempotency_key=key,
            body_digest=digest,
            items_received=total,
        )
        add_ingestion_breadcrumb("webhook", f"Processing batch {batch.id}", data={"partner_id": str(partner.id)})

        results: List[ItemResult] = []
        venues_by_external_id: Dict[str, StagedEntity] = {}

        for section, entity_type in SECTIONS:
            for index, item in enumerate(body.get(section) or []):
                result = self._process_item(partner, batch, entity_type, index, item, venues_by_external_id)
                results.append(result)

        accepted = [r for r in results if r.status == ACCEPTED]
        rejected = sum(1 for r in results if r.status == REJECTED)
        errored = sum(1 for r in results if r.status == ERRORED)
        errors = [
            {"entity_type": r.entity_type, "index": r.index, "external_id": r.external_id, "errors": r.errors}
            for r in results if r.errors
        ]

        batch = self.batches.update(
            batch.pk,
            status=BatchStatus.COMPLETED,
            items_accepted=len(accepted),
            items_rejected=rejected,
            items_errored=errored,
            error_details=errors,
            completed_at=timezone.now(),
        )

        average_confidence = (
            round_half_up(sum(r.confidence or 0 for r in accepted) / len(accepted), 1) if accepted else 0.0
        )
        after_commit(
            "partner_submission",
            self.partners.record_submission,
            partner.id,
            accepted=len(accepted),
            rejected=rejected + errored,
            average_confidence=average_confidence,
        )

        logger.info(
            f"Batch {batch.id} from partner {partner.id}: "
            f"{len(accepted)} accepted, {rejected} rejected, {errored} errored"
        )
        return IntakeResult(
            batch_id=str(batch.id),
            items=results,
            summary=self._summary(batch),
        )

    def _process_item(
        self,
        partner: Partner,
        batch: IngestionBatch,
        entity_type: str,
        index: int,
        item: Any,
        venues_by_external_id: Dict[str, StagedEntity],
    ) -> ItemResult:
        if not isinstance(item, dict):
            return ItemResult(index, entity_type, REJECTED, errors=["Item must be an object"])

        external_id = str(item.get("external_id") or "")
        result = ItemResult(index, entity_type, REJECTED, external_id=external_id)

        if not self.partners.is_entity_type_allowed(partner, entity_type):
            result.errors.append(f"Partner may not submit {entity_type} records")
            return result

        data = item.get("data") if isinstance(item.get("data"), dict) else {
            k: v for k, v in item.items() if k not in ENVELOPE_KEYS
        }

        try:
            with transaction.atomic():
                payload = payload_from_dict(entity_type, data)
                if not self.partners.is_market_allowed(partner, payload.country):
                    raise ValidationError(
                        f"Market {payload.country} is not enabled for this partner",
                        details={"field": "country"},
                    )

                staged_venue, production_venue_id = self._resolve_venue(partner, item, venues_by_external_id)
                confidence = score_confidence(
                    self._factors(partner, entity_type, payload, item, staged_venue, production_venue_id)
                )

                entity, created = self.staging.stage(
                    entity_type,
                    payload,
                    partner=partner,
                    batch=batch,
                    external_id=external_id,
                    production_venue_id=production_venue_id,
                    staged_venue=staged_venue,
                    confidence=confidence,
                )
                if entity.status in (StagingStatus.PENDING, StagingStatus.VALIDATING):
                    entity = self.staging.route_by_confidence(entity.pk)
        except IngestionError as e:
            result.errors.append(e.message)
            return result
        except Exception as e:
            logger.exception(f"Unexpected error staging {entity_type} item {index} of batch {batch.id}")
            capture_ingestion_error(e, operation="webhook_item", extra_context={"batch_id": str(batch.id)})
            result.status = ERRORED
            result.errors.append("Internal error while staging item")
            return result

        if entity_type == EntityType.VENUE and external_id:
            venues_by_external_id[external_id] = entity

        result.status = ACCEPTED
        result.entity_id = str(entity.id)
        result.staging_status = entity.status
        result.confidence = entity.confidence_score
        result.created = created
        return result

    def _resolve_venue(
        self,
        partner: Partner,
        item: Dict[str, Any],
        venues_by_external_id: Dict[str, StagedEntity],
    ) -> Tuple[Optional[StagedEntity], str]:
        """Staged parent venue and catalog venue id for a child item."""
        production_venue_id = str(item.get("production_venue_id") or "")
        venue_external_id = str(item.get("venue_external_id") or "")
        if not venue_external_id:
            return None, production_venue_id

        venue = venues_by_external_id.get(venue_external_id)
        if venue is None:
            earlier = self.staging.entities.query(
                {"partner": partner, "entity_type": EntityType.VENUE, "external_id": venue_external_id},
                order_by=["-created_at"],
                limit=1,
            )
            venue = earlier[0] if earlier else None
        if venue is None:
            raise ValidationError(
                f"Unknown venue_external_id: {venue_external_id}",
                details={"field": "venue_external_id"},
            )
        if venue.status == StagingStatus.PROMOTED and not production_venue_id:
            production_venue_id = venue.production_id or ""
        return venue, production_venue_id

    @staticmethod
    def _factors(partner, entity_type, payload, item, staged_venue, production_venue_id):
        staged_venue_id = staged_venue.id if staged_venue is not None else None
        mapping_confidence = item.get("mapping_confidence")
        if entity_type == EntityType.VENUE:
            return venue_factors(
                payload,
                platform=PARTNER_PLATFORM,
                partner_quality=partner.data_quality_score,
            )
        if entity_type == EntityType.DISH:
            return dish_factors(
                payload,
                mapping_confidence=mapping_confidence,
                production_venue_id=production_venue_id,
                staged_venue_id=staged_venue_id,
                platform=PARTNER_PLATFORM,
            )
        if entity_type == EntityType.PROMOTION:
            return promotion_factors(
                payload,
                mapping_confidence=mapping_confidence,
                production_venue_id=production_venue_id,
                staged_venue_id=staged_venue_id,
            )
        return availability_factors(
            payload,
            production_venue_id=production_venue_id,
            staged_venue_id=staged_venue_id,
            partner_quality=partner.data_quality_score,
        )

    # --------------------------------------------------------
    # Replay
    # --------------------------------------------------------

    @staticmethod
    def _summary(batch: IngestionBatch) -> Dict[str, int]:
        return {
            "received": batch.items_received,
            "accepted": batch.items_accepted,
            "rejected": batch.items_rejected,
            "errors": batch.items_errored,
        }

    def _replay(self, batch: IngestionBatch) -> IntakeResult:
        items = [
            ItemResult(
                index=index,
                entity_type=entity.entity_type,
                status=ACCEPTED,
                external_id=entity.external_id,
                entity_id=str(entity.id),
                staging_status=entity.status,
                confidence=entity.confidence_score,
                created=False,
            )
            for index, entity in enumerate(self.staging.get_by_batch(batch.pk))
        ]
        return IntakeResult(batch_id=str(batch.id), idempotent=True, items=items, summary=self._summary(batch))
