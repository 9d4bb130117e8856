"""
Django models for the Catalog Ingestion Service.

Models: Strategy, DiscoveryRun, BudgetDay, Partner, PartnerCredentials,
        IngestionBatch, StagedEntity, StagingKeyLock, CatalogRecord,
        CatalogSync, SearchFeedback, ReviewDecision

Everything a scraper or partner produces lands in StagedEntity first and only
reaches CatalogRecord (the production catalog) through promotion.
"""

import uuid

from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import Q
from django.utils import timezone


# ============================================================
# Choices
# ============================================================


class StrategyKind(models.TextChoices):
    """What a strategy is used for. Both kinds share one record shape."""

    DISCOVERY = "discovery", "Venue Discovery"
    DISH_EXTRACTION = "dish_extraction", "Dish Extraction"


class StrategyOrigin(models.TextChoices):
    """Where a strategy came from."""

    SEED = "seed", "Seed"
    EVOLVED = "evolved", "Evolved"


class RunKind(models.TextChoices):
    """Kind of discovery run."""

    DISCOVERY = "discovery", "Venue Discovery"
    DISH_EXTRACTION = "dish_extraction", "Dish Extraction"


class RunStatus(models.TextChoices):
    """Status of a discovery run."""

    PENDING = "pending", "Pending"
    RUNNING = "running", "Running"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    CANCELLED = "cancelled", "Cancelled"


class RunTrigger(models.TextChoices):
    """What started a discovery run."""

    SCHEDULED = "scheduled", "Scheduled"
    MANUAL = "manual", "Manual"
    WEBHOOK = "webhook", "Webhook"


class PartnerType(models.TextChoices):
    """Type of data partner."""

    CHAIN = "chain", "Restaurant Chain"
    INDEPENDENT = "independent", "Independent Venue"
    DISTRIBUTOR = "distributor", "Distributor"
    AGGREGATOR = "aggregator", "Aggregator"


class PartnerStatus(models.TextChoices):
    """Lifecycle status of a partner account."""

    ONBOARDING = "onboarding", "Onboarding"
    ACTIVE = "active", "Active"
    SUSPENDED = "suspended", "Suspended"
    INACTIVE = "inactive", "Inactive"


class EntityType(models.TextChoices):
    """Kind of staged or catalog entity."""

    VENUE = "venue", "Venue"
    DISH = "dish", "Dish"
    PROMOTION = "promotion", "Promotion"
    AVAILABILITY = "availability", "Retail Availability"


class StagingStatus(models.TextChoices):
    """States of the staging state machine."""

    PENDING = "pending", "Pending"
    VALIDATING = "validating", "Validating"
    NEEDS_REVIEW = "needs_review", "Needs Review"
    APPROVED = "approved", "Approved"
    REJECTED = "rejected", "Rejected"
    PROMOTED = "promoted", "Promoted"


class ReviewDecisionChoices(models.TextChoices):
    """Outcome of a review."""

    APPROVED = "approved", "Approved"
    REJECTED = "rejected", "Rejected"


class BatchSource(models.TextChoices):
    """Where an ingestion batch came from."""

    WEBHOOK = "webhook", "Partner Webhook"
    DISCOVERY = "discovery", "Discovery Run"
    MANUAL = "manual", "Manual Upload"


class BatchStatus(models.TextChoices):
    """Processing status of an ingestion batch."""

    RECEIVED = "received", "Received"
    PROCESSING = "processing", "Processing"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


class FeedbackResultType(models.TextChoices):
    """Outcome of a single search or extraction attempt."""

    TRUE_POSITIVE = "true_positive", "True Positive"
    FALSE_POSITIVE = "false_positive", "False Positive"
    NO_RESULTS = "no_results", "No Results"
    ERROR = "error", "Error"


def default_allowed_entity_types():
    return [EntityType.VENUE.value, EntityType.DISH.value, EntityType.PROMOTION.value]


# ============================================================
# Strategy Learning
# ============================================================


class Strategy(models.Model):
    """
    A discovery or dish-extraction technique for one platform.

    chain_id = NULL marks the platform-wide default. Counters are only ever
    changed through StrategyRegistry.record_usage; a deprecated strategy is
    terminal.
    """

    NEUTRAL_SUCCESS_RATE = 50

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    kind = models.CharField(
        max_length=20,
        choices=StrategyKind.choices,
        default=StrategyKind.DISCOVERY,
        db_index=True,
    )
    platform = models.CharField(max_length=50, db_index=True)
    country = models.CharField(
        max_length=2,
        blank=True,
        default="",
        help_text="ISO country code, blank for all markets",
    )
    chain_id = models.CharField(
        max_length=100,
        null=True,
        blank=True,
        db_index=True,
        help_text="Chain this strategy is specialised for, NULL for platform-wide",
    )
    config = models.JSONField(
        default=dict,
        blank=True,
        help_text="Query template or extraction config, opaque to the engine",
    )

    # Usage bookkeeping
    success_rate = models.IntegerField(
        default=NEUTRAL_SUCCESS_RATE,
        validators=[MinValueValidator(0), MaxValueValidator(100)],
    )
    total_uses = models.PositiveIntegerField(default=0)
    successful_uses = models.PositiveIntegerField(default=0)
    failed_uses = models.PositiveIntegerField(default=0)
    false_positives = models.PositiveIntegerField(
        default=0,
        help_text="Failures where the strategy produced a wrong candidate",
    )

    tags = models.JSONField(default=list, blank=True)
    origin = models.CharField(
        max_length=20,
        choices=StrategyOrigin.choices,
        default=StrategyOrigin.SEED,
    )
    parent_strategy = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="children",
    )

    last_used_at = models.DateTimeField(null=True, blank=True)
    deprecated_at = models.DateTimeField(null=True, blank=True, db_index=True)
    deprecation_reason = models.TextField(blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "strategies"
        verbose_name_plural = "strategies"
        indexes = [
            models.Index(fields=["kind", "platform", "chain_id"], name="strategy_kind_platform_idx"),
            models.Index(fields=["success_rate"], name="strategy_success_rate_idx"),
        ]

    def __str__(self):
        scope = self.chain_id or "platform-wide"
        return f"{self.kind}:{self.platform} ({scope}) {self.success_rate}%"

    @property
    def is_active(self) -> bool:
        return self.deprecated_at is None


class DiscoveryRun(models.Model):
    """
    One discovery or dish-extraction batch.

    stats only grow; strategies_used, learned_patterns and errors are
    append-only and keep insertion order.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    kind = models.CharField(
        max_length=20,
        choices=RunKind.choices,
        default=RunKind.DISCOVERY,
    )
    status = models.CharField(
        max_length=20,
        choices=RunStatus.choices,
        default=RunStatus.PENDING,
        db_index=True,
    )
    config = models.JSONField(default=dict, blank=True)
    stats = models.JSONField(default=dict, blank=True)
    strategies_used = models.JSONField(default=list, blank=True)
    learned_patterns = models.JSONField(default=list, blank=True)
    errors = models.JSONField(default=list, blank=True)

    triggered_by = models.CharField(
        max_length=20,
        choices=RunTrigger.choices,
        default=RunTrigger.MANUAL,
    )
    triggered_by_user = models.CharField(max_length=255, blank=True)

    # Cooperative cancellation
    cancel_requested_at = models.DateTimeField(null=True, blank=True)
    cancelled_by = models.CharField(max_length=255, blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "discovery_runs"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["kind", "status"], name="run_kind_status_idx"),
            models.Index(fields=["created_at"], name="run_created_at_idx"),
        ]

    def __str__(self):
        return f"{self.kind} run {self.id} ({self.status})"

    @property
    def is_terminal(self) -> bool:
        return self.status in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


# ============================================================
# Budget
# ============================================================


class BudgetDay(models.Model):
    """
    Per-day counters of billable operations.

    Counters and costs are only changed with F-expression updates so that
    concurrent workers never lose an increment. Monthly totals are derived by
    summing the days of a month.
    """

    date = models.DateField(unique=True)

    search_queries_free = models.PositiveIntegerField(default=0)
    search_queries_paid = models.PositiveIntegerField(default=0)
    ai_calls_gemini = models.PositiveIntegerField(default=0)
    ai_calls_claude = models.PositiveIntegerField(default=0)
    ai_calls_other = models.PositiveIntegerField(default=0)

    # Costs in USD
    cost_search = models.FloatField(default=0.0)
    cost_ai = models.FloatField(default=0.0)
    cost_total = models.FloatField(default=0.0)

    throttle_events = models.JSONField(default=list, blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "budget_days"
        ordering = ["-date"]

    def __str__(self):
        return f"{self.date}: ${self.cost_total:.2f}"


# ============================================================
# Partners
# ============================================================


class Partner(models.Model):
    """
    External data provider submitting venues, dishes, promotions and
    availability through the webhook.

    Credentials live in PartnerCredentials so that reading a partner never
    exposes key material.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    name = models.CharField(max_length=200)
    partner_type = models.CharField(
        max_length=20,
        choices=PartnerType.choices,
        default=PartnerType.INDEPENDENT,
    )
    status = models.CharField(
        max_length=20,
        choices=PartnerStatus.choices,
        default=PartnerStatus.ONBOARDING,
        db_index=True,
    )
    contact = models.JSONField(default=dict, blank=True)

    # Config
    data_format = models.CharField(max_length=50, default="standard")
    allowed_entity_types = models.JSONField(default=default_allowed_entity_types)
    markets = models.JSONField(default=list, blank=True)
    auto_approve_threshold = models.IntegerField(
        default=85,
        validators=[MinValueValidator(0), MaxValueValidator(100)],
    )
    requires_manual_review = models.BooleanField(default=False)
    callback_url = models.URLField(max_length=500, blank=True)

    # Quality metrics
    total_submissions = models.PositiveIntegerField(default=0)
    accepted_submissions = models.PositiveIntegerField(default=0)
    rejected_submissions = models.PositiveIntegerField(default=0)
    average_confidence_score = models.FloatField(default=0.0)
    data_quality_score = models.IntegerField(
        default=50,
        validators=[MinValueValidator(0), MaxValueValidator(100)],
    )
    last_submission_at = models.DateTimeField(null=True, blank=True)

    # Rate limits
    requests_per_hour = models.PositiveIntegerField(default=1000)
    requests_per_day = models.PositiveIntegerField(default=10000)

    suspended_reason = models.TextField(blank=True)
    onboarded_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "partners"
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.name} ({self.status})"

    @property
    def is_authenticated(self) -> bool:
        # Lets DRF treat an authenticated partner like a user object.
        return True


class PartnerCredentials(models.Model):
    """
    Hashed API key and webhook secret for a partner.

    After a rotation the previous key hash and secret stay valid until
    previous_valid_until.
    """

    partner = models.OneToOneField(
        Partner,
        on_delete=models.CASCADE,
        primary_key=True,
        related_name="credentials",
    )
    api_key_hash = models.CharField(max_length=64, unique=True)
    webhook_secret = models.CharField(
        max_length=128,
        help_text="HMAC key, needed in the clear to recompute signatures",
    )

    previous_api_key_hash = models.CharField(max_length=64, blank=True, db_index=True)
    previous_webhook_secret = models.CharField(max_length=128, blank=True)
    previous_valid_until = models.DateTimeField(null=True, blank=True)

    email_whitelist = models.JSONField(default=list, blank=True)
    last_rotated_at = models.DateTimeField(default=timezone.now)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "partner_credentials"
        verbose_name_plural = "partner credentials"

    def __str__(self):
        return f"Credentials for {self.partner_id}"


# ============================================================
# Staging
# ============================================================


class IngestionBatch(models.Model):
    """One partner submission or one discovery staging pass."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    partner = models.ForeignKey(
        Partner,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="batches",
    )
    discovery_run = models.ForeignKey(
        DiscoveryRun,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="batches",
    )
    source = models.CharField(
        max_length=20,
        choices=BatchSource.choices,
        default=BatchSource.WEBHOOK,
    )
    status = models.CharField(
        max_length=20,
        choices=BatchStatus.choices,
        default=BatchStatus.RECEIVED,
    )

    idempotency_key = models.CharField(max_length=100, blank=True, db_index=True)
    body_digest = models.CharField(
        max_length=64,
        blank=True,
        help_text="SHA-256 of the submission, compared when an idempotency key is reused",
    )

    items_received = models.PositiveIntegerField(default=0)
    items_accepted = models.PositiveIntegerField(default=0)
    items_rejected = models.PositiveIntegerField(default=0)
    items_errored = models.PositiveIntegerField(default=0)
    error_details = models.JSONField(default=list, blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "ingestion_batches"
        ordering = ["-created_at"]
        verbose_name_plural = "ingestion batches"

    def __str__(self):
        return f"Batch {self.id} ({self.source}, {self.status})"


class StagedEntity(models.Model):
    """
    Candidate venue, dish, promotion or availability record awaiting review.

    The envelope is shared by all entity types; the type-specific payload is
    validated through ingestion.payloads before it is stored. A promoted
    entity always carries a production_id and never changes status again.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    entity_type = models.CharField(
        max_length=20,
        choices=EntityType.choices,
        db_index=True,
    )
    batch = models.ForeignKey(
        IngestionBatch,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="entities",
    )
    partner = models.ForeignKey(
        Partner,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="staged_entities",
    )
    external_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Producer's own key, used for idempotent upsert",
    )

    status = models.CharField(
        max_length=20,
        choices=StagingStatus.choices,
        default=StagingStatus.PENDING,
        db_index=True,
    )
    confidence_score = models.FloatField(
        default=0.0,
        validators=[MinValueValidator(0), MaxValueValidator(100)],
    )
    confidence_breakdown = models.JSONField(default=dict, blank=True)
    flags = models.JSONField(default=list, blank=True)

    # Linking
    staged_venue = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="children",
    )
    production_venue_id = models.CharField(max_length=100, blank=True, db_index=True)
    product_sku = models.CharField(max_length=100, blank=True)

    payload = models.JSONField(default=dict)

    # Denormalised for review queue filtering
    name = models.CharField(max_length=300, blank=True, db_index=True)
    country = models.CharField(max_length=2, blank=True, db_index=True)
    chain_id = models.CharField(max_length=100, blank=True)

    geocoding = models.JSONField(default=dict, blank=True)

    # Provenance
    discovered_by_strategy = models.ForeignKey(
        Strategy,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="staged_entities",
    )
    discovery_run = models.ForeignKey(
        DiscoveryRun,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="staged_entities",
    )

    # Review
    reviewed_by = models.CharField(max_length=255, blank=True)
    review_decision = models.CharField(
        max_length=20,
        choices=ReviewDecisionChoices.choices,
        blank=True,
    )
    review_notes = models.TextField(blank=True)
    reviewed_at = models.DateTimeField(null=True, blank=True)

    # Promotion
    production_id = models.CharField(max_length=100, null=True, blank=True)
    promoted_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "staged_entities"
        ordering = ["-created_at"]
        verbose_name_plural = "staged entities"
        indexes = [
            models.Index(fields=["partner", "entity_type", "external_id"], name="staged_partner_extid_idx"),
            models.Index(fields=["production_venue_id", "product_sku"], name="staged_venue_sku_idx"),
            models.Index(fields=["status", "created_at"], name="staged_status_created_idx"),
            models.Index(fields=["confidence_score"], name="staged_confidence_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=~Q(status="promoted") | Q(production_id__isnull=False),
                name="staged_promoted_has_production_id",
            ),
        ]

    def __str__(self):
        return f"{self.entity_type} '{self.name}' ({self.status})"

    @property
    def review(self):
        """Review record, or None while no decision has been made."""
        if not self.review_decision:
            return None
        return {
            "reviewed_by": self.reviewed_by,
            "decision": self.review_decision,
            "notes": self.review_notes,
            "reviewed_at": self.reviewed_at,
        }

    def get_payload(self):
        """Typed payload dataclass for this entity's type."""
        from ingestion.payloads import payload_from_dict

        return payload_from_dict(self.entity_type, self.payload)


class StagingKeyLock(models.Model):
    """
    One row per staging dedup key.

    StagingStore.stage locks the rows for its keys before looking for an open
    duplicate, so concurrent submissions of the same fact serialize whichever
    run or partner they come from.
    """

    key = models.CharField(max_length=255, unique=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "staging_key_locks"

    def __str__(self):
        return self.key


class CatalogRecord(models.Model):
    """
    Production catalog entry minted when a staged entity is promoted.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    entity_type = models.CharField(max_length=20, choices=EntityType.choices, db_index=True)
    payload = models.JSONField(default=dict)
    name = models.CharField(max_length=300, blank=True)
    country = models.CharField(max_length=2, blank=True, db_index=True)
    chain_id = models.CharField(max_length=100, blank=True, db_index=True)
    production_venue_id = models.CharField(
        max_length=100,
        blank=True,
        help_text="Parent catalog venue for dishes, promotions and availability",
    )
    source_staged_entity = models.OneToOneField(
        StagedEntity,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="catalog_record",
    )

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "catalog_records"
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.entity_type} '{self.name}'"


# ============================================================
# Feedback
# ============================================================


class SearchFeedback(models.Model):
    """
    One row per search or extraction attempt.

    result_type is fixed at creation. Human feedback is attached later and
    every version is kept in feedback_history.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    query = models.TextField()
    platform = models.CharField(max_length=50, db_index=True)
    country = models.CharField(max_length=2, blank=True, db_index=True)
    strategy = models.ForeignKey(
        Strategy,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="feedback",
    )
    discovery_run = models.ForeignKey(
        DiscoveryRun,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="feedback",
    )
    result_type = models.CharField(
        max_length=20,
        choices=FeedbackResultType.choices,
        db_index=True,
    )
    staged_entity = models.ForeignKey(
        StagedEntity,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="search_feedback",
    )

    feedback = models.JSONField(null=True, blank=True)
    feedback_history = models.JSONField(default=list, blank=True)
    reviewed_by = models.CharField(max_length=255, blank=True)
    reviewed_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "search_feedback"
        ordering = ["-created_at"]
        verbose_name_plural = "search feedback"
        indexes = [
            models.Index(fields=["strategy", "created_at"], name="feedback_strategy_idx"),
            models.Index(fields=["platform", "country"], name="feedback_platform_idx"),
        ]

    def __str__(self):
        return f"{self.platform}: {self.query[:50]} ({self.result_type})"


class ReviewDecision(models.Model):
    """Append-only log of every human or automatic review decision."""

    staged_entity = models.ForeignKey(
        StagedEntity,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="decisions",
    )
    entity_type = models.CharField(max_length=20, choices=EntityType.choices)
    decision = models.CharField(max_length=20, choices=ReviewDecisionChoices.choices)
    reviewer = models.CharField(max_length=255)
    automatic = models.BooleanField(default=False)
    confidence_score = models.FloatField(default=0.0)
    strategy = models.ForeignKey(
        Strategy,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="review_decisions",
    )
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "review_decisions"
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.decision} by {self.reviewer} at {self.created_at}"


# ============================================================
# Catalog Sync
# ============================================================


class CatalogSync(models.Model):
    """
    History record of one promotion pass over approved staged entities.

    counts holds requested / promoted / failed totals plus per-type promoted
    counts; errors lists {"id", "entity_type", "error"} per failed item.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    executed_by = models.CharField(max_length=255)
    triggered_by = models.CharField(
        max_length=20,
        choices=RunTrigger.choices,
        default=RunTrigger.MANUAL,
    )
    requested = models.PositiveIntegerField(default=0)
    promoted = models.PositiveIntegerField(default=0)
    failed = models.PositiveIntegerField(default=0)
    counts_by_type = models.JSONField(default=dict, blank=True)
    promoted_ids = models.JSONField(default=list, blank=True)
    errors = models.JSONField(default=list, blank=True)

    created_at = models.DateTimeField(default=timezone.now, db_index=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "catalog_syncs"
        ordering = ["-created_at"]

    def __str__(self):
        return f"Sync {self.id}: {self.promoted}/{self.requested} promoted by {self.executed_by}"
