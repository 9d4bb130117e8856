"""
Initial schema for the Catalog Ingestion Service.
"""

import uuid

import django.core.validators
import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models

import ingestion.models


ENTITY_TYPE_CHOICES = [
    ("venue", "Venue"),
    ("dish", "Dish"),
    ("promotion", "Promotion"),
    ("availability", "Retail Availability"),
]
KIND_CHOICES = [("discovery", "Venue Discovery"), ("dish_extraction", "Dish Extraction")]
DECISION_CHOICES = [("approved", "Approved"), ("rejected", "Rejected")]


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Strategy",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("kind", models.CharField(choices=KIND_CHOICES, db_index=True, default="discovery", max_length=20)),
                ("platform", models.CharField(db_index=True, max_length=50)),
                (
                    "country",
                    models.CharField(
                        blank=True, default="", help_text="ISO country code, blank for all markets", max_length=2
                    ),
                ),
                (
                    "chain_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="Chain this strategy is specialised for, NULL for platform-wide",
                        max_length=100,
                        null=True,
                    ),
                ),
                (
                    "config",
                    models.JSONField(
                        blank=True, default=dict, help_text="Query template or extraction config, opaque to the engine"
                    ),
                ),
                (
                    "success_rate",
                    models.IntegerField(
                        default=50,
                        validators=[
                            django.core.validators.MinValueValidator(0),
                            django.core.validators.MaxValueValidator(100),
                        ],
                    ),
                ),
                ("total_uses", models.PositiveIntegerField(default=0)),
                ("successful_uses", models.PositiveIntegerField(default=0)),
                ("failed_uses", models.PositiveIntegerField(default=0)),
                (
                    "false_positives",
                    models.PositiveIntegerField(
                        default=0, help_text="Failures where the strategy produced a wrong candidate"
                    ),
                ),
                ("tags", models.JSONField(blank=True, default=list)),
                (
                    "origin",
                    models.CharField(
                        choices=[("seed", "Seed"), ("evolved", "Evolved")], default="seed", max_length=20
                    ),
                ),
                ("last_used_at", models.DateTimeField(blank=True, null=True)),
                ("deprecated_at", models.DateTimeField(blank=True, db_index=True, null=True)),
                ("deprecation_reason", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "parent_strategy",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="children",
                        to="ingestion.strategy",
                    ),
                ),
            ],
            options={
                "db_table": "strategies",
                "verbose_name_plural": "strategies",
                "indexes": [
                    models.Index(fields=["kind", "platform", "chain_id"], name="strategy_kind_platform_idx"),
                    models.Index(fields=["success_rate"], name="strategy_success_rate_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="DiscoveryRun",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("kind", models.CharField(choices=KIND_CHOICES, default="discovery", max_length=20)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("running", "Running"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                            ("cancelled", "Cancelled"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("config", models.JSONField(blank=True, default=dict)),
                ("stats", models.JSONField(blank=True, default=dict)),
                ("strategies_used", models.JSONField(blank=True, default=list)),
                ("learned_patterns", models.JSONField(blank=True, default=list)),
                ("errors", models.JSONField(blank=True, default=list)),
                (
                    "triggered_by",
                    models.CharField(
                        choices=[("scheduled", "Scheduled"), ("manual", "Manual"), ("webhook", "Webhook")],
                        default="manual",
                        max_length=20,
                    ),
                ),
                ("triggered_by_user", models.CharField(blank=True, max_length=255)),
                ("cancel_requested_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_by", models.CharField(blank=True, max_length=255)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "db_table": "discovery_runs",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["kind", "status"], name="run_kind_status_idx"),
                    models.Index(fields=["created_at"], name="run_created_at_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="BudgetDay",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("date", models.DateField(unique=True)),
                ("search_queries_free", models.PositiveIntegerField(default=0)),
                ("search_queries_paid", models.PositiveIntegerField(default=0)),
                ("ai_calls_gemini", models.PositiveIntegerField(default=0)),
                ("ai_calls_claude", models.PositiveIntegerField(default=0)),
                ("ai_calls_other", models.PositiveIntegerField(default=0)),
                ("cost_search", models.FloatField(default=0.0)),
                ("cost_ai", models.FloatField(default=0.0)),
                ("cost_total", models.FloatField(default=0.0)),
                ("throttle_events", models.JSONField(blank=True, default=list)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "db_table": "budget_days",
                "ordering": ["-date"],
            },
        ),
        migrations.CreateModel(
            name="Partner",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=200)),
                (
                    "partner_type",
                    models.CharField(
                        choices=[
                            ("chain", "Restaurant Chain"),
                            ("independent", "Independent Venue"),
                            ("distributor", "Distributor"),
                            ("aggregator", "Aggregator"),
                        ],
                        default="independent",
                        max_length=20,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("onboarding", "Onboarding"),
                            ("active", "Active"),
                            ("suspended", "Suspended"),
                            ("inactive", "Inactive"),
                        ],
                        db_index=True,
                        default="onboarding",
                        max_length=20,
                    ),
                ),
                ("contact", models.JSONField(blank=True, default=dict)),
                ("data_format", models.CharField(default="standard", max_length=50)),
                ("allowed_entity_types", models.JSONField(default=ingestion.models.default_allowed_entity_types)),
                ("markets", models.JSONField(blank=True, default=list)),
                (
                    "auto_approve_threshold",
                    models.IntegerField(
                        default=85,
                        validators=[
                            django.core.validators.MinValueValidator(0),
                            django.core.validators.MaxValueValidator(100),
                        ],
                    ),
                ),
                ("requires_manual_review", models.BooleanField(default=False)),
                ("callback_url", models.URLField(blank=True, max_length=500)),
                ("total_submissions", models.PositiveIntegerField(default=0)),
                ("accepted_submissions", models.PositiveIntegerField(default=0)),
                ("rejected_submissions", models.PositiveIntegerField(default=0)),
                ("average_confidence_score", models.FloatField(default=0.0)),
                (
                    "data_quality_score",
                    models.IntegerField(
                        default=50,
                        validators=[
                            django.core.validators.MinValueValidator(0),
                            django.core.validators.MaxValueValidator(100),
                        ],
                    ),
                ),
                ("last_submission_at", models.DateTimeField(blank=True, null=True)),
                ("requests_per_hour", models.PositiveIntegerField(default=1000)),
                ("requests_per_day", models.PositiveIntegerField(default=10000)),
                ("suspended_reason", models.TextField(blank=True)),
                ("onboarded_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "db_table": "partners",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="PartnerCredentials",
            fields=[
                (
                    "partner",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        primary_key=True,
                        related_name="credentials",
                        serialize=False,
                        to="ingestion.partner",
                    ),
                ),
                ("api_key_hash", models.CharField(max_length=64, unique=True)),
                (
                    "webhook_secret",
                    models.CharField(
                        help_text="HMAC key, needed in the clear to recompute signatures", max_length=128
                    ),
                ),
                ("previous_api_key_hash", models.CharField(blank=True, db_index=True, max_length=64)),
                ("previous_webhook_secret", models.CharField(blank=True, max_length=128)),
                ("previous_valid_until", models.DateTimeField(blank=True, null=True)),
                ("email_whitelist", models.JSONField(blank=True, default=list)),
                ("last_rotated_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "db_table": "partner_credentials",
                "verbose_name_plural": "partner credentials",
            },
        ),
        migrations.CreateModel(
            name="IngestionBatch",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "source",
                    models.CharField(
                        choices=[
                            ("webhook", "Partner Webhook"),
                            ("discovery", "Discovery Run"),
                            ("manual", "Manual Upload"),
                        ],
                        default="webhook",
                        max_length=20,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("received", "Received"),
                            ("processing", "Processing"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                        ],
                        default="received",
                        max_length=20,
                    ),
                ),
                ("idempotency_key", models.CharField(blank=True, db_index=True, max_length=100)),
                ("items_received", models.PositiveIntegerField(default=0)),
                ("items_accepted", models.PositiveIntegerField(default=0)),
                ("items_rejected", models.PositiveIntegerField(default=0)),
                ("items_errored", models.PositiveIntegerField(default=0)),
                ("error_details", models.JSONField(blank=True, default=list)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "discovery_run",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="batches",
                        to="ingestion.discoveryrun",
                    ),
                ),
                (
                    "partner",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="batches",
                        to="ingestion.partner",
                    ),
                ),
            ],
            options={
                "db_table": "ingestion_batches",
                "ordering": ["-created_at"],
                "verbose_name_plural": "ingestion batches",
            },
        ),
        migrations.CreateModel(
            name="StagedEntity",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("entity_type", models.CharField(choices=ENTITY_TYPE_CHOICES, db_index=True, max_length=20)),
                (
                    "external_id",
                    models.CharField(
                        blank=True, help_text="Producer's own key, used for idempotent upsert", max_length=255
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("validating", "Validating"),
                            ("needs_review", "Needs Review"),
                            ("approved", "Approved"),
                            ("rejected", "Rejected"),
                            ("promoted", "Promoted"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                (
                    "confidence_score",
                    models.FloatField(
                        default=0.0,
                        validators=[
                            django.core.validators.MinValueValidator(0),
                            django.core.validators.MaxValueValidator(100),
                        ],
                    ),
                ),
                ("confidence_breakdown", models.JSONField(blank=True, default=dict)),
                ("flags", models.JSONField(blank=True, default=list)),
                ("production_venue_id", models.CharField(blank=True, db_index=True, max_length=100)),
                ("product_sku", models.CharField(blank=True, max_length=100)),
                ("payload", models.JSONField(default=dict)),
                ("name", models.CharField(blank=True, db_index=True, max_length=300)),
                ("country", models.CharField(blank=True, db_index=True, max_length=2)),
                ("chain_id", models.CharField(blank=True, max_length=100)),
                ("geocoding", models.JSONField(blank=True, default=dict)),
                ("reviewed_by", models.CharField(blank=True, max_length=255)),
                ("review_decision", models.CharField(blank=True, choices=DECISION_CHOICES, max_length=20)),
                ("review_notes", models.TextField(blank=True)),
                ("reviewed_at", models.DateTimeField(blank=True, null=True)),
                ("production_id", models.CharField(blank=True, max_length=100, null=True)),
                ("promoted_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "batch",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="entities",
                        to="ingestion.ingestionbatch",
                    ),
                ),
                (
                    "discovered_by_strategy",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="staged_entities",
                        to="ingestion.strategy",
                    ),
                ),
                (
                    "discovery_run",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="staged_entities",
                        to="ingestion.discoveryrun",
                    ),
                ),
                (
                    "partner",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="staged_entities",
                        to="ingestion.partner",
                    ),
                ),
                (
                    "staged_venue",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="children",
                        to="ingestion.stagedentity",
                    ),
                ),
            ],
            options={
                "db_table": "staged_entities",
                "ordering": ["-created_at"],
                "verbose_name_plural": "staged entities",
                "indexes": [
                    models.Index(fields=["partner", "entity_type", "external_id"], name="staged_partner_extid_idx"),
                    models.Index(fields=["production_venue_id", "product_sku"], name="staged_venue_sku_idx"),
                    models.Index(fields=["status", "created_at"], name="staged_status_created_idx"),
                    models.Index(fields=["confidence_score"], name="staged_confidence_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("status", "promoted"), _negated=True)
                        | models.Q(("production_id__isnull", False)),
                        name="staged_promoted_has_production_id",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="CatalogRecord",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("entity_type", models.CharField(choices=ENTITY_TYPE_CHOICES, db_index=True, max_length=20)),
                ("payload", models.JSONField(default=dict)),
                ("name", models.CharField(blank=True, max_length=300)),
                ("country", models.CharField(blank=True, db_index=True, max_length=2)),
                ("chain_id", models.CharField(blank=True, db_index=True, max_length=100)),
                (
                    "production_venue_id",
                    models.CharField(
                        blank=True,
                        help_text="Parent catalog venue for dishes, promotions and availability",
                        max_length=100,
                    ),
                ),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "source_staged_entity",
                    models.OneToOneField(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="catalog_record",
                        to="ingestion.stagedentity",
                    ),
                ),
            ],
            options={
                "db_table": "catalog_records",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="SearchFeedback",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("query", models.TextField()),
                ("platform", models.CharField(db_index=True, max_length=50)),
                ("country", models.CharField(blank=True, db_index=True, max_length=2)),
                (
                    "result_type",
                    models.CharField(
                        choices=[
                            ("true_positive", "True Positive"),
                            ("false_positive", "False Positive"),
                            ("no_results", "No Results"),
                            ("error", "Error"),
                        ],
                        db_index=True,
                        max_length=20,
                    ),
                ),
                ("feedback", models.JSONField(blank=True, null=True)),
                ("feedback_history", models.JSONField(blank=True, default=list)),
                ("reviewed_by", models.CharField(blank=True, max_length=255)),
                ("reviewed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "discovery_run",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="feedback",
                        to="ingestion.discoveryrun",
                    ),
                ),
                (
                    "staged_entity",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="search_feedback",
                        to="ingestion.stagedentity",
                    ),
                ),
                (
                    "strategy",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="feedback",
                        to="ingestion.strategy",
                    ),
                ),
            ],
            options={
                "db_table": "search_feedback",
                "ordering": ["-created_at"],
                "verbose_name_plural": "search feedback",
                "indexes": [
                    models.Index(fields=["strategy", "created_at"], name="feedback_strategy_idx"),
                    models.Index(fields=["platform", "country"], name="feedback_platform_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="ReviewDecision",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("entity_type", models.CharField(choices=ENTITY_TYPE_CHOICES, max_length=20)),
                ("decision", models.CharField(choices=DECISION_CHOICES, max_length=20)),
                ("reviewer", models.CharField(max_length=255)),
                ("automatic", models.BooleanField(default=False)),
                ("confidence_score", models.FloatField(default=0.0)),
                ("notes", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "staged_entity",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="decisions",
                        to="ingestion.stagedentity",
                    ),
                ),
                (
                    "strategy",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="review_decisions",
                        to="ingestion.strategy",
                    ),
                ),
            ],
            options={
                "db_table": "review_decisions",
                "ordering": ["-created_at"],
            },
        ),
    ]
