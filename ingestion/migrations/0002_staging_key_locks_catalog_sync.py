"""
Dedup key locks, batch body digests and catalog sync history.
"""

import uuid

import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ("ingestion", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="ingestionbatch",
            name="body_digest",
            field=models.CharField(
                blank=True,
                help_text="SHA-256 of the submission, compared when an idempotency key is reused",
                max_length=64,
            ),
        ),
        migrations.CreateModel(
            name="StagingKeyLock",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("key", models.CharField(max_length=255, unique=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "db_table": "staging_key_locks",
            },
        ),
        migrations.CreateModel(
            name="CatalogSync",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("executed_by", models.CharField(max_length=255)),
                (
                    "triggered_by",
                    models.CharField(
                        choices=[("scheduled", "Scheduled"), ("manual", "Manual"), ("webhook", "Webhook")],
                        default="manual",
                        max_length=20,
                    ),
                ),
                ("requested", models.PositiveIntegerField(default=0)),
                ("promoted", models.PositiveIntegerField(default=0)),
                ("failed", models.PositiveIntegerField(default=0)),
                ("counts_by_type", models.JSONField(blank=True, default=dict)),
                ("promoted_ids", models.JSONField(blank=True, default=list)),
                ("errors", models.JSONField(blank=True, default=list)),
                ("created_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "db_table": "catalog_syncs",
                "ordering": ["-created_at"],
            },
        ),
    ]
