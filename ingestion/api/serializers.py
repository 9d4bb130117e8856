"""
Serializers for the ingestion API.

Model serializers render records; the *Request serializers validate request
bodies before they reach the services.
"""

from django.conf import settings
from rest_framework import serializers

from ingestion.models import (
    CatalogSync,
    DiscoveryRun,
    EntityType,
    Partner,
    PartnerType,
    ReviewDecision,
    RunKind,
    StagedEntity,
    Strategy,
)
from ingestion.services.review_analytics import PERIODS


class StagedEntitySerializer(serializers.ModelSerializer):
    partner_name = serializers.CharField(source="partner.name", read_only=True, default=None)
    review = serializers.SerializerMethodField()

    class Meta:
        model = StagedEntity
        fields = [
            "id",
            "entity_type",
            "status",
            "name",
            "country",
            "chain_id",
            "external_id",
            "partner",
            "partner_name",
            "batch",
            "confidence_score",
            "confidence_breakdown",
            "flags",
            "staged_venue",
            "production_venue_id",
            "product_sku",
            "payload",
            "geocoding",
            "discovered_by_strategy",
            "discovery_run",
            "review",
            "production_id",
            "promoted_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_review(self, obj):
        return obj.review


class ReviewDecisionSerializer(serializers.ModelSerializer):
    class Meta:
        model = ReviewDecision
        fields = ["id", "decision", "reviewer", "automatic", "confidence_score", "strategy", "notes", "created_at"]
        read_only_fields = fields


class DiscoveryRunSerializer(serializers.ModelSerializer):
    class Meta:
        model = DiscoveryRun
        fields = [
            "id",
            "kind",
            "status",
            "config",
            "stats",
            "strategies_used",
            "learned_patterns",
            "errors",
            "triggered_by",
            "triggered_by_user",
            "cancel_requested_at",
            "cancelled_by",
            "created_at",
            "started_at",
            "completed_at",
            "updated_at",
        ]
        read_only_fields = fields


class CatalogSyncSerializer(serializers.ModelSerializer):
    class Meta:
        model = CatalogSync
        fields = [
            "id",
            "executed_by",
            "triggered_by",
            "requested",
            "promoted",
            "failed",
            "counts_by_type",
            "errors",
            "created_at",
            "completed_at",
        ]
        read_only_fields = fields


class StrategySerializer(serializers.ModelSerializer):
    class Meta:
        model = Strategy
        fields = [
            "id",
            "kind",
            "platform",
            "country",
            "chain_id",
            "config",
            "success_rate",
            "total_uses",
            "successful_uses",
            "failed_uses",
            "false_positives",
            "tags",
            "origin",
            "parent_strategy",
            "last_used_at",
            "deprecated_at",
            "deprecation_reason",
        ]
        read_only_fields = fields


class PartnerSerializer(serializers.ModelSerializer):
    class Meta:
        model = Partner
        fields = [
            "id",
            "name",
            "partner_type",
            "status",
            "contact",
            "data_format",
            "allowed_entity_types",
            "markets",
            "auto_approve_threshold",
            "requires_manual_review",
            "callback_url",
            "total_submissions",
            "accepted_submissions",
            "rejected_submissions",
            "average_confidence_score",
            "data_quality_score",
            "last_submission_at",
            "requests_per_hour",
            "requests_per_day",
            "suspended_reason",
            "onboarded_at",
            "created_at",
        ]
        read_only_fields = fields


# ============================================================
# Requests
# ============================================================


class ReviewQueueRequest(serializers.Serializer):
    status = serializers.CharField(required=False)
    entity_type = serializers.ChoiceField(choices=EntityType.choices, required=False)
    country = serializers.CharField(required=False, max_length=2)
    partner_id = serializers.UUIDField(required=False)
    chain_id = serializers.CharField(required=False)
    min_confidence = serializers.FloatField(required=False, min_value=0, max_value=100)
    max_confidence = serializers.FloatField(required=False, min_value=0, max_value=100)
    search = serializers.CharField(required=False)
    limit = serializers.IntegerField(required=False, min_value=1, max_value=200, default=50)
    offset = serializers.IntegerField(required=False, min_value=0, default=0)
    cursor = serializers.CharField(required=False)

    def validate_status(self, value):
        return [s.strip() for s in value.split(",") if s.strip()]


class ApproveRequest(serializers.Serializer):
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    promote = serializers.BooleanField(required=False, default=True)


class RejectRequest(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class FlagRequest(serializers.Serializer):
    flag = serializers.CharField(max_length=100)


class DishUpdateRequest(serializers.Serializer):
    dish_id = serializers.UUIDField()
    updates = serializers.DictField(required=False, default=dict)
    approved = serializers.BooleanField(required=False, allow_null=True, default=None)


class PartialApproveRequest(serializers.Serializer):
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    dish_updates = DishUpdateRequest(many=True, required=False, default=list)
    dish_ids_to_reject = serializers.ListField(child=serializers.UUIDField(), required=False, default=list)


class BulkRequest(serializers.Serializer):
    ids = serializers.ListField(child=serializers.CharField(), allow_empty=False)
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    reason = serializers.CharField(required=False, allow_blank=True, default="")

    def validate_ids(self, value):
        limit = getattr(settings, "BULK_REVIEW_LIMIT", 100)
        if len(value) > limit:
            raise serializers.ValidationError(f"At most {limit} ids per request")
        return value


class AssignChainRequest(serializers.Serializer):
    ids = serializers.ListField(child=serializers.CharField(), allow_empty=False)
    chain_id = serializers.CharField(max_length=100)


class StartDiscoveryRequest(serializers.Serializer):
    kind = serializers.ChoiceField(choices=RunKind.choices, default=RunKind.DISCOVERY)
    config = serializers.DictField()
    estimated_search_queries = serializers.IntegerField(required=False, min_value=0, default=0)
    estimated_ai_calls = serializers.IntegerField(required=False, min_value=0, default=0)
    use_free_tier = serializers.BooleanField(required=False, default=True)


class CreatePartnerRequest(serializers.Serializer):
    name = serializers.CharField(max_length=200)
    partner_type = serializers.ChoiceField(choices=PartnerType.choices, default=PartnerType.INDEPENDENT)
    contact = serializers.DictField(required=False, default=dict)
    allowed_entity_types = serializers.ListField(
        child=serializers.ChoiceField(choices=EntityType.choices), required=False
    )
    markets = serializers.ListField(child=serializers.CharField(max_length=2), required=False)
    auto_approve_threshold = serializers.IntegerField(required=False, min_value=0, max_value=100)
    requires_manual_review = serializers.BooleanField(required=False)
    requests_per_hour = serializers.IntegerField(required=False, min_value=1)
    requests_per_day = serializers.IntegerField(required=False, min_value=1)


class SuspendPartnerRequest(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class DiscoveryRunListRequest(serializers.Serializer):
    kind = serializers.ChoiceField(choices=RunKind.choices, required=False)
    limit = serializers.IntegerField(required=False, min_value=1, max_value=100, default=20)


class SyncExecuteRequest(serializers.Serializer):
    ids = serializers.ListField(child=serializers.UUIDField(), required=False, allow_empty=False)


class SyncHistoryRequest(serializers.Serializer):
    limit = serializers.IntegerField(required=False, min_value=1, max_value=200, default=50)
    offset = serializers.IntegerField(required=False, min_value=0, default=0)


class AnalyticsRequest(serializers.Serializer):
    period = serializers.ChoiceField(choices=sorted(PERIODS), required=False, default="30d")
