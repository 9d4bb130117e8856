"""
Django admin configuration for ingestion models.

Review actions go through the services so the state machine, decision log
and strategy feedback apply exactly as they do through the API.
"""

from django.contrib import admin, messages
from django.utils.html import format_html

from ingestion.exceptions import IngestionError
from ingestion.models import (
    BudgetDay,
    CatalogRecord,
    CatalogSync,
    DiscoveryRun,
    IngestionBatch,
    Partner,
    ReviewDecision,
    SearchFeedback,
    StagedEntity,
    StagingStatus,
    Strategy,
)
from ingestion.services import get_services

STATUS_COLORS = {
    StagingStatus.PENDING: "#6c757d",
    StagingStatus.VALIDATING: "#17a2b8",
    StagingStatus.NEEDS_REVIEW: "#ffc107",
    StagingStatus.APPROVED: "#28a745",
    StagingStatus.REJECTED: "#dc3545",
    StagingStatus.PROMOTED: "#007bff",
}


def _badge(color, text):
    return format_html(
        '<span style="background-color: {}; color: white; '
        'padding: 2px 8px; border-radius: 4px;">{}</span>',
        color, text
    )


@admin.register(StagedEntity)
class StagedEntityAdmin(admin.ModelAdmin):
    list_display = ["name", "entity_type", "status_badge", "confidence_score", "country", "partner", "created_at"]
    list_filter = ["status", "entity_type", "country"]
    search_fields = ["name", "external_id", "chain_id"]
    readonly_fields = [
        "id", "status", "confidence_score", "confidence_breakdown", "reviewed_by",
        "review_decision", "review_notes", "reviewed_at", "production_id", "promoted_at",
        "created_at", "updated_at",
    ]
    raw_id_fields = ["batch", "partner", "staged_venue", "discovered_by_strategy", "discovery_run"]
    actions = ["approve_selected", "reject_selected"]

    def status_badge(self, obj):
        return _badge(STATUS_COLORS.get(obj.status, "#6c757d"), obj.get_status_display())
    status_badge.short_description = "Status"
    status_badge.admin_order_field = "status"

    def _reviewer(self, request):
        return request.user.email or request.user.get_username()

    @admin.action(description="Approve and promote selected entities")
    def approve_selected(self, request, queryset):
        result = get_services().review.bulk_approve(
            [str(pk) for pk in queryset.values_list("pk", flat=True)],
            self._reviewer(request),
            notes="Approved in admin",
        )
        self._report(request, "Approved", result.summary)

    @admin.action(description="Reject selected entities")
    def reject_selected(self, request, queryset):
        result = get_services().review.bulk_reject(
            [str(pk) for pk in queryset.values_list("pk", flat=True)],
            self._reviewer(request),
            reason="Rejected in admin",
        )
        self._report(request, "Rejected", result.summary)

    def _report(self, request, verb, summary):
        level = messages.WARNING if summary["error"] or summary["not_found"] else messages.SUCCESS
        self.message_user(
            request,
            f"{verb} {summary['success']} of {summary['total']} "
            f"({summary['already_processed']} already processed, {summary['error']} errors).",
            level,
        )


@admin.register(Strategy)
class StrategyAdmin(admin.ModelAdmin):
    list_display = ["platform", "kind", "country", "chain_id", "success_rate", "total_uses", "active_badge"]
    list_filter = ["kind", "platform", "country", "origin"]
    search_fields = ["platform", "chain_id"]
    readonly_fields = [
        "id", "success_rate", "total_uses", "successful_uses", "failed_uses", "false_positives",
        "last_used_at", "deprecated_at", "created_at", "updated_at",
    ]
    actions = ["deprecate_selected"]

    def active_badge(self, obj):
        if obj.is_active:
            return _badge("#28a745", "Active")
        return _badge("#6c757d", "Deprecated")
    active_badge.short_description = "Active"

    @admin.action(description="Deprecate selected strategies")
    def deprecate_selected(self, request, queryset):
        registry = get_services().strategies
        count = 0
        for strategy in queryset:
            try:
                registry.deprecate(strategy.pk, reason=f"Deprecated in admin by {request.user.get_username()}")
                count += 1
            except IngestionError as e:
                self.message_user(request, f"{strategy}: {e}", messages.ERROR)
        self.message_user(request, f"Deprecated {count} strategy(ies).")


@admin.register(DiscoveryRun)
class DiscoveryRunAdmin(admin.ModelAdmin):
    list_display = ["id", "kind", "status", "triggered_by", "created_at", "completed_at"]
    list_filter = ["kind", "status", "triggered_by"]
    readonly_fields = [f.name for f in DiscoveryRun._meta.fields]
    actions = ["cancel_selected"]

    def has_add_permission(self, request):
        return False

    @admin.action(description="Request cancellation")
    def cancel_selected(self, request, queryset):
        tracker = get_services().runs
        count = 0
        for run in queryset:
            try:
                tracker.request_cancel(run.pk, cancelled_by=request.user.get_username())
                count += 1
            except IngestionError as e:
                self.message_user(request, f"{run}: {e}", messages.ERROR)
        self.message_user(request, f"Cancellation requested for {count} run(s).")


@admin.register(Partner)
class PartnerAdmin(admin.ModelAdmin):
    list_display = [
        "name", "partner_type", "status", "data_quality_score",
        "total_submissions", "last_submission_at",
    ]
    list_filter = ["status", "partner_type"]
    search_fields = ["name"]
    readonly_fields = [
        "id", "total_submissions", "accepted_submissions", "rejected_submissions",
        "average_confidence_score", "data_quality_score", "last_submission_at",
        "onboarded_at", "created_at", "updated_at",
    ]


@admin.register(IngestionBatch)
class IngestionBatchAdmin(admin.ModelAdmin):
    list_display = ["id", "partner", "source", "status", "items_received", "items_accepted", "created_at"]
    list_filter = ["source", "status"]
    readonly_fields = [f.name for f in IngestionBatch._meta.fields]

    def has_add_permission(self, request):
        return False


@admin.register(BudgetDay)
class BudgetDayAdmin(admin.ModelAdmin):
    list_display = ["date", "search_queries_free", "search_queries_paid", "cost_total"]
    readonly_fields = [f.name for f in BudgetDay._meta.fields]

    def has_add_permission(self, request):
        return False


@admin.register(SearchFeedback)
class SearchFeedbackAdmin(admin.ModelAdmin):
    list_display = ["platform", "country", "result_type", "strategy", "reviewed_at", "created_at"]
    list_filter = ["result_type", "platform", "country"]
    search_fields = ["query"]
    raw_id_fields = ["strategy", "discovery_run", "staged_entity"]


@admin.register(ReviewDecision)
class ReviewDecisionAdmin(admin.ModelAdmin):
    list_display = ["staged_entity", "decision", "reviewer", "automatic", "confidence_score", "created_at"]
    list_filter = ["decision", "automatic", "entity_type"]
    readonly_fields = [f.name for f in ReviewDecision._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(CatalogRecord)
class CatalogRecordAdmin(admin.ModelAdmin):
    list_display = ["name", "entity_type", "country", "chain_id", "created_at"]
    list_filter = ["entity_type", "country"]
    search_fields = ["name", "chain_id"]
    raw_id_fields = ["source_staged_entity"]


@admin.register(CatalogSync)
class CatalogSyncAdmin(admin.ModelAdmin):
    list_display = ["created_at", "executed_by", "triggered_by", "requested", "promoted", "failed"]
    list_filter = ["triggered_by"]
    readonly_fields = [f.name for f in CatalogSync._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False
