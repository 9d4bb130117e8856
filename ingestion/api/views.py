"""
Admin API views.

Staff-only endpoints for the review dashboard:
- Review queue, single and bulk review actions, chain assignment
- Budget status
- Discovery runs: start, list, detail, cancel, live event stream
- Catalog sync: preview, execute and history of promotion passes
- Review analytics: KPIs and rejection analysis
- Strategies overview
- Partner management

Service errors are translated by ingestion.api.exceptions.
"""

import logging

from django.contrib.admin.views.decorators import staff_member_required
from django.db import transaction
from django.http import Http404, StreamingHttpResponse
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes, throttle_classes
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response

from ingestion.api.serializers import (
    AnalyticsRequest,
    ApproveRequest,
    AssignChainRequest,
    BulkRequest,
    CatalogSyncSerializer,
    CreatePartnerRequest,
    DiscoveryRunListRequest,
    DiscoveryRunSerializer,
    FlagRequest,
    PartialApproveRequest,
    PartnerSerializer,
    RejectRequest,
    ReviewDecisionSerializer,
    ReviewQueueRequest,
    StagedEntitySerializer,
    StartDiscoveryRequest,
    StrategySerializer,
    SuspendPartnerRequest,
    SyncExecuteRequest,
    SyncHistoryRequest,
)
from ingestion.api.throttling import BulkReviewThrottle, DiscoveryTriggerThrottle
from ingestion.models import RunTrigger
from ingestion.services import get_services
from ingestion.services.run_events import RunEventStream, encode_sse

logger = logging.getLogger(__name__)


def _reviewer(request) -> str:
    user = request.user
    return getattr(user, "email", "") or user.get_username()


# ============================================================
# Review
# ============================================================


@extend_schema(
    tags=["Review"],
    summary="Review queue",
    parameters=[
        OpenApiParameter("status", str, description="Comma separated statuses, default open statuses"),
        OpenApiParameter("entity_type", str),
        OpenApiParameter("country", str),
        OpenApiParameter("partner_id", str),
        OpenApiParameter("chain_id", str),
        OpenApiParameter("min_confidence", float),
        OpenApiParameter("max_confidence", float),
        OpenApiParameter("search", str),
        OpenApiParameter("limit", int),
        OpenApiParameter("offset", int),
        OpenApiParameter("cursor", str),
    ],
)
@api_view(["GET"])
@permission_classes([IsAdminUser])
def review_queue(request):
    """
    Filtered, paged review queue.

    Response:
    {
        "items": [...],
        "total": 120,
        "limit": 50,
        "offset": 0,
        "has_more": true,
        "next_cursor": "eyJvIjogNTB9"
    }
    """
    params = ReviewQueueRequest(data=request.query_params)
    params.is_valid(raise_exception=True)
    data = dict(params.validated_data)
    limit = data.pop("limit")
    offset = data.pop("offset")
    cursor = data.pop("cursor", None)

    page = get_services().review.review_queue(filters=data, limit=limit, offset=offset, cursor=cursor)
    page["items"] = StagedEntitySerializer(page["items"], many=True).data
    return Response(page)


@extend_schema(tags=["Review"], summary="Staged entity counts by status")
@api_view(["GET"])
@permission_classes([IsAdminUser])
def review_counts(request):
    return Response(get_services().review.queue_counts(request.query_params.get("entity_type") or None))


@extend_schema(tags=["Review"], summary="Staged entity detail with its children and decisions")
@api_view(["GET"])
@permission_classes([IsAdminUser])
def staged_entity_detail(request, entity_id):
    services = get_services()
    entity = services.staging.get_or_raise(entity_id)
    return Response({
        "entity": StagedEntitySerializer(entity).data,
        "children": StagedEntitySerializer(services.staging.get_children(entity.pk), many=True).data,
        "decisions": ReviewDecisionSerializer(services.feedback.get_decisions(entity.pk), many=True).data,
    })


@extend_schema(tags=["Review"], summary="Approve (and promote) one entity", request=ApproveRequest)
@api_view(["POST"])
@permission_classes([IsAdminUser])
def approve_entity(request, entity_id):
    body = ApproveRequest(data=request.data)
    body.is_valid(raise_exception=True)
    entity = get_services().review.approve_item(
        entity_id,
        _reviewer(request),
        notes=body.validated_data["notes"],
        promote=body.validated_data["promote"],
    )
    return Response(StagedEntitySerializer(entity).data)


@extend_schema(tags=["Review"], summary="Reject one entity", request=RejectRequest)
@api_view(["POST"])
@permission_classes([IsAdminUser])
def reject_entity(request, entity_id):
    body = RejectRequest(data=request.data)
    body.is_valid(raise_exception=True)
    entity = get_services().review.reject_item(entity_id, _reviewer(request), body.validated_data["reason"])
    return Response(StagedEntitySerializer(entity).data)


@extend_schema(tags=["Review"], summary="Flag an entity for review", request=FlagRequest)
@api_view(["POST"])
@permission_classes([IsAdminUser])
def flag_entity(request, entity_id):
    body = FlagRequest(data=request.data)
    body.is_valid(raise_exception=True)
    entity = get_services().staging.add_flag(entity_id, body.validated_data["flag"])
    return Response(StagedEntitySerializer(entity).data)


@extend_schema(tags=["Review"], summary="Approve a venue and decide its dishes", request=PartialApproveRequest)
@api_view(["POST"])
@permission_classes([IsAdminUser])
def partial_approve(request, entity_id):
    """
    Request body:
    {
        "notes": "Menu checked",
        "dish_updates": [{"dish_id": "...", "updates": {"name": "..."}, "approved": true}],
        "dish_ids_to_reject": ["..."]
    }
    """
    body = PartialApproveRequest(data=request.data)
    body.is_valid(raise_exception=True)
    data = body.validated_data
    result = get_services().review.partial_approve(
        entity_id,
        _reviewer(request),
        dish_updates=[dict(update, dish_id=str(update["dish_id"])) for update in data["dish_updates"]],
        dish_ids_to_reject=[str(dish_id) for dish_id in data["dish_ids_to_reject"]],
        notes=data["notes"],
    )
    result["venue"] = StagedEntitySerializer(result["venue"]).data
    return Response(result)


@extend_schema(tags=["Review"], summary="Approve up to 100 entities", request=BulkRequest)
@api_view(["POST"])
@permission_classes([IsAdminUser])
@throttle_classes([BulkReviewThrottle])
def bulk_approve(request):
    body = BulkRequest(data=request.data)
    body.is_valid(raise_exception=True)
    result = get_services().review.bulk_approve(
        body.validated_data["ids"], _reviewer(request), body.validated_data["notes"]
    )
    return Response(result.to_dict())


@extend_schema(tags=["Review"], summary="Reject up to 100 entities", request=BulkRequest)
@api_view(["POST"])
@permission_classes([IsAdminUser])
@throttle_classes([BulkReviewThrottle])
def bulk_reject(request):
    body = BulkRequest(data=request.data)
    body.is_valid(raise_exception=True)
    result = get_services().review.bulk_reject(
        body.validated_data["ids"], _reviewer(request), body.validated_data["reason"]
    )
    return Response(result.to_dict())


@extend_schema(tags=["Review"], summary="Assign a chain to several entities", request=AssignChainRequest)
@api_view(["POST"])
@permission_classes([IsAdminUser])
def assign_chain(request):
    body = AssignChainRequest(data=request.data)
    body.is_valid(raise_exception=True)
    result = get_services().review.assign_chain(body.validated_data["ids"], body.validated_data["chain_id"])
    return Response(result.to_dict())


# ============================================================
# Catalog sync
# ============================================================


@extend_schema(tags=["Sync"], summary="Approved entities the next sync would promote")
@api_view(["GET"])
@permission_classes([IsAdminUser])
def sync_preview(request):
    return Response(get_services().sync.preview())


@extend_schema(tags=["Sync"], summary="Promote approved entities to the catalog", request=SyncExecuteRequest)
@api_view(["POST"])
@permission_classes([IsAdminUser])
@throttle_classes([BulkReviewThrottle])
def sync_execute(request):
    """
    Request body (ids optional, default every approved entity):
    {"ids": ["..."]}

    Response:
    {
        "sync_id": "...",
        "results": [{"id": "...", "entity_type": "venue", "promoted": true, "production_id": "..."}],
        "summary": {"requested": 1, "promoted": 1, "failed": 0}
    }
    """
    body = SyncExecuteRequest(data=request.data)
    body.is_valid(raise_exception=True)
    ids = body.validated_data.get("ids")
    result = get_services().sync.execute(_reviewer(request), ids=ids)
    return Response(result.to_dict())


@extend_schema(
    tags=["Sync"],
    summary="Past sync passes",
    parameters=[OpenApiParameter("limit", int), OpenApiParameter("offset", int)],
)
@api_view(["GET"])
@permission_classes([IsAdminUser])
def sync_history(request):
    params = SyncHistoryRequest(data=request.query_params)
    params.is_valid(raise_exception=True)
    history = get_services().sync.history(**params.validated_data)
    history["items"] = CatalogSyncSerializer(history["items"], many=True).data
    if history["last_sync"] is not None:
        history["last_sync"] = CatalogSyncSerializer(history["last_sync"]).data
    return Response(history)


# ============================================================
# Analytics
# ============================================================


@extend_schema(tags=["Analytics"], summary="Review KPIs", parameters=[OpenApiParameter("period", str)])
@api_view(["GET"])
@permission_classes([IsAdminUser])
def analytics_kpis(request):
    params = AnalyticsRequest(data=request.query_params)
    params.is_valid(raise_exception=True)
    return Response(get_services().analytics.kpis(params.validated_data["period"]))


@extend_schema(tags=["Analytics"], summary="Rejection analysis", parameters=[OpenApiParameter("period", str)])
@api_view(["GET"])
@permission_classes([IsAdminUser])
def analytics_rejections(request):
    params = AnalyticsRequest(data=request.query_params)
    params.is_valid(raise_exception=True)
    return Response(get_services().analytics.rejections(params.validated_data["period"]))


# ============================================================
# Budget
# ============================================================


@extend_schema(tags=["Budget"], summary="Budget status and throttle state")
@api_view(["GET"])
@permission_classes([IsAdminUser])
def budget_status(request):
    return Response(get_services().budget.get_status())


# ============================================================
# Discovery
# ============================================================


@extend_schema(tags=["Discovery"], summary="List or start discovery runs", request=StartDiscoveryRequest)
@api_view(["GET", "POST"])
@permission_classes([IsAdminUser])
@throttle_classes([DiscoveryTriggerThrottle])
def discovery_runs(request):
    """
    GET: recent runs, optional ?kind= and ?limit=
    POST: admission-check the estimate, create a run and dispatch it.
          Refused with 429 and Retry-After when the budget is throttled.
    """
    from ingestion.tasks import run_discovery

    services = get_services()
    if request.method == "GET":
        params = DiscoveryRunListRequest(data=request.query_params)
        params.is_valid(raise_exception=True)
        runs = services.runs.get_recent_runs(
            limit=params.validated_data["limit"],
            kind=params.validated_data.get("kind"),
        )
        return Response(DiscoveryRunSerializer(runs, many=True).data)

    body = StartDiscoveryRequest(data=request.data)
    body.is_valid(raise_exception=True)
    data = body.validated_data

    admission = services.budget.require_admission(
        estimated_search_queries=data["estimated_search_queries"],
        estimated_ai_calls=data["estimated_ai_calls"],
        use_free_tier=data["use_free_tier"],
    )
    run = services.runs.create(
        kind=data["kind"],
        config=data["config"],
        triggered_by=RunTrigger.MANUAL,
        triggered_by_user=_reviewer(request),
    )
    transaction.on_commit(lambda: run_discovery.delay(str(run.id)))
    logger.info(f"Run {run.id} started by {_reviewer(request)}")

    return Response(
        {"run": DiscoveryRunSerializer(run).data, "estimated_cost": admission.estimated_cost},
        status=status.HTTP_201_CREATED,
    )


@extend_schema(tags=["Discovery"], summary="Discovery run detail")
@api_view(["GET"])
@permission_classes([IsAdminUser])
def discovery_run_detail(request, run_id):
    run = get_services().runs.get_or_raise(run_id)
    return Response(DiscoveryRunSerializer(run).data)


@extend_schema(tags=["Discovery"], summary="Request cancellation of a run")
@api_view(["POST"])
@permission_classes([IsAdminUser])
def cancel_discovery_run(request, run_id):
    run = get_services().runs.request_cancel(run_id, cancelled_by=_reviewer(request))
    return Response(DiscoveryRunSerializer(run).data, status=status.HTTP_202_ACCEPTED)


@staff_member_required
def discovery_run_stream(request, run_id):
    """Server-Sent Events stream of one run's progress."""
    services = get_services()
    if services.runs.get(run_id) is None:
        raise Http404(f"Discovery run not found: {run_id}")
    stream = RunEventStream(run_id, tracker=services.runs)
    response = StreamingHttpResponse(
        (encode_sse(event) for event in stream),
        content_type="text/event-stream",
    )
    response["Cache-Control"] = "no-cache"
    response["X-Accel-Buffering"] = "no"
    return response


# ============================================================
# Strategies
# ============================================================


@extend_schema(tags=["Strategies"], summary="Strategies grouped by tier")
@api_view(["GET"])
@permission_classes([IsAdminUser])
def strategy_tiers(request):
    tiers = get_services().strategies.get_strategy_tiers(kind=request.query_params.get("kind") or None)
    return Response({
        "counts": tiers.counts(),
        "high": StrategySerializer(tiers.high, many=True).data,
        "medium": StrategySerializer(tiers.medium, many=True).data,
        "low": StrategySerializer(tiers.low, many=True).data,
        "untested": StrategySerializer(tiers.untested, many=True).data,
    })


# ============================================================
# Partners
# ============================================================


@extend_schema(tags=["Partners"], summary="List or create partners", request=CreatePartnerRequest)
@api_view(["GET", "POST"])
@permission_classes([IsAdminUser])
def partners(request):
    """
    POST returns the partner with its API key and webhook secret. They are
    shown only once.
    """
    accounts = get_services().partners
    if request.method == "GET":
        listed = accounts.list(
            status=request.query_params.get("status") or None,
            partner_type=request.query_params.get("partner_type") or None,
        )
        return Response({
            "partners": PartnerSerializer(listed, many=True).data,
            "stats": accounts.get_stats(),
        })

    body = CreatePartnerRequest(data=request.data)
    body.is_valid(raise_exception=True)
    data = dict(body.validated_data)
    created = accounts.create(
        name=data.pop("name"),
        partner_type=data.pop("partner_type"),
        contact=data.pop("contact"),
        **data,
    )
    return Response(
        {
            "partner": PartnerSerializer(created.partner).data,
            "api_key": created.api_key,
            "webhook_secret": created.webhook_secret,
        },
        status=status.HTTP_201_CREATED,
    )


@extend_schema(tags=["Partners"], summary="Rotate partner credentials")
@api_view(["POST"])
@permission_classes([IsAdminUser])
def rotate_partner_credentials(request, partner_id):
    rotation = get_services().partners.rotate_credentials(partner_id)
    return Response({
        "api_key": rotation.api_key,
        "webhook_secret": rotation.webhook_secret,
        "previous_valid_until": rotation.previous_valid_until,
    })


@extend_schema(tags=["Partners"], summary="Activate a partner")
@api_view(["POST"])
@permission_classes([IsAdminUser])
def activate_partner(request, partner_id):
    return Response(PartnerSerializer(get_services().partners.activate(partner_id)).data)


@extend_schema(tags=["Partners"], summary="Suspend a partner", request=SuspendPartnerRequest)
@api_view(["POST"])
@permission_classes([IsAdminUser])
def suspend_partner(request, partner_id):
    body = SuspendPartnerRequest(data=request.data)
    body.is_valid(raise_exception=True)
    partner = get_services().partners.suspend(partner_id, body.validated_data["reason"])
    return Response(PartnerSerializer(partner).data)


# ============================================================
# Feedback
# ============================================================


@extend_schema(tags=["Feedback"], summary="Search feedback statistics")
@api_view(["GET"])
@permission_classes([IsAdminUser])
def feedback_stats(request):
    feedback = get_services().feedback
    strategy_id = request.query_params.get("strategy_id")
    if strategy_id:
        return Response(feedback.get_strategy_performance(strategy_id))
    return Response(feedback.get_stats())
