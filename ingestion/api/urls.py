"""
Ingestion API URL configuration.

Endpoints:
- GET  /api/v1/review/queue/                      - Review queue
- GET  /api/v1/review/counts/                     - Counts by status
- GET  /api/v1/review/<id>/                       - Entity detail
- POST /api/v1/review/<id>/approve/               - Approve and promote
- POST /api/v1/review/<id>/reject/                - Reject
- POST /api/v1/review/<id>/flag/                  - Flag for review
- POST /api/v1/review/<id>/partial-approve/       - Venue plus dish decisions
- POST /api/v1/review/bulk-approve/               - Bulk approve
- POST /api/v1/review/bulk-reject/                - Bulk reject
- POST /api/v1/review/assign-chain/               - Bulk chain assignment
- GET  /api/v1/sync/preview/                      - Approved entities awaiting promotion
- POST /api/v1/sync/execute/                      - Promote approved entities
- GET  /api/v1/sync/history/                      - Past sync passes
- GET  /api/v1/analytics/kpis/                    - Review KPIs
- GET  /api/v1/analytics/rejections/              - Rejection analysis
- GET  /api/v1/budget/                            - Budget status
- GET/POST /api/v1/discovery/runs/                - List or start runs
- GET  /api/v1/discovery/runs/<id>/               - Run detail
- POST /api/v1/discovery/runs/<id>/cancel/        - Cancel a run
- GET  /api/v1/discovery/runs/<id>/stream/        - Live run events (SSE)
- GET  /api/v1/strategies/                        - Strategy tiers
- GET  /api/v1/feedback/stats/                    - Search feedback stats
- GET/POST /api/v1/partners/                      - List or create partners
- POST /api/v1/partners/<id>/rotate-credentials/  - Rotate API key and secret
- POST /api/v1/partners/<id>/activate/            - Activate
- POST /api/v1/partners/<id>/suspend/             - Suspend
- POST /api/v1/partners/webhook/                  - Partner submissions
"""

from django.urls import path

from ingestion.api import views
from ingestion.api.partner_views import partner_webhook

app_name = "ingestion_api"

urlpatterns = [
    # Review
    path("review/queue/", views.review_queue, name="review_queue"),
    path("review/counts/", views.review_counts, name="review_counts"),
    path("review/bulk-approve/", views.bulk_approve, name="bulk_approve"),
    path("review/bulk-reject/", views.bulk_reject, name="bulk_reject"),
    path("review/assign-chain/", views.assign_chain, name="assign_chain"),
    path("review/<uuid:entity_id>/", views.staged_entity_detail, name="staged_entity_detail"),
    path("review/<uuid:entity_id>/approve/", views.approve_entity, name="approve_entity"),
    path("review/<uuid:entity_id>/reject/", views.reject_entity, name="reject_entity"),
    path("review/<uuid:entity_id>/flag/", views.flag_entity, name="flag_entity"),
    path("review/<uuid:entity_id>/partial-approve/", views.partial_approve, name="partial_approve"),

    # Catalog sync
    path("sync/preview/", views.sync_preview, name="sync_preview"),
    path("sync/execute/", views.sync_execute, name="sync_execute"),
    path("sync/history/", views.sync_history, name="sync_history"),

    # Analytics
    path("analytics/kpis/", views.analytics_kpis, name="analytics_kpis"),
    path("analytics/rejections/", views.analytics_rejections, name="analytics_rejections"),

    # Budget
    path("budget/", views.budget_status, name="budget_status"),

    # Discovery
    path("discovery/runs/", views.discovery_runs, name="discovery_runs"),
    path("discovery/runs/<uuid:run_id>/", views.discovery_run_detail, name="discovery_run_detail"),
    path("discovery/runs/<uuid:run_id>/cancel/", views.cancel_discovery_run, name="cancel_discovery_run"),
    path("discovery/runs/<uuid:run_id>/stream/", views.discovery_run_stream, name="discovery_run_stream"),

    # Strategies and feedback
    path("strategies/", views.strategy_tiers, name="strategy_tiers"),
    path("feedback/stats/", views.feedback_stats, name="feedback_stats"),

    # Partners
    path("partners/", views.partners, name="partners"),
    path("partners/webhook/", partner_webhook, name="partner_webhook"),
    path(
        "partners/<uuid:partner_id>/rotate-credentials/",
        views.rotate_partner_credentials,
        name="rotate_partner_credentials",
    ),
    path("partners/<uuid:partner_id>/activate/", views.activate_partner, name="activate_partner"),
    path("partners/<uuid:partner_id>/suspend/", views.suspend_partner, name="suspend_partner"),
]
