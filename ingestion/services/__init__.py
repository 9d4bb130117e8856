"""
Services for the Catalog Ingestion Service.

Contains:
- budget: Budget ledger and throttle controller
- strategy_registry: Strategy catalog with success-rate bookkeeping
- discovery_runs: Discovery run lifecycle
- confidence: Weighted confidence scoring
- staging: Staging store, state machine and promotion
- feedback_recorder: Search feedback and review decision logs
- partners: Partner accounts and webhook signatures
- review: Review queue and bulk review actions
- catalog_sync: Promotion passes over approved entities
- review_analytics: Review KPIs and rejection analysis
- webhook_intake: Partner submission processing
- discovery_runner: Discovery run execution
- run_events: Live run event stream
- container: Service wiring
"""

from ingestion.services.container import Services, build_services, get_services, reset_services

__all__ = [
    "Services",
    "build_services",
    "get_services",
    "reset_services",
]
