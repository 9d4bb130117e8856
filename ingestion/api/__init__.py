"""
REST API for the ingestion service.

- views: staff-only admin endpoints (review, budget, discovery, partners)
- partner_views: partner webhook
"""
