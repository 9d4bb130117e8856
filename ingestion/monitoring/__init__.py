"""
Monitoring for the ingestion pipeline.

- Sentry error tracking with ingestion context
- Best-effort failure capture for post-commit hooks
"""

from .sentry_integration import (
    add_ingestion_breadcrumb,
    before_send,
    capture_alert,
    capture_ingestion_error,
    filter_sensitive_data,
)

__all__ = [
    "add_ingestion_breadcrumb",
    "before_send",
    "capture_alert",
    "capture_ingestion_error",
    "filter_sensitive_data",
]
