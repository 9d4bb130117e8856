"""
Sentry error tracking for the ingestion pipeline.

- Breadcrumbs for staging, review and discovery context
- Filters secrets (API keys, webhook secrets, signatures) from every event
- Captures best-effort failures that are logged but never re-raised

The SDK itself is initialised in config/settings/base.py when SENTRY_DSN is
set. Without a DSN every call here is a cheap no-op inside sentry_sdk.

Usage:
    from ingestion.monitoring import capture_ingestion_error

    try:
        registry.record_usage(strategy_id, success=True)
    except Exception as e:
        capture_ingestion_error(e, operation="strategy_usage", entity_id=entity.id)
"""

import logging
from typing import Any, Dict, Optional

import sentry_sdk

logger = logging.getLogger(__name__)

# Sensitive fields to filter from Sentry events
SENSITIVE_FIELDS = {
    "api_key",
    "apikey",
    "api-key",
    "authorization",
    "password",
    "secret",
    "signature",
    "token",
    "cookie",
    "x-signature",
}


def filter_sensitive_data(data: Any) -> Any:
    """
    Replace values of sensitive keys with "[Filtered]", recursing into dicts.
    """
    if not isinstance(data, dict):
        return data

    filtered = {}
    for key, value in data.items():
        key_lower = str(key).lower()
        if any(sensitive in key_lower for sensitive in SENSITIVE_FIELDS):
            filtered[key] = "[Filtered]"
        elif isinstance(value, dict):
            filtered[key] = filter_sensitive_data(value)
        else:
            filtered[key] = value
    return filtered


def before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Sentry before_send hook: scrub request headers, data and extras."""
    request = event.get("request")
    if isinstance(request, dict):
        for part in ("headers", "data", "cookies"):
            if isinstance(request.get(part), dict):
                request[part] = filter_sensitive_data(request[part])
    if isinstance(event.get("extra"), dict):
        event["extra"] = filter_sensitive_data(event["extra"])
    return event


def add_ingestion_breadcrumb(
    category: str,
    message: str,
    level: str = "info",
    data: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Add a breadcrumb tracing the steps that led up to an error.

    Args:
        category: Area of the pipeline (staging, review, discovery, webhook)
        message: What happened
        level: info, warning or error
        data: Extra context, filtered for secrets
    """
    sentry_sdk.add_breadcrumb(
        category=category,
        message=message,
        level=level,
        data=filter_sensitive_data(data or {}),
    )


def capture_ingestion_error(
    error: Exception,
    operation: str,
    entity_id: Any = None,
    extra_context: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Capture an exception with its ingestion context.

    Args:
        error: The exception that occurred
        operation: Name of the operation that failed (e.g. "strategy_usage")
        entity_id: Staged entity, run or strategy the operation concerned
        extra_context: Additional context (filtered for secrets)
    """
    add_ingestion_breadcrumb(
        category="ingestion",
        message=f"Error in {operation}: {type(error).__name__}",
        level="error",
        data=extra_context,
    )

    with sentry_sdk.new_scope() as scope:
        scope.set_tag("ingestion.operation", operation)
        if entity_id is not None:
            scope.set_extra("entity_id", str(entity_id))
        if extra_context:
            scope.set_extra("ingestion_context", filter_sensitive_data(extra_context))
        sentry_sdk.capture_exception(error)


def capture_alert(message: str, level: str = "warning", extra_data: Optional[Dict[str, Any]] = None) -> None:
    """
    Capture an alert message, e.g. a budget throttle.
    """
    with sentry_sdk.new_scope() as scope:
        scope.set_tag("alert.type", "threshold_breach")
        if extra_data:
            scope.set_extra("alert_data", filter_sensitive_data(extra_data))
        sentry_sdk.capture_message(message, level=level)
