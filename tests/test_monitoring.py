"""
Tests for the Sentry integration.

sentry_sdk is patched at module level so every call can be inspected.
"""

from unittest.mock import MagicMock, patch

import pytest

from ingestion.monitoring import (
    add_ingestion_breadcrumb,
    before_send,
    capture_alert,
    capture_ingestion_error,
    filter_sensitive_data,
)

SENTRY = "ingestion.monitoring.sentry_integration.sentry_sdk"


@pytest.fixture
def mock_sentry():
    with patch(SENTRY) as sentry:
        scope = MagicMock()
        sentry.new_scope.return_value.__enter__.return_value = scope
        sentry.scope = scope
        yield sentry


class TestFilterSensitiveData:
    """Tests for secret scrubbing."""

    def test_filters_nested_keys(self):
        data = {
            "partner": "Green Kitchen",
            "headers": {"Authorization": "Bearer pad_live_abc", "X-Signature": "sha256=ff"},
            "webhook_secret": "whsec_123",
        }

        filtered = filter_sensitive_data(data)

        assert filtered["partner"] == "Green Kitchen"
        assert filtered["headers"]["Authorization"] == "[Filtered]"
        assert filtered["headers"]["X-Signature"] == "[Filtered]"
        assert filtered["webhook_secret"] == "[Filtered]"

    def test_non_dict_unchanged(self):
        assert filter_sensitive_data(["api_key"]) == ["api_key"]

    def test_before_send_scrubs_request_and_extra(self):
        event = {
            "request": {"headers": {"Authorization": "Bearer x"}, "data": {"name": "Tibits"}},
            "extra": {"api_key": "pad_live_abc"},
        }

        scrubbed = before_send(event, {})

        assert scrubbed["request"]["headers"]["Authorization"] == "[Filtered]"
        assert scrubbed["request"]["data"] == {"name": "Tibits"}
        assert scrubbed["extra"]["api_key"] == "[Filtered]"


class TestCapture:
    """Tests for breadcrumbs, errors and alerts."""

    def test_breadcrumb_data_filtered(self, mock_sentry):
        add_ingestion_breadcrumb("webhook", "Received submission", data={"signature": "abc", "items": 3})

        kwargs = mock_sentry.add_breadcrumb.call_args[1]
        assert kwargs["category"] == "webhook"
        assert kwargs["level"] == "info"
        assert kwargs["data"] == {"signature": "[Filtered]", "items": 3}

    def test_capture_ingestion_error_tags_operation(self, mock_sentry):
        error = ValueError("boom")

        capture_ingestion_error(error, operation="strategy_usage", entity_id="e-1", extra_context={"token": "t"})

        mock_sentry.scope.set_tag.assert_called_once_with("ingestion.operation", "strategy_usage")
        mock_sentry.scope.set_extra.assert_any_call("entity_id", "e-1")
        mock_sentry.scope.set_extra.assert_any_call("ingestion_context", {"token": "[Filtered]"})
        mock_sentry.capture_exception.assert_called_once_with(error)
        assert mock_sentry.add_breadcrumb.call_args[1]["level"] == "error"

    def test_capture_alert(self, mock_sentry):
        capture_alert("Budget throttle: daily limit", extra_data={"date": "2026-10-19"})

        mock_sentry.scope.set_tag.assert_called_once_with("alert.type", "threshold_breach")
        mock_sentry.capture_message.assert_called_once_with("Budget throttle: daily limit", level="warning")


@pytest.mark.django_db
class TestBestEffortHooks:
    """Failures in post-commit hooks are captured, never raised."""

    def test_failing_hook_is_captured(self, mock_sentry):
        from ingestion.services.hooks import run_best_effort

        def failing():
            raise RuntimeError("feedback store down")

        run_best_effort("search_feedback", failing)

        mock_sentry.capture_exception.assert_called_once()
        mock_sentry.scope.set_tag.assert_called_once_with("ingestion.operation", "search_feedback")

    def test_throttle_denial_raises_alert(self, mock_sentry, services):
        services.budget.record_cost("ai_claude", 45.0)

        decision = services.budget.admit_new_run(estimated_ai_calls=10)

        assert decision.allowed is False
        mock_sentry.capture_message.assert_called_once()
        assert mock_sentry.capture_message.call_args[0][0].startswith("Budget throttle")
