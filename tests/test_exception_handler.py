"""
Tests for the ingestion error taxonomy and its HTTP translation.
"""

import pytest
from rest_framework.exceptions import NotAuthenticated

from ingestion.api.exceptions import ingestion_exception_handler, status_for
from ingestion.exceptions import (
    BudgetExceededError,
    DuplicateError,
    IngestionError,
    InvalidTransitionError,
    NotFoundError,
    SignatureError,
    StaleTimestampError,
    StrategyDeprecatedError,
    ValidationError,
)


class TestErrorPayloads:
    def test_to_dict_omits_empty_details(self):
        assert ValidationError("bad input").to_dict() == {"error": "validation_error", "message": "bad input"}

    def test_invalid_transition_details(self):
        error = InvalidTransitionError("abc", "promoted", "rejected")

        assert isinstance(error, ValidationError)
        assert error.to_dict()["details"] == {
            "id": "abc",
            "current_status": "promoted",
            "target_status": "rejected",
        }

    def test_not_found_message(self):
        error = NotFoundError("StagedEntity", 42)

        assert error.message == "StagedEntity 42 not found"
        assert error.details == {"resource": "StagedEntity", "id": "42"}


class TestStatusMapping:
    """Each error class maps to one HTTP status."""

    @pytest.mark.parametrize(
        "error, expected",
        [
            (ValidationError("x"), 400),
            (InvalidTransitionError("a", "pending", "promoted"), 409),
            (SignatureError("x"), 401),
            (StaleTimestampError("x"), 401),
            (NotFoundError("Partner", "p"), 404),
            (DuplicateError("x"), 409),
            (StrategyDeprecatedError("s"), 409),
            (BudgetExceededError("over"), 429),
            (IngestionError("x"), 400),
        ],
    )
    def test_status_for(self, error, expected):
        assert status_for(error) == expected

    def test_budget_response_sets_retry_after(self):
        response = ingestion_exception_handler(BudgetExceededError("over", retry_after_seconds=120), {})

        assert response.status_code == 429
        assert response["Retry-After"] == "120"
        assert response.data == {
            "error": "budget_exceeded",
            "message": "over",
            "details": {"retry_after_seconds": 120},
        }

    def test_other_errors_use_default_handler(self):
        response = ingestion_exception_handler(NotAuthenticated(), {})

        assert response.status_code == 401

    def test_unhandled_exception_passes_through(self):
        assert ingestion_exception_handler(RuntimeError("boom"), {}) is None
