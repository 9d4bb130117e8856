"""
DRF exception handler translating ingestion errors into HTTP responses.

    ValidationError          400
    SignatureError           401 (StaleTimestampError included)
    NotFoundError            404
    InvalidTransitionError   409
    DuplicateError           409
    StrategyDeprecatedError  409
    BudgetExceededError      429 with Retry-After
"""

import logging

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler

from ingestion.exceptions import (
    BudgetExceededError,
    DuplicateError,
    IngestionError,
    InvalidTransitionError,
    NotFoundError,
    SignatureError,
    StrategyDeprecatedError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Checked in order, subclasses first
STATUS_BY_ERROR = (
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (SignatureError, status.HTTP_401_UNAUTHORIZED),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (DuplicateError, status.HTTP_409_CONFLICT),
    (StrategyDeprecatedError, status.HTTP_409_CONFLICT),
    (BudgetExceededError, status.HTTP_429_TOO_MANY_REQUESTS),
)


def status_for(error: IngestionError) -> int:
    for error_class, http_status in STATUS_BY_ERROR:
        if isinstance(error, error_class):
            return http_status
    return status.HTTP_400_BAD_REQUEST


def ingestion_exception_handler(exc, context):
    """Handle IngestionError subclasses, defer everything else to DRF."""
    if not isinstance(exc, IngestionError):
        return exception_handler(exc, context)

    http_status = status_for(exc)
    response = Response(exc.to_dict(), status=http_status)
    if isinstance(exc, BudgetExceededError):
        response["Retry-After"] = str(exc.retry_after_seconds)
    if isinstance(exc, SignatureError):
        logger.warning(f"Rejected webhook request: {exc.message}")
    return response
