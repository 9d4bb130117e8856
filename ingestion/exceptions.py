"""
Exception taxonomy for the ingestion pipeline.

Every service raises one of these; the API layer translates them into HTTP
responses (see ingestion.api.exceptions). BudgetExceededError is an expected
condition that schedulers should retry later, not a failure.
"""

from typing import Any, Dict, Optional


class IngestionError(Exception):
    """Base class for all ingestion errors."""

    code = "ingestion_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a JSON-serializable dictionary."""
        data = {"error": self.code, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(IngestionError):
    """Malformed input, rejected before anything is persisted."""

    code = "validation_error"


class InvalidTransitionError(ValidationError):
    """A staged entity or run was asked to move to a status it cannot reach."""

    code = "invalid_transition"

    def __init__(self, entity_id: Any, current_status: str, target_status: str):
        super().__init__(
            f"Cannot move {entity_id} from '{current_status}' to '{target_status}'",
            details={
                "id": str(entity_id),
                "current_status": current_status,
                "target_status": target_status,
            },
        )
        self.current_status = current_status
        self.target_status = target_status


class NotFoundError(IngestionError):
    """A referenced id does not exist."""

    code = "not_found"

    def __init__(self, resource: str, resource_id: Any):
        super().__init__(
            f"{resource} {resource_id} not found",
            details={"resource": resource, "id": str(resource_id)},
        )
        self.resource = resource
        self.resource_id = resource_id


class DuplicateError(IngestionError):
    """Idempotency key reused for a different submission."""

    code = "duplicate"


class BudgetExceededError(IngestionError):
    """Admission denied by the throttle controller. Retry later."""

    code = "budget_exceeded"

    def __init__(self, reason: str, retry_after_seconds: int = 3600):
        super().__init__(reason, details={"retry_after_seconds": retry_after_seconds})
        self.reason = reason
        self.retry_after_seconds = retry_after_seconds


class StrategyDeprecatedError(IngestionError):
    """Usage recorded against a deprecated (terminal) strategy."""

    code = "strategy_deprecated"

    def __init__(self, strategy_id: Any, reason: str = ""):
        super().__init__(
            f"Strategy {strategy_id} is deprecated",
            details={"id": str(strategy_id), "deprecation_reason": reason},
        )
        self.strategy_id = strategy_id


class SignatureError(IngestionError):
    """Webhook authentication failure."""

    code = "invalid_signature"


class StaleTimestampError(SignatureError):
    """Webhook timestamp outside the replay window."""

    code = "stale_timestamp"
