"""
Domain errors for the entity resolution core.

Every error carries a machine-readable code and enough context (entity,
cluster or history ids) for the caller to retry or investigate.
"""

from typing import Any, Optional


class DomainError(Exception):
    """Base class for entity resolution errors."""

    error_code = "DOMAIN_ERROR"
    retryable = False

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Render as the failure payload handed to API collaborators."""
        return {
            "success": False,
            "error": {
                "code": self.error_code,
                "message": self.message,
                "retryable": self.retryable,
                "details": self.details,
            },
        }


class ValidationError(DomainError):
    """Malformed candidate, entity batch or merge options."""

    error_code = "VALIDATION_ERROR"


class NotFoundError(DomainError):
    """Missing entity, cluster or merge history row."""

    error_code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            f"{resource} not found: {identifier}",
            {"resource": resource, "id": identifier},
        )


class ConflictError(DomainError):
    """Cluster already merged, merge in flight, or history already unmerged."""

    error_code = "CONFLICT"


class PersistenceError(DomainError):
    """A storage transaction failed and was rolled back."""

    error_code = "PERSISTENCE_ERROR"
    retryable = True


class StrategyError(DomainError):
    """A single matching strategy raised; recorded and skipped."""

    error_code = "STRATEGY_ERROR"

    def __init__(self, strategy: str, cause: Exception):
        super().__init__(
            f"Strategy {strategy} failed: {cause}",
            {"strategy": strategy, "cause": type(cause).__name__},
        )
        self.strategy = strategy
        self.cause = cause
