"""Base exception hierarchy for the rewards engine."""

from typing import Any, Dict, Optional


class PlaytestRewardsError(Exception):
    """Base exception for all rewards engine errors."""

    error_code = "REWARDS_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": self.context,
        }


class DomainError(PlaytestRewardsError):
    """Base exception for domain-related errors."""
    pass


class ApplicationError(PlaytestRewardsError):
    """Base exception for application layer errors."""
    pass


class InfrastructureError(PlaytestRewardsError):
    """Base exception for infrastructure-related errors."""
    pass


# Configuration errors: fatal to a single entity, surfaced to creator/admin.

class ConfigurationError(DomainError):
    """Malformed or missing configuration."""

    error_code = "CONFIG_ERROR"


class ChallengeConfigurationError(ConfigurationError):
    """Challenge configuration does not match its type's schema."""

    error_code = "CHALLENGE_CONFIG_ERROR"

    def __init__(self, message: str, challenge_type: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        if challenge_type:
            context["challenge_type"] = challenge_type
        super().__init__(message, context=context, **kwargs)
        self.challenge_type = challenge_type


class TierConfigurationError(ConfigurationError):
    """Tier ladder is empty, unordered or has gaps."""

    error_code = "TIER_CONFIG_ERROR"


# Transient errors: retried on the next orchestrator pass.

class TransientError(InfrastructureError):
    """Base class for errors that are safe to retry."""
    pass


class MetricSourceUnavailableError(TransientError):
    """Activity read model could not be queried."""

    error_code = "METRIC_SOURCE_UNAVAILABLE"


class OperationTimeoutError(TransientError):
    """A validation or settlement exceeded its time bound."""

    error_code = "OPERATION_TIMEOUT"


# Invariant violations: rejected with no partial mutation.

class BusinessRuleViolationError(DomainError):
    """Raised when a business rule is violated."""

    error_code = "BUSINESS_RULE_VIOLATION"


class InsufficientBalanceError(BusinessRuleViolationError):
    """User balance cannot cover a debit."""

    error_code = "INSUFFICIENT_BALANCE"

    def __init__(self, user_id: Any, required: int, available: int):
        super().__init__(
            f"Insufficient balance for user {user_id}: required {required}, available {available}",
            context={"user_id": str(user_id), "required": required, "available": available},
        )
        self.user_id = user_id
        self.required = required
        self.available = available


class InsufficientReserveError(BusinessRuleViolationError):
    """Challenge reserve cannot cover an award."""

    error_code = "INSUFFICIENT_RESERVE"


class InvalidStateTransitionError(BusinessRuleViolationError):
    """State machine transition not allowed."""

    error_code = "INVALID_STATE_TRANSITION"

    def __init__(self, entity_type: str, entity_id: Any, old_status: str, new_status: str):
        super().__init__(
            f"Invalid {entity_type} status transition: {old_status} -> {new_status}",
            context={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "old_status": old_status,
                "new_status": new_status,
            },
        )
        self.old_status = old_status
        self.new_status = new_status


class ChallengeClosedError(BusinessRuleViolationError):
    """Challenge is not accepting participants."""

    error_code = "CHALLENGE_CLOSED"


class ChallengeFullError(BusinessRuleViolationError):
    """Challenge participant cap reached."""

    error_code = "CHALLENGE_FULL"


class DuplicateParticipationError(BusinessRuleViolationError):
    """User already participates in the challenge."""

    error_code = "DUPLICATE_PARTICIPATION"


class EntityNotFoundError(ApplicationError):
    """Raised when an entity is not found."""

    error_code = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(
            f"{entity_type} with ID {entity_id} not found",
            context={"entity_type": entity_type, "entity_id": str(entity_id)},
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class DatabaseSessionError(InfrastructureError):
    """Database session errors."""

    error_code = "DB_SESSION_ERROR"
