"""
Error taxonomy for the orchestration engine.

Categories:
- validation: caller supplied bad data, never retried
- state: request not valid for the instance's current state
- conflict: optimistic commit lost a race, retried internally
- external: business failure reported by a hydrator or handler
- internal: anything unexpected; callers only see a generic message
- registry: capability catalog misuse at startup
- permission: caller lacks a capability's required permissions
"""

from enum import Enum
from typing import Any


class ErrorCategory(Enum):
    VALIDATION = "validation"
    STATE = "state"
    CONFLICT = "conflict"
    EXTERNAL = "external"
    INTERNAL = "internal"
    REGISTRY = "registry"
    PERMISSION = "permission"


class RecoveryHint(Enum):
    """Action a client can offer after a ``failed`` message."""

    RETRY = "retry"
    MODIFY = "modify"
    DISMISS = "dismiss"


class FlowError(Exception):
    """Base class for all engine errors."""

    code = "FlowError"
    category = ErrorCategory.INTERNAL

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.user_message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "category": self.category.value,
            "message": self.user_message,
            **self.details,
        }


# Registry


class DuplicateCapability(FlowError):
    code = "DuplicateCapability"
    category = ErrorCategory.REGISTRY


class UnknownCapability(FlowError):
    code = "UnknownCapability"
    category = ErrorCategory.REGISTRY


class InvalidMachineDefinition(FlowError):
    code = "InvalidMachineDefinition"
    category = ErrorCategory.REGISTRY


# Validation


class ValidationFailure(FlowError):
    category = ErrorCategory.VALIDATION

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None, **details: Any):
        super().__init__(message, errors=errors or [], **details)


class InvalidEntities(ValidationFailure):
    code = "InvalidEntities"


class HydrationSchemaMismatch(ValidationFailure):
    code = "HydrationSchemaMismatch"


class InvalidPayload(ValidationFailure):
    code = "InvalidPayload"


class IntentUnresolved(ValidationFailure):
    code = "IntentUnresolved"


# State


class StateError(FlowError):
    category = ErrorCategory.STATE

    def __init__(self, message: str, valid_events: list[str] | None = None, **details: Any):
        super().__init__(message, valid_events=valid_events or [], **details)

    @property
    def valid_events(self) -> list[str]:
        return self.details["valid_events"]


class InvalidTransition(StateError):
    code = "InvalidTransition"


class GuardRejected(StateError):
    code = "GuardRejected"


class InstanceNotFound(StateError):
    """Raised for unknown and dismissed instances alike."""

    code = "InstanceNotFound"

    def __init__(self, instance_id: str):
        super().__init__(f"Instance '{instance_id}' not found", instance_id=instance_id)


class SessionNotFound(StateError):
    code = "SessionNotFound"

    def __init__(self, session_id: str):
        super().__init__(f"Session '{session_id}' not found", session_id=session_id)


# Conflict


class VersionConflict(FlowError):
    code = "VersionConflict"
    category = ErrorCategory.CONFLICT

    def __init__(self, instance_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Instance '{instance_id}' is at version {actual_version}, expected {expected_version}",
            instance_id=instance_id,
            expected_version=expected_version,
            actual_version=actual_version,
        )


# External


class ExternalFailure(FlowError):
    category = ErrorCategory.EXTERNAL

    def __init__(self, user_message: str, recovery: RecoveryHint | None = None, **details: Any):
        super().__init__(user_message, **details)
        self.recovery = recovery


class HydrationFailed(ExternalFailure):
    code = "HydrationFailed"


class HandlerFailed(ExternalFailure):
    code = "HandlerFailed"


# Internal / permission


class InternalError(FlowError):
    code = "InternalError"
    category = ErrorCategory.INTERNAL

    def __init__(self, retry_after: float = 2.0, message: str = "An unexpected error occurred"):
        super().__init__(message, retry_after=retry_after)

    @property
    def retry_after(self) -> float:
        return self.details["retry_after"]


class PermissionDenied(FlowError):
    code = "PermissionDenied"
    category = ErrorCategory.PERMISSION
