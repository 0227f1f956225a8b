from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    UNAUTHORIZED = "UNAUTHORIZED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CONFLICT = "CONFLICT"
    RULE_VIOLATION = "RULE_VIOLATION"
    TRANSPORT_FAILURE = "TRANSPORT_FAILURE"


class TransitionError(Exception):
    """Base class for every way a transition can fail.

    ``field_errors`` maps a field name to a human-readable message when the
    failure can be pinned to an input.
    """

    kind: FailureKind

    def __init__(self, message: str, field_errors: dict[str, str] | None = None):
        self.message = message
        self.field_errors = dict(field_errors or {})
        super().__init__(message)


class ActionNotPermitted(TransitionError):
    kind = FailureKind.UNAUTHORIZED


class InvalidInput(TransitionError):
    kind = FailureKind.VALIDATION_ERROR


class VersionConflict(TransitionError):
    kind = FailureKind.CONFLICT


class RuleViolation(TransitionError):
    kind = FailureKind.RULE_VIOLATION


class TransportFailure(TransitionError):
    kind = FailureKind.TRANSPORT_FAILURE


RELOAD_AND_RETRY = "This record was changed by someone else. Reload it and try again."
