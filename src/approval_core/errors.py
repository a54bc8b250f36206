"""Approval engine error codes and exceptions.

Every failure surfaced to a caller carries a symbolic ``ErrorCode`` so that
transports can map it without parsing messages.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    # Validation
    INVALID_RULE_TYPE = "INVALID_RULE_TYPE"
    AND_RULE_MUST_HAVE_RULES = "AND_RULE_MUST_HAVE_RULES"
    OR_RULE_MUST_HAVE_RULES = "OR_RULE_MUST_HAVE_RULES"
    GROUP_RULE_INVALID_MIN_COUNT = "GROUP_RULE_INVALID_MIN_COUNT"
    GROUP_RULE_INVALID_GROUP_ID = "GROUP_RULE_INVALID_GROUP_ID"
    MAX_RULE_NESTING_EXCEEDED = "MAX_RULE_NESTING_EXCEEDED"
    MAX_ROLES_PER_ENTITY_EXCEEDED = "MAX_ROLES_PER_ENTITY_EXCEEDED"
    ROLE_NAME_UNKNOWN = "ROLE_NAME_UNKNOWN"
    ROLE_SCOPE_INVALID = "ROLE_SCOPE_INVALID"
    VOTE_TYPE_INVALID = "VOTE_TYPE_INVALID"
    VOTE_REASON_TOO_LONG = "VOTE_REASON_TOO_LONG"
    WORKFLOW_TEMPLATE_EXPIRES_IN_HOURS_INVALID = "WORKFLOW_TEMPLATE_EXPIRES_IN_HOURS_INVALID"

    # Authorization
    PERMISSION_DENIED = "PERMISSION_DENIED"
    ENTITY_NOT_IN_GROUP = "ENTITY_NOT_IN_GROUP"
    ENTITY_NOT_IN_REQUIRED_GROUP = "ENTITY_NOT_IN_REQUIRED_GROUP"
    ENTITY_NOT_ELIGIBLE_TO_VOTE = "ENTITY_NOT_ELIGIBLE_TO_VOTE"
    STEP_UP_CONTEXT_MISSING = "STEP_UP_CONTEXT_MISSING"
    STEP_UP_OPERATION_MISMATCH = "STEP_UP_OPERATION_MISMATCH"
    STEP_UP_RESOURCE_MISMATCH = "STEP_UP_RESOURCE_MISMATCH"

    # Not found
    WORKFLOW_NOT_FOUND = "WORKFLOW_NOT_FOUND"
    WORKFLOW_TEMPLATE_NOT_FOUND = "WORKFLOW_TEMPLATE_NOT_FOUND"
    ENTITY_NOT_FOUND = "ENTITY_NOT_FOUND"

    # Workflow / template state
    WORKFLOW_EXPIRED = "WORKFLOW_EXPIRED"
    WORKFLOW_ALREADY_APPROVED = "WORKFLOW_ALREADY_APPROVED"
    WORKFLOW_ALREADY_REJECTED = "WORKFLOW_ALREADY_REJECTED"
    WORKFLOW_CANCELLED = "WORKFLOW_CANCELLED"
    WORKFLOW_TEMPLATE_NOT_ACTIVE = "WORKFLOW_TEMPLATE_NOT_ACTIVE"
    WORKFLOW_TEMPLATE_NOT_PENDING_DEPRECATION = "WORKFLOW_TEMPLATE_NOT_PENDING_DEPRECATION"

    # Consistency / concurrency
    TOKEN_NOT_FOUND = "token_not_found"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    RECALCULATION_RETRIES_EXHAUSTED = "RECALCULATION_RETRIES_EXHAUSTED"


class ApprovalError(Exception):
    """Base exception for all approval engine errors."""

    def __init__(self, code: ErrorCode, message: str | None = None) -> None:
        super().__init__(message or code.value)
        self.code = code


class ValidationError(ApprovalError):
    """Input rejected at creation/assignment time; nothing was persisted."""


class RuleValidationError(ValidationError):
    """Malformed approval rule tree."""


class AuthorizationError(ApprovalError):
    """Identity may not perform the action; nothing was recorded."""


class NotFoundError(ApprovalError):
    """Referenced workflow, template or entity does not exist."""


class ConflictError(ApprovalError):
    """Resource is in a state that does not accept the operation."""


class ConsistencyError(ApprovalError):
    """Single-use guarantee violated (e.g. step-up context reuse). Never retry."""


class ConcurrencyError(ApprovalError):
    """Optimistic version check failed."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(ErrorCode.CONCURRENT_MODIFICATION, message)


class RecalculationRetriesExhausted(ApprovalError):
    """Recalculation kept losing the version race; the job should be redelivered."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(ErrorCode.RECALCULATION_RETRIES_EXHAUSTED, message)
