"""Domain enums for the approval engine."""

from enum import StrEnum


class EntityType(StrEnum):
    """Kinds of identities that hold roles and cast votes."""

    USER = "user"
    AGENT = "agent"


class OrgRole(StrEnum):
    """Organization-level standing of an identity."""

    ADMIN = "admin"
    MEMBER = "member"


class ScopeType(StrEnum):
    """Resource boundary a role's permissions apply to."""

    ORG = "org"
    SPACE = "space"
    GROUP = "group"
    WORKFLOW_TEMPLATE = "workflow_template"


class ResourceType(StrEnum):
    """Resource kinds a role grants permissions over."""

    GROUP = "group"
    SPACE = "space"
    WORKFLOW_TEMPLATE = "workflow_template"


class Permission(StrEnum):
    READ = "read"
    WRITE = "write"
    MANAGE = "manage"
    INSTANTIATE = "instantiate"
    VOTE = "vote"
    WORKFLOW_READ = "workflow_read"
    WORKFLOW_LIST = "workflow_list"
    WORKFLOW_CANCEL = "workflow_cancel"


class ApprovalRuleType(StrEnum):
    AND = "AND"
    OR = "OR"
    GROUP_REQUIREMENT = "GROUP_REQUIREMENT"


class Verdict(StrEnum):
    """Outcome of evaluating an approval rule against a vote ledger."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class WorkflowTemplateStatus(StrEnum):
    """Workflow template lifecycle.

    PENDING_DEPRECATION is the intermediate state while active workflows of
    the template are still running (or being cancelled).
    """

    ACTIVE = "ACTIVE"
    PENDING_DEPRECATION = "PENDING_DEPRECATION"
    DEPRECATED = "DEPRECATED"


class WorkflowStatus(StrEnum):
    """Lifecycle states for workflows.

    PENDING → EVALUATION_IN_PROGRESS → APPROVED/REJECTED, plus EXPIRED and
    CANCELLED from any non-terminal state.
    """

    PENDING = "PENDING"
    EVALUATION_IN_PROGRESS = "EVALUATION_IN_PROGRESS"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_WORKFLOW_STATUSES


TERMINAL_WORKFLOW_STATUSES = frozenset(
    {
        WorkflowStatus.APPROVED,
        WorkflowStatus.REJECTED,
        WorkflowStatus.EXPIRED,
        WorkflowStatus.CANCELLED,
    }
)


class VoteType(StrEnum):
    APPROVE = "APPROVE"
    VETO = "VETO"


class VoteStatus(StrEnum):
    """Whether an identity already has a vote on record for a workflow."""

    ALREADY_VOTED = "ALREADY_VOTED"
    VOTE_PENDING = "VOTE_PENDING"


class StepUpOperation(StrEnum):
    """Operations that may be gated behind a step-up (re-authenticated) context."""

    WORKFLOW_VOTE = "workflow_vote"


class AuditEventType(StrEnum):
    """Types of auditable events."""

    ROLES_ASSIGNED = "roles_assigned"
    ROLES_REMOVED = "roles_removed"
    TEMPLATE_CREATED = "template_created"
    TEMPLATE_UPDATED = "template_updated"
    TEMPLATE_DEPRECATED = "template_deprecated"
    WORKFLOW_CREATED = "workflow_created"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    WORKFLOW_EXPIRED = "workflow_expired"
    WORKFLOW_APPROVED = "workflow_approved"
    WORKFLOW_REJECTED = "workflow_rejected"
    VOTE_CAST = "vote_cast"
