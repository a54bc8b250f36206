"""Approval rule validation and evaluation.

A rule is a tree of AND / OR nodes over GROUP_REQUIREMENT leaves, at most
``MAX_NESTING_DEPTH`` levels below the root. Depth is enforced when a rule is
created; evaluation trusts the tree it is given.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from approval_core.enums import ApprovalRuleType, Verdict, VoteType
from approval_core.errors import ErrorCode, RuleValidationError
from approval_core.models import AndRule, GroupRequirementRule, OrRule

if TYPE_CHECKING:
    from collections.abc import Collection, Iterable, Mapping

    from approval_core.models import ApprovalRule, Vote

MAX_NESTING_DEPTH = 2


class RuleEvaluation(BaseModel):
    """Result of evaluating an approval rule against a vote ledger."""

    verdict: Verdict
    requires_high_privilege_for: frozenset[str] = Field(default_factory=frozenset)


# ─── Validation ──────────────────────────────────────────


def validate_rule(data: Any, depth: int = 0) -> ApprovalRule:
    """Validate raw rule data (e.g. a decoded JSON body) into a rule tree.

    Raises:
        RuleValidationError: with the code of the first problem found.
    """
    if isinstance(data, BaseModel):
        data = data.model_dump()
    if depth > MAX_NESTING_DEPTH:
        raise RuleValidationError(
            ErrorCode.MAX_RULE_NESTING_EXCEEDED,
            f"Approval rules may nest at most {MAX_NESTING_DEPTH} levels",
        )
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise RuleValidationError(ErrorCode.INVALID_RULE_TYPE)

    match data["type"]:
        case ApprovalRuleType.GROUP_REQUIREMENT:
            return _validate_group_requirement(data)
        case ApprovalRuleType.AND:
            return AndRule(rules=_validate_children(data, depth, ErrorCode.AND_RULE_MUST_HAVE_RULES))
        case ApprovalRuleType.OR:
            return OrRule(rules=_validate_children(data, depth, ErrorCode.OR_RULE_MUST_HAVE_RULES))
        case _:
            raise RuleValidationError(ErrorCode.INVALID_RULE_TYPE, f"Unknown rule type: {data['type']}")


def _validate_group_requirement(data: dict[str, Any]) -> GroupRequirementRule:
    group_id = data.get("group_id")
    if not isinstance(group_id, str) or not _is_uuid(group_id):
        raise RuleValidationError(ErrorCode.GROUP_RULE_INVALID_GROUP_ID, f"Invalid group id: {group_id!r}")

    min_count = data.get("min_count")
    if isinstance(min_count, bool) or not isinstance(min_count, int) or min_count < 1:
        raise RuleValidationError(ErrorCode.GROUP_RULE_INVALID_MIN_COUNT, f"Invalid min_count: {min_count!r}")

    return GroupRequirementRule(
        group_id=group_id,
        min_count=min_count,
        require_high_privilege=bool(data.get("require_high_privilege", False)),
    )


def _validate_children(data: dict[str, Any], depth: int, empty_code: ErrorCode) -> tuple[ApprovalRule, ...]:
    rules = data.get("rules")
    if not isinstance(rules, list | tuple) or not rules:
        raise RuleValidationError(empty_code)
    return tuple(validate_rule(child, depth + 1) for child in rules)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


# ─── Tree queries ────────────────────────────────────────


def iter_group_requirements(rule: ApprovalRule) -> Iterable[GroupRequirementRule]:
    match rule:
        case GroupRequirementRule():
            yield rule
        case AndRule(rules=children) | OrRule(rules=children):
            for child in children:
                yield from iter_group_requirements(child)


def voting_group_ids(rule: ApprovalRule) -> frozenset[str]:
    """Every group referenced anywhere in the tree."""
    return frozenset(leaf.group_id for leaf in iter_group_requirements(rule))


def high_privilege_group_ids(rule: ApprovalRule) -> frozenset[str]:
    return frozenset(leaf.group_id for leaf in iter_group_requirements(rule) if leaf.require_high_privilege)


# ─── Evaluation ──────────────────────────────────────────


def evaluate(
    rule: ApprovalRule,
    votes: Iterable[Vote],
    members: Mapping[str, Collection[str]],
) -> RuleEvaluation:
    """Turn a vote ledger into a verdict.

    Args:
        rule: Validated rule tree.
        votes: Full ledger for the workflow, repeat votes included.
        members: Current membership snapshot, group id -> member voter keys.
            Groups missing from the mapping have no members.

    A single VETO rejects regardless of the tree. Otherwise a leaf counts
    distinct voters who approved for its group and still belong to it.
    """
    ledger = list(votes)
    high_privilege = high_privilege_group_ids(rule)

    if any(vote.vote_type == VoteType.VETO for vote in ledger):
        return RuleEvaluation(verdict=Verdict.REJECTED, requires_high_privilege_for=high_privilege)

    approvals = [vote for vote in ledger if vote.vote_type == VoteType.APPROVE]
    satisfied = _is_satisfied(rule, approvals, members)
    return RuleEvaluation(
        verdict=Verdict.APPROVED if satisfied else Verdict.PENDING,
        requires_high_privilege_for=high_privilege,
    )


def _is_satisfied(rule: ApprovalRule, approvals: list[Vote], members: Mapping[str, Collection[str]]) -> bool:
    match rule:
        case GroupRequirementRule(group_id=group_id, min_count=min_count):
            group_members = members.get(group_id, ())
            voters = {
                vote.voter_key
                for vote in approvals
                if group_id in vote.voted_for_groups and vote.voter_key in group_members
            }
            return len(voters) >= min_count
        case AndRule(rules=children):
            return all(_is_satisfied(child, approvals, members) for child in children)
        case OrRule(rules=children):
            return any(_is_satisfied(child, approvals, members) for child in children)
    raise RuleValidationError(ErrorCode.INVALID_RULE_TYPE)
