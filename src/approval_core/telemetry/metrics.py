"""OTel counters for vote acceptance and workflow outcomes."""

from __future__ import annotations

from opentelemetry import metrics

_meter = metrics.get_meter("approval.workflows")
_votes_accepted = _meter.create_counter(
    name="approval.votes.accepted",
    description="Votes accepted into workflow ledgers",
    unit="votes",
)
_transitions = _meter.create_counter(
    name="approval.workflows.transitions",
    description="Workflow status changes",
    unit="transitions",
)


def record_vote_accepted(vote_type: str, *, high_privilege: bool) -> None:
    _votes_accepted.add(1, attributes={"vote_type": vote_type, "high_privilege": high_privilege})


def record_transition(previous_status: str, status: str) -> None:
    """Count a persisted status change, e.g. ``PENDING`` -> ``EXPIRED``."""
    _transitions.add(1, attributes={"previous_status": previous_status, "status": status})
