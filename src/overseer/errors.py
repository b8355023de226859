"""Error taxonomy shared by orchestration and oversight components."""

from __future__ import annotations


class OverseerError(Exception):
    """Base class for all domain errors raised by overseer."""


class ValidationError(OverseerError, ValueError):
    """Malformed input rejected before any state was mutated."""


class InvalidOptionError(ValidationError):
    """Selected option id is not among the escalation's options."""

    def __init__(self, escalation_id: str, option: str, allowed: list[str]) -> None:
        super().__init__(
            f"Option {option!r} is not valid for escalation {escalation_id}; "
            f"expected one of: {', '.join(allowed)}",
        )
        self.escalation_id = escalation_id
        self.option = option
        self.allowed = allowed


class NotFoundError(OverseerError, LookupError):
    """Unknown outcome, task, worker or escalation id."""

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class ConcurrencyConflict(OverseerError):
    """Another caller changed the record first; retry with a different target."""


class AlreadyResolvedError(OverseerError):
    """Escalation already reached a terminal state."""

    def __init__(self, escalation_id: str, status: str) -> None:
        super().__init__(f"Escalation {escalation_id} is already {status}.")
        self.escalation_id = escalation_id
        self.status = status


class ExternalCapabilityError(OverseerError):
    """A pluggable judgment capability (scoring, similarity, criteria) failed."""


class PersistenceError(OverseerError):
    """Storage failure that aborted a single operation."""
