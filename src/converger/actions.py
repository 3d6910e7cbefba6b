"""Reconciliation actions, plans and convergence reports."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .provider import ErrorKind


class Stage(int, Enum):
    """Dependency stages, in the only order they may execute.

    A function cannot be created without its role ARN; the dead-letter
    publish grant must be on the role before the function references the
    target; a rule must exist before the invoke grant names it as source;
    a target must not be bound before the function accepts the invocation.
    """

    ROLE = 1
    DEAD_LETTER = 2
    FUNCTION = 3
    SCHEDULE = 4
    PERMISSION = 5
    TARGET = 6


class ActionKind(str, Enum):
    """Kinds of reconciliation action."""

    CREATE_ROLE = "CreateRole"
    UPDATE_ROLE_POLICY = "UpdateRolePolicy"
    ATTACH_MANAGED_POLICY = "AttachManagedPolicy"
    GRANT_DEAD_LETTER_PUBLISH = "GrantDeadLetterPublish"
    CREATE_FUNCTION = "CreateFunction"
    UPDATE_FUNCTION_CODE = "UpdateFunctionCode"
    UPDATE_FUNCTION_CONFIG = "UpdateFunctionConfig"
    PUT_SCHEDULE_RULE = "PutScheduleRule"
    GRANT_INVOKE_PERMISSION = "GrantInvokePermission"
    BIND_TARGET = "BindTarget"
    NOOP = "Noop"


class ActionOutcome(str, Enum):
    """What happened to an action during a run."""

    APPLIED = "Applied"
    SKIPPED = "Skipped"
    FAILED = "Failed"


class ConvergenceStatus(str, Enum):
    """Overall result of a run."""

    CONVERGED = "Converged"
    PARTIALLY_CONVERGED = "PartiallyConverged"
    FAILED = "Failed"

    @property
    def exit_code(self) -> int:
        match self:
            case ConvergenceStatus.CONVERGED:
                return 0
            case ConvergenceStatus.PARTIALLY_CONVERGED:
                return 3
            case _:
                return 1


@dataclass(frozen=True)
class ReconciliationAction:
    """A single provider mutation, or a recorded no-op.

    `payload` carries only what the action needs; references produced by
    earlier actions (role ARN, function ARN, rule ARN) are resolved by the
    Reconciler at execution time.
    """

    kind: ActionKind
    stage: Stage
    reason: str
    payload: dict[str, Any] = field(default_factory=dict, compare=False)
    # Which sub-resource a no-op stands for, e.g. "function-code"
    subject: str = ""

    @property
    def is_noop(self) -> bool:
        return self.kind is ActionKind.NOOP

    def describe(self) -> str:
        if self.is_noop:
            return f"Noop({self.subject}): {self.reason}"
        return f"{self.kind.value}: {self.reason}"


@dataclass(frozen=True)
class Plan:
    """Ordered actions for one deployment, including no-ops for audit."""

    name: str
    actions: tuple[ReconciliationAction, ...] = ()

    def __post_init__(self) -> None:
        stages = [a.stage for a in self.actions]
        if stages != sorted(stages):
            raise ValueError(f"Plan actions out of dependency order: {stages}")

    def __iter__(self) -> Iterator[ReconciliationAction]:
        return iter(self.actions)

    def __len__(self) -> int:
        return len(self.actions)

    @property
    def changes(self) -> tuple[ReconciliationAction, ...]:
        """The non-Noop actions, in order."""
        return tuple(a for a in self.actions if not a.is_noop)

    @property
    def kinds(self) -> list[ActionKind]:
        return [a.kind for a in self.actions]

    @property
    def change_kinds(self) -> list[ActionKind]:
        return [a.kind for a in self.changes]

    @property
    def is_converged(self) -> bool:
        return not self.changes


@dataclass
class ActionRecord:
    """Outcome of one action in a run."""

    action: ReconciliationAction
    outcome: ActionOutcome
    attempts: int = 0
    elapsed_seconds: float = 0.0
    error: str | None = None
    error_kind: ErrorKind | None = None
    # Why the action was not dispatched, e.g. "no-op" or "cancelled"
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.kind.value,
            "subject": self.action.subject,
            "stage": self.action.stage.name.lower(),
            "reason": self.action.reason,
            "outcome": self.outcome.value,
            "attempts": self.attempts,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "detail": self.detail,
        }


def derive_status(records: Sequence[ActionRecord]) -> ConvergenceStatus:
    """Compute overall status from per-action records.

    Converged when every change applied; PartiallyConverged when something
    applied before the run stopped; Failed when nothing applied.
    """
    changes = [r for r in records if not r.action.is_noop]
    applied = sum(1 for r in changes if r.outcome is ActionOutcome.APPLIED)
    if applied == len(changes):
        return ConvergenceStatus.CONVERGED
    if applied > 0:
        return ConvergenceStatus.PARTIALLY_CONVERGED
    return ConvergenceStatus.FAILED


@dataclass
class ConvergenceReport:
    """Terminal artifact of a run: what was attempted and how it ended."""

    name: str
    status: ConvergenceStatus
    records: list[ActionRecord] = field(default_factory=list)
    error: str | None = None
    error_type: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def exit_code(self) -> int:
        return self.status.exit_code

    def _count(self, outcome: ActionOutcome) -> int:
        return sum(1 for r in self.records if r.outcome is outcome and not r.action.is_noop)

    @property
    def applied_count(self) -> int:
        return self._count(ActionOutcome.APPLIED)

    @property
    def failed_count(self) -> int:
        return self._count(ActionOutcome.FAILED)

    @property
    def skipped_count(self) -> int:
        """Changes that were never attempted. No-ops are not counted."""
        return self._count(ActionOutcome.SKIPPED)

    @property
    def executed_count(self) -> int:
        """Changes that reached the provider."""
        return self.applied_count + self.failed_count

    def outcomes(self) -> list[tuple[ActionKind, ActionOutcome]]:
        return [(r.action.kind, r.outcome) for r in self.records]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "applied": self.applied_count,
            "failed": self.failed_count,
            "skipped": self.skipped_count,
            "error": self.error,
            "error_type": self.error_type,
            "actions": [r.to_dict() for r in self.records],
        }
