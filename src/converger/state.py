"""Observed deployment state.

Mirrors DesiredDeployment's shape but is sourced entirely from provider
lookups. A sub-resource that does not exist is None; that is valid input
to the planner, not an error.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime

from .provider import (
    FunctionDescriptor,
    InvokeGrant,
    RoleDescriptor,
    RuleDescriptor,
    TargetDescriptor,
)


@dataclass(frozen=True)
class ObservedDeployment:
    """Snapshot of what the provider holds for one deployment name."""

    name: str
    role: RoleDescriptor | None = None
    function: FunctionDescriptor | None = None
    rule: RuleDescriptor | None = None
    targets: tuple[TargetDescriptor, ...] | None = None
    invoke_grants: tuple[InvokeGrant, ...] | None = None
    observed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_empty(self) -> bool:
        """True when nothing has been deployed under this name yet."""
        return (
            self.role is None
            and self.function is None
            and self.rule is None
            and not self.targets
            and not self.invoke_grants
        )

    def present(self) -> list[str]:
        """Names of the sub-resources that exist, for logging."""
        found = []
        if self.role is not None:
            found.append("role")
        if self.function is not None:
            found.append("function")
        if self.rule is not None:
            found.append("rule")
        if self.targets:
            found.append("targets")
        if self.invoke_grants:
            found.append("invoke_grants")
        return found
