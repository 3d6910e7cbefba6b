"""Sequential execution of a plan against the provider.

For every change in plan order:
1. Stop early if cancellation was requested
2. Dispatch the mutation, retrying Throttled/Transient failures with
   exponential backoff and jitter
3. Re-query the sub-resource until the post-condition holds
4. Feed produced references (role, function, rule ARNs) to later actions

The first terminal failure halts the run. Nothing already applied is rolled
back; the next run observes the partial state and plans from there.

SECURITY: every call runs under the per-call timeout capped by the run
deadline, and no call is started after the deadline has passed.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, TypeVar

from .actions import (
    ActionKind,
    ActionOutcome,
    ActionRecord,
    ConvergenceReport,
    ConvergenceStatus,
    Plan,
    ReconciliationAction,
    derive_status,
)
from .normalize import statements_equivalent
from .observer import StateObserver, call_provider
from .provider import (
    SCHEDULER_PRINCIPAL,
    AddPermissionRequest,
    AttachRolePolicyRequest,
    CodeLocation,
    CreateFunctionRequest,
    CreateRoleRequest,
    ErrorKind,
    FunctionDescriptor,
    ProviderAdapter,
    ProviderError,
    PutRolePolicyRequest,
    PutRuleRequest,
    PutTargetsRequest,
    UpdateFunctionCodeRequest,
    UpdateFunctionConfigRequest,
)
from .state import ObservedDeployment

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY_SECONDS = 1.0
DEFAULT_CALL_TIMEOUT_SECONDS = 60.0

# Config fields the provider echoes back verbatim after an update
_SCALAR_CONFIG_FIELDS = ("memory_mb", "timeout_seconds", "runtime", "handler", "role_arn")


class ActionError(Exception):
    """A reconciliation action failed terminally."""

    def __init__(self, kind: ErrorKind, operation: str, message: str, attempts: int = 0) -> None:
        super().__init__(f"{operation}: {kind.value}: {message}")
        self.kind = kind
        self.operation = operation
        self.message = message
        self.attempts = attempts


@dataclass
class _References:
    """Identifiers produced by earlier actions or observed before the run."""

    role_arn: str | None = None
    function_arn: str | None = None
    rule_arn: str | None = None

    @classmethod
    def from_observed(cls, observed: ObservedDeployment) -> _References:
        return cls(
            role_arn=observed.role.arn if observed.role else None,
            function_arn=observed.function.arn if observed.function else None,
            rule_arn=observed.rule.arn if observed.rule else None,
        )

    def require(self, field_name: str, action: ReconciliationAction) -> str:
        value = getattr(self, field_name)
        if value is None:
            raise ActionError(
                ErrorKind.UNKNOWN,
                action.kind.value,
                f"{field_name.replace('_', ' ')} not available",
            )
        return value


class Reconciler:
    """Applies plans one action at a time."""

    def __init__(
        self,
        provider: ProviderAdapter,
        observer: StateObserver,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY_SECONDS,
        call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._provider = provider
        self._observer = observer
        self._max_attempts = max_attempts
        self._base_delay = retry_base_delay_seconds
        self._call_timeout = call_timeout_seconds
        self._sleep = sleep

    async def apply(
        self,
        plan: Plan,
        observed: ObservedDeployment,
        *,
        deadline: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ConvergenceReport:
        """Execute a plan and report what happened to each action.

        Args:
            plan: Actions in dependency order.
            observed: The snapshot the plan was computed from; supplies
                references for sub-resources that already exist.
            deadline: Event-loop time after which no call is started.
            cancel_event: When set, actions not yet started are skipped.

        Returns:
            Report with one record per plan action, no-ops included.
        """
        report = ConvergenceReport(name=plan.name, status=ConvergenceStatus.CONVERGED)
        refs = _References.from_observed(observed)
        halted: str | None = None

        logger.info(
            "Applying plan",
            extra={"deployment": plan.name, "changes": [a.kind.value for a in plan.changes]},
        )

        for action in plan:
            if action.is_noop:
                report.records.append(
                    ActionRecord(action=action, outcome=ActionOutcome.SKIPPED, detail="no-op")
                )
                continue

            if halted is None and cancel_event is not None and cancel_event.is_set():
                halted = "cancelled"
                logger.warning(
                    "Run cancelled, skipping remaining actions",
                    extra={"deployment": plan.name, "next_action": action.kind.value},
                )

            if halted is not None:
                report.records.append(
                    ActionRecord(action=action, outcome=ActionOutcome.SKIPPED, detail=halted)
                )
                continue

            started = time.monotonic()
            try:
                attempts = await self._execute(action, refs, deadline)
            except ActionError as e:
                elapsed = time.monotonic() - started
                report.records.append(
                    ActionRecord(
                        action=action,
                        outcome=ActionOutcome.FAILED,
                        attempts=e.attempts,
                        elapsed_seconds=elapsed,
                        error=e.message,
                        error_kind=e.kind,
                    )
                )
                report.error = str(e)
                report.error_type = type(e).__name__
                halted = f"halted after {action.kind.value} failed"
                logger.error(
                    "Action failed",
                    extra={
                        "deployment": plan.name,
                        "action": action.kind.value,
                        "error_kind": e.kind.value,
                        "attempts": e.attempts,
                        "error": e.message,
                    },
                )
                continue

            elapsed = time.monotonic() - started
            report.records.append(
                ActionRecord(
                    action=action,
                    outcome=ActionOutcome.APPLIED,
                    attempts=attempts,
                    elapsed_seconds=elapsed,
                )
            )
            logger.info(
                "Action applied",
                extra={
                    "deployment": plan.name,
                    "action": action.kind.value,
                    "reason": action.reason,
                    "attempts": attempts,
                    "elapsed_seconds": round(elapsed, 3),
                },
            )

        report.status = derive_status(report.records)
        report.finished_at = datetime.now(UTC)
        return report

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def _execute(
        self, action: ReconciliationAction, refs: _References, deadline: float | None
    ) -> int:
        """Dispatch one action and confirm its effect.

        Returns:
            The highest attempt count used by any provider call of the action.
        """
        p = action.payload
        provider = self._provider

        match action.kind:
            case ActionKind.CREATE_ROLE:
                request = CreateRoleRequest(
                    role_name=p["role_name"],
                    trust_policy=p["trust_policy"],
                    description=p.get("description", ""),
                    tags=p.get("tags", {}),
                )
                role, created = await self._call(
                    "create_role", provider.create_role, request, deadline
                )
                refs.role_arn = role.arn
                policy = await self._put_policy(p, deadline)
                return max(created, policy)

            case ActionKind.UPDATE_ROLE_POLICY | ActionKind.GRANT_DEAD_LETTER_PUBLISH:
                return await self._put_policy(p, deadline)

            case ActionKind.ATTACH_MANAGED_POLICY:
                request = AttachRolePolicyRequest(
                    role_name=p["role_name"], policy_arn=p["policy_arn"]
                )
                _, attempts = await self._call(
                    "attach_role_policy", provider.attach_role_policy, request, deadline
                )
                await self._verify(
                    "get_role",
                    lambda timeout: self._observer.get_role(p["role_name"], timeout=timeout),
                    lambda role: p["policy_arn"] in role.attached_policy_arns,
                    deadline,
                )
                return attempts

            case ActionKind.CREATE_FUNCTION:
                request = CreateFunctionRequest(
                    function_name=p["function_name"],
                    role_arn=refs.require("role_arn", action),
                    runtime=p["runtime"],
                    handler=p["handler"],
                    code=CodeLocation(p["code_location"], p.get("object_version")),
                    memory_mb=p["memory_mb"],
                    timeout_seconds=p["timeout_seconds"],
                    environment=p.get("environment", {}),
                    subnet_ids=tuple(p.get("subnet_ids", ())),
                    security_group_ids=tuple(p.get("security_group_ids", ())),
                    dead_letter_target=p.get("dead_letter_target"),
                    description=p.get("description", ""),
                    tags=p.get("tags", {}),
                )
                function, attempts = await self._call(
                    "create_function", provider.create_function, request, deadline
                )
                refs.function_arn = function.arn
                await self._await_code(p["function_name"], p["digest"], deadline)
                return attempts

            case ActionKind.UPDATE_FUNCTION_CODE:
                request = UpdateFunctionCodeRequest(
                    function_name=p["function_name"],
                    code=CodeLocation(p["code_location"], p.get("object_version")),
                )
                function, attempts = await self._call(
                    "update_function_code", provider.update_function_code, request, deadline
                )
                refs.function_arn = function.arn
                await self._await_code(p["function_name"], p["digest"], deadline)
                return attempts

            case ActionKind.UPDATE_FUNCTION_CONFIG:
                fields = {k: v for k, v in p.items() if k != "function_name"}
                if "role_arn" in fields:
                    fields["role_arn"] = refs.role_arn or fields["role_arn"]
                request = UpdateFunctionConfigRequest(function_name=p["function_name"], **fields)
                _, attempts = await self._call(
                    "update_function_config", provider.update_function_config, request, deadline
                )
                await self._verify(
                    "get_function",
                    lambda timeout: self._observer.get_function(
                        p["function_name"], timeout=timeout
                    ),
                    lambda f: f.ready and _config_applied(fields, f),
                    deadline,
                )
                return attempts

            case ActionKind.PUT_SCHEDULE_RULE:
                request = PutRuleRequest(
                    rule_name=p["rule_name"],
                    schedule_expression=p["schedule_expression"],
                    description=p.get("description", ""),
                )
                rule, attempts = await self._call("put_rule", provider.put_rule, request, deadline)
                refs.rule_arn = rule.arn
                await self._verify(
                    "get_rule",
                    lambda timeout: self._observer.get_rule(p["rule_name"], timeout=timeout),
                    lambda r: r.schedule_expression == p["schedule_expression"]
                    and r.state == "ENABLED",
                    deadline,
                )
                return attempts

            case ActionKind.GRANT_INVOKE_PERMISSION:
                rule_arn = refs.require("rule_arn", action)
                request = AddPermissionRequest(
                    function_name=p["function_name"],
                    statement_id=p["statement_id"],
                    source_arn=rule_arn,
                )
                _, attempts = await self._call(
                    "add_permission", provider.add_permission, request, deadline
                )
                await self._verify(
                    "get_invoke_grants",
                    lambda timeout: self._observer.get_invoke_grants(
                        p["function_name"], timeout=timeout
                    ),
                    lambda grants: any(g.allows(SCHEDULER_PRINCIPAL, rule_arn) for g in grants),
                    deadline,
                )
                return attempts

            case ActionKind.BIND_TARGET:
                function_arn = refs.require("function_arn", action)
                request = PutTargetsRequest(
                    rule_name=p["rule_name"],
                    target_id=p["target_id"],
                    target_arn=function_arn,
                    retry_attempts=p["retry_attempts"],
                )
                _, attempts = await self._call(
                    "put_targets", provider.put_targets, request, deadline
                )
                await self._verify(
                    "list_targets",
                    lambda timeout: self._observer.list_targets(p["rule_name"], timeout=timeout),
                    lambda targets: any(
                        t.arn == function_arn and t.retry_attempts == p["retry_attempts"]
                        for t in targets
                    ),
                    deadline,
                )
                return attempts

            case _:
                raise ActionError(ErrorKind.UNKNOWN, action.kind.value, "not an executable action")

    async def _put_policy(self, payload: dict[str, Any], deadline: float | None) -> int:
        request = PutRolePolicyRequest(
            role_name=payload["role_name"],
            policy_name=payload["policy_name"],
            statements=tuple(payload["statements"]),
        )
        _, attempts = await self._call(
            "put_role_policy", self._provider.put_role_policy, request, deadline
        )
        await self._verify(
            "get_role",
            lambda timeout: self._observer.get_role(
                payload["role_name"], payload["policy_name"], timeout=timeout
            ),
            lambda role: statements_equivalent(
                payload["statements"], role.inline_policies.get(payload["policy_name"])
            ),
            deadline,
        )
        return attempts

    async def _await_code(self, function_name: str, digest: str, deadline: float | None) -> None:
        await self._verify(
            "get_function",
            lambda timeout: self._observer.get_function(function_name, timeout=timeout),
            lambda f: f.code_sha256 == digest and f.ready,
            deadline,
        )

    # -------------------------------------------------------------------------
    # Retry, verification, deadline
    # -------------------------------------------------------------------------

    async def _call(
        self,
        operation: str,
        fn: Callable[[Any], T],
        request: Any,
        deadline: float | None,
    ) -> tuple[T, int]:
        """Invoke an adapter mutation with classified retry.

        Returns:
            Tuple of (adapter result, attempts used).

        Raises:
            ActionError: On a non-retryable failure, an exhausted budget, or
                the run deadline.
        """
        last_error: ProviderError | None = None

        for attempt in range(1, self._max_attempts + 1):
            timeout = self._timeout_for(operation, attempt - 1, deadline)
            try:
                result = await call_provider(
                    self._observer.executor, operation, fn, request, timeout=timeout
                )
                return result, attempt
            except ProviderError as e:
                last_error = e
                if not e.kind.retryable:
                    raise ActionError(e.kind, operation, e.message, attempts=attempt) from e
                if attempt < self._max_attempts:
                    await self._backoff(operation, attempt, e, deadline)

        # Loop runs at least once, so last_error is set here
        assert last_error is not None, "Retry loop completed without setting last_error"
        raise ActionError(
            last_error.kind,
            operation,
            f"{last_error.message} (gave up after {self._max_attempts} attempts)",
            attempts=self._max_attempts,
        ) from last_error

    async def _verify(
        self,
        operation: str,
        lookup: Callable[[float], Awaitable[T | None]],
        holds: Callable[[T], bool],
        deadline: float | None,
    ) -> T:
        """Re-query a sub-resource until its post-condition holds.

        Uses the same attempt budget and backoff as mutations. Absence counts
        as "not yet"; providers are eventually consistent after writes.

        Raises:
            ActionError: TRANSIENT if the effect is never confirmed.
        """
        for attempt in range(1, self._max_attempts + 1):
            timeout = self._timeout_for(operation, attempt - 1, deadline)
            try:
                current = await lookup(timeout)
            except ProviderError as e:
                if not e.kind.retryable:
                    raise ActionError(e.kind, operation, e.message, attempts=attempt) from e
                current = None

            if current is not None and holds(current):
                return current

            if attempt < self._max_attempts:
                logger.debug(
                    "Post-condition not yet met",
                    extra={"operation": operation, "check": attempt},
                )
                await self._backoff(operation, attempt, None, deadline)

        raise ActionError(
            ErrorKind.TRANSIENT,
            operation,
            f"change not confirmed after {self._max_attempts} checks",
            attempts=self._max_attempts,
        )

    def _timeout_for(self, operation: str, attempts_so_far: int, deadline: float | None) -> float:
        if deadline is None:
            return self._call_timeout
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise ActionError(
                ErrorKind.TRANSIENT, operation, "run deadline exceeded", attempts=attempts_so_far
            )
        return min(self._call_timeout, remaining)

    async def _backoff(
        self,
        operation: str,
        attempt: int,
        error: ProviderError | None,
        deadline: float | None,
    ) -> None:
        # Exponential backoff with jitter
        backoff = self._base_delay * (2 ** (attempt - 1))
        jitter = random.uniform(0, backoff * 0.2)
        wait_time = backoff + jitter

        if deadline is not None and asyncio.get_running_loop().time() + wait_time >= deadline:
            raise ActionError(
                ErrorKind.TRANSIENT,
                operation,
                "run deadline exceeded while backing off",
                attempts=attempt,
            )

        if error is not None:
            logger.warning(
                "Provider call failed, retrying",
                extra={
                    "operation": operation,
                    "attempt": attempt,
                    "max_attempts": self._max_attempts,
                    "wait_seconds": round(wait_time, 3),
                    "error_kind": error.kind.value,
                    "error": error.message,
                },
            )

        await self._sleep(wait_time)


def _config_applied(fields: dict[str, Any], function: FunctionDescriptor) -> bool:
    """Check that the provider reports every updated configuration field."""
    for name in _SCALAR_CONFIG_FIELDS:
        if name in fields and getattr(function, name) != fields[name]:
            return False
    if "environment" in fields and function.environment != fields["environment"]:
        return False
    if "subnet_ids" in fields and set(function.subnet_ids) != set(fields["subnet_ids"]):
        return False
    if "security_group_ids" in fields and set(function.security_group_ids) != set(
        fields["security_group_ids"]
    ):
        return False
    dead_letter = fields.get("dead_letter_target")
    return dead_letter is None or function.dead_letter_target == dead_letter
