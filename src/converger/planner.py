"""Diff engine: desired vs observed -> ordered reconciliation actions.

plan() is a pure function. It never performs I/O and never plans a
deletion: a field the document leaves out means "keep what the provider
has", and environment variables are only added or overwritten.

Stage order is fixed:

    Role -> Dead-letter publish grant -> Function -> Schedule rule
         -> Invoke permission -> Target binding

Each stage yields exactly one action per sub-resource, a Noop when the
sub-resource already matches, so the plan doubles as an audit of every
comparison made.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from .actions import ActionKind, Plan, ReconciliationAction, Stage
from .models import DesiredDeployment
from .normalize import statements_equivalent
from .provider import SCHEDULER_PRINCIPAL, FunctionDescriptor
from .schedule import ScheduleError, parse_schedule
from .state import ObservedDeployment

logger = logging.getLogger(__name__)

DEAD_LETTER_ARN_PATTERN = re.compile(
    r"^arn:aws[a-z-]*:(sqs|sns):[a-z0-9-]+:\d{12}:[A-Za-z0-9_.-]+$"
)

IN_SYNC = "in sync"


class PlanError(Exception):
    """Raised when a desired document is internally inconsistent.

    Raised before any provider call is made.
    """

    pass


# =============================================================================
# Validation
# =============================================================================


def validate(desired: DesiredDeployment) -> None:
    """Check cross-field consistency of a desired document.

    Raises:
        PlanError: With every problem found, one per line.
        SecretLiteralError: If an environment value is a literal secret.
    """
    from .security import enforce_secret_references

    errors: list[str] = []

    try:
        parse_schedule(desired.schedule)
    except ScheduleError as e:
        errors.append(str(e))

    if not desired.code_artifact_ref.digest:
        errors.append("codeArtifactRef.digest is required (computed only for local artifacts)")

    vpc = desired.vpc_placement
    if vpc is not None and (not vpc.subnet_ids or not vpc.security_group_ids):
        errors.append("vpcPlacement needs at least one subnet id and one security group id")

    dead_letter = desired.failure_policy.dead_letter_target
    if dead_letter is not None and not DEAD_LETTER_ARN_PATTERN.match(dead_letter):
        errors.append(f"failurePolicy.deadLetterTarget must be an SQS or SNS ARN: {dead_letter}")

    if not desired.role_spec.trust_policy.get("Statement"):
        errors.append("roleSpec.trustPolicy must contain at least one statement")

    if errors:
        raise PlanError(
            f"Desired state for '{desired.name}' is invalid:\n  - " + "\n  - ".join(errors)
        )

    enforce_secret_references(desired.environment)


# =============================================================================
# Planning
# =============================================================================


def plan(desired: DesiredDeployment, observed: ObservedDeployment) -> Plan:
    """Compute the ordered action list that converges observed to desired.

    Raises:
        PlanError: If the desired document is invalid.
    """
    validate(desired)

    if observed.name != desired.name:
        raise PlanError(
            f"Observed state is for '{observed.name}', desired state is for '{desired.name}'"
        )

    actions: list[ReconciliationAction] = []
    actions.extend(_plan_role(desired, observed))
    actions.extend(_plan_dead_letter(desired, observed))
    actions.extend(_plan_function(desired, observed))
    actions.append(_plan_schedule(desired, observed))
    actions.append(_plan_permission(desired, observed))
    actions.append(_plan_target(desired, observed))

    result = Plan(name=desired.name, actions=tuple(actions))

    logger.info(
        "Plan computed",
        extra={
            "deployment": desired.name,
            "action_count": len(result),
            "change_count": len(result.changes),
            "changes": [a.kind.value for a in result.changes],
        },
    )
    return result


def _noop(stage: Stage, subject: str, reason: str = IN_SYNC) -> ReconciliationAction:
    return ReconciliationAction(kind=ActionKind.NOOP, stage=stage, reason=reason, subject=subject)


def _plan_role(
    desired: DesiredDeployment, observed: ObservedDeployment
) -> list[ReconciliationAction]:
    spec = desired.role_spec
    role = observed.role
    actions: list[ReconciliationAction] = []

    if role is None:
        actions.append(
            ReconciliationAction(
                kind=ActionKind.CREATE_ROLE,
                stage=Stage.ROLE,
                reason="role absent",
                subject="role",
                payload={
                    "role_name": desired.role_name,
                    "trust_policy": spec.trust_policy,
                    "policy_name": desired.policy_name,
                    "statements": tuple(spec.statements),
                    "description": f"Execution role for {desired.name}",
                    "tags": dict(desired.tags),
                },
            )
        )
        attached: tuple[str, ...] = ()
    else:
        actions.append(_plan_role_policy(desired, role.inline_policies.get(desired.policy_name)))
        attached = role.attached_policy_arns

    # One action per missing attachment; an interrupted attach is re-planned next run
    declared = list(dict.fromkeys(spec.managed_policy_arns))
    missing = [arn for arn in declared if arn not in attached]
    for arn in missing:
        actions.append(
            ReconciliationAction(
                kind=ActionKind.ATTACH_MANAGED_POLICY,
                stage=Stage.ROLE,
                reason=f"managed policy not attached: {arn}",
                subject="managed-policy",
                payload={"role_name": desired.role_name, "policy_arn": arn},
            )
        )
    if declared and not missing:
        actions.append(_noop(Stage.ROLE, "managed-policies"))

    return actions


def _plan_role_policy(
    desired: DesiredDeployment, current: list[dict[str, Any]] | None
) -> ReconciliationAction:
    statements = desired.role_spec.statements
    if statements_equivalent(statements, current):
        return _noop(Stage.ROLE, "role")

    reason = "role policy absent" if current is None else "role policy statements differ"
    return ReconciliationAction(
        kind=ActionKind.UPDATE_ROLE_POLICY,
        stage=Stage.ROLE,
        reason=reason,
        subject="role",
        payload={
            "role_name": desired.role_name,
            "policy_name": desired.policy_name,
            "statements": tuple(statements),
        },
    )


def dead_letter_statement(target_arn: str) -> dict[str, Any]:
    """Statement letting the function's role publish to a dead-letter target."""
    action = "sqs:SendMessage" if ":sqs:" in target_arn else "sns:Publish"
    return {"Effect": "Allow", "Action": action, "Resource": target_arn}


def _plan_dead_letter(
    desired: DesiredDeployment, observed: ObservedDeployment
) -> list[ReconciliationAction]:
    target = desired.failure_policy.dead_letter_target
    if target is None:
        return []

    statements = [dead_letter_statement(target)]
    current = None
    if observed.role is not None:
        current = observed.role.inline_policies.get(desired.dead_letter_policy_name)

    if statements_equivalent(statements, current):
        return [_noop(Stage.DEAD_LETTER, "dead-letter-grant")]

    return [
        ReconciliationAction(
            kind=ActionKind.GRANT_DEAD_LETTER_PUBLISH,
            stage=Stage.DEAD_LETTER,
            reason="role lacks publish rights on dead-letter target",
            subject="dead-letter-grant",
            payload={
                "role_name": desired.role_name,
                "policy_name": desired.dead_letter_policy_name,
                "statements": tuple(statements),
            },
        )
    ]


def _plan_function(
    desired: DesiredDeployment, observed: ObservedDeployment
) -> list[ReconciliationAction]:
    artifact = desired.code_artifact_ref
    function = observed.function

    if function is None:
        vpc = desired.vpc_placement
        return [
            ReconciliationAction(
                kind=ActionKind.CREATE_FUNCTION,
                stage=Stage.FUNCTION,
                reason="function absent",
                subject="function",
                payload={
                    "function_name": desired.function_name,
                    "runtime": artifact.runtime,
                    "handler": artifact.handler,
                    "code_location": artifact.location,
                    "object_version": artifact.object_version,
                    "digest": artifact.digest,
                    "memory_mb": desired.resources.memory_mb,
                    "timeout_seconds": desired.resources.timeout_seconds,
                    "environment": dict(desired.environment),
                    "subnet_ids": tuple(vpc.subnet_ids) if vpc else (),
                    "security_group_ids": tuple(vpc.security_group_ids) if vpc else (),
                    "dead_letter_target": desired.failure_policy.dead_letter_target,
                    "description": desired.description,
                    "tags": dict(desired.tags),
                },
            )
        ]

    actions: list[ReconciliationAction] = []

    if function.code_sha256 != artifact.digest:
        actions.append(
            ReconciliationAction(
                kind=ActionKind.UPDATE_FUNCTION_CODE,
                stage=Stage.FUNCTION,
                reason="code digest mismatch",
                subject="function-code",
                payload={
                    "function_name": desired.function_name,
                    "code_location": artifact.location,
                    "object_version": artifact.object_version,
                    "digest": artifact.digest,
                },
            )
        )
    else:
        actions.append(_noop(Stage.FUNCTION, "function-code"))

    changes, reasons = _config_changes(desired, observed, function)
    if changes:
        actions.append(
            ReconciliationAction(
                kind=ActionKind.UPDATE_FUNCTION_CONFIG,
                stage=Stage.FUNCTION,
                reason="; ".join(reasons),
                subject="function-config",
                payload={"function_name": desired.function_name, **changes},
            )
        )
    else:
        actions.append(_noop(Stage.FUNCTION, "function-config"))

    return actions


def _config_changes(
    desired: DesiredDeployment,
    observed: ObservedDeployment,
    function: FunctionDescriptor,
) -> tuple[dict[str, Any], list[str]]:
    """Fields of the function configuration that need to change.

    Returns:
        Tuple of (changed fields for the update payload, human-readable reasons).
    """
    artifact = desired.code_artifact_ref
    limits = desired.resources
    changes: dict[str, Any] = {}
    reasons: list[str] = []

    def compare(field_name: str, want: Any, have: Any) -> None:
        if want != have:
            changes[field_name] = want
            reasons.append(f"{field_name.replace('_', ' ')} {have!r} -> {want!r}")

    compare("memory_mb", limits.memory_mb, function.memory_mb)
    compare("timeout_seconds", limits.timeout_seconds, function.timeout_seconds)
    compare("runtime", artifact.runtime, function.runtime)
    compare("handler", artifact.handler, function.handler)

    if observed.role is not None:
        compare("role_arn", observed.role.arn, function.role_arn)

    # Additions and overwrites only; keys missing from the document stay
    drifted = sorted(
        key
        for key, value in desired.environment.items()
        if function.environment.get(key) != value
    )
    if drifted:
        changes["environment"] = {**function.environment, **desired.environment}
        reasons.append(f"environment keys added or changed: {', '.join(drifted)}")

    vpc = desired.vpc_placement
    if vpc is not None and (
        set(vpc.subnet_ids) != set(function.subnet_ids)
        or set(vpc.security_group_ids) != set(function.security_group_ids)
    ):
        changes["subnet_ids"] = tuple(vpc.subnet_ids)
        changes["security_group_ids"] = tuple(vpc.security_group_ids)
        reasons.append("vpc placement differs")

    dead_letter = desired.failure_policy.dead_letter_target
    if dead_letter is not None and dead_letter != function.dead_letter_target:
        changes["dead_letter_target"] = dead_letter
        reasons.append("dead-letter target differs")

    return changes, reasons


def _plan_schedule(
    desired: DesiredDeployment, observed: ObservedDeployment
) -> ReconciliationAction:
    rule = observed.rule
    if rule is None:
        reason = "schedule rule absent"
    elif rule.schedule_expression != desired.schedule:
        reason = f"schedule {rule.schedule_expression!r} -> {desired.schedule!r}"
    elif rule.state != "ENABLED":
        reason = f"schedule rule is {rule.state}"
    else:
        return _noop(Stage.SCHEDULE, "schedule-rule")

    return ReconciliationAction(
        kind=ActionKind.PUT_SCHEDULE_RULE,
        stage=Stage.SCHEDULE,
        reason=reason,
        subject="schedule-rule",
        payload={
            "rule_name": desired.rule_name,
            "schedule_expression": desired.schedule,
            "description": f"Schedule for {desired.name}",
        },
    )


def _plan_permission(
    desired: DesiredDeployment, observed: ObservedDeployment
) -> ReconciliationAction:
    grants = observed.invoke_grants or ()

    if observed.function is not None:
        if observed.rule is not None:
            granted = any(g.allows(SCHEDULER_PRINCIPAL, observed.rule.arn) for g in grants)
        else:
            # Rule ARN unknown until the rule exists; match on its name
            suffix = f"/{desired.rule_name}"
            granted = any(
                g.allows(SCHEDULER_PRINCIPAL, g.source_arn)
                and (g.source_arn is None or g.source_arn.endswith(suffix))
                for g in grants
            )
        if granted:
            return _noop(Stage.PERMISSION, "invoke-permission")

    return ReconciliationAction(
        kind=ActionKind.GRANT_INVOKE_PERMISSION,
        stage=Stage.PERMISSION,
        reason="scheduler lacks invoke grant",
        subject="invoke-permission",
        payload={
            "function_name": desired.function_name,
            "statement_id": desired.permission_statement_id,
        },
    )


def _plan_target(desired: DesiredDeployment, observed: ObservedDeployment) -> ReconciliationAction:
    retry_count = desired.failure_policy.retry_count
    function = observed.function
    targets = observed.targets or ()

    reason = "rule does not target function"
    if function is not None and observed.rule is not None:
        bound = [t for t in targets if t.arn == function.arn]
        if any(t.retry_attempts == retry_count for t in bound):
            return _noop(Stage.TARGET, "target")
        if bound:
            reason = f"target retry attempts {bound[0].retry_attempts!r} -> {retry_count}"

    return ReconciliationAction(
        kind=ActionKind.BIND_TARGET,
        stage=Stage.TARGET,
        reason=reason,
        subject="target",
        payload={
            "rule_name": desired.rule_name,
            "target_id": desired.target_id,
            "retry_attempts": retry_count,
        },
    )
