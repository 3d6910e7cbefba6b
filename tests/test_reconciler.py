"""Tests for plan execution, retry and verification."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from dataclasses import dataclass, replace
from typing import Any
from unittest.mock import MagicMock

import pytest
from aws_mock import ACCOUNT_ID, DEFAULT_STATEMENTS, REGION, MockProvider, build_desired

from converger.actions import ActionKind, ActionOutcome, ConvergenceReport, ConvergenceStatus
from converger.models import DesiredDeployment
from converger.observer import StateObserver
from converger.planner import plan
from converger.provider import ErrorKind
from converger.reconciler import Reconciler

READ_ONLY_ARN = "arn:aws:iam::aws:policy/ReadOnlyAccess"


class RecordingSleep:
    """Injected sleep that records waits instead of waiting."""

    def __init__(self) -> None:
        self.waits: list[float] = []
        self.on_sleep = None

    async def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)
        if self.on_sleep is not None:
            self.on_sleep()


@dataclass
class Harness:
    provider: MockProvider
    observer: StateObserver
    reconciler: Reconciler
    sleep: RecordingSleep

    async def converge(self, desired: DesiredDeployment, **kwargs: Any) -> ConvergenceReport:
        observed = await self.observer.observe(desired.name)
        return await self.reconciler.apply(plan(desired, observed), observed, **kwargs)


def make_harness(provider: MockProvider | None = None, max_attempts: int = 3) -> Harness:
    provider = provider or MockProvider()
    observer = StateObserver(provider, call_timeout_seconds=5.0)
    sleep = RecordingSleep()
    reconciler = Reconciler(
        provider,
        observer,
        max_attempts=max_attempts,
        retry_base_delay_seconds=1.0,
        call_timeout_seconds=5.0,
        sleep=sleep,
    )
    return Harness(provider, observer, reconciler, sleep)


@pytest.fixture
def harness() -> Iterator[Harness]:
    h = make_harness()
    yield h
    h.observer.close()


@pytest.fixture
def settling_harness() -> Iterator[Harness]:
    h = make_harness(MockProvider(settle_reads=2))
    yield h
    h.observer.close()


class TestApply:
    """Tests for straightforward plan execution."""

    @pytest.mark.asyncio
    async def test_first_deploy(self, harness: Harness) -> None:
        """Test that an empty account converges in one run."""
        report = await harness.converge(build_desired())

        assert report.status is ConvergenceStatus.CONVERGED
        assert report.exit_code == 0
        assert report.applied_count == 5
        assert all(r.attempts == 1 for r in report.records)
        assert harness.provider.mutations == [
            "create_role",
            "put_role_policy",
            "create_function",
            "put_rule",
            "add_permission",
            "put_targets",
        ]
        assert harness.provider.state.resource_count() == 5
        assert harness.sleep.waits == []

    @pytest.mark.asyncio
    async def test_references_flow_between_actions(self, harness: Harness) -> None:
        """Test that produced ARNs are used by later actions."""
        await harness.converge(build_desired())

        state = harness.provider.state
        function = state.functions["nightly-report"]
        rule_arn = f"arn:aws:events:{REGION}:{ACCOUNT_ID}:rule/nightly-report-schedule"
        assert function.role_arn == state.roles["nightly-report-execution"].arn
        grant = state.grants["nightly-report"]["nightly-report-schedule-invoke"]
        assert grant.source_arn == rule_arn
        assert state.targets["nightly-report-schedule"]["nightly-report-target"].arn == function.arn

    @pytest.mark.asyncio
    async def test_second_run_dispatches_nothing(self, harness: Harness) -> None:
        """Test that a converged deployment records only no-ops."""
        await harness.converge(build_desired())
        harness.provider.reset_calls()

        report = await harness.converge(build_desired())

        assert report.status is ConvergenceStatus.CONVERGED
        assert harness.provider.mutations == []
        assert report.applied_count == 0
        assert all(r.outcome is ActionOutcome.SKIPPED for r in report.records)
        assert {r.detail for r in report.records} == {"no-op"}

    @pytest.mark.asyncio
    async def test_code_update(self, harness: Harness) -> None:
        """Test that a new artifact version updates only the code."""
        await harness.converge(build_desired(version="v1"))
        harness.provider.reset_calls()
        desired = build_desired(version="v2")

        report = await harness.converge(desired)

        assert report.status is ConvergenceStatus.CONVERGED
        assert harness.provider.mutations == ["update_function_code"]
        function = harness.provider.state.functions["nightly-report"]
        assert function.code_sha256 == desired.code_artifact_ref.digest

    @pytest.mark.asyncio
    async def test_environment_update_keeps_unmanaged_keys(self, harness: Harness) -> None:
        """Test that applying an environment change never drops keys."""
        await harness.converge(build_desired())
        state = harness.provider.state
        function = state.functions["nightly-report"]
        state.functions["nightly-report"] = replace(
            function, environment={**function.environment, "INJECTED": "yes"}
        )

        report = await harness.converge(
            build_desired(environment={"LOG_LEVEL": "DEBUG", "REPORT_BUCKET": "reports"})
        )

        assert report.status is ConvergenceStatus.CONVERGED
        assert state.functions["nightly-report"].environment == {
            "LOG_LEVEL": "DEBUG",
            "REPORT_BUCKET": "reports",
            "INJECTED": "yes",
        }

    @pytest.mark.asyncio
    async def test_dead_letter_grant_precedes_function(self, harness: Harness) -> None:
        """Test the publish grant is written before the function references the target."""
        dlq = f"arn:aws:sqs:{REGION}:{ACCOUNT_ID}:nightly-report-dlq"

        report = await harness.converge(build_desired(failurePolicy={"deadLetterTarget": dlq}))

        assert report.status is ConvergenceStatus.CONVERGED
        assert harness.provider.mutations[:4] == [
            "create_role",
            "put_role_policy",
            "put_role_policy",
            "create_function",
        ]
        role = harness.provider.state.roles["nightly-report-execution"]
        assert "nightly-report-dead-letter" in role.inline_policies

    def test_rejects_zero_attempts(self) -> None:
        """Test that the retry budget must allow one attempt."""
        provider = MockProvider()
        observer = StateObserver(provider)
        try:
            with pytest.raises(ValueError):
                Reconciler(provider, observer, max_attempts=0)
        finally:
            observer.close()


class TestRetry:
    """Tests for classified retry with backoff."""

    @pytest.mark.asyncio
    async def test_throttled_then_success(self, harness: Harness) -> None:
        """Test that two throttles followed by success take three attempts."""
        harness.provider.fail_next("create_function", ErrorKind.THROTTLED, times=2)

        report = await harness.converge(build_desired())

        assert report.status is ConvergenceStatus.CONVERGED
        record = next(r for r in report.records if r.action.kind is ActionKind.CREATE_FUNCTION)
        assert record.attempts == 3
        assert record.outcome is ActionOutcome.APPLIED
        assert harness.provider.count("create_function") == 3

    @pytest.mark.asyncio
    async def test_backoff_is_exponential_with_jitter(self, harness: Harness) -> None:
        """Test waits of base * 2^(n-1) plus up to 20% jitter."""
        harness.provider.fail_next("create_function", ErrorKind.THROTTLED, times=2)

        await harness.converge(build_desired())

        first, second = harness.sleep.waits
        assert 1.0 <= first <= 1.2
        assert 2.0 <= second <= 2.4

    @pytest.mark.asyncio
    async def test_transient_is_retried(self, harness: Harness) -> None:
        """Test that Transient failures are retried like throttling."""
        harness.provider.fail_next("put_rule", ErrorKind.TRANSIENT)

        report = await harness.converge(build_desired())

        assert report.status is ConvergenceStatus.CONVERGED
        assert harness.provider.count("put_rule") == 2

    @pytest.mark.asyncio
    async def test_budget_exhausted(self, harness: Harness) -> None:
        """Test that a persistent throttle fails the action after the budget."""
        harness.provider.fail_next("create_function", ErrorKind.THROTTLED, times=3)

        report = await harness.converge(build_desired())

        record = next(r for r in report.records if r.action.kind is ActionKind.CREATE_FUNCTION)
        assert record.outcome is ActionOutcome.FAILED
        assert record.error_kind is ErrorKind.THROTTLED
        assert record.attempts == 3
        assert "gave up after 3 attempts" in record.error
        assert report.status is ConvergenceStatus.PARTIALLY_CONVERGED

    @pytest.mark.asyncio
    async def test_permission_denied_is_not_retried(self, harness: Harness) -> None:
        """Test that a terminal failure halts the run and skips the rest."""
        harness.provider.fail_next("create_role", ErrorKind.PERMISSION_DENIED, message="denied")

        report = await harness.converge(build_desired())

        assert report.status is ConvergenceStatus.FAILED
        assert report.exit_code == 1
        assert harness.provider.count("create_role") == 1
        assert harness.sleep.waits == []
        assert report.outcomes() == [
            (ActionKind.CREATE_ROLE, ActionOutcome.FAILED),
            (ActionKind.CREATE_FUNCTION, ActionOutcome.SKIPPED),
            (ActionKind.PUT_SCHEDULE_RULE, ActionOutcome.SKIPPED),
            (ActionKind.GRANT_INVOKE_PERMISSION, ActionOutcome.SKIPPED),
            (ActionKind.BIND_TARGET, ActionOutcome.SKIPPED),
        ]
        assert report.records[1].detail == "halted after CreateRole failed"
        assert report.error_type == "ActionError"
        assert "denied" in report.error

    @pytest.mark.asyncio
    async def test_partial_failure(self, harness: Harness) -> None:
        """Test that applied actions stay applied when a later one fails."""
        harness.provider.fail_next("put_rule", ErrorKind.PERMISSION_DENIED)

        report = await harness.converge(build_desired())

        assert report.status is ConvergenceStatus.PARTIALLY_CONVERGED
        assert report.exit_code == 3
        assert report.applied_count == 2
        assert report.failed_count == 1
        assert report.skipped_count == 2
        assert "nightly-report" in harness.provider.state.functions
        assert harness.provider.state.rules == {}

    @pytest.mark.asyncio
    async def test_next_run_resumes_after_partial_failure(self, harness: Harness) -> None:
        """Test that a rerun plans only what is still missing."""
        harness.provider.fail_next("put_rule", ErrorKind.PERMISSION_DENIED)
        await harness.converge(build_desired())
        harness.provider.reset_calls()

        report = await harness.converge(build_desired())

        assert report.status is ConvergenceStatus.CONVERGED
        assert harness.provider.mutations == ["put_rule", "add_permission", "put_targets"]

    @pytest.mark.asyncio
    async def test_interrupted_managed_policy_attach_is_resumed(self, harness: Harness) -> None:
        """Test that a failed attach leaves the role in place and the rerun attaches."""
        desired = build_desired(
            roleSpec={"statements": DEFAULT_STATEMENTS, "managedPolicyArns": [READ_ONLY_ARN]}
        )
        harness.provider.fail_next("attach_role_policy", ErrorKind.PERMISSION_DENIED)

        first = await harness.converge(desired)

        assert first.status is ConvergenceStatus.PARTIALLY_CONVERGED
        assert first.outcomes()[:2] == [
            (ActionKind.CREATE_ROLE, ActionOutcome.APPLIED),
            (ActionKind.ATTACH_MANAGED_POLICY, ActionOutcome.FAILED),
        ]
        harness.provider.reset_calls()

        second = await harness.converge(desired)

        assert second.status is ConvergenceStatus.CONVERGED
        assert harness.provider.mutations[0] == "attach_role_policy"
        assert "create_role" not in harness.provider.mutations
        role = harness.provider.state.roles["nightly-report-execution"]
        assert role.attached_policy_arns == (READ_ONLY_ARN,)
        harness.provider.reset_calls()

        third = await harness.converge(desired)

        assert third.applied_count == 0
        assert harness.provider.mutations == []

    @pytest.mark.asyncio
    async def test_throttled_attach_is_retried_without_conflict(self, harness: Harness) -> None:
        """Test that retrying an attach never re-issues CreateRole."""
        desired = build_desired(
            roleSpec={"statements": DEFAULT_STATEMENTS, "managedPolicyArns": [READ_ONLY_ARN]}
        )
        harness.provider.fail_next("attach_role_policy", ErrorKind.THROTTLED)

        report = await harness.converge(desired)

        assert report.status is ConvergenceStatus.CONVERGED
        assert harness.provider.count("create_role") == 1
        assert harness.provider.count("attach_role_policy") == 2
        record = next(
            r for r in report.records if r.action.kind is ActionKind.ATTACH_MANAGED_POLICY
        )
        assert record.attempts == 2

    @pytest.mark.asyncio
    async def test_stale_grant_surfaces_as_conflict(self, harness: Harness) -> None:
        """Test that an existing statement id scoped elsewhere is not overwritten."""
        await harness.converge(build_desired())
        grants = harness.provider.state.grants["nightly-report"]
        sid = "nightly-report-schedule-invoke"
        grants[sid] = replace(grants[sid], source_arn="arn:aws:events:us-east-1:1:rule/old")

        report = await harness.converge(build_desired())

        assert report.status is ConvergenceStatus.FAILED
        failed = report.records[-2]
        assert failed.action.kind is ActionKind.GRANT_INVOKE_PERMISSION
        assert failed.error_kind is ErrorKind.CONFLICT


class TestVerification:
    """Tests for post-condition checks after mutations."""

    @pytest.mark.asyncio
    async def test_waits_for_function_to_settle(self, settling_harness: Harness) -> None:
        """Test that in-progress reads are retried until the update lands."""
        report = await settling_harness.converge(build_desired())

        assert report.status is ConvergenceStatus.CONVERGED
        assert len(settling_harness.sleep.waits) == 2

    @pytest.mark.asyncio
    async def test_never_settles(self) -> None:
        """Test that an unconfirmed change fails as Transient."""
        h = make_harness(MockProvider(settle_reads=3))
        try:
            report = await h.converge(build_desired())
        finally:
            h.observer.close()

        record = next(r for r in report.records if r.action.kind is ActionKind.CREATE_FUNCTION)
        assert record.outcome is ActionOutcome.FAILED
        assert record.error_kind is ErrorKind.TRANSIENT
        assert "not confirmed after 3 checks" in record.error
        assert report.status is ConvergenceStatus.PARTIALLY_CONVERGED

    @pytest.mark.asyncio
    async def test_config_not_applied(self, harness: Harness) -> None:
        """Test that a silently ignored config update is detected."""
        await harness.converge(build_desired())
        current = harness.provider.state.functions["nightly-report"]
        ignored = MagicMock(return_value=current)
        harness.provider.update_function_config = ignored  # type: ignore[method-assign]

        report = await harness.converge(
            build_desired(resources={"memoryMb": 512, "timeoutSeconds": 120})
        )

        assert report.status is ConvergenceStatus.FAILED
        record = next(
            r for r in report.records if r.action.kind is ActionKind.UPDATE_FUNCTION_CONFIG
        )
        assert record.error_kind is ErrorKind.TRANSIENT
        assert ignored.call_count == 1

    @pytest.mark.asyncio
    async def test_verification_read_throttled(self, harness: Harness) -> None:
        """Test that a throttled verification read is retried."""
        await harness.converge(build_desired())
        desired = build_desired(schedule="rate(1 hour)")
        observed = await harness.observer.observe(desired.name)
        harness.provider.fail_next("get_rule", ErrorKind.THROTTLED)

        report = await harness.reconciler.apply(plan(desired, observed), observed)

        assert report.status is ConvergenceStatus.CONVERGED
        assert harness.provider.count("get_rule") == 3
        assert len(harness.sleep.waits) == 1


class TestCancellationAndDeadline:
    """Tests for cooperative cancellation and the run deadline."""

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, harness: Harness) -> None:
        """Test that a set cancel event skips every change."""
        cancel = asyncio.Event()
        cancel.set()

        report = await harness.converge(build_desired(), cancel_event=cancel)

        assert report.status is ConvergenceStatus.FAILED
        assert harness.provider.mutations == []
        assert {r.detail for r in report.records} == {"cancelled"}

    @pytest.mark.asyncio
    async def test_cancelled_mid_run(self, harness: Harness) -> None:
        """Test that the in-flight action completes and the rest are skipped."""
        cancel = asyncio.Event()
        harness.sleep.on_sleep = cancel.set
        harness.provider.fail_next("create_function", ErrorKind.THROTTLED)

        report = await harness.converge(build_desired(), cancel_event=cancel)

        assert report.status is ConvergenceStatus.PARTIALLY_CONVERGED
        assert report.outcomes()[:3] == [
            (ActionKind.CREATE_ROLE, ActionOutcome.APPLIED),
            (ActionKind.CREATE_FUNCTION, ActionOutcome.APPLIED),
            (ActionKind.PUT_SCHEDULE_RULE, ActionOutcome.SKIPPED),
        ]
        assert "put_rule" not in harness.provider.calls

    @pytest.mark.asyncio
    async def test_deadline_already_passed(self, harness: Harness) -> None:
        """Test that no call starts after the deadline."""
        deadline = asyncio.get_running_loop().time() - 1

        report = await harness.converge(build_desired(), deadline=deadline)

        assert report.status is ConvergenceStatus.FAILED
        assert harness.provider.mutations == []
        first = report.records[0]
        assert first.error_kind is ErrorKind.TRANSIENT
        assert first.error == "run deadline exceeded"

    @pytest.mark.asyncio
    async def test_backoff_would_cross_deadline(self, harness: Harness) -> None:
        """Test that a retry is abandoned when its wait would outlive the run."""
        harness.provider.fail_next("create_role", ErrorKind.THROTTLED)
        deadline = asyncio.get_running_loop().time() + 0.5

        report = await harness.converge(build_desired(), deadline=deadline)

        first = report.records[0]
        assert first.outcome is ActionOutcome.FAILED
        assert first.error == "run deadline exceeded while backing off"
        assert harness.sleep.waits == []
        assert harness.provider.count("create_role") == 1
