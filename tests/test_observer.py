"""Tests for the state observer."""

from __future__ import annotations

import time
from collections.abc import Iterator
from unittest.mock import MagicMock

import pytest
from aws_mock import DEFAULT_NAME, MockProvider, build_desired

from converger.observer import ObserveError, StateObserver, call_provider
from converger.orchestrator import Orchestrator
from converger.provider import ErrorKind, ProviderError


@pytest.fixture
def provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def observer(provider: MockProvider) -> Iterator[StateObserver]:
    observer = StateObserver(provider, call_timeout_seconds=5.0)
    yield observer
    observer.close()


async def deploy(provider: MockProvider) -> None:
    """Populate the mock with a fully converged deployment."""
    orchestrator = Orchestrator(provider)
    try:
        await orchestrator.run(build_desired())
    finally:
        orchestrator.close()
    provider.reset_calls()


class TestObserve:
    """Tests for StateObserver.observe()."""

    @pytest.mark.asyncio
    async def test_empty_account(self, observer: StateObserver) -> None:
        """Test that NotFound everywhere yields an empty snapshot."""
        observed = await observer.observe(DEFAULT_NAME)

        assert observed.name == DEFAULT_NAME
        assert observed.is_empty
        assert observed.role is None
        assert observed.function is None
        assert observed.rule is None
        assert observed.targets is None
        assert observed.invoke_grants is None

    @pytest.mark.asyncio
    async def test_issues_every_lookup(
        self, provider: MockProvider, observer: StateObserver
    ) -> None:
        """Test that each sub-resource is looked up exactly once."""
        await observer.observe(DEFAULT_NAME)

        assert sorted(provider.calls) == [
            "get_function",
            "get_invoke_grants",
            "get_role",
            "get_rule",
            "list_targets",
        ]
        assert provider.mutations == []

    @pytest.mark.asyncio
    async def test_deployed_state(self, provider: MockProvider, observer: StateObserver) -> None:
        """Test that a deployed name is read back in full."""
        await deploy(provider)

        observed = await observer.observe(DEFAULT_NAME)

        assert observed.present() == ["role", "function", "rule", "targets", "invoke_grants"]
        assert observed.role.name == "nightly-report-execution"
        assert "nightly-report-policy" in observed.role.inline_policies
        assert observed.function.arn.endswith(":function:nightly-report")
        assert observed.rule.schedule_expression == "cron(0 3 * * ? *)"
        assert observed.targets[0].retry_attempts == 2
        assert observed.invoke_grants[0].source_arn == observed.rule.arn

    @pytest.mark.asyncio
    async def test_throttled_lookup_aborts(
        self, provider: MockProvider, observer: StateObserver
    ) -> None:
        """Test that a non-NotFound failure aborts instead of guessing."""
        provider.fail_next("get_rule", ErrorKind.THROTTLED, message="Rate exceeded")

        with pytest.raises(ObserveError) as exc_info:
            await observer.observe(DEFAULT_NAME)

        assert exc_info.value.lookup == "rule"
        assert exc_info.value.kind is ErrorKind.THROTTLED
        assert "Rate exceeded" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_permission_denied_lookup_aborts(
        self, provider: MockProvider, observer: StateObserver
    ) -> None:
        """Test that an access problem on one lookup fails the observation."""
        provider.fail_next("get_role", ErrorKind.PERMISSION_DENIED)

        with pytest.raises(ObserveError) as exc_info:
            await observer.observe(DEFAULT_NAME)

        assert exc_info.value.kind is ErrorKind.PERMISSION_DENIED

    @pytest.mark.asyncio
    async def test_unexpected_exception_propagates(
        self, provider: MockProvider, observer: StateObserver
    ) -> None:
        """Test that non-provider errors are not swallowed."""
        broken = MagicMock(side_effect=RuntimeError("boom"))
        provider.get_rule = broken  # type: ignore[method-assign]

        with pytest.raises(RuntimeError, match="boom"):
            await observer.observe(DEFAULT_NAME)


class TestSingleLookups:
    """Tests for the per-resource lookup helpers."""

    @pytest.mark.asyncio
    async def test_absent_function_is_none(self, observer: StateObserver) -> None:
        """Test that NotFound maps to None."""
        assert await observer.get_function("missing") is None

    @pytest.mark.asyncio
    async def test_role_only_returns_requested_policies(
        self, provider: MockProvider, observer: StateObserver
    ) -> None:
        """Test that inline policies are filtered to the requested names."""
        await deploy(provider)

        role = await observer.get_role("nightly-report-execution")

        assert role is not None
        assert role.inline_policies == {}

    @pytest.mark.asyncio
    async def test_other_errors_raise(
        self, provider: MockProvider, observer: StateObserver
    ) -> None:
        """Test that non-NotFound failures are raised as ProviderError."""
        provider.fail_next("get_function", ErrorKind.TRANSIENT)

        with pytest.raises(ProviderError) as exc_info:
            await observer.get_function(DEFAULT_NAME)

        assert exc_info.value.kind is ErrorKind.TRANSIENT


class TestCallProvider:
    """Tests for the executor bridge."""

    @pytest.mark.asyncio
    async def test_returns_result(self) -> None:
        """Test that a blocking function's result is returned."""
        assert await call_provider(None, "add", lambda a, b: a + b, 1, 2, timeout=1.0) == 3

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self) -> None:
        """Test that a hung call becomes a Transient provider error."""
        with pytest.raises(ProviderError) as exc_info:
            await call_provider(None, "get_rule", time.sleep, 0.5, timeout=0.05)

        assert exc_info.value.kind is ErrorKind.TRANSIENT
        assert exc_info.value.operation == "get_rule"
        assert "timed out" in exc_info.value.message
