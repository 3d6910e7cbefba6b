"""AWS control-plane mock for integration testing.

This package provides an in-memory implementation of the provider adapter
so the observer, reconciler and orchestrator can be exercised end to end
without AWS credentials or network access.

Key Features:
- In-memory state for roles, functions, schedule rules, targets and grants
- Error injection per operation (throttling, outages, permission denials)
- Call log for asserting on dispatched mutations
- Lagging reads after function updates (eventual consistency)

Usage:
    from aws_mock import MockProvider, build_desired

    provider = MockProvider()
    orchestrator = Orchestrator(provider)
    report = await orchestrator.run(build_desired())

    assert report.status is ConvergenceStatus.CONVERGED
    assert provider.state.resource_count() == 5
"""

from .documents import (
    DEFAULT_NAME,
    DEFAULT_STATEMENTS,
    artifact_location,
    build_desired,
    build_document,
)
from .provider import ACCOUNT_ID, REGION, MockAwsState, MockProvider, artifact_digest

__all__ = [
    "ACCOUNT_ID",
    "DEFAULT_NAME",
    "DEFAULT_STATEMENTS",
    "REGION",
    "MockAwsState",
    "MockProvider",
    "artifact_digest",
    "artifact_location",
    "build_desired",
    "build_document",
]
