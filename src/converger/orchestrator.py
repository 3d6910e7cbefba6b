"""Drives one convergence run: observe, plan, reconcile, report.

A run is bounded by a single deadline. Observation gets whatever time the
deadline allows; the Reconciler gets what is left after observation.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from .actions import ConvergenceReport, ConvergenceStatus, Plan
from .models import DesiredDeployment
from .observer import ObserveError, StateObserver
from .planner import PlanError, plan, validate
from .provenance import ProvenanceLogger, RunProvenance
from .provider import ProviderAdapter
from .reconciler import Reconciler

logger = logging.getLogger(__name__)

DEFAULT_RUN_TIMEOUT_SECONDS = 900.0


class Orchestrator:
    """Runs Observer -> Diff Engine -> Reconciler for one deployment."""

    def __init__(
        self,
        provider: ProviderAdapter,
        observer: StateObserver | None = None,
        reconciler: Reconciler | None = None,
        run_timeout_seconds: float = DEFAULT_RUN_TIMEOUT_SECONDS,
        provenance_logger: ProvenanceLogger | None = None,
    ) -> None:
        self._observer = observer or StateObserver(provider)
        self._reconciler = reconciler or Reconciler(provider, self._observer)
        self._run_timeout = run_timeout_seconds
        self._provenance_logger = provenance_logger

    def close(self) -> None:
        """Release the lookup thread pool."""
        self._observer.close()

    async def preview(self, desired: DesiredDeployment) -> Plan:
        """Observe and plan without mutating anything.

        Raises:
            PlanError: If the desired document is invalid.
            ObserveError: If the provider state cannot be read.
            TimeoutError: If observation exceeds the run deadline.
        """
        validate(desired)
        observed = await asyncio.wait_for(
            self._observer.observe(desired.name), timeout=self._run_timeout
        )
        return plan(desired, observed)

    async def run(
        self,
        desired: DesiredDeployment,
        *,
        cancel_event: asyncio.Event | None = None,
        provenance: RunProvenance | None = None,
    ) -> ConvergenceReport:
        """Converge the provider towards `desired`.

        Never raises for run-level failures: invalid documents, failed
        observation and failed actions all end up in the report.

        Returns:
            The final report, after it has been published.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._run_timeout
        started_at = datetime.now(UTC)

        logger.info(
            "Starting convergence run",
            extra={"deployment": desired.name, "run_timeout_seconds": self._run_timeout},
        )

        report = await self._run(desired, deadline, cancel_event)
        report.started_at = started_at
        if report.finished_at is None:
            report.finished_at = datetime.now(UTC)

        logger.info(
            "Convergence run finished",
            extra={
                "deployment": desired.name,
                "status": report.status.value,
                "applied": report.applied_count,
                "failed": report.failed_count,
                "skipped": report.skipped_count,
                "duration_seconds": round(report.duration_seconds, 3),
            },
        )

        if self._provenance_logger is not None:
            record = provenance or self._provenance_logger.create_provenance(desired.name)
            self._provenance_logger.publish(record, report)

        return report

    async def _run(
        self,
        desired: DesiredDeployment,
        deadline: float,
        cancel_event: asyncio.Event | None,
    ) -> ConvergenceReport:
        # Validate before any provider call
        try:
            validate(desired)
        except PlanError as e:
            return _failed(desired.name, e)

        remaining = deadline - asyncio.get_running_loop().time()
        try:
            observed = await asyncio.wait_for(
                self._observer.observe(desired.name), timeout=remaining
            )
        except TimeoutError as e:
            return _failed(desired.name, e, "observation exceeded the run deadline")
        except ObserveError as e:
            return _failed(desired.name, e)

        try:
            result = plan(desired, observed)
        except PlanError as e:
            return _failed(desired.name, e)

        if result.is_converged:
            logger.info("Deployment already converged", extra={"deployment": desired.name})

        # A converged plan only records its no-ops; nothing is dispatched
        return await self._reconciler.apply(
            result, observed, deadline=deadline, cancel_event=cancel_event
        )


def _failed(name: str, error: BaseException, message: str | None = None) -> ConvergenceReport:
    logger.error(
        "Convergence run failed before reconciliation",
        extra={
            "deployment": name,
            "error": message or str(error),
            "error_type": type(error).__name__,
        },
    )
    return ConvergenceReport(
        name=name,
        status=ConvergenceStatus.FAILED,
        error=message or str(error),
        error_type=type(error).__name__,
        finished_at=datetime.now(UTC),
    )
