"""State observer: concurrent provider lookups into an ObservedDeployment.

The five sub-resource lookups are independent, so they run concurrently on a
bounded thread pool (boto3 clients block). A NotFound answer means the
sub-resource is absent; anything else aborts the observation, because a plan
computed from partial knowledge could recreate something that exists.

SECURITY: every lookup runs under the per-call timeout so a hung control
plane cannot stall the run past its deadline.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any, TypeVar

from .models import ResourceNames
from .provider import (
    ErrorKind,
    FunctionDescriptor,
    GetRoleRequest,
    InvokeGrant,
    ProviderAdapter,
    ProviderError,
    RoleDescriptor,
    RuleDescriptor,
    TargetDescriptor,
)
from .state import ObservedDeployment

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CALL_TIMEOUT_SECONDS = 60.0
DEFAULT_CONCURRENCY = 5


class ObserveError(Exception):
    """Raised when a lookup fails with anything other than NotFound."""

    def __init__(self, lookup: str, kind: ErrorKind, message: str) -> None:
        super().__init__(f"Observation failed at {lookup} ({kind.value}): {message}")
        self.lookup = lookup
        self.kind = kind


async def call_provider(
    executor: Executor | None,
    operation: str,
    fn: Callable[..., T],
    *args: Any,
    timeout: float,
) -> T:
    """Run a blocking adapter call off the event loop under a timeout.

    The worker thread is not interrupted on timeout; its result is discarded.

    Raises:
        ProviderError: From the adapter, or TRANSIENT if the call timed out.
    """
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(loop.run_in_executor(executor, fn, *args), timeout=timeout)
    except TimeoutError as e:
        logger.warning(
            "Provider call timed out",
            extra={"operation": operation, "timeout_seconds": timeout},
        )
        raise ProviderError(
            ErrorKind.TRANSIENT, operation, f"timed out after {timeout:.1f}s"
        ) from e


class StateObserver:
    """Reads the current provider state for a deployment name."""

    def __init__(
        self,
        provider: ProviderAdapter,
        call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        self._provider = provider
        self._call_timeout = call_timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=concurrency, thread_name_prefix="converger-observe"
        )

    @property
    def executor(self) -> Executor:
        return self._executor

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    async def observe(self, name: str) -> ObservedDeployment:
        """Look up every sub-resource owned by `name`.

        Raises:
            ObserveError: If any lookup fails with a kind other than NotFound.
        """
        names = ResourceNames(name)

        lookups = (
            (
                "role",
                self.get_role(names.role_name, names.policy_name, names.dead_letter_policy_name),
            ),
            ("function", self.get_function(names.function_name)),
            ("rule", self.get_rule(names.rule_name)),
            ("targets", self.list_targets(names.rule_name)),
            ("invoke_grants", self.get_invoke_grants(names.function_name)),
        )
        results = await asyncio.gather(*(c for _, c in lookups), return_exceptions=True)

        for (lookup, _), result in zip(lookups, results, strict=True):
            if isinstance(result, ProviderError):
                logger.error(
                    "Observation failed",
                    extra={
                        "deployment": name,
                        "lookup": lookup,
                        "error_kind": result.kind.value,
                        "error": result.message,
                    },
                )
                raise ObserveError(lookup, result.kind, result.message) from result
            if isinstance(result, BaseException):
                raise result

        role, function, rule, targets, grants = results
        observed = ObservedDeployment(
            name=name,
            role=role,
            function=function,
            rule=rule,
            targets=tuple(targets) if targets is not None else None,
            invoke_grants=tuple(grants) if grants is not None else None,
        )

        logger.info(
            "Observed deployment",
            extra={"deployment": name, "present": observed.present()},
        )
        return observed

    # -------------------------------------------------------------------------
    # Single-resource lookups; None means absent
    # -------------------------------------------------------------------------

    async def _lookup(
        self, operation: str, fn: Callable[..., T], *args: Any, timeout: float | None = None
    ) -> T | None:
        try:
            return await call_provider(
                self._executor, operation, fn, *args, timeout=timeout or self._call_timeout
            )
        except ProviderError as e:
            if e.kind is ErrorKind.NOT_FOUND:
                return None
            raise

    async def get_role(
        self, role_name: str, *policy_names: str, timeout: float | None = None
    ) -> RoleDescriptor | None:
        request = GetRoleRequest(role_name=role_name, policy_names=tuple(policy_names))
        return await self._lookup("get_role", self._provider.get_role, request, timeout=timeout)

    async def get_function(
        self, function_name: str, timeout: float | None = None
    ) -> FunctionDescriptor | None:
        return await self._lookup(
            "get_function", self._provider.get_function, function_name, timeout=timeout
        )

    async def get_rule(self, rule_name: str, timeout: float | None = None) -> RuleDescriptor | None:
        return await self._lookup("get_rule", self._provider.get_rule, rule_name, timeout=timeout)

    async def list_targets(
        self, rule_name: str, timeout: float | None = None
    ) -> list[TargetDescriptor] | None:
        return await self._lookup(
            "list_targets", self._provider.list_targets, rule_name, timeout=timeout
        )

    async def get_invoke_grants(
        self, function_name: str, timeout: float | None = None
    ) -> list[InvokeGrant] | None:
        return await self._lookup(
            "get_invoke_grants", self._provider.get_invoke_grants, function_name, timeout=timeout
        )
