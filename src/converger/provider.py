"""Provider adapter boundary.

Everything above this module is provider-agnostic. An adapter exposes one
method per control-plane primitive, takes a typed request, and returns a
typed descriptor or raises a classified ProviderError.

CONTRACT:
- Adapters never retry. Retry policy lives in the Reconciler so attempt
  counts and backoff are observable in one place.
- One logical provider lookup or mutation per call, no caching.
- Absence is reported as ProviderError(kind=NOT_FOUND), never as None.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Principal the scheduler uses to invoke functions
SCHEDULER_PRINCIPAL = "events.amazonaws.com"
INVOKE_ACTION = "lambda:InvokeFunction"


class ErrorKind(str, Enum):
    """Classification of provider failures."""

    NOT_FOUND = "NotFound"
    THROTTLED = "Throttled"
    CONFLICT = "Conflict"
    PERMISSION_DENIED = "PermissionDenied"
    TRANSIENT = "Transient"
    UNKNOWN = "Unknown"

    @property
    def retryable(self) -> bool:
        """Whether another attempt can change the outcome."""
        return self in (ErrorKind.THROTTLED, ErrorKind.TRANSIENT)


class ProviderError(Exception):
    """A classified provider failure."""

    def __init__(
        self,
        kind: ErrorKind,
        operation: str,
        message: str,
        code: str | None = None,
    ) -> None:
        super().__init__(f"{operation}: {kind.value}: {message}")
        self.kind = kind
        self.operation = operation
        self.message = message
        self.code = code


# =============================================================================
# Resource descriptors
# =============================================================================


@dataclass(frozen=True)
class RoleDescriptor:
    """Execution role as stored by the provider."""

    name: str
    arn: str
    trust_policy: dict[str, Any] = field(default_factory=dict)
    # Inline policy name -> statements. Only the policies the engine owns.
    inline_policies: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    # Managed policy ARNs attached to the role
    attached_policy_arns: tuple[str, ...] = ()


@dataclass(frozen=True)
class FunctionDescriptor:
    """Function configuration as stored by the provider."""

    name: str
    arn: str
    code_sha256: str
    runtime: str | None = None
    handler: str | None = None
    role_arn: str | None = None
    memory_mb: int | None = None
    timeout_seconds: int | None = None
    environment: dict[str, str] = field(default_factory=dict)
    subnet_ids: tuple[str, ...] = ()
    security_group_ids: tuple[str, ...] = ()
    dead_letter_target: str | None = None
    state: str | None = None
    last_update_status: str | None = None

    @property
    def ready(self) -> bool:
        """True when the provider accepts further mutations of this function."""
        if self.state not in (None, "Active", "Inactive"):
            return False
        return self.last_update_status != "InProgress"


@dataclass(frozen=True)
class RuleDescriptor:
    """Schedule rule as stored by the provider."""

    name: str
    arn: str
    schedule_expression: str | None = None
    state: str = "ENABLED"


@dataclass(frozen=True)
class TargetDescriptor:
    """A target bound to a schedule rule."""

    target_id: str
    arn: str
    retry_attempts: int | None = None


@dataclass(frozen=True)
class InvokeGrant:
    """One statement of a function's resource policy."""

    statement_id: str
    principal: str
    action: str
    source_arn: str | None = None

    def allows(self, principal: str, source_arn: str | None) -> bool:
        """Check whether this grant lets principal invoke from source_arn."""
        if self.principal != principal:
            return False
        if self.action not in (INVOKE_ACTION, "lambda:*"):
            return False
        return self.source_arn is None or self.source_arn == source_arn


# =============================================================================
# Requests
# =============================================================================


@dataclass(frozen=True)
class CodeLocation:
    """Where the provider fetches a code artifact from."""

    location: str
    object_version: str | None = None

    @property
    def is_object_store(self) -> bool:
        return self.location.startswith("s3://")


@dataclass(frozen=True)
class GetRoleRequest:
    role_name: str
    policy_names: tuple[str, ...] = ()


@dataclass(frozen=True)
class CreateRoleRequest:
    role_name: str
    trust_policy: dict[str, Any]
    description: str = ""
    tags: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class AttachRolePolicyRequest:
    role_name: str
    policy_arn: str


@dataclass(frozen=True)
class PutRolePolicyRequest:
    role_name: str
    policy_name: str
    statements: tuple[dict[str, Any], ...]


@dataclass(frozen=True)
class CreateFunctionRequest:
    function_name: str
    role_arn: str
    runtime: str
    handler: str
    code: CodeLocation
    memory_mb: int
    timeout_seconds: int
    environment: dict[str, str] = field(default_factory=dict)
    subnet_ids: tuple[str, ...] = ()
    security_group_ids: tuple[str, ...] = ()
    dead_letter_target: str | None = None
    description: str = ""
    tags: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class UpdateFunctionCodeRequest:
    function_name: str
    code: CodeLocation


@dataclass(frozen=True)
class UpdateFunctionConfigRequest:
    """Configuration update. None fields are left as the provider has them."""

    function_name: str
    role_arn: str | None = None
    runtime: str | None = None
    handler: str | None = None
    memory_mb: int | None = None
    timeout_seconds: int | None = None
    environment: dict[str, str] | None = None
    subnet_ids: tuple[str, ...] | None = None
    security_group_ids: tuple[str, ...] | None = None
    dead_letter_target: str | None = None


@dataclass(frozen=True)
class PutRuleRequest:
    rule_name: str
    schedule_expression: str
    description: str = ""


@dataclass(frozen=True)
class AddPermissionRequest:
    function_name: str
    statement_id: str
    source_arn: str
    principal: str = SCHEDULER_PRINCIPAL
    action: str = INVOKE_ACTION


@dataclass(frozen=True)
class PutTargetsRequest:
    rule_name: str
    target_id: str
    target_arn: str
    retry_attempts: int


# =============================================================================
# Adapter interface
# =============================================================================


class ProviderAdapter(ABC):
    """Control-plane operations the engine invokes.

    Every method may block on network I/O and raises ProviderError on
    failure. Callers run them off the event loop.
    """

    @abstractmethod
    def get_role(self, request: GetRoleRequest) -> RoleDescriptor:
        """Look up a role, the named inline policies and its managed policies."""
        ...

    @abstractmethod
    def create_role(self, request: CreateRoleRequest) -> RoleDescriptor: ...

    @abstractmethod
    def put_role_policy(self, request: PutRolePolicyRequest) -> None: ...

    @abstractmethod
    def attach_role_policy(self, request: AttachRolePolicyRequest) -> None: ...

    @abstractmethod
    def get_function(self, function_name: str) -> FunctionDescriptor: ...

    @abstractmethod
    def create_function(self, request: CreateFunctionRequest) -> FunctionDescriptor: ...

    @abstractmethod
    def update_function_code(self, request: UpdateFunctionCodeRequest) -> FunctionDescriptor: ...

    @abstractmethod
    def update_function_config(
        self, request: UpdateFunctionConfigRequest
    ) -> FunctionDescriptor: ...

    @abstractmethod
    def get_rule(self, rule_name: str) -> RuleDescriptor: ...

    @abstractmethod
    def put_rule(self, request: PutRuleRequest) -> RuleDescriptor: ...

    @abstractmethod
    def list_targets(self, rule_name: str) -> list[TargetDescriptor]:
        """List targets bound to a rule. NOT_FOUND if the rule does not exist."""
        ...

    @abstractmethod
    def get_invoke_grants(self, function_name: str) -> list[InvokeGrant]:
        """Read a function's resource policy. NOT_FOUND if it has none."""
        ...

    @abstractmethod
    def add_permission(self, request: AddPermissionRequest) -> InvokeGrant: ...

    @abstractmethod
    def put_targets(self, request: PutTargetsRequest) -> TargetDescriptor: ...
