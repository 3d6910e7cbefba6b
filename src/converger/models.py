"""Pydantic models for the desired deployment document.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Derived sub-resource names, all keyed on the deployment name

Semantic checks that need more than one field (schedule grammar, literal
secrets, VPC completeness) live in planner.validate() and raise PlanError.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

DEFAULT_RUNTIME = "python3.12"
DEFAULT_HANDLER = "handler.handler"
DEFAULT_MEMORY_MB = 128
DEFAULT_TIMEOUT_SECONDS = 60
DEFAULT_RETRY_COUNT = 2

# Provider limit for role names is 64; the longest derived suffix is "-execution"
VALID_NAME_PATTERN = r"^[A-Za-z0-9_-]{1,48}$"

DEFAULT_TRUST_POLICY: dict[str, Any] = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Principal": {"Service": "lambda.amazonaws.com"},
            "Action": "sts:AssumeRole",
        }
    ],
}


class _DocumentModel(BaseModel):
    """Common settings for document sections."""

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}


class CodeArtifactRef(_DocumentModel):
    """Opaque artifact reference plus its content digest.

    `location` is either s3://bucket/key or a local zip path. `digest` is the
    base64-encoded SHA-256 of the zip, the same value the provider reports.
    """

    location: Annotated[str, Field(min_length=1)]
    digest: str | None = None
    object_version: str | None = Field(None, alias="objectVersion")
    runtime: str = DEFAULT_RUNTIME
    handler: str = DEFAULT_HANDLER

    @property
    def is_object_store(self) -> bool:
        return self.location.startswith("s3://")


class RoleSpec(_DocumentModel):
    """Execution role: inline policy statements plus trust policy."""

    statements: Annotated[list[dict[str, Any]], Field(min_length=1)]
    trust_policy: dict[str, Any] = Field(
        default_factory=lambda: dict(DEFAULT_TRUST_POLICY), alias="trustPolicy"
    )
    managed_policy_arns: list[str] = Field(default_factory=list, alias="managedPolicyArns")

    @field_validator("statements")
    @classmethod
    def validate_statements(cls, v: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for index, statement in enumerate(v):
            if statement.get("Effect") not in ("Allow", "Deny"):
                raise ValueError(f"statement {index}: Effect must be Allow or Deny")
            if "Action" not in statement and "NotAction" not in statement:
                raise ValueError(f"statement {index}: Action is required")
        return v


class VpcPlacement(_DocumentModel):
    """Subnets and security groups the function attaches to."""

    subnet_ids: list[str] = Field(default_factory=list, alias="subnetIds")
    security_group_ids: list[str] = Field(default_factory=list, alias="securityGroupIds")


class ResourceLimits(_DocumentModel):
    """Memory and timeout limits."""

    memory_mb: Annotated[int, Field(ge=128, le=10240, alias="memoryMb")] = DEFAULT_MEMORY_MB
    timeout_seconds: Annotated[int, Field(ge=1, le=900, alias="timeoutSeconds")] = (
        DEFAULT_TIMEOUT_SECONDS
    )


class FailurePolicy(_DocumentModel):
    """Retry budget for scheduled invocations and optional dead-letter target."""

    retry_count: Annotated[int, Field(ge=0, le=185, alias="retryCount")] = DEFAULT_RETRY_COUNT
    dead_letter_target: str | None = Field(None, alias="deadLetterTarget")


class DesiredDeployment(_DocumentModel):
    """The declared target state of one scheduled function.

    Immutable once constructed. The `name` is the only join key across
    sub-resources; every provider-side name below is derived from it.
    """

    name: Annotated[str, Field(pattern=VALID_NAME_PATTERN)]
    code_artifact_ref: CodeArtifactRef = Field(alias="codeArtifactRef")
    role_spec: RoleSpec = Field(alias="roleSpec")
    vpc_placement: VpcPlacement | None = Field(None, alias="vpcPlacement")
    resources: ResourceLimits = Field(default_factory=ResourceLimits)
    environment: dict[str, str] = Field(default_factory=dict)
    schedule: Annotated[str, Field(min_length=1)]
    failure_policy: FailurePolicy = Field(default_factory=FailurePolicy, alias="failurePolicy")
    description: str = ""
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("environment", mode="before")
    @classmethod
    def stringify_environment(cls, v: Any) -> Any:
        # YAML turns `PORT: 8080` into an int; the provider stores strings
        if not isinstance(v, dict):
            return v
        result: dict[str, str] = {}
        for key, value in v.items():
            if isinstance(value, bool):
                result[str(key)] = "true" if value else "false"
            elif value is None:
                result[str(key)] = ""
            else:
                result[str(key)] = str(value)
        return result

    @field_validator("schedule")
    @classmethod
    def strip_schedule(cls, v: str) -> str:
        return v.strip()

    # -------------------------------------------------------------------------
    # Derived sub-resource names
    # -------------------------------------------------------------------------

    @property
    def names(self) -> ResourceNames:
        return ResourceNames(self.name)

    @property
    def function_name(self) -> str:
        return self.names.function_name

    @property
    def role_name(self) -> str:
        return self.names.role_name

    @property
    def policy_name(self) -> str:
        return self.names.policy_name

    @property
    def dead_letter_policy_name(self) -> str:
        return self.names.dead_letter_policy_name

    @property
    def rule_name(self) -> str:
        return self.names.rule_name

    @property
    def target_id(self) -> str:
        return self.names.target_id

    @property
    def permission_statement_id(self) -> str:
        return self.names.permission_statement_id


@dataclass(frozen=True)
class ResourceNames:
    """Provider-side names of every sub-resource owned by a deployment."""

    name: str

    @property
    def function_name(self) -> str:
        return self.name

    @property
    def role_name(self) -> str:
        return f"{self.name}-execution"

    @property
    def policy_name(self) -> str:
        return f"{self.name}-policy"

    @property
    def dead_letter_policy_name(self) -> str:
        return f"{self.name}-dead-letter"

    @property
    def rule_name(self) -> str:
        return f"{self.name}-schedule"

    @property
    def target_id(self) -> str:
        return f"{self.name}-target"

    @property
    def permission_statement_id(self) -> str:
        return f"{self.name}-schedule-invoke"
