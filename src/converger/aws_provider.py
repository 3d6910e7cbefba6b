"""AWS implementation of the provider adapter using boto3.

Role -> IAM, function and its resource policy -> Lambda, schedule rule and
targets -> EventBridge. This is the only module that knows AWS wire formats.

SDK-level retries are disabled (total_max_attempts=1); the Reconciler owns
retry policy.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any
from urllib.parse import unquote

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
)

from .provider import (
    AddPermissionRequest,
    AttachRolePolicyRequest,
    CodeLocation,
    CreateFunctionRequest,
    CreateRoleRequest,
    ErrorKind,
    FunctionDescriptor,
    GetRoleRequest,
    InvokeGrant,
    ProviderAdapter,
    ProviderError,
    PutRolePolicyRequest,
    PutRuleRequest,
    PutTargetsRequest,
    RoleDescriptor,
    RuleDescriptor,
    TargetDescriptor,
    UpdateFunctionCodeRequest,
    UpdateFunctionConfigRequest,
)

logger = logging.getLogger(__name__)

POLICY_VERSION = "2012-10-17"

NOT_FOUND_CODES = frozenset({"NoSuchEntity", "ResourceNotFoundException"})

THROTTLED_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "EC2ThrottledException",
        "SlowDown",
    }
)

CONFLICT_CODES = frozenset(
    {
        "ResourceConflictException",
        "ConcurrentModificationException",
        "EntityAlreadyExists",
        "ResourceInUseException",
        "PreconditionFailedException",
    }
)

PERMISSION_DENIED_CODES = frozenset(
    {
        "AccessDenied",
        "AccessDeniedException",
        "UnauthorizedOperation",
        "UnrecognizedClientException",
        "InvalidClientTokenId",
        "ExpiredToken",
        "ExpiredTokenException",
    }
)

TRANSIENT_CODES = frozenset(
    {
        "ServiceException",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "ServiceFailure",
        "InternalFailure",
        "InternalError",
        "InternalException",
        "RequestTimeout",
        "RequestTimeoutException",
        "EC2UnexpectedException",
    }
)

# IAM is eventually consistent: a freshly created role is briefly rejected
# by Lambda with InvalidParameterValueException.
ROLE_PROPAGATION_MARKERS = ("cannot be assumed", "role defined for the function")


def classify_client_error(error: ClientError) -> tuple[ErrorKind, str]:
    """Map a botocore ClientError to an ErrorKind.

    Returns:
        Tuple of (kind, error_code).
    """
    err = error.response.get("Error", {})
    code = str(err.get("Code", ""))
    message = str(err.get("Message", ""))
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")

    if code in NOT_FOUND_CODES:
        return ErrorKind.NOT_FOUND, code
    if code in THROTTLED_CODES:
        return ErrorKind.THROTTLED, code
    if code in CONFLICT_CODES:
        return ErrorKind.CONFLICT, code
    if code in PERMISSION_DENIED_CODES:
        return ErrorKind.PERMISSION_DENIED, code
    if code in TRANSIENT_CODES:
        return ErrorKind.TRANSIENT, code
    if code == "InvalidParameterValueException" and any(
        marker in message.lower() for marker in ROLE_PROPAGATION_MARKERS
    ):
        return ErrorKind.TRANSIENT, code

    match status:
        case 429:
            return ErrorKind.THROTTLED, code
        case 403:
            return ErrorKind.PERMISSION_DENIED, code
        case 404:
            return ErrorKind.NOT_FOUND, code
        case 409:
            return ErrorKind.CONFLICT, code
        case int() if status >= 500:
            return ErrorKind.TRANSIENT, code

    return ErrorKind.UNKNOWN, code


@contextmanager
def _translate(operation: str) -> Iterator[None]:
    """Convert SDK exceptions raised inside the block into ProviderError."""
    try:
        yield
    except ClientError as e:
        kind, code = classify_client_error(e)
        message = e.response.get("Error", {}).get("Message", str(e))
        raise ProviderError(kind, operation, message, code=code) from e
    except (ConnectTimeoutError, ReadTimeoutError, BotoConnectionError) as e:
        raise ProviderError(ErrorKind.TRANSIENT, operation, str(e)) from e
    except BotoCoreError as e:
        raise ProviderError(ErrorKind.UNKNOWN, operation, str(e)) from e


def _decode_policy(document: Any) -> dict[str, Any]:
    """IAM policy documents may arrive URL-encoded, as JSON text, or parsed."""
    if isinstance(document, dict):
        return document
    if not document:
        return {}
    return json.loads(unquote(str(document)))


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _parse_s3_uri(uri: str) -> tuple[str, str]:
    """Split s3://bucket/key into (bucket, key)."""
    without_scheme = uri[len("s3://") :]
    bucket, _, key = without_scheme.partition("/")
    if not bucket or not key:
        raise ProviderError(ErrorKind.UNKNOWN, "ResolveCode", f"Invalid S3 location: {uri}")
    return bucket, key


def _code_arguments(code: CodeLocation, *, for_update: bool) -> dict[str, Any]:
    """Build Lambda code arguments for an object store or local artifact.

    CreateFunction nests them under Code=; UpdateFunctionCode takes them flat.
    """
    args: dict[str, Any]
    if code.is_object_store:
        bucket, key = _parse_s3_uri(code.location)
        args = {"S3Bucket": bucket, "S3Key": key}
        if code.object_version:
            args["S3ObjectVersion"] = code.object_version
    else:
        try:
            args = {"ZipFile": Path(code.location).read_bytes()}
        except OSError as e:
            operation = "UpdateFunctionCode" if for_update else "CreateFunction"
            raise ProviderError(
                ErrorKind.UNKNOWN, operation, f"Cannot read artifact {code.location}: {e}"
            ) from e
    return args


def _function_from_response(data: dict[str, Any]) -> FunctionDescriptor:
    vpc = data.get("VpcConfig") or {}
    return FunctionDescriptor(
        name=data["FunctionName"],
        arn=data["FunctionArn"],
        code_sha256=data.get("CodeSha256", ""),
        runtime=data.get("Runtime"),
        handler=data.get("Handler"),
        role_arn=data.get("Role"),
        memory_mb=data.get("MemorySize"),
        timeout_seconds=data.get("Timeout"),
        environment=dict((data.get("Environment") or {}).get("Variables") or {}),
        subnet_ids=tuple(vpc.get("SubnetIds") or ()),
        security_group_ids=tuple(vpc.get("SecurityGroupIds") or ()),
        dead_letter_target=(data.get("DeadLetterConfig") or {}).get("TargetArn"),
        state=data.get("State"),
        last_update_status=data.get("LastUpdateStatus"),
    )


def _grant_from_statement(statement: dict[str, Any]) -> InvokeGrant:
    principal = statement.get("Principal")
    if isinstance(principal, dict):
        principal = principal.get("Service") or principal.get("AWS") or ""
    actions = _as_list(statement.get("Action"))
    condition = statement.get("Condition") or {}
    source_arn = None
    for operator in ("ArnLike", "ArnEquals", "StringEquals"):
        block = condition.get(operator) or {}
        if "AWS:SourceArn" in block:
            source_arn = block["AWS:SourceArn"]
            break
    return InvokeGrant(
        statement_id=statement.get("Sid", ""),
        principal=str(principal or ""),
        action=str(actions[0]) if actions else "",
        source_arn=source_arn,
    )


class AwsProviderAdapter(ProviderAdapter):
    """boto3-backed adapter for IAM, Lambda and EventBridge.

    Args:
        region: AWS region for Lambda and EventBridge.
        call_timeout_seconds: Connect and read timeout per SDK call.
        clients: Optional pre-built clients keyed by "iam", "lambda", "events".
    """

    def __init__(
        self,
        region: str | None = None,
        call_timeout_seconds: int = 60,
        clients: dict[str, Any] | None = None,
    ) -> None:
        if clients is None:
            boto_config = BotoConfig(
                retries={"total_max_attempts": 1, "mode": "standard"},
                connect_timeout=call_timeout_seconds,
                read_timeout=call_timeout_seconds,
            )
            session = boto3.Session(region_name=region)
            clients = {
                name: session.client(name, config=boto_config)
                for name in ("iam", "lambda", "events")
            }
        self._iam = clients["iam"]
        self._lambda = clients["lambda"]
        self._events = clients["events"]

    # -------------------------------------------------------------------------
    # Role
    # -------------------------------------------------------------------------

    def get_role(self, request: GetRoleRequest) -> RoleDescriptor:
        with _translate("GetRole"):
            role = self._iam.get_role(RoleName=request.role_name)["Role"]

        inline: dict[str, list[dict[str, Any]]] = {}
        for policy_name in request.policy_names:
            try:
                with _translate("GetRolePolicy"):
                    response = self._iam.get_role_policy(
                        RoleName=request.role_name, PolicyName=policy_name
                    )
            except ProviderError as e:
                if e.kind is ErrorKind.NOT_FOUND:
                    continue
                raise
            document = _decode_policy(response.get("PolicyDocument"))
            inline[policy_name] = _as_list(document.get("Statement"))

        attached: list[str] = []
        with _translate("ListAttachedRolePolicies"):
            paginator = self._iam.get_paginator("list_attached_role_policies")
            for page in paginator.paginate(RoleName=request.role_name):
                attached.extend(p["PolicyArn"] for p in page.get("AttachedPolicies", []))

        return RoleDescriptor(
            name=role["RoleName"],
            arn=role["Arn"],
            trust_policy=_decode_policy(role.get("AssumeRolePolicyDocument")),
            inline_policies=inline,
            attached_policy_arns=tuple(sorted(attached)),
        )

    def create_role(self, request: CreateRoleRequest) -> RoleDescriptor:
        kwargs: dict[str, Any] = {
            "RoleName": request.role_name,
            "AssumeRolePolicyDocument": json.dumps(request.trust_policy),
            "Description": request.description,
        }
        if request.tags:
            kwargs["Tags"] = [{"Key": k, "Value": v} for k, v in sorted(request.tags.items())]

        with _translate("CreateRole"):
            role = self._iam.create_role(**kwargs)["Role"]

        logger.info("Created IAM role", extra={"role_name": request.role_name})
        return RoleDescriptor(
            name=role["RoleName"],
            arn=role["Arn"],
            trust_policy=request.trust_policy,
        )

    def attach_role_policy(self, request: AttachRolePolicyRequest) -> None:
        with _translate("AttachRolePolicy"):
            self._iam.attach_role_policy(
                RoleName=request.role_name, PolicyArn=request.policy_arn
            )

    def put_role_policy(self, request: PutRolePolicyRequest) -> None:
        document = {"Version": POLICY_VERSION, "Statement": list(request.statements)}
        with _translate("PutRolePolicy"):
            self._iam.put_role_policy(
                RoleName=request.role_name,
                PolicyName=request.policy_name,
                PolicyDocument=json.dumps(document),
            )

    # -------------------------------------------------------------------------
    # Function
    # -------------------------------------------------------------------------

    def get_function(self, function_name: str) -> FunctionDescriptor:
        with _translate("GetFunction"):
            data = self._lambda.get_function_configuration(FunctionName=function_name)
        return _function_from_response(data)

    def create_function(self, request: CreateFunctionRequest) -> FunctionDescriptor:
        kwargs: dict[str, Any] = {
            "FunctionName": request.function_name,
            "Runtime": request.runtime,
            "Role": request.role_arn,
            "Handler": request.handler,
            "Code": _code_arguments(request.code, for_update=False),
            "Description": request.description,
            "Timeout": request.timeout_seconds,
            "MemorySize": request.memory_mb,
            "Publish": False,
            "Environment": {"Variables": dict(request.environment)},
        }
        if request.subnet_ids:
            kwargs["VpcConfig"] = {
                "SubnetIds": list(request.subnet_ids),
                "SecurityGroupIds": list(request.security_group_ids),
            }
        if request.dead_letter_target:
            kwargs["DeadLetterConfig"] = {"TargetArn": request.dead_letter_target}
        if request.tags:
            kwargs["Tags"] = dict(request.tags)

        with _translate("CreateFunction"):
            data = self._lambda.create_function(**kwargs)
        return _function_from_response(data)

    def update_function_code(self, request: UpdateFunctionCodeRequest) -> FunctionDescriptor:
        with _translate("UpdateFunctionCode"):
            data = self._lambda.update_function_code(
                FunctionName=request.function_name,
                Publish=False,
                **_code_arguments(request.code, for_update=True),
            )
        return _function_from_response(data)

    def update_function_config(
        self, request: UpdateFunctionConfigRequest
    ) -> FunctionDescriptor:
        kwargs: dict[str, Any] = {"FunctionName": request.function_name}
        if request.role_arn is not None:
            kwargs["Role"] = request.role_arn
        if request.runtime is not None:
            kwargs["Runtime"] = request.runtime
        if request.handler is not None:
            kwargs["Handler"] = request.handler
        if request.memory_mb is not None:
            kwargs["MemorySize"] = request.memory_mb
        if request.timeout_seconds is not None:
            kwargs["Timeout"] = request.timeout_seconds
        if request.environment is not None:
            kwargs["Environment"] = {"Variables": dict(request.environment)}
        if request.subnet_ids is not None:
            kwargs["VpcConfig"] = {
                "SubnetIds": list(request.subnet_ids),
                "SecurityGroupIds": list(request.security_group_ids or ()),
            }
        if request.dead_letter_target is not None:
            kwargs["DeadLetterConfig"] = {"TargetArn": request.dead_letter_target}

        with _translate("UpdateFunctionConfig"):
            data = self._lambda.update_function_configuration(**kwargs)
        return _function_from_response(data)

    def get_invoke_grants(self, function_name: str) -> list[InvokeGrant]:
        with _translate("GetPolicy"):
            response = self._lambda.get_policy(FunctionName=function_name)
        policy = _decode_policy(response.get("Policy"))
        return [_grant_from_statement(s) for s in _as_list(policy.get("Statement"))]

    def add_permission(self, request: AddPermissionRequest) -> InvokeGrant:
        with _translate("AddPermission"):
            response = self._lambda.add_permission(
                FunctionName=request.function_name,
                StatementId=request.statement_id,
                Action=request.action,
                Principal=request.principal,
                SourceArn=request.source_arn,
            )
        statement = response.get("Statement")
        if statement:
            return _grant_from_statement(_decode_policy(statement))
        return InvokeGrant(
            statement_id=request.statement_id,
            principal=request.principal,
            action=request.action,
            source_arn=request.source_arn,
        )

    # -------------------------------------------------------------------------
    # Schedule rule and targets
    # -------------------------------------------------------------------------

    def get_rule(self, rule_name: str) -> RuleDescriptor:
        with _translate("GetRule"):
            data = self._events.describe_rule(Name=rule_name)
        return RuleDescriptor(
            name=data["Name"],
            arn=data["Arn"],
            schedule_expression=data.get("ScheduleExpression"),
            state=data.get("State", "ENABLED"),
        )

    def put_rule(self, request: PutRuleRequest) -> RuleDescriptor:
        with _translate("PutRule"):
            response = self._events.put_rule(
                Name=request.rule_name,
                ScheduleExpression=request.schedule_expression,
                State="ENABLED",
                Description=request.description,
            )
        return RuleDescriptor(
            name=request.rule_name,
            arn=response["RuleArn"],
            schedule_expression=request.schedule_expression,
        )

    def list_targets(self, rule_name: str) -> list[TargetDescriptor]:
        targets: list[TargetDescriptor] = []
        with _translate("ListTargetsByRule"):
            paginator = self._events.get_paginator("list_targets_by_rule")
            for page in paginator.paginate(Rule=rule_name):
                targets.extend(
                    TargetDescriptor(
                        target_id=t["Id"],
                        arn=t["Arn"],
                        retry_attempts=(t.get("RetryPolicy") or {}).get("MaximumRetryAttempts"),
                    )
                    for t in page.get("Targets", [])
                )
        return targets

    def put_targets(self, request: PutTargetsRequest) -> TargetDescriptor:
        target = {
            "Id": request.target_id,
            "Arn": request.target_arn,
            "RetryPolicy": {"MaximumRetryAttempts": request.retry_attempts},
        }
        with _translate("PutTargets"):
            response = self._events.put_targets(Rule=request.rule_name, Targets=[target])

        # PutTargets reports per-entry failures in a 200 response
        if response.get("FailedEntryCount", 0):
            entry = response["FailedEntries"][0]
            code = entry.get("ErrorCode", "")
            entry_error = ClientError(
                {"Error": {"Code": code, "Message": entry.get("ErrorMessage", "")}},
                "PutTargets",
            )
            kind, _ = classify_client_error(entry_error)
            raise ProviderError(kind, "PutTargets", entry.get("ErrorMessage", code), code=code)

        return TargetDescriptor(
            target_id=request.target_id,
            arn=request.target_arn,
            retry_attempts=request.retry_attempts,
        )
