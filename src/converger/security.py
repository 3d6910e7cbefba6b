"""Secret handling for function environments.

Environment values may reference secrets held by a secret store; the
engine passes the reference through and the function resolves it at run
time. Literal secrets must never pass through the engine, because the
provider stores environment values in plain function configuration.

SECURITY INVARIANTS:
1. A variable whose name marks it as sensitive must hold a secret reference
2. Environment values are never logged, only their keys
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping

from .planner import PlanError

logger = logging.getLogger(__name__)

# Variable names that indicate credential material
SENSITIVE_NAME_PATTERN = re.compile(
    r"(^|_)(PASSWORD|PASSWD|SECRET|TOKEN|PRIVATE_KEY|API_KEY|ACCESS_KEY|CREDENTIALS?)$",
    re.IGNORECASE,
)

# Accepted forms of secret handle
SECRET_REFERENCE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^\{\{resolve:(secretsmanager|ssm|ssm-secure):[^}]+\}\}$"),
    re.compile(r"^arn:aws[a-z-]*:secretsmanager:[a-z0-9-]+:\d{12}:secret:.+$"),
    re.compile(r"^arn:aws[a-z-]*:ssm:[a-z0-9-]+:\d{12}:parameter/.+$"),
    re.compile(r"^ssm:/.+$"),
)

# Literal credential shapes that must never appear, whatever the key
FORBIDDEN_VALUE_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("aws-access-key-id", re.compile(r"^(AKIA|ASIA)[A-Z0-9]{16}$")),
    ("private-key-block", re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----")),
)


class SecretLiteralError(PlanError):
    """Raised when an environment value looks like a literal secret.

    The run must not proceed: applying it would persist the secret in the
    provider's function configuration.
    """

    def __init__(self, variable: str, reason: str) -> None:
        super().__init__(
            f"Environment variable {variable!r} {reason}. "
            "Store the value in a secret store and reference it instead."
        )
        self.variable = variable


def is_secret_reference(value: str) -> bool:
    """Check whether a value is a handle to a stored secret."""
    return any(p.match(value) for p in SECRET_REFERENCE_PATTERNS)


def enforce_secret_references(environment: Mapping[str, str]) -> None:
    """Reject literal secrets in an environment mapping.

    Raises:
        SecretLiteralError: On the first offending variable.
    """
    for name, value in environment.items():
        for label, pattern in FORBIDDEN_VALUE_PATTERNS:
            if pattern.search(value):
                _log_violation(name, label)
                raise SecretLiteralError(name, f"contains a literal credential ({label})")

        if SENSITIVE_NAME_PATTERN.search(name) and value and not is_secret_reference(value):
            _log_violation(name, "sensitive-name")
            raise SecretLiteralError(name, "is sensitive but holds a literal value")


def _log_violation(variable: str, rule: str) -> None:
    logger.error(
        "Literal secret rejected",
        extra={
            "security_event": "literal_secret_detected",
            "variable": variable,
            "rule": rule,
            "action": "run_blocked",
        },
    )


def redact_environment(environment: Mapping[str, str]) -> list[str]:
    """Loggable view of an environment: sorted keys only."""
    return sorted(environment)
