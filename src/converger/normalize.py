"""Policy statement normalization for drift comparison.

Role policies are compared as sets of statements. The provider hands back
documents that are semantically identical to what was written but
syntactically different, so both sides are normalized before comparing.

COMMON FALSE POSITIVES HANDLED:
1. "Action": "s3:GetObject" vs "Action": ["s3:GetObject"]
2. Element order inside Action/Resource lists
3. Case of action names (IAM treats them case-insensitively)
4. Statement order inside the document
5. Key order inside Condition blocks
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class NormalizationType(str, Enum):
    """Types of normalization applied to statement elements."""

    # "x" and ["x"] are equivalent; lists compare as sorted sets
    ARRAY_UNORDERED = "array_unordered"

    # Lowercase plus unordered
    CASE_INSENSITIVE_ARRAY = "case_insensitive_array"

    # Condition values: operator -> key -> value-or-list
    CONDITION = "condition"


STATEMENT_RULES: dict[str, NormalizationType] = {
    "Action": NormalizationType.CASE_INSENSITIVE_ARRAY,
    "NotAction": NormalizationType.CASE_INSENSITIVE_ARRAY,
    "Resource": NormalizationType.ARRAY_UNORDERED,
    "NotResource": NormalizationType.ARRAY_UNORDERED,
    "Condition": NormalizationType.CONDITION,
}


def _unordered(value: Any, *, lower: bool = False) -> list[Any]:
    items = value if isinstance(value, list) else [value]
    if lower:
        items = [i.lower() if isinstance(i, str) else i for i in items]
    unique = {json.dumps(i, sort_keys=True): i for i in items}
    return [unique[k] for k in sorted(unique)]


def _normalize_condition(value: Any) -> Any:
    if not isinstance(value, dict):
        return value
    return {
        operator: {
            key: _unordered(operand) for key, operand in sorted(block.items())
        }
        if isinstance(block, dict)
        else block
        for operator, block in sorted(value.items())
    }


def normalize_statement(statement: dict[str, Any]) -> dict[str, Any]:
    """Return a canonical copy of one policy statement."""
    normalized: dict[str, Any] = {}
    for key, value in statement.items():
        match STATEMENT_RULES.get(key):
            case NormalizationType.CASE_INSENSITIVE_ARRAY:
                normalized[key] = _unordered(value, lower=True)
            case NormalizationType.ARRAY_UNORDERED:
                normalized[key] = _unordered(value)
            case NormalizationType.CONDITION:
                normalized[key] = _normalize_condition(value)
            case _:
                normalized[key] = value
    return normalized


def statement_set(statements: Iterable[dict[str, Any]]) -> frozenset[str]:
    """Canonical, order-independent representation of a statement list."""
    return frozenset(
        json.dumps(normalize_statement(s), sort_keys=True, separators=(",", ":"))
        for s in statements
    )


def statements_equivalent(
    desired: Iterable[dict[str, Any]],
    observed: Iterable[dict[str, Any]] | None,
) -> bool:
    """Check whether two statement lists grant the same thing."""
    if observed is None:
        return False
    equivalent = statement_set(desired) == statement_set(observed)
    if not equivalent:
        logger.debug("Policy statements differ after normalization")
    return equivalent
