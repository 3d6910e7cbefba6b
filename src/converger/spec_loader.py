"""Desired-state document loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_ARTIFACT_FILE_SIZE_BYTES, MAX_DOCUMENT_FILE_SIZE_BYTES
from .models import DesiredDeployment

logger = logging.getLogger(__name__)

SUPPORTED_KINDS = ("ScheduledFunction",)


class SpecLoadError(Exception):
    """Raised when document loading or validation fails."""

    pass


def _read_bounded(path: Path, limit: int, what: str) -> bytes:
    if not path.is_file():
        raise SpecLoadError(f"{what} not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat {what.lower()} {path}: {e}") from e

    if file_size > limit:
        raise SpecLoadError(f"{what} exceeds maximum size of {limit} bytes: {path}")

    try:
        return path.read_bytes()
    except OSError as e:
        raise SpecLoadError(f"Failed to read {what.lower()} {path}: {e}") from e


def compute_digest(content: bytes) -> str:
    """Base64-encoded SHA-256, the form the provider reports for code."""
    return base64.b64encode(hashlib.sha256(content).digest()).decode("ascii")


def document_hash(path: Path) -> str:
    """Hex SHA-256 of a document, for provenance."""
    return hashlib.sha256(_read_bounded(path, MAX_DOCUMENT_FILE_SIZE_BYTES, "Document")).hexdigest()


def parse_document(raw_data: Any, source: str = "<document>") -> DesiredDeployment:
    """Validate an already-parsed YAML mapping into a DesiredDeployment.

    Raises:
        SpecLoadError: If the mapping is malformed or fails validation.
    """
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Document must contain a YAML mapping: {source}")

    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        kind = raw_data.get("kind")
        if kind is not None and kind not in SUPPORTED_KINDS:
            raise SpecLoadError(
                f"Unsupported kind '{kind}' in {source}; expected {SUPPORTED_KINDS}"
            )

        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")

        # metadata.name stands in for a missing spec.name
        metadata = raw_data.get("metadata") or {}
        if "name" not in spec_data and isinstance(metadata, dict) and "name" in metadata:
            spec_data = {**spec_data, "name": metadata["name"]}
    else:
        spec_data = raw_data

    try:
        return DesiredDeployment.model_validate(spec_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e


def _resolve_local_artifact(desired: DesiredDeployment, base_dir: Path) -> DesiredDeployment:
    """Pin a local artifact to an absolute path and its computed digest."""
    artifact = desired.code_artifact_ref
    path = Path(artifact.location).expanduser()
    if not path.is_absolute():
        path = (base_dir / path).resolve()

    digest = compute_digest(_read_bounded(path, MAX_ARTIFACT_FILE_SIZE_BYTES, "Code artifact"))

    if artifact.digest is not None and artifact.digest != digest:
        raise SpecLoadError(
            f"Declared digest for {path} does not match its content "
            f"(declared {artifact.digest}, computed {digest})"
        )

    pinned = artifact.model_copy(update={"location": str(path), "digest": digest})
    return desired.model_copy(update={"code_artifact_ref": pinned})


def load_desired(path: Path) -> DesiredDeployment:
    """Load and validate a desired-state document from YAML.

    Local code artifacts are resolved relative to the document and their
    digest is computed; object-store artifacts must declare one.

    Args:
        path: Path to the YAML document.

    Returns:
        Validated desired deployment.

    Raises:
        SpecLoadError: If the document cannot be loaded or fails validation.
    """
    content = _read_bounded(path, MAX_DOCUMENT_FILE_SIZE_BYTES, "Document")

    try:
        raw_data = yaml.safe_load(content.decode("utf-8"))
    except UnicodeDecodeError as e:
        raise SpecLoadError(f"Document is not valid UTF-8: {path}") from e
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    desired = parse_document(raw_data, str(path))

    if not desired.code_artifact_ref.is_object_store:
        desired = _resolve_local_artifact(desired, path.parent)

    logger.info(
        "Loaded desired state",
        extra={
            "deployment": desired.name,
            "path": str(path),
            "artifact": desired.code_artifact_ref.location,
        },
    )
    return desired
