"""Run provenance tracking for audit.

Each run is stamped with a provenance record that answers:
- "What did the engine do to this deployment, and when?"
- "Which document and which engine version drove the change?"

The record is emitted as one structured log line at the end of the run,
followed by one line per executed action.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from .actions import ConvergenceReport, ConvergenceStatus

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
ENGINE_VERSION = os.environ.get("ENGINE_VERSION", "dev")


@dataclass
class RunProvenance:
    """Complete provenance record for one convergence run."""

    # Timestamp
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    deployment: str = ""
    engine_version: str = ENGINE_VERSION
    instance_id: str = ""

    # Source of truth
    git_commit_sha: str = ""
    git_branch: str = ""
    git_repo: str = ""
    document_hash: str = ""  # SHA256 of the desired-state document

    # Provider context
    region: str = ""
    labels: dict[str, str] = field(default_factory=dict)

    # Outcome
    status: str = ""
    changes_planned: int = 0
    changes_applied: int = 0
    changes_failed: int = 0
    changes_skipped: int = 0

    # Timing
    duration_seconds: float = 0.0

    # Error tracking
    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Publishes convergence reports as provenance records."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._git_branch = os.environ.get("GIT_BRANCH", "")
        self._git_repo = os.environ.get("GIT_REPO", "")
        self._instance_id = os.environ.get("CONTAINER_INSTANCE_ID", "")

    def create_provenance(
        self,
        deployment: str,
        region: str | None = None,
        document_hash: str = "",
        labels: dict[str, str] | None = None,
    ) -> RunProvenance:
        """Create a new provenance record for a run."""
        return RunProvenance(
            deployment=deployment,
            engine_version=ENGINE_VERSION,
            instance_id=self._instance_id,
            git_commit_sha=self._git_commit_sha,
            git_branch=self._git_branch,
            git_repo=self._git_repo,
            document_hash=document_hash,
            region=region or "",
            labels=dict(labels or {}),
        )

    def publish(self, provenance: RunProvenance, report: ConvergenceReport) -> RunProvenance:
        """Fill the record from a finished report and log it.

        Returns:
            The completed provenance record.
        """
        provenance.status = report.status.value
        provenance.changes_planned = sum(1 for r in report.records if not r.action.is_noop)
        provenance.changes_applied = report.applied_count
        provenance.changes_failed = report.failed_count
        provenance.changes_skipped = report.skipped_count
        provenance.duration_seconds = report.duration_seconds
        provenance.error = report.error
        provenance.error_type = report.error_type

        self.log_provenance(provenance)
        for record in report.records:
            if record.action.is_noop:
                continue
            logger.info(
                "Action outcome",
                extra={
                    "deployment": provenance.deployment,
                    "git_commit": provenance.git_commit_sha,
                    **record.to_dict(),
                },
            )
        return provenance

    def log_provenance(self, provenance: RunProvenance) -> None:
        """Log a completed provenance record.

        The structured data enables queries like:
        - "Which runs left deployment X partially converged this week?"
        - "Which commit introduced this schedule change?"
        """
        log_level = logging.INFO
        if provenance.status == ConvergenceStatus.FAILED.value:
            log_level = logging.ERROR
        elif provenance.status == ConvergenceStatus.PARTIALLY_CONVERGED.value:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Run provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "deployment": provenance.deployment,
                "status": provenance.status,
                "changes_applied": provenance.changes_applied,
                "changes_failed": provenance.changes_failed,
                "git_commit": provenance.git_commit_sha,
                "engine_version": provenance.engine_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )


# Global singleton for provenance logging
_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
