"""Job data models for per-entity artifact generation.

Usage:
    from relic.jobs.models import JobPhase, JobState

    state = JobState(entity_id="art-42")
    state.phase = JobPhase.UPLOADING
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from contracts.storage import ArtifactKind, ArtifactResult
from relic.errors import JobError, JobErrorType
from relic.reliability.models import CancellationToken


class JobPhase(str, Enum):
    """Phase of an entity job: idle -> uploading -> processing -> complete | error."""

    IDLE = "idle"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_active(self) -> bool:
        """Whether a job in this phase is still running."""
        return self in (JobPhase.UPLOADING, JobPhase.PROCESSING)


@dataclass
class JobErrorInfo:
    """Job-level failure surfaced to the caller.

    Attributes:
        error_type: Taxonomy category.
        message: Human-readable message.
        total_attempts: Call attempts made across every method.
        methods_attempted: Methods actually tried, in order.
    """

    error_type: JobErrorType
    message: str
    total_attempts: int = 0
    methods_attempted: list[str] = field(default_factory=list)

    @classmethod
    def from_error(cls, error: JobError) -> JobErrorInfo:
        return cls(
            error_type=error.error_type,
            message=error.message,
            total_attempts=error.total_attempts,
            methods_attempted=list(error.methods_attempted),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "type": self.error_type.value,
            "message": self.message,
            "total_attempts": self.total_attempts,
            "methods_attempted": self.methods_attempted,
        }


@dataclass
class JobState:
    """Observable state of one entity's job.

    Attributes:
        entity_id: Entity the job works on.
        phase: Current phase.
        progress: Percent complete (0-100), monotonic while the job runs.
        error: Failure details once the job is in the error phase.
        token: Cancellation token for the running job.
        kind: Artifact kind being produced.
        started_at: When the job started.
        finished_at: When the job reached complete or error.
        method_used: Method that produced the artifact.
        current_method: Method currently being tried.
        retry_count: Attempts beyond the first (total attempts - 1).
        queued_operation_id: Offline queue entry created for this request.
        artifact: The persisted artifact on success.
    """

    entity_id: str
    phase: JobPhase = JobPhase.IDLE
    progress: float = 0.0
    error: JobErrorInfo | None = None
    token: CancellationToken = field(default_factory=CancellationToken)
    kind: ArtifactKind | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    method_used: str | None = None
    current_method: str | None = None
    retry_count: int = 0
    queued_operation_id: str | None = None
    artifact: ArtifactResult | None = None

    @property
    def is_active(self) -> bool:
        return self.phase.is_active

    @property
    def duration_seconds(self) -> float | None:
        """Elapsed seconds from start to finish, or to now while running."""
        if self.started_at is None:
            return None
        end = self.finished_at or datetime.now(UTC)
        return (end - self.started_at).total_seconds()

    def mark_finished(self, phase: JobPhase) -> None:
        self.phase = phase
        self.finished_at = datetime.now(UTC)

    def snapshot(self) -> JobState:
        """Shallow copy safe to hand to observers."""
        return copy.copy(self)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for UI payloads."""
        return {
            "entity_id": self.entity_id,
            "phase": self.phase.value,
            "progress": round(self.progress, 1),
            "error": self.error.to_dict() if self.error else None,
            "kind": self.kind.value if self.kind else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "method_used": self.method_used,
            "current_method": self.current_method,
            "retry_count": self.retry_count,
            "queued_operation_id": self.queued_operation_id,
            "artifact_id": self.artifact.id if self.artifact else None,
            "cancelled": self.token.cancelled,
        }
