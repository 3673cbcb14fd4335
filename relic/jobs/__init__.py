"""Per-entity jobs: state machine, progress and operation types."""

from relic.jobs.manager import JobManager, OfflineRequest, job_error_from_chain
from relic.jobs.models import JobErrorInfo, JobPhase, JobState
from relic.jobs.operations import (
    AI_DISCLAIMER,
    COLOR_SCHEME_PROMPTS,
    OperationType,
    PreparedOperation,
    prepare_operation,
)
from relic.jobs.progress import ProgressTracker, progress_for

__all__ = [
    "AI_DISCLAIMER",
    "COLOR_SCHEME_PROMPTS",
    "JobErrorInfo",
    "JobManager",
    "JobPhase",
    "JobState",
    "OfflineRequest",
    "OperationType",
    "PreparedOperation",
    "ProgressTracker",
    "job_error_from_chain",
    "prepare_operation",
    "progress_for",
]
