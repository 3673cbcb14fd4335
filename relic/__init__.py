"""relic - resilient inference-call orchestration for artifact capture.

Calls slow, flaky hosted models (image-to-3D, colorization, vision-language
analysis) with retries, cross-method fallback, response normalization,
per-entity job tracking and a durable offline replay queue.
"""

from relic.errors import (
    ChainError,
    ConfigurationError,
    EncodingError,
    JobAlreadyActiveError,
    JobCancelledError,
    JobError,
    JobErrorType,
    NormalizationError,
    RelicError,
)
from relic.service import ArtifactService

__version__ = "0.1.0"

__all__ = [
    "ArtifactService",
    "ChainError",
    "ConfigurationError",
    "EncodingError",
    "JobAlreadyActiveError",
    "JobCancelledError",
    "JobError",
    "JobErrorType",
    "NormalizationError",
    "RelicError",
    "__version__",
]
