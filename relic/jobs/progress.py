"""Job progress as an explicit function of phase and phase-local fraction.

The uploading phase spans the low range (0-30 by default), processing spans
the remainder up to 95, and completion is 100. ProgressTracker keeps the
reported value monotonic for the lifetime of one job.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from relic.config import JobsConfig, get_config
from relic.jobs.models import JobPhase

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, JobPhase], None]


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def progress_for(
    phase: JobPhase,
    fraction: float = 0.0,
    config: JobsConfig | None = None,
) -> float:
    """Overall percent for a point inside a phase.

    Args:
        phase: Current job phase.
        fraction: How far through the phase (0.0-1.0).
        config: Supplies the phase ranges. Defaults to the global config.

    Returns:
        Percent in [0, 100]. The error phase has no position of its own and
        maps to 0; trackers keep the last value instead.
    """
    config = config or get_config().jobs
    if phase == JobPhase.COMPLETE:
        return 100.0
    if phase == JobPhase.UPLOADING:
        low, high = config.uploading_range
    elif phase == JobPhase.PROCESSING:
        low, high = config.processing_range
    else:
        return 0.0
    return low + (high - low) * _clamp(fraction)


class ProgressTracker:
    """Monotonic progress for one job.

    Example:
        tracker = ProgressTracker(on_progress=lambda pct, phase: print(pct))
        tracker.advance(JobPhase.UPLOADING, 1.0)    # 30.0
        tracker.advance(JobPhase.PROCESSING, 0.5)   # 62.5
        tracker.advance(JobPhase.UPLOADING, 0.0)    # still 62.5
    """

    def __init__(
        self,
        config: JobsConfig | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self._config = config or get_config().jobs
        self._on_progress = on_progress
        self.value = 0.0

    def advance(self, phase: JobPhase, fraction: float = 0.0) -> float:
        """Move to a point in a phase; never goes backwards.

        Returns:
            The (possibly unchanged) current percent.
        """
        target = progress_for(phase, fraction, self._config)
        if target <= self.value:
            return self.value
        self.value = target
        if self._on_progress is not None:
            try:
                self._on_progress(target, phase)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")
        return target
