"""Data models shared by the call executor, normalizer and fallback chain.

Usage:
    from relic.reliability.models import FallbackPlan, MethodStep

    plan = FallbackPlan.of("trellis", "triposr")
    plan = FallbackPlan(steps=(MethodStep("deoldify", {"render_factor": 20}),))
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from relic.errors import JobCancelledError


class AttemptOutcome(str, Enum):
    """Outcome of a single call attempt."""

    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable-failure"
    FATAL_FAILURE = "fatal-failure"


@dataclass
class CallAttempt:
    """Record of one network call, kept for logging and error reporting.

    Attributes:
        method: Method name the attempt belonged to.
        attempt_index: Zero-based index within the method's attempt budget.
        started_at: Wall-clock start time (epoch seconds).
        outcome: Success, retryable failure or fatal failure.
        latency: Seconds spent in the call.
        delay_before: Backoff slept before this attempt.
        error: Error message for failed attempts.
    """

    method: str
    attempt_index: int
    started_at: float
    outcome: AttemptOutcome
    latency: float
    delay_before: float = 0.0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "method": self.method,
            "attempt_index": self.attempt_index,
            "started_at": self.started_at,
            "outcome": self.outcome.value,
            "latency": round(self.latency, 4),
            "delay_before": self.delay_before,
            "error": self.error,
        }


@dataclass(frozen=True)
class MethodStep:
    """One method in a fallback plan with its per-step parameter overrides."""

    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FallbackPlan:
    """Ordered, immutable sequence of methods to try for one job."""

    steps: tuple[MethodStep, ...]

    def __post_init__(self) -> None:
        if not self.steps:
            raise ValueError("FallbackPlan needs at least one method")

    @classmethod
    def of(cls, *names: str, params: dict[str, dict[str, Any]] | None = None) -> FallbackPlan:
        """Build a plan from method names with optional per-method params."""
        params = params or {}
        return cls(steps=tuple(MethodStep(name, dict(params.get(name, {}))) for name in names))

    @property
    def method_names(self) -> list[str]:
        """Method names in plan order."""
        return [step.name for step in self.steps]

    def to_dict(self) -> dict[str, Any]:
        """Serialize for offline queue payloads."""
        return {"steps": [{"name": s.name, "params": s.params} for s in self.steps]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FallbackPlan:
        """Deserialize from ``to_dict`` output."""
        return cls(
            steps=tuple(MethodStep(s["name"], dict(s.get("params", {}))) for s in data["steps"])
        )


@dataclass(frozen=True)
class BinaryPayload:
    """Raw bytes returned by a service, with whatever it declared about them."""

    data: bytes
    content_type: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class NormalizedArtifact:
    """Canonical binary result of normalizing a service response."""

    data: bytes
    format: str


@dataclass
class CallResult:
    """Successful executor call: raw payload plus the attempts it took."""

    method: str
    payload: Any
    attempts: list[CallAttempt]


@dataclass
class ChainResult:
    """Successful fallback chain run.

    Attributes:
        data: Artifact bytes.
        format: Declared artifact format (e.g. "glb", "png").
        method_used: Method that produced the artifact.
        attempts: Attempt history across every method tried.
        methods_attempted: Methods in the order they were tried.
    """

    data: bytes
    format: str
    method_used: str
    attempts: list[CallAttempt]
    methods_attempted: list[str]

    @property
    def total_attempts(self) -> int:
        """Total call attempts across all methods."""
        return len(self.attempts)


class CancellationToken:
    """Cooperative cancellation flag shared by one job's code paths.

    Setting the token also cancels the asyncio task bound to it, so an
    in-flight network call is abandoned immediately; every later checkpoint
    sees ``cancelled`` and stops before doing side-effecting work. ``cancel``
    may be called from any thread.
    """

    def __init__(self) -> None:
        self._cancelled = threading.Event()
        self._task: asyncio.Task[Any] | None = None
        self.cancelled_at: float | None = None

    @property
    def cancelled(self) -> bool:
        """Whether cancellation has been requested."""
        return self._cancelled.is_set()

    def bind(self, task: asyncio.Task[Any]) -> None:
        """Attach the task running the job so cancel() can abort it."""
        self._task = task

    def cancel(self) -> None:
        """Request cancellation and abort the bound task, if any."""
        if self._cancelled.is_set():
            return
        self.cancelled_at = time.time()
        self._cancelled.set()

        task = self._task
        if task is None or task.done():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        loop = task.get_loop()
        if running is loop:
            # A job cancelling itself just stops at its next checkpoint
            if asyncio.current_task() is not task:
                task.cancel()
        elif not loop.is_closed():
            loop.call_soon_threadsafe(task.cancel)

    def raise_if_cancelled(self) -> None:
        """Checkpoint: raise JobCancelledError once cancellation was requested."""
        if self._cancelled.is_set():
            raise JobCancelledError()
