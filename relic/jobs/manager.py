"""Per-entity job state machine.

A job takes one entity's captured media through encoding, the fallback
chain, and persistence:

    idle -> uploading -> processing -> complete | error

At most one job is active per entity. ``cancel`` sets the job's token and
aborts its in-flight call; the token is checked before every side effect,
so a cancelled job never persists an artifact. When the device is offline,
or the chain fails at the network level, the request is handed to the
offline queue and replayed later.

Usage:
    manager = JobManager(chain, store, encoder, queue=queue, connectivity=monitor)
    artifact = await manager.start(
        "art-42", media, FallbackPlan.of("trellis", "triposr"), ArtifactKind.MODEL_3D
    )
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from contracts.connectivity import ConnectivitySource
from contracts.encoding import MediaEncoder, MediaInput
from contracts.storage import ArtifactKind, ArtifactResult, EntityStatus, EntityStore
from relic.config import RelicConfig, get_config
from relic.encoding import Base64MediaEncoder
from relic.errors import (
    ChainError,
    ConfigurationError,
    EncodingError,
    JobAlreadyActiveError,
    JobCancelledError,
    JobError,
    JobErrorType,
    NormalizationError,
)
from relic.jobs.models import JobErrorInfo, JobPhase, JobState
from relic.jobs.operations import Finalizer, media_to_payload, passthrough
from relic.jobs.progress import ProgressCallback, ProgressTracker
from relic.reliability.chain import FallbackChainController, last_call_error
from relic.reliability.models import FallbackPlan
from relic.reliability.offline import OfflineOperationQueue

logger = logging.getLogger(__name__)

SuccessCallback = Callable[[ArtifactResult, str], None]
ErrorCallback = Callable[[JobError], None]


@dataclass(frozen=True)
class OfflineRequest:
    """How to re-create a request from the offline queue.

    Attributes:
        op_type: Queue operation type the replay handler is registered under.
        params: JSON-serializable operation params.
    """

    op_type: str
    params: dict[str, Any] = field(default_factory=dict)


class _Offline(Exception):
    """Internal signal: the device is offline and the request should be queued."""


def job_error_from_chain(error: ChainError) -> JobError:
    """Map a chain failure onto the job-level taxonomy."""
    call_error = last_call_error(error)
    if call_error is not None and call_error.rate_limited:
        error_type = JobErrorType.RATE_LIMITED
    elif call_error is not None and call_error.category == JobErrorType.NETWORK:
        error_type = JobErrorType.NETWORK
    else:
        error_type = JobErrorType.PROCESSING_FAILED
    return JobError(
        error.message,
        error_type=error_type,
        total_attempts=error.total_attempts,
        methods_attempted=list(error.methods_attempted),
        details={"last_error": error.last_error.to_dict()},
        cause=error,
    )


class JobManager:
    """Runs and tracks one job per entity.

    Thread-safe for cancel/reset/get_state; ``start`` runs on the event loop.
    """

    def __init__(
        self,
        chain: FallbackChainController,
        store: EntityStore,
        encoder: MediaEncoder | None = None,
        *,
        queue: OfflineOperationQueue | None = None,
        connectivity: ConnectivitySource | None = None,
        config: RelicConfig | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            chain: Fallback chain controller.
            store: Entity storage collaborator.
            encoder: Input encoder. Defaults to Base64MediaEncoder.
            queue: Offline queue for requests that cannot run now.
            connectivity: Online/offline signal checked before processing.
            config: Configuration. Defaults to the global config.
        """
        self._config = config if config is not None else get_config()
        self.chain = chain
        self.store = store
        if encoder is None:
            encoder = Base64MediaEncoder(self._config.jobs.min_input_bytes)
        self.encoder = encoder
        self.queue = queue
        self.connectivity = connectivity

        self._states: dict[str, JobState] = {}
        self._lock = threading.Lock()

    def get_state(self, entity_id: str) -> JobState | None:
        """Snapshot of an entity's job state, or None if it never had one."""
        with self._lock:
            state = self._states.get(entity_id)
            return state.snapshot() if state else None

    def active_jobs(self) -> list[str]:
        """Entity ids with a running job."""
        with self._lock:
            return [eid for eid, state in self._states.items() if state.is_active]

    def cancel(self, entity_id: str) -> bool:
        """Cancel an entity's running job.

        Returns:
            True if a running job was cancelled.
        """
        with self._lock:
            state = self._states.get(entity_id)
            if state is None or not state.is_active:
                return False
        logger.info(f"Cancelling job for {entity_id}")
        state.token.cancel()
        return True

    def reset(self, entity_id: str) -> JobState:
        """Clear an entity's job to idle, cancelling it first if it is running."""
        self.cancel(entity_id)
        with self._lock:
            state = JobState(entity_id=entity_id)
            self._states[entity_id] = state
            return state.snapshot()

    async def start(
        self,
        entity_id: str,
        media: MediaInput,
        plan: FallbackPlan,
        kind: ArtifactKind,
        *,
        accept_formats: list[str] | None = None,
        finalize: Finalizer | None = None,
        offline: OfflineRequest | None = None,
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ArtifactResult | None:
        """Run a job for an entity.

        Args:
            entity_id: Entity to produce the artifact for.
            media: Captured input media.
            plan: Methods to try in order.
            kind: Kind of artifact produced.
            accept_formats: Formats preferred when a result holds several outputs.
            finalize: Post-processing applied before persistence.
            offline: Replay description; when given, the request is queued
                instead of failing if the device is offline or the chain
                fails at the network level.
            on_success: Called with the persisted artifact and the method used.
            on_error: Called with the job-level error (including cancellation).
            on_progress: Called with (percent, phase) as progress increases.

        Returns:
            The persisted artifact, or None if the job failed or was cancelled.
            Failures are reported through ``on_error`` and ``get_state``.

        Raises:
            JobAlreadyActiveError: If the entity already has a running job.
        """
        with self._lock:
            existing = self._states.get(entity_id)
            if existing is not None and existing.is_active:
                raise JobAlreadyActiveError(entity_id)
            state = JobState(
                entity_id=entity_id,
                phase=JobPhase.UPLOADING,
                kind=kind,
                started_at=datetime.now(UTC),
            )
            self._states[entity_id] = state

        def report(percent: float, phase: JobPhase) -> None:
            state.progress = percent
            if on_progress is not None:
                on_progress(percent, phase)

        tracker = ProgressTracker(self._config.jobs, report)
        logger.info(f"Job started for {entity_id}: {kind.value} via {plan.method_names}")

        task = asyncio.create_task(
            self._run(
                state,
                media,
                plan,
                kind,
                tracker,
                accept_formats=accept_formats,
                finalize=finalize or passthrough,
                offline=offline,
                on_success=on_success,
                on_error=on_error,
            )
        )
        state.token.bind(task)
        return await task

    async def _run(
        self,
        state: JobState,
        media: MediaInput,
        plan: FallbackPlan,
        kind: ArtifactKind,
        tracker: ProgressTracker,
        *,
        accept_formats: list[str] | None,
        finalize: Finalizer,
        offline: OfflineRequest | None,
        on_success: SuccessCallback | None,
        on_error: ErrorCallback | None,
    ) -> ArtifactResult | None:
        try:
            artifact, method_used = await self._pipeline(
                state, media, plan, kind, tracker, accept_formats, finalize, offline
            )
        except asyncio.CancelledError:
            self._finish_cancelled(state, on_error)
            if not state.token.cancelled:
                # The caller awaiting start() was cancelled, not the job
                raise
            return None
        except JobCancelledError:
            self._finish_cancelled(state, on_error)
            return None
        except _Offline:
            self._finish_error(
                state,
                JobError(
                    "Device is offline; request queued for replay",
                    error_type=JobErrorType.NETWORK,
                ),
                on_error,
            )
            return None
        except ChainError as e:
            error = job_error_from_chain(e)
            if state.token.cancelled:
                self._finish_cancelled(state, on_error)
                return None
            if error.error_type == JobErrorType.NETWORK and offline is not None:
                self._enqueue(state, media, offline)
            self._finish_error(state, error, on_error)
            return None
        except EncodingError as e:
            error = JobError(
                e.message, error_type=JobErrorType.UPLOAD_FAILED, details=e.details, cause=e
            )
            self._finish_error(state, error, on_error)
            return None
        except NormalizationError as e:
            error = JobError(
                e.message,
                error_type=JobErrorType.PROCESSING_FAILED,
                methods_attempted=plan.method_names,
                cause=e,
            )
            self._finish_error(state, error, on_error)
            return None
        except ConfigurationError as e:
            self._finish_error(
                state, JobError(e.message, error_type=JobErrorType.UNKNOWN, cause=e), on_error
            )
            return None
        except Exception as e:
            logger.exception(f"Unexpected failure in job for {state.entity_id}")
            self._finish_error(
                state, JobError(str(e), error_type=JobErrorType.UNKNOWN, cause=e), on_error
            )
            return None

        if on_success is not None:
            try:
                on_success(artifact, method_used)
            except Exception as e:
                logger.error(f"on_success callback failed for {state.entity_id}: {e}")
        return artifact

    async def _pipeline(
        self,
        state: JobState,
        media: MediaInput,
        plan: FallbackPlan,
        kind: ArtifactKind,
        tracker: ProgressTracker,
        accept_formats: list[str] | None,
        finalize: Finalizer,
        offline: OfflineRequest | None,
    ) -> tuple[ArtifactResult, str]:
        token = state.token
        entity_id = state.entity_id

        # Uploading: encode the input
        tracker.advance(JobPhase.UPLOADING, 0.0)
        token.raise_if_cancelled()
        self.store.update_entity_status(entity_id, EntityStatus.PROCESSING)
        encoded = self.encoder.encode(media)
        tracker.advance(JobPhase.UPLOADING, 1.0)

        token.raise_if_cancelled()
        if offline is not None and self._should_queue_offline():
            self._enqueue(state, media, offline)
            raise _Offline()

        # Processing: run the fallback chain
        state.phase = JobPhase.PROCESSING
        tracker.advance(JobPhase.PROCESSING, 0.0)

        def method_started(name: str, index: int, total: int) -> None:
            state.current_method = name
            tracker.advance(JobPhase.PROCESSING, index / total)

        result = await self.chain.run(
            plan,
            encoded,
            token=token,
            accept_formats=accept_formats,
            on_method_start=method_started,
        )
        tracker.advance(JobPhase.PROCESSING, 1.0)
        state.retry_count = result.total_attempts - 1

        finalized = finalize(result.data, result.format, result.method_used)
        artifact = ArtifactResult(
            entity_id=entity_id,
            kind=kind,
            data=finalized.data,
            format=finalized.format,
            source_method=finalized.method_label,
            metadata={
                "total_attempts": result.total_attempts,
                "methods_attempted": result.methods_attempted,
                **finalized.metadata,
            },
        )

        # Last checkpoint: nothing is written for a cancelled job
        token.raise_if_cancelled()
        self.store.persist_artifact(entity_id, artifact)
        self.store.update_entity_status(entity_id, EntityStatus.COMPLETE)

        state.method_used = result.method_used
        state.artifact = artifact
        tracker.advance(JobPhase.COMPLETE)
        state.mark_finished(JobPhase.COMPLETE)
        logger.info(
            f"Job complete for {entity_id}: {artifact.format} from {result.method_used} "
            f"after {result.total_attempts} attempt(s)"
        )
        return artifact, result.method_used

    def _should_queue_offline(self) -> bool:
        if self.queue is None or not self._config.jobs.queue_when_offline:
            return False
        return self.connectivity is not None and not self.connectivity.is_online

    def _enqueue(self, state: JobState, media: MediaInput, offline: OfflineRequest) -> None:
        if self.queue is None:
            return
        payload = {
            "entity_id": state.entity_id,
            **media_to_payload(media),
            "params": offline.params,
        }
        state.queued_operation_id = self.queue.enqueue(offline.op_type, payload)
        if state.queued_operation_id:
            logger.info(
                f"Queued {offline.op_type} for {state.entity_id} "
                f"as {state.queued_operation_id}"
            )

    def _is_current(self, state: JobState) -> bool:
        with self._lock:
            return self._states.get(state.entity_id) is state

    def _finish_error(
        self, state: JobState, error: JobError, on_error: ErrorCallback | None
    ) -> None:
        state.error = JobErrorInfo.from_error(error)
        state.mark_finished(JobPhase.ERROR)
        try:
            self.store.update_entity_status(state.entity_id, EntityStatus.ERROR)
        except Exception as e:
            logger.error(f"Failed to record error status for {state.entity_id}: {e}")
        logger.error(
            f"Job failed for {state.entity_id} ({error.error_type.value}) after "
            f"{error.total_attempts} attempt(s) via {error.methods_attempted}: {error.message}"
        )
        if on_error is not None:
            try:
                on_error(error)
            except Exception as e:
                logger.error(f"on_error callback failed for {state.entity_id}: {e}")

    def _finish_cancelled(self, state: JobState, on_error: ErrorCallback | None) -> None:
        error = JobCancelledError(f"Job for {state.entity_id} was cancelled")
        state.error = JobErrorInfo.from_error(error)
        state.mark_finished(JobPhase.ERROR)
        try:
            # A reset may have handed the entity to a newer job
            if self._is_current(state):
                self.store.update_entity_status(state.entity_id, EntityStatus.ERROR)
        except Exception as e:
            logger.error(f"Failed to record cancelled status for {state.entity_id}: {e}")
        logger.info(f"Job cancelled for {state.entity_id}")
        if on_error is not None:
            try:
                on_error(error)
            except Exception as e:
                logger.error(f"on_error callback failed for {state.entity_id}: {e}")
