"""UI-facing service surface.

Wires the transport, executor, normalizer, chain, job manager and offline
queue together and exposes the operations a capture UI needs: start, cancel
and reset a job, observe its state, and inspect or replay the offline queue.

Usage:
    service = ArtifactService(store=my_store, connectivity=ConnectivityMonitor())
    await service.start()

    artifact = await service.start_job(
        "art-42", MediaInput(image_bytes), "reconstruct3d", {"method": "trellis"}
    )
    state = service.get_job("art-42")
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from contracts.connectivity import ConnectivitySource
from contracts.encoding import MediaEncoder, MediaInput
from contracts.storage import ArtifactResult, EntityStore
from relic.config import RelicConfig, get_config
from relic.errors import JobError
from relic.jobs.manager import ErrorCallback, JobManager, OfflineRequest, SuccessCallback
from relic.jobs.models import JobState
from relic.jobs.operations import (
    OperationType,
    media_from_payload,
    media_to_payload,
    prepare_operation,
)
from relic.jobs.progress import ProgressCallback
from relic.reliability.chain import FallbackChainController
from relic.reliability.connectivity import ManualConnectivity
from relic.reliability.executor import CallExecutor, Sleep
from relic.reliability.normalizer import ResponseNormalizer
from relic.reliability.offline import (
    DropCallback,
    OfflineManager,
    OfflineOperationQueue,
    OperationHandler,
    QueuedOperation,
    ReplaySummary,
)
from relic.reliability.transport import RequestsTransport, Transport
from relic.storage import InMemoryEntityStore
from relic.utils.async_utils import task_callback

logger = logging.getLogger(__name__)


class ArtifactService:
    """Artifact generation with retries, fallback and offline replay."""

    def __init__(
        self,
        store: EntityStore | None = None,
        *,
        transport: Transport | None = None,
        encoder: MediaEncoder | None = None,
        connectivity: ConnectivitySource | None = None,
        queue: OfflineOperationQueue | None = None,
        config: RelicConfig | None = None,
        sleep: Sleep = asyncio.sleep,
        on_dropped: DropCallback | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            store: Entity storage. Defaults to an in-memory store.
            transport: Network transport. Defaults to RequestsTransport.
            encoder: Input encoder. Defaults to Base64MediaEncoder.
            connectivity: Online/offline signal. Defaults to always-online
                ManualConnectivity.
            queue: Offline queue. Defaults to one built from config.
            config: Configuration. Defaults to the global config.
            sleep: Backoff sleep, injectable for tests.
            on_dropped: Called when a queued operation exhausts its retries.
        """
        self.config = config if config is not None else get_config()
        self.transport = transport if transport is not None else RequestsTransport()
        self.store = store if store is not None else InMemoryEntityStore()
        self.connectivity = (
            connectivity if connectivity is not None else ManualConnectivity(online=True)
        )
        if queue is None:
            queue = OfflineOperationQueue.from_config(self.config.offline_queue)
        self.queue = queue
        if on_dropped is not None:
            self.queue.on_dropped = on_dropped

        executor = CallExecutor(self.transport, sleep=sleep)
        self.chain = FallbackChainController(
            executor, ResponseNormalizer(self.transport), self.config
        )
        self.jobs = JobManager(
            self.chain,
            self.store,
            encoder,
            queue=self.queue,
            connectivity=self.connectivity,
            config=self.config,
        )
        self.offline_manager = OfflineManager(
            self.queue,
            self.connectivity,
            replay_interval_seconds=self.config.offline_queue.replay_interval_seconds,
        )

        for op_type in OperationType:
            self.queue.register_handler(op_type.value, self._replay_handler(op_type))

    async def start(self) -> None:
        """Begin watching connectivity; replays the queue now if online."""
        await self.offline_manager.start()

    def stop(self) -> None:
        self.offline_manager.stop()

    async def start_job(
        self,
        entity_id: str,
        media: MediaInput,
        op_type: str | OperationType,
        params: dict[str, Any] | None = None,
        *,
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
        on_progress: ProgressCallback | None = None,
        queue_when_offline: bool = True,
    ) -> ArtifactResult | None:
        """Run an operation for an entity and wait for it to finish.

        Args:
            entity_id: Entity to produce the artifact for.
            media: Captured input media.
            op_type: "reconstruct3d", "colorize" or "generate_info_card".
            params: Operation params (method, color_scheme, metadata, ...).
            on_success: Called with the artifact and the method used.
            on_error: Called with the job-level error.
            on_progress: Called with (percent, phase).
            queue_when_offline: Hand the request to the offline queue when it
                cannot run now.

        Returns:
            The persisted artifact, or None on failure or cancellation.

        Raises:
            ConfigurationError: For unknown operation types or invalid params.
            JobAlreadyActiveError: If the entity already has a running job.
        """
        params = dict(params or {})
        prepared = prepare_operation(op_type, params)
        offline = OfflineRequest(prepared.op_type.value, params) if queue_when_offline else None
        return await self.jobs.start(
            entity_id,
            media,
            prepared.plan,
            prepared.kind,
            accept_formats=prepared.accept_formats,
            finalize=prepared.finalize,
            offline=offline,
            on_success=on_success,
            on_error=on_error,
            on_progress=on_progress,
        )

    def submit_job(
        self,
        entity_id: str,
        media: MediaInput,
        op_type: str | OperationType,
        params: dict[str, Any] | None = None,
        **callbacks: Any,
    ) -> asyncio.Task[ArtifactResult | None]:
        """Start a job in the background; observe it through ``get_job``.

        The returned task raises JobAlreadyActiveError if the entity already
        has a running job when it starts.
        """
        task = asyncio.create_task(
            self.start_job(entity_id, media, op_type, params, **callbacks)
        )
        task.add_done_callback(task_callback(f"Job for {entity_id} failed", logger))
        return task

    def cancel_job(self, entity_id: str) -> bool:
        return self.jobs.cancel(entity_id)

    def reset_job(self, entity_id: str) -> JobState:
        return self.jobs.reset(entity_id)

    def get_job(self, entity_id: str) -> JobState | None:
        return self.jobs.get_state(entity_id)

    def enqueue(self, op_type: str | OperationType, payload: dict[str, Any]) -> str | None:
        """Queue an operation for replay.

        Args:
            op_type: Operation type.
            payload: Must hold ``entity_id`` and the serialized media; see
                ``enqueue_request`` to build one.

        Returns:
            Operation ID, or None if the queue is full.
        """
        op = OperationType.parse(op_type)
        return self.queue.enqueue(op.value, payload)

    def enqueue_request(
        self,
        entity_id: str,
        media: MediaInput,
        op_type: str | OperationType,
        params: dict[str, Any] | None = None,
    ) -> str | None:
        """Queue an operation built from its inputs; params are validated first."""
        params = dict(params or {})
        prepared = prepare_operation(op_type, params)
        payload = {"entity_id": entity_id, **media_to_payload(media), "params": params}
        return self.queue.enqueue(prepared.op_type.value, payload)

    def list_pending(self) -> list[QueuedOperation]:
        return self.queue.list_pending()

    async def replay_all(self) -> ReplaySummary:
        return await self.queue.replay_all()

    def clear_queue(self) -> int:
        return self.queue.clear()

    def _replay_handler(self, op_type: OperationType) -> OperationHandler:
        async def replay(payload: dict[str, Any]) -> None:
            media = media_from_payload(payload)
            errors: list[JobError] = []
            artifact = await self.start_job(
                payload["entity_id"],
                media,
                op_type,
                payload.get("params") or {},
                on_error=errors.append,
                queue_when_offline=False,
            )
            if artifact is None:
                raise errors[0] if errors else JobError(f"Replay of {op_type.value} failed")

        return replay
