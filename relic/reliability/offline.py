"""Offline operation queue and reconnect-driven replay.

Operations that cannot run now (device offline, or a network-level failure)
are stored as QueuedOperation records in a JSON file and replayed later
through the same job entry points as a live request.

Replay rules:
- Pending operations run in enqueue order
- An operation whose retry count already meets the bound is dropped without
  being attempted and counted as ``failed``
- Success removes the operation; failure increments its retry count and
  leaves it queued (``remaining``)
- Only one replay pass runs at a time; a concurrent call returns at once
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import logging
import threading
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from contracts.connectivity import ConnectivitySource
from relic.config import OfflineQueueConfig, get_config
from relic.errors import JobError, JobErrorType

logger = logging.getLogger(__name__)

QUEUE_FILE_VERSION = 1

OperationHandler = Callable[[dict[str, Any]], Awaitable[Any]]
DropCallback = Callable[["QueuedOperation", JobError], None]


@dataclass
class QueuedOperation:
    """A deferred operation waiting for connectivity.

    The payload holds the inputs needed to replay the request, never its
    outputs.
    """

    id: str
    op_type: str
    payload: dict[str, Any]
    created_at: float = field(default_factory=time.time)
    retry_count: int = 0
    last_error: str | None = None
    last_attempt_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "op_type": self.op_type,
            "payload": self.payload,
            "created_at": self.created_at,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "last_attempt_at": self.last_attempt_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueuedOperation:
        """Deserialize from dictionary."""
        if not isinstance(data["payload"], dict):
            raise ValueError("payload must be an object")
        return cls(
            id=str(data["id"]),
            op_type=str(data["op_type"]),
            payload=data["payload"],
            created_at=float(data["created_at"]),
            retry_count=int(data.get("retry_count", 0)),
            last_error=data.get("last_error"),
            last_attempt_at=data.get("last_attempt_at"),
        )

    def summary(self) -> dict[str, Any]:
        """Payload-free view for listing in a UI."""
        entity_id = self.payload.get("entity_id")
        return {
            "id": self.id,
            "op_type": self.op_type,
            "entity_id": entity_id,
            "created_at": self.created_at,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class ReplaySummary:
    """Outcome of one replay pass."""

    processed: int
    failed: int
    remaining: int

    def to_dict(self) -> dict[str, int]:
        return {"processed": self.processed, "failed": self.failed, "remaining": self.remaining}


class OfflineOperationQueue:
    """Durable FIFO of deferred operations.

    Thread-safe; persists every change to disk with an atomic replace.

    Example:
        >>> queue = OfflineOperationQueue(persistence_path=Path("~/.relic/offline_queue.json"))
        >>> queue.register_handler("colorize", replay_colorize)
        >>> queue.enqueue("colorize", {"entity_id": "art-7", "color_scheme": "roman"})
        >>> # Later, when online:
        >>> summary = await queue.replay_all()
    """

    def __init__(
        self,
        persistence_path: Path | None = None,
        max_retries: int = 3,
        max_queue_size: int = 1000,
        max_age_hours: int = 24 * 7,
        auto_persist: bool = True,
        on_dropped: DropCallback | None = None,
    ) -> None:
        """Initialize the queue.

        Args:
            persistence_path: JSON file holding the queue. None keeps it in memory.
            max_retries: Failed replays allowed before an operation is dropped.
            max_queue_size: Maximum number of pending operations.
            max_age_hours: Operations older than this are dropped on load.
            auto_persist: Whether to save after every change.
            on_dropped: Called with the operation and a processing-failed
                JobError when an operation is dropped for exhausting retries.
        """
        self._operations: dict[str, QueuedOperation] = {}
        self._lock = threading.RLock()
        self._replay_guard = threading.Lock()
        self._persistence_path = persistence_path
        self._max_retries = max_retries
        self._max_queue_size = max_queue_size
        self._max_age_seconds = max_age_hours * 3600
        self._auto_persist = auto_persist
        self._handlers: dict[str, OperationHandler] = {}
        self.on_dropped = on_dropped

        if persistence_path:
            self._load()

    @classmethod
    def from_config(
        cls, config: OfflineQueueConfig | None = None, **kwargs: Any
    ) -> OfflineOperationQueue:
        """Build a queue from the ``offline_queue`` config section."""
        config = config or get_config().offline_queue
        return cls(
            persistence_path=config.path,
            max_retries=config.max_retries,
            max_queue_size=config.max_queue_size,
            max_age_hours=config.max_age_hours,
            **kwargs,
        )

    @property
    def max_retries(self) -> int:
        return self._max_retries

    def _load(self) -> None:
        """Load queue state from disk."""
        if not self._persistence_path or not self._persistence_path.exists():
            return

        try:
            data = json.loads(self._persistence_path.read_text())
        except json.JSONDecodeError:
            logger.warning("Offline queue file corrupted, starting fresh")
            return
        except OSError as e:
            logger.warning(f"Failed to load offline queue: {e}")
            return

        operations = data.get("operations", []) if isinstance(data, dict) else None
        if not isinstance(operations, list):
            logger.warning("Offline queue file corrupted, starting fresh")
            return

        expired = 0
        for op_data in operations:
            if not isinstance(op_data, dict):
                logger.warning("Skipping corrupted queued operation: not an object")
                continue
            try:
                op = QueuedOperation.from_dict(op_data)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping corrupted queued operation: {e}")
                continue
            if time.time() - op.created_at >= self._max_age_seconds:
                expired += 1
                continue
            self._operations[op.id] = op

        if expired:
            logger.warning(f"Dropped {expired} expired queued operations")
        logger.info(f"Loaded {len(self._operations)} queued operations")

    def _persist(self) -> None:
        """Save queue state to disk."""
        if not self._persistence_path:
            return

        try:
            self._persistence_path.parent.mkdir(parents=True, exist_ok=True)
            data = {
                "version": QUEUE_FILE_VERSION,
                "saved_at": time.time(),
                "operations": [op.to_dict() for op in self._operations.values()],
            }
            # Write atomically
            temp_path = self._persistence_path.with_suffix(".tmp")
            temp_path.write_text(json.dumps(data, indent=2))
            temp_path.replace(self._persistence_path)
        except OSError as e:
            logger.warning(f"Failed to persist offline queue: {e}")

    def _changed(self) -> None:
        if self._auto_persist:
            self._persist()

    def register_handler(self, op_type: str, handler: OperationHandler) -> None:
        """Register the coroutine that replays an operation type.

        The handler receives the operation payload and must raise on failure.
        """
        self._handlers[op_type] = handler

    def enqueue(self, op_type: str, payload: dict[str, Any]) -> str | None:
        """Add an operation to the queue.

        Fire-and-forget: the caller learns replay outcomes by listing pending
        operations, never through this call.

        Args:
            op_type: Operation type (e.g. "reconstruct3d").
            payload: JSON-serializable replay inputs.

        Returns:
            Operation ID if queued, None if the queue is full.
        """
        with self._lock:
            if len(self._operations) >= self._max_queue_size:
                logger.error("Offline queue full, dropping operation")
                return None

            op = QueuedOperation(id=str(uuid.uuid4()), op_type=op_type, payload=payload)
            self._operations[op.id] = op
            self._changed()

        logger.debug(f"Enqueued {op_type} operation: {op.id}")
        return op.id

    def list_pending(self) -> list[QueuedOperation]:
        """Pending operations in enqueue order."""
        with self._lock:
            return list(self._operations.values())

    def get_operation(self, op_id: str) -> QueuedOperation | None:
        """Get a specific operation by ID."""
        with self._lock:
            return self._operations.get(op_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._operations)

    def remove(self, op_id: str) -> bool:
        """Remove one operation. Returns True if it was queued."""
        with self._lock:
            if self._operations.pop(op_id, None) is None:
                return False
            self._changed()
            return True

    def clear(self) -> int:
        """Remove every pending operation.

        Returns:
            Number of operations removed.
        """
        with self._lock:
            count = len(self._operations)
            self._operations.clear()
            self._changed()
        logger.info(f"Cleared {count} queued operations")
        return count

    @property
    def is_replaying(self) -> bool:
        return self._replay_guard.locked()

    def get_stats(self) -> dict[str, Any]:
        """Get queue statistics."""
        with self._lock:
            by_type: dict[str, int] = {}
            for op in self._operations.values():
                by_type[op.op_type] = by_type.get(op.op_type, 0) + 1

            return {
                "total": len(self._operations),
                "by_type": by_type,
                "retrying": sum(1 for op in self._operations.values() if op.retry_count),
                "max_size": self._max_queue_size,
                "max_retries": self._max_retries,
                "replaying": self.is_replaying,
            }

    async def replay_all(self) -> ReplaySummary:
        """Replay every pending operation once, in enqueue order.

        Returns:
            ReplaySummary. When another pass is already running this returns
            immediately with processed=0, failed=0 and the pending count.
        """
        if not self._replay_guard.acquire(blocking=False):
            pending = len(self)
            logger.debug(f"Replay already in progress, {pending} pending")
            return ReplaySummary(processed=0, failed=0, remaining=pending)

        try:
            processed = 0
            failed = 0
            for op in self.list_pending():
                if op.retry_count >= self._max_retries:
                    self._drop(op)
                    failed += 1
                    continue
                if await self._replay_one(op):
                    processed += 1

            summary = ReplaySummary(processed=processed, failed=failed, remaining=len(self))
            logger.info(
                f"Replay complete: {summary.processed} processed, "
                f"{summary.failed} failed, {summary.remaining} remaining"
            )
            return summary
        finally:
            self._replay_guard.release()

    async def _replay_one(self, op: QueuedOperation) -> bool:
        handler = self._handlers.get(op.op_type)
        if handler is None:
            logger.warning(f"No handler for {op.op_type}, leaving {op.id} queued")
            return False

        with self._lock:
            op.last_attempt_at = time.time()

        try:
            await handler(op.payload)
        except Exception as e:
            with self._lock:
                op.retry_count += 1
                op.last_error = str(e)
                if op.id in self._operations:
                    self._changed()
            logger.warning(
                f"Queued operation {op.id} failed "
                f"(retry {op.retry_count}/{self._max_retries}): {e}"
            )
            return False

        with self._lock:
            if self._operations.pop(op.id, None) is not None:
                self._changed()
        logger.debug(f"Queued operation {op.id} replayed")
        return True

    def _drop(self, op: QueuedOperation) -> None:
        with self._lock:
            self._operations.pop(op.id, None)
            self._changed()

        error = JobError(
            f"Dropped {op.op_type} after {op.retry_count} failed replays: "
            f"{op.last_error or 'unknown error'}",
            error_type=JobErrorType.PROCESSING_FAILED,
            total_attempts=op.retry_count,
            details={"operation_id": op.id, "entity_id": op.payload.get("entity_id")},
        )
        logger.warning(error.message)
        if self.on_dropped is not None:
            try:
                self.on_dropped(op, error)
            except Exception as e:
                logger.error(f"on_dropped callback failed: {e}", exc_info=True)


class OfflineManager:
    """Replays the offline queue when connectivity returns.

    Replay fires exactly once per offline-to-online transition; going offline
    re-arms it. Transition events may arrive from any thread. Optionally a
    periodic pass also runs while online to pick up operations queued after
    the reconnect replay.

    Example:
        >>> manager = OfflineManager(queue, ManualConnectivity())
        >>> await manager.start()
        >>> connectivity.set_online(False)
        >>> connectivity.set_online(True)  # one replay pass
    """

    def __init__(
        self,
        queue: OfflineOperationQueue,
        connectivity: ConnectivitySource,
        replay_interval_seconds: float | None = None,
        on_replay_complete: Callable[[ReplaySummary], None] | None = None,
    ) -> None:
        """Initialize the offline manager.

        Args:
            queue: Queue to replay.
            connectivity: Source of online/offline transitions.
            replay_interval_seconds: Seconds between periodic passes while
                online. None disables periodic replay.
            on_replay_complete: Called with the summary of every pass.
        """
        self._queue = queue
        self._connectivity = connectivity
        self._interval = replay_interval_seconds
        self.on_replay_complete = on_replay_complete

        self._lock = threading.Lock()
        self._armed = True
        self._loop: asyncio.AbstractEventLoop | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._inflight: set[concurrent.futures.Future[ReplaySummary]] = set()
        self.replays_triggered = 0

    @property
    def is_online(self) -> bool:
        return self._connectivity.is_online

    @property
    def running(self) -> bool:
        return self._unsubscribe is not None

    async def start(self) -> None:
        """Subscribe to connectivity and replay now if already online."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._unsubscribe = self._connectivity.subscribe(self.handle_connectivity_change)

        if self._connectivity.is_online:
            self._trigger_once("startup")
        if self._interval:
            self._poll_task = asyncio.create_task(self._poll(self._interval))
        logger.info("Offline manager started")

    def stop(self) -> None:
        """Unsubscribe and stop periodic replay."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
        logger.info("Offline manager stopped")

    def handle_connectivity_change(self, online: bool) -> None:
        """Connectivity subscriber; safe to call from any thread."""
        if not online:
            with self._lock:
                self._armed = True
            return
        self._trigger_once("reconnect")

    def _trigger_once(self, reason: str) -> None:
        with self._lock:
            if not self._armed:
                return
            self._armed = False

        if not len(self._queue):
            logger.debug(f"Nothing queued on {reason}")
            return
        self._schedule(reason)

    def _schedule(self, reason: str) -> None:
        if self._loop is None or self._loop.is_closed():
            logger.warning(f"Offline manager not started, skipping {reason} replay")
            return

        self.replays_triggered += 1
        logger.info(f"Replaying {len(self._queue)} queued operations on {reason}")
        future = asyncio.run_coroutine_threadsafe(self._replay(), self._loop)
        with self._lock:
            self._inflight.add(future)
        future.add_done_callback(self._replay_done)

    def _replay_done(self, future: concurrent.futures.Future[ReplaySummary]) -> None:
        with self._lock:
            self._inflight.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning(f"Offline replay failed: {exc}", exc_info=exc)

    async def _replay(self) -> ReplaySummary:
        summary = await self._queue.replay_all()
        if self.on_replay_complete is not None:
            self.on_replay_complete(summary)
        return summary

    async def _poll(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if self._connectivity.is_online and len(self._queue) and not self._queue.is_replaying:
                try:
                    await self._replay()
                except Exception as e:
                    logger.warning(f"Periodic replay failed: {e}", exc_info=True)

    async def wait_for_replays(self) -> None:
        """Wait until every scheduled replay pass has finished."""
        with self._lock:
            pending = list(self._inflight)
        if pending:
            await asyncio.gather(
                *(asyncio.wrap_future(f) for f in pending), return_exceptions=True
            )
