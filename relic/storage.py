"""In-memory entity store.

Default EntityStore used by tests and by hosts that keep their own durable
records elsewhere. Keeps one current artifact per (entity, kind) plus the
replaced ones as history.
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from typing import Any

from contracts.storage import ArtifactKind, ArtifactResult, EntityStatus

logger = logging.getLogger(__name__)


class InMemoryEntityStore:
    """Thread-safe dictionary-backed EntityStore."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entities: dict[str, dict[str, Any]] = {}
        self._current: dict[tuple[str, ArtifactKind], ArtifactResult] = {}
        self._history: dict[str, list[ArtifactResult]] = {}

    def add_entity(self, entity_id: str, **fields: Any) -> dict[str, Any]:
        """Create (or overwrite) an entity record with status pending."""
        with self._lock:
            record = {
                "id": entity_id,
                "status": EntityStatus.PENDING,
                "updated_at": datetime.now(UTC),
                **fields,
            }
            self._entities[entity_id] = record
            return dict(record)

    def get_entity(self, entity_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._entities.get(entity_id)
            if record is None:
                return None
            result = dict(record)
            result["artifacts"] = {
                kind.value: artifact.id
                for (eid, kind), artifact in self._current.items()
                if eid == entity_id
            }
            return result

    def update_entity_status(self, entity_id: str, status: EntityStatus) -> None:
        with self._lock:
            record = self._entities.setdefault(entity_id, {"id": entity_id})
            record["status"] = status
            record["updated_at"] = datetime.now(UTC)
        logger.debug(f"Entity {entity_id} status -> {status.value}")

    def persist_artifact(self, entity_id: str, artifact: ArtifactResult) -> None:
        with self._lock:
            self._entities.setdefault(
                entity_id, {"id": entity_id, "status": EntityStatus.PENDING}
            )
            previous = self._current.get((entity_id, artifact.kind))
            if previous is not None:
                self._history.setdefault(entity_id, []).append(previous)
            self._current[(entity_id, artifact.kind)] = artifact
        logger.debug(
            f"Persisted {artifact.kind.value} artifact {artifact.id} for {entity_id} "
            f"({artifact.size} bytes, {artifact.format})"
        )

    def get_artifact(self, entity_id: str, kind: ArtifactKind) -> ArtifactResult | None:
        """The current artifact of a kind, if any."""
        with self._lock:
            return self._current.get((entity_id, kind))

    def get_history(self, entity_id: str) -> list[ArtifactResult]:
        """Artifacts replaced by regeneration, oldest first."""
        with self._lock:
            return list(self._history.get(entity_id, []))

    def artifact_count(self) -> int:
        """Number of current artifacts across all entities."""
        with self._lock:
            return len(self._current)
