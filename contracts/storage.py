"""Entity storage interface contracts.

The orchestration core reads and writes durable entity records only through
this protocol. The record schema itself belongs to the storage layer.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol


class EntityStatus(str, Enum):
    """Externally-visible processing status of an entity."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


class ArtifactKind(str, Enum):
    """Kinds of artifact an entity can own; one current artifact per kind."""

    MODEL_3D = "model_3d"
    COLOR_VARIANT = "color_variant"
    INFO_CARD = "info_card"


@dataclass(frozen=True)
class ArtifactResult:
    """Immutable artifact produced by a completed job.

    Regeneration creates a new ArtifactResult that replaces the old one;
    an existing result is never mutated in place.

    Attributes:
        entity_id: Entity the artifact belongs to.
        kind: Artifact kind (3D model, color variant, info card).
        data: Artifact bytes.
        format: Declared format (e.g. "glb", "png", "json").
        source_method: Method that produced the artifact.
        produced_at: When the artifact was produced.
        id: Unique artifact identifier.
        metadata: Extra provenance (attempt count, color scheme, ...).
    """

    entity_id: str
    kind: ArtifactKind
    data: bytes
    format: str
    source_method: str
    produced_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    id: str = field(default_factory=lambda: f"artifact-{uuid.uuid4().hex[:12]}")
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def size(self) -> int:
        """Artifact size in bytes."""
        return len(self.data)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary without the payload bytes."""
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "kind": self.kind.value,
            "format": self.format,
            "source_method": self.source_method,
            "produced_at": self.produced_at.isoformat(),
            "size": self.size,
            "metadata": self.metadata,
        }


class EntityStore(Protocol):
    """Interface for durable entity records.

    Implementations must be safe to call from both the job-completion and
    job-error paths.
    """

    def get_entity(self, entity_id: str) -> dict[str, Any] | None:
        """Get an entity record.

        Args:
            entity_id: Entity identifier.

        Returns:
            The entity record, or None if it does not exist.
        """
        ...

    def update_entity_status(self, entity_id: str, status: EntityStatus) -> None:
        """Update the externally-visible status of an entity.

        Args:
            entity_id: Entity identifier.
            status: New status.
        """
        ...

    def persist_artifact(self, entity_id: str, artifact: ArtifactResult) -> None:
        """Store an artifact as the entity's current artifact of its kind.

        Args:
            entity_id: Entity identifier.
            artifact: The artifact to store.
        """
        ...
