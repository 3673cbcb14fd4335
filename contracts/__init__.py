"""Contract interfaces for relic collaborators.

The orchestration core codes against these protocols, never against concrete
storage, encoding or connectivity implementations.
"""

from contracts.connectivity import ConnectivitySource
from contracts.encoding import EncodedMedia, MediaEncoder, MediaInput
from contracts.storage import ArtifactKind, ArtifactResult, EntityStatus, EntityStore

__all__ = [
    # Storage
    "ArtifactKind",
    "ArtifactResult",
    "EntityStatus",
    "EntityStore",
    # Encoding
    "EncodedMedia",
    "MediaEncoder",
    "MediaInput",
    # Connectivity
    "ConnectivitySource",
]
