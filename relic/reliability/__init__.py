"""Reliability layer: call execution, normalization, fallback and offline replay."""

from relic.reliability.chain import FallbackChainController
from relic.reliability.classify import classify_exception
from relic.reliability.connectivity import ConnectivityMonitor, ManualConnectivity
from relic.reliability.executor import CallExecutor, backoff_delay
from relic.reliability.models import (
    AttemptOutcome,
    BinaryPayload,
    CallAttempt,
    CancellationToken,
    ChainResult,
    FallbackPlan,
    MethodStep,
    NormalizedArtifact,
)
from relic.reliability.normalizer import ResponseNormalizer
from relic.reliability.offline import (
    OfflineManager,
    OfflineOperationQueue,
    QueuedOperation,
    ReplaySummary,
)
from relic.reliability.transport import RequestsTransport, Transport

__all__ = [
    "AttemptOutcome",
    "BinaryPayload",
    "CallAttempt",
    "CallExecutor",
    "CancellationToken",
    "ChainResult",
    "ConnectivityMonitor",
    "FallbackChainController",
    "FallbackPlan",
    "ManualConnectivity",
    "MethodStep",
    "NormalizedArtifact",
    "OfflineManager",
    "OfflineOperationQueue",
    "QueuedOperation",
    "ReplaySummary",
    "RequestsTransport",
    "ResponseNormalizer",
    "Transport",
    "backoff_delay",
    "classify_exception",
]
