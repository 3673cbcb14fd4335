"""Connectivity interface contracts.

The offline queue consumes an online/offline signal and its transition events
to decide when deferred operations are replayed.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol


class ConnectivitySource(Protocol):
    """Interface for an online/offline signal with transition events."""

    @property
    def is_online(self) -> bool:
        """Whether the device currently has connectivity."""
        ...

    def subscribe(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        """Register a callback invoked with the new state on every transition.

        Callbacks may be invoked from a background thread.

        Args:
            callback: Called with True when going online, False when going offline.

        Returns:
            A function that removes the subscription.
        """
        ...
