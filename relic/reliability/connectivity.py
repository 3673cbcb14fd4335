"""Connectivity sources for the offline queue.

Two implementations of the ConnectivitySource contract:
- ConnectivityMonitor: background thread probing remote hosts with HEAD
  requests; any successful probe means online
- ManualConnectivity: state pushed by the host application (OS network
  events, browser online/offline events, tests)

Subscribers are notified only on transitions, from whichever thread
observed the change.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

import requests

from relic.config import ConnectivityConfig, get_config

logger = logging.getLogger(__name__)

ConnectivityCallback = Callable[[bool], None]


class ConnectivityState(Enum):
    """Overall connectivity state."""

    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


@dataclass
class ProbeResult:
    """Outcome of probing one URL."""

    url: str
    reachable: bool
    latency_ms: float
    checked_at: datetime
    error: str | None = None


class _TransitionNotifier:
    """Subscriber bookkeeping shared by the connectivity sources."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._subscribers: list[ConnectivityCallback] = []
        self._state = ConnectivityState.UNKNOWN

    @property
    def state(self) -> ConnectivityState:
        with self._lock:
            return self._state

    @property
    def is_online(self) -> bool:
        """Whether the last observed state is online. Unknown counts as online."""
        with self._lock:
            return self._state != ConnectivityState.OFFLINE

    def subscribe(self, callback: ConnectivityCallback) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _set_state(self, online: bool) -> bool:
        """Record a new state and notify subscribers when ``is_online`` flips.

        Unknown counts as online, so a first observation of offline is a
        transition and a first observation of online is not.

        Returns:
            True if the state changed.
        """
        new_state = ConnectivityState.ONLINE if online else ConnectivityState.OFFLINE
        with self._lock:
            old_state = self._state
            if old_state == new_state:
                return False
            self._state = new_state
            subscribers = list(self._subscribers)

        was_online = old_state != ConnectivityState.OFFLINE
        if was_online == online:
            logger.debug(f"Initial connectivity state: {new_state.value}")
            return True

        logger.info(f"Connectivity state: {old_state.value} -> {new_state.value}")
        for callback in subscribers:
            try:
                callback(online)
            except Exception as e:
                logger.error(f"Connectivity subscriber failed: {e}", exc_info=True)
        return True


class ManualConnectivity(_TransitionNotifier):
    """Connectivity state pushed in by the host application.

    Example:
        >>> connectivity = ManualConnectivity(online=True)
        >>> connectivity.set_online(False)
        >>> connectivity.set_online(True)  # subscribers see one transition each
    """

    def __init__(self, online: bool = True) -> None:
        super().__init__()
        self._state = ConnectivityState.ONLINE if online else ConnectivityState.OFFLINE

    def set_online(self, online: bool) -> None:
        """Report the current state; repeated identical reports are ignored."""
        self._set_state(online)


class ConnectivityMonitor(_TransitionNotifier):
    """Probe remote hosts in a background thread.

    Example:
        >>> monitor = ConnectivityMonitor()
        >>> monitor.subscribe(lambda online: print("online" if online else "offline"))
        >>> monitor.start()
        >>> # Later...
        >>> monitor.stop()
    """

    def __init__(
        self,
        config: ConnectivityConfig | None = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        """Initialize connectivity monitor.

        Args:
            config: Probe URLs, interval and timeout. Defaults to the global config.
            session_factory: Creates the session used for one round of probes.
        """
        super().__init__()
        self._config = config or get_config().connectivity
        self._session_factory = session_factory
        self._running = False
        self._monitor_thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._last_results: list[ProbeResult] = []

    def start(self) -> None:
        """Start background monitoring."""
        if self._running:
            return

        self._running = True
        self._stop_event.clear()
        self._monitor_thread = threading.Thread(
            target=self._monitor_loop, name="relic-connectivity", daemon=True
        )
        self._monitor_thread.start()
        logger.info("Connectivity monitor started")

    def stop(self) -> None:
        """Stop background monitoring."""
        self._running = False
        self._stop_event.set()
        if self._monitor_thread:
            self._monitor_thread.join(timeout=self._config.timeout_seconds + 1)
            self._monitor_thread = None
        logger.info("Connectivity monitor stopped")

    @property
    def last_results(self) -> list[ProbeResult]:
        """Results of the most recent probe round."""
        with self._lock:
            return list(self._last_results)

    def check_now(self) -> bool:
        """Probe immediately and update state.

        Returns:
            True if any probe URL was reachable.
        """
        results = self._probe_all()
        online = any(r.reachable for r in results)
        with self._lock:
            self._last_results = results
        self._set_state(online)
        return online

    def _monitor_loop(self) -> None:
        """Background monitoring loop."""
        while self._running:
            try:
                self.check_now()
            except Exception as e:
                logger.error(f"Error in connectivity check: {e}")

            if self._stop_event.wait(self._config.check_interval_seconds):
                break

    def _probe_all(self) -> list[ProbeResult]:
        with self._session_factory() as session:
            return [self._probe(session, url) for url in self._config.probe_urls]

    def _probe(self, session: requests.Session, url: str) -> ProbeResult:
        start = time.time()
        try:
            response = session.head(
                url, timeout=self._config.timeout_seconds, allow_redirects=True
            )
            # Any HTTP answer proves the network path works
            return ProbeResult(
                url=url,
                reachable=True,
                latency_ms=(time.time() - start) * 1000,
                checked_at=datetime.now(timezone.utc),
                error=None if response.ok else f"HTTP {response.status_code}",
            )
        except requests.exceptions.Timeout:
            error = "Timeout"
        except requests.exceptions.RequestException as e:
            error = f"Connection error: {e}"

        return ProbeResult(
            url=url,
            reachable=False,
            latency_ms=(time.time() - start) * 1000,
            checked_at=datetime.now(timezone.utc),
            error=error,
        )
