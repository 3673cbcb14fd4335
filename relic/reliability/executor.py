"""Call executor: one method, bounded attempts, exponential backoff.

The executor performs single network calls through an injected transport,
classifies each failure, and either sleeps and tries again or gives up.
It holds no state between ``execute`` calls, so one instance is safe to
share across jobs for independent entities.

Usage:
    executor = CallExecutor(RequestsTransport())
    result = await executor.execute("triposr", method_cfg, encoded)
    print(result.payload, len(result.attempts))
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from contracts.encoding import EncodedMedia
from relic.config import MethodConfig
from relic.errors import CallError, CallFailedError, ConfigurationError
from relic.reliability.classify import classify_exception
from relic.reliability.models import (
    AttemptOutcome,
    CallAttempt,
    CallResult,
    CancellationToken,
)
from relic.reliability.transport import RequestsTransport, Transport, build_request_body

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


def backoff_delay(
    failed_index: int,
    base_delay: float,
    rate_limit_delay: float,
    rate_limited: bool = False,
) -> float:
    """Delay before the attempt following failed attempt ``failed_index``.

    Args:
        failed_index: Zero-based index of the attempt that just failed.
        base_delay: Backoff base for ordinary retryable failures.
        rate_limit_delay: Backoff base used instead when the failure was a
            rate-limit signal.
        rate_limited: Whether the failure was a rate-limit signal.

    Returns:
        Seconds to wait: ``base * 2**failed_index``.
    """
    base = rate_limit_delay if rate_limited else base_delay
    return base * (2**failed_index)


class CallExecutor:
    """Runs one method's attempt budget against a remote service."""

    def __init__(
        self,
        transport: Transport | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the executor.

        Args:
            transport: Transport performing the network calls.
            sleep: Awaitable sleep used for backoff; injectable for tests.
            clock: Monotonic clock used for attempt latency.
        """
        self.transport = transport if transport is not None else RequestsTransport()
        self._sleep = sleep
        self._clock = clock

    async def execute(
        self,
        name: str,
        method: MethodConfig,
        encoded: EncodedMedia,
        *,
        params: dict[str, Any] | None = None,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        rate_limit_delay: float | None = None,
        token: CancellationToken | None = None,
    ) -> CallResult:
        """Call a method until it succeeds, fails fatally, or runs out of attempts.

        Attempt budget and delays default to the method's configuration.

        Args:
            name: Method name, for attempt records and logs.
            method: Resolved method configuration.
            encoded: Input media in transferable form.
            params: Per-step parameter overrides.
            max_attempts: Total attempts allowed.
            base_delay: Backoff base in seconds.
            rate_limit_delay: Backoff base in seconds for rate-limit signals.
            token: Cancellation token checked before each attempt and after
                each backoff sleep.

        Returns:
            CallResult with the raw payload and the attempts made.

        Raises:
            CallFailedError: On a fatal failure or exhausted attempt budget.
            JobCancelledError: If the token was cancelled.
        """
        attempts_allowed = method.max_attempts if max_attempts is None else max_attempts
        base = method.base_delay_seconds if base_delay is None else base_delay
        rate_base = (
            method.rate_limit_delay_seconds if rate_limit_delay is None else rate_limit_delay
        )
        body = build_request_body(method, encoded, params)

        attempts: list[CallAttempt] = []
        delay = 0.0
        last_error: CallError | None = None

        for index in range(attempts_allowed):
            if token is not None:
                token.raise_if_cancelled()

            started_at = time.time()
            start = self._clock()
            try:
                payload = await self.transport.invoke(method, body)
            except Exception as e:
                error = classify_exception(e)
                attempt = CallAttempt(
                    method=name,
                    attempt_index=index,
                    started_at=started_at,
                    outcome=(
                        AttemptOutcome.RETRYABLE_FAILURE
                        if error.retryable
                        else AttemptOutcome.FATAL_FAILURE
                    ),
                    latency=self._clock() - start,
                    delay_before=delay,
                    error=error.message,
                )
                attempts.append(attempt)
                last_error = error
                logger.debug("Attempt %s", attempt.to_dict())

                if not error.retryable:
                    logger.warning(
                        "%s failed fatally on attempt %d/%d: %s",
                        name,
                        index + 1,
                        attempts_allowed,
                        error.message,
                    )
                    raise CallFailedError(name, error, attempts, exhausted=False) from e

                if index == attempts_allowed - 1:
                    break

                delay = backoff_delay(index, base, rate_base, error.rate_limited)
                logger.warning(
                    "Retry %d/%d for %s after %.1fs: %s",
                    index + 1,
                    attempts_allowed - 1,
                    name,
                    delay,
                    error.message,
                )
                await self._sleep(delay)
                if token is not None:
                    token.raise_if_cancelled()
                continue

            attempt = CallAttempt(
                method=name,
                attempt_index=index,
                started_at=started_at,
                outcome=AttemptOutcome.SUCCESS,
                latency=self._clock() - start,
                delay_before=delay,
            )
            attempts.append(attempt)
            logger.debug("Attempt %s", attempt.to_dict())
            return CallResult(method=name, payload=payload, attempts=attempts)

        if last_error is None:
            raise ConfigurationError(f"Method {name} allows no attempts")
        logger.error(
            "All %d attempts exhausted for %s: %s", attempts_allowed, name, last_error.message
        )
        raise CallFailedError(name, last_error, attempts, exhausted=True)
