"""Fallback chain controller.

Runs the methods of a FallbackPlan in order, each with its own attempt
budget, until one yields a normalized artifact. A method that fails fatally,
exhausts its attempts, or returns something the normalizer cannot resolve
hands over to the next method.

Usage:
    chain = FallbackChainController(executor, normalizer, config)
    result = await chain.run(FallbackPlan.of("trellis", "triposr"), encoded)
    print(result.method_used, result.total_attempts)
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from contracts.encoding import EncodedMedia
from relic.config import MethodConfig, RelicConfig, get_config
from relic.errors import (
    CallError,
    CallFailedError,
    ChainError,
    ConfigurationError,
    NormalizationError,
    RelicError,
)
from relic.reliability.classify import classify_exception
from relic.reliability.executor import CallExecutor
from relic.reliability.models import (
    AttemptOutcome,
    CallAttempt,
    CancellationToken,
    ChainResult,
    FallbackPlan,
)
from relic.reliability.normalizer import ResponseNormalizer

logger = logging.getLogger(__name__)

# Called with the method about to run and its position in the plan
MethodStartCallback = Callable[[str, int, int], None]


class FallbackChainController:
    """Sequences a plan's methods through the executor and normalizer."""

    def __init__(
        self,
        executor: CallExecutor,
        normalizer: ResponseNormalizer | None = None,
        config: RelicConfig | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            executor: Executor performing each method's attempts.
            normalizer: Normalizer for successful payloads. Defaults to one
                sharing the executor's transport.
            config: Configuration holding the method registry.
        """
        self.executor = executor
        if normalizer is None:
            normalizer = ResponseNormalizer(executor.transport)
        self.normalizer = normalizer
        self._config = config

    @property
    def config(self) -> RelicConfig:
        return self._config or get_config()

    def resolve(self, plan: FallbackPlan) -> list[MethodConfig]:
        """Resolve every method in the plan before any network call.

        Raises:
            ConfigurationError: If a plan step names an unconfigured method.
        """
        return [self.config.get_method(step.name) for step in plan.steps]

    async def run(
        self,
        plan: FallbackPlan,
        encoded: EncodedMedia,
        *,
        token: CancellationToken | None = None,
        accept_formats: list[str] | None = None,
        on_method_start: MethodStartCallback | None = None,
    ) -> ChainResult:
        """Try each method in order until one produces an artifact.

        Args:
            plan: Ordered methods with per-step params.
            encoded: Input media in transferable form.
            token: Cancellation token, checked between methods.
            accept_formats: Formats preferred when normalizing array results.
            on_method_start: Called as (method, index, plan length) before
                each method runs.

        Returns:
            ChainResult with artifact bytes, format, method used and the
            attempt history across all methods.

        Raises:
            ChainError: If every method failed.
            ConfigurationError: If the plan names an unknown method.
            JobCancelledError: If the token was cancelled.
        """
        methods = self.resolve(plan)
        attempts: list[CallAttempt] = []
        methods_attempted: list[str] = []
        last_error: RelicError | None = None

        for index, (step, method) in enumerate(zip(plan.steps, methods, strict=True)):
            if token is not None:
                token.raise_if_cancelled()

            if index > 0:
                logger.info(
                    "Falling back to %s (%d/%d) after %d attempt(s)",
                    step.name,
                    index + 1,
                    len(plan.steps),
                    len(attempts),
                )
            if on_method_start is not None:
                on_method_start(step.name, index, len(plan.steps))
            methods_attempted.append(step.name)

            try:
                call = await self.executor.execute(
                    step.name, method, encoded, params=step.params, token=token
                )
            except CallFailedError as e:
                attempts.extend(e.attempts)
                last_error = e
                logger.warning("Method %s abandoned: %s", step.name, e.last_error.message)
                continue

            attempts.extend(call.attempts)

            if token is not None:
                token.raise_if_cancelled()

            try:
                artifact = await self.normalizer.normalize(call.payload, method, accept_formats)
            except NormalizationError as e:
                # The call itself succeeded; record the attempt as fatal for this method
                attempts[-1] = _mark_fatal(attempts[-1], e)
                last_error = classify_exception(e)
                logger.warning("Method %s returned no usable artifact: %s", step.name, e.message)
                continue

            logger.info(
                "Method %s produced %s artifact (%d bytes) after %d total attempt(s)",
                step.name,
                artifact.format,
                len(artifact.data),
                len(attempts),
            )
            return ChainResult(
                data=artifact.data,
                format=artifact.format,
                method_used=step.name,
                attempts=attempts,
                methods_attempted=methods_attempted,
            )

        if last_error is None:
            raise ConfigurationError("Fallback plan has no methods")
        logger.error(
            "All methods failed (%s) after %d attempt(s): %s",
            ", ".join(methods_attempted),
            len(attempts),
            last_error.message,
        )
        raise ChainError(last_error, attempts, methods_attempted)


def _mark_fatal(attempt: CallAttempt, error: RelicError) -> CallAttempt:
    return CallAttempt(
        method=attempt.method,
        attempt_index=attempt.attempt_index,
        started_at=attempt.started_at,
        outcome=AttemptOutcome.FATAL_FAILURE,
        latency=attempt.latency,
        delay_before=attempt.delay_before,
        error=error.message,
    )


def last_call_error(error: ChainError) -> CallError | None:
    """The classified call error behind a chain failure, if there is one."""
    last = error.last_error
    if isinstance(last, CallFailedError):
        return last.last_error
    if isinstance(last, CallError):
        return last
    return None
