# src/cdcmerge/engine/retry.py
"""RetryManager: bounded retry loops with tenacity.

Three loops in the merge engine share it:
- schema evolution losing the version race (re-read, recompute, resubmit)
- data commit losing the version race (re-read, recompute, recommit)
- transport failures on any storage call (backoff, same call again)

Each loop is bounded by max_attempts and backs off exponentially with jitter.
Exhaustion raises MaxRetriesExceeded; callers translate it into the domain
error for their loop.
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

if TYPE_CHECKING:
    from cdcmerge.core.config import RetrySettings

T = TypeVar("T")

OnRetry = Callable[[int, BaseException], None]


class MaxRetriesExceeded(Exception):
    """Every attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")


@dataclass(frozen=True)
class RetryConfig:
    """Attempt bound and backoff curve of one retry loop.

    max_attempts counts the first try: max_attempts=3 is one try plus two retries.
    Delays are in seconds.
    """

    max_attempts: int = 5
    base_delay: float = 0.1
    max_delay: float = 10.0
    jitter: float = 0.1
    exponential_base: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def no_retry(cls) -> "RetryConfig":
        return cls(max_attempts=1)

    @classmethod
    def immediate(cls, max_attempts: int) -> "RetryConfig":
        """Retries without waiting (tests and in-process stores)."""
        return cls(max_attempts=max_attempts, base_delay=0.0, max_delay=0.0, jitter=0.0)

    @classmethod
    def from_settings(cls, settings: "RetrySettings") -> "RetryConfig":
        """Jitter is a tenth of the initial delay; settings do not expose it."""
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.initial_delay_seconds,
            max_delay=settings.max_delay_seconds,
            jitter=settings.initial_delay_seconds / 10,
            exponential_base=settings.exponential_base,
        )


class RetryManager:
    """Runs an operation until it succeeds, fails non-retryably, or runs out of attempts.

    Example:
        manager = RetryManager(RetryConfig(max_attempts=5))

        version = manager.execute_with_retry(
            attempt_commit,
            is_retryable=lambda e: isinstance(e, VersionConflictError),
            on_retry=lambda attempt, error: logger.info("conflict", attempt=attempt),
        )
    """

    def __init__(self, config: RetryConfig) -> None:
        self._config = config
        self._wait = wait_exponential_jitter(
            initial=config.base_delay,
            max=config.max_delay,
            exp_base=config.exponential_base,
            jitter=config.jitter,
        )

    @property
    def max_attempts(self) -> int:
        return self._config.max_attempts

    def _retrying(self, is_retryable: Callable[[BaseException], bool], on_retry: OnRetry | None) -> Retrying:
        def before_sleep(state: RetryCallState) -> None:
            # tenacity only sleeps when another attempt follows
            if on_retry is None or state.outcome is None:
                return
            error = state.outcome.exception()
            if error is not None:
                on_retry(state.attempt_number - 1, error)

        return Retrying(
            stop=stop_after_attempt(self._config.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(is_retryable),
            before_sleep=before_sleep,
            reraise=False,
        )

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        *,
        is_retryable: Callable[[BaseException], bool],
        on_retry: OnRetry | None = None,
    ) -> T:
        """Call operation, from scratch on every attempt.

        on_retry receives the 0-based number of the failed attempt and its
        error, and only when another attempt follows. A non-retryable error
        propagates unchanged after its first occurrence.

        Raises:
            MaxRetriesExceeded: The last allowed attempt failed retryably
        """
        try:
            return self._retrying(is_retryable, on_retry)(operation)
        except RetryError as e:
            last = e.last_attempt
            error = last.exception()
            assert error is not None, "tenacity gave up on an attempt that did not raise"
            raise MaxRetriesExceeded(last.attempt_number, error) from error
