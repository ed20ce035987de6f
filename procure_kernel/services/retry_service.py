"""
RetryService -- bounded retry of transient store failures.

Responsibility:
    Runs a unit of work and, when it fails with a transient error (timeout,
    lost connection, lost compare-and-set race), rolls back and tries again
    after an exponentially growing delay.  Gives up after a capped number of
    attempts with a RetryExhaustedError that the caller reports.

Architecture position:
    Kernel > Services.  Used by the module facades and the batch processor
    around every committed unit of work.

Invariants enforced:
    - Attempts never exceed ``RetryPolicy.max_attempts``.
    - Delay before attempt n+1 is ``initial * multiplier**(n-1)``, capped at
      ``max_delay_seconds``.
    - Non-transient errors (validation failures included) propagate on the
      first attempt; they are never retried.

Usage:
    retry = RetryService(RetryPolicy.with_defaults())
    result = retry.run("submit_receiving", do_work, on_retry=session.rollback)
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Self, TypeVar

from sqlalchemy.exc import DBAPIError, DisconnectionError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from procure_kernel.exceptions import OptimisticLockError, RetryExhaustedError
from procure_kernel.logging_config import get_logger

logger = get_logger("services.retry")

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    OperationalError,
    DisconnectionError,
    PoolTimeoutError,
    TimeoutError,
    OptimisticLockError,
)


def is_transient(exc: BaseException) -> bool:
    """Timeouts, dropped connections and lost optimistic races."""
    if isinstance(exc, OptimisticLockError):
        return exc.retryable
    if isinstance(exc, TRANSIENT_ERRORS):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff settings."""

    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("retry delays must be non-negative")

    @classmethod
    def with_defaults(cls) -> Self:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(
            max_attempts=int(data.get("max_attempts", 3)),
            initial_delay_seconds=float(data.get("initial_delay_seconds", 1.0)),
            backoff_multiplier=float(data.get("backoff_multiplier", 2.0)),
            max_delay_seconds=float(data.get("max_delay_seconds", 30.0)),
        )

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        delay = self.initial_delay_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay_seconds)


class RetryService:
    """Run callables under a RetryPolicy."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        transient: Callable[[BaseException], bool] = is_transient,
    ):
        self._policy = policy or RetryPolicy.with_defaults()
        self._sleep = sleep
        self._transient = transient

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def run(
        self,
        operation: str,
        fn: Callable[[], T],
        on_retry: Callable[[], Any] | None = None,
    ) -> T:
        """
        Call ``fn`` until it succeeds, a non-transient error escapes, or
        attempts run out.

        Args:
            operation: Name used in logs and in RetryExhaustedError.
            fn: The unit of work.
            on_retry: Called after each transient failure, before sleeping
                (typically ``session.rollback``).

        Raises:
            RetryExhaustedError: The last attempt failed transiently.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except Exception as exc:
                if not self._transient(exc):
                    raise
                if on_retry is not None:
                    on_retry()
                if attempt >= self._policy.max_attempts:
                    logger.error(
                        "retry_exhausted",
                        extra={
                            "operation": operation,
                            "attempts": attempt,
                            "error_type": type(exc).__name__,
                        },
                    )
                    raise RetryExhaustedError(operation, attempt, str(exc)) from exc
                delay = self._policy.delay_for(attempt)
                logger.warning(
                    "transient_failure_retrying",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "error_type": type(exc).__name__,
                    },
                )
                self._sleep(delay)
