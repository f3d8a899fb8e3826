"""Retry for the operations that may fail transiently.

Only two places retry: opening the warehouse connection and reading
staged blobs. Uploads and loads never do; a failed transfer aborts the
run and the load resumes from its last state instead.

Retry is built on tenacity.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar

import tenacity
from tenacity.wait import wait_base

logger = logging.getLogger(__name__)

__all__ = ["with_retry", "RetryConfig", "retry_operation"]

F = TypeVar("F", bound=Callable[..., Any])
T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """How often and how patiently to retry.

    ``backoff_seconds`` is the first delay; with ``exponential`` it doubles
    per attempt. ``jitter`` adds up to half the base delay at random.
    """

    max_attempts: int = 3
    backoff_seconds: float = 1.0
    exponential: bool = True
    jitter: bool = True
    retry_exceptions: Tuple[Type[BaseException], ...] = (Exception,)

    @classmethod
    def none(cls) -> "RetryConfig":
        return cls(max_attempts=1)

    @classmethod
    def from_options(cls, options: Dict[str, Any], prefix: str = "connect") -> "RetryConfig":
        """Read ``<prefix>_attempts`` and ``<prefix>_backoff_seconds`` from config options."""
        return cls(
            max_attempts=int(options.get(f"{prefix}_attempts", 3)),
            backoff_seconds=float(options.get(f"{prefix}_backoff_seconds", 2.0)),
        )

    def wait(self) -> wait_base:
        strategy: wait_base
        if self.exponential:
            strategy = tenacity.wait_exponential(multiplier=self.backoff_seconds, min=self.backoff_seconds)
        else:
            strategy = tenacity.wait_fixed(self.backoff_seconds)
        if self.jitter:
            strategy = strategy + tenacity.wait_random(0, self.backoff_seconds * 0.5)
        return strategy

    def retrying(self, label: str, log: logging.Logger = logger) -> tenacity.Retrying:
        """A tenacity retryer that logs each failed attempt under ``label``."""

        def before_sleep(state: tenacity.RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome else None
            log.warning(
                "%s attempt %d/%d failed: %s; retrying in %.1fs",
                label,
                state.attempt_number,
                self.max_attempts,
                error,
                state.next_action.sleep if state.next_action else 0,
            )

        return tenacity.Retrying(
            stop=tenacity.stop_after_attempt(self.max_attempts),
            wait=self.wait(),
            retry=tenacity.retry_if_exception_type(self.retry_exceptions),
            before_sleep=before_sleep,
            reraise=True,
        )


def with_retry(
    max_attempts: int = 3,
    backoff_seconds: float = 1.0,
    exponential: bool = True,
    jitter: bool = True,
    retry_exceptions: Optional[Tuple[Type[Exception], ...]] = None,
) -> Callable[[F], F]:
    """Decorator form of :class:`RetryConfig`.

    Example:
        @with_retry(max_attempts=3, retry_exceptions=(ConnectionError, TimeoutError))
        def read_bytes(self, path: str) -> bytes:
            ...
    """
    config = RetryConfig(
        max_attempts=max_attempts,
        backoff_seconds=backoff_seconds,
        exponential=exponential,
        jitter=jitter,
        retry_exceptions=retry_exceptions or (Exception,),
    )

    def decorator(fn: F) -> F:
        fn_logger = logging.getLogger(fn.__module__)

        @wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            return config.retrying(fn.__qualname__, fn_logger)(fn, *args, **kwargs)

        return wrapper  # type: ignore

    return decorator


def retry_operation(
    operation: Callable[[], T],
    config: RetryConfig,
    operation_name: str = "operation",
) -> T:
    """Call ``operation`` until it succeeds or ``config`` gives up.

    Example:
        con = retry_operation(
            lambda: pyodbc.connect(conn_str, autocommit=True),
            RetryConfig.from_options(warehouse_options),
            "warehouse connect",
        )
    """
    try:
        return config.retrying(operation_name)(operation)
    except Exception:
        logger.error("%s failed after %d attempts", operation_name, config.max_attempts)
        raise
