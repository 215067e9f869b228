"""
Ephemera — Retry with Backoff & Call Deadlines

Wraps provisioner invocations with:
  - Retry on transient failures (rate limiting, timeouts, eventual
    consistency lag) with bounded exponential backoff and jitter
  - A per-call deadline; a call that misses it counts as transient
  - Immediate propagation of anything the classifier calls permanent

Config lives in ephemera.yaml:
    retry:
      max_attempts: 5
      backoff_base: 0.5
      backoff_max: 30
      jitter: 0.2
      call_timeout_seconds: 60

Usage:
    from infra.retry import call_with_retry, get_retry_policy

    policy = get_retry_policy(cfg)
    handle = call_with_retry(
        lambda: provisioner.ensure_namespace("123"),
        policy,
        operation="ensure_namespace",
        is_retryable=lambda e: isinstance(e, TransientError),
    )
"""

from __future__ import annotations

import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

logger = logging.getLogger("ephemera.retry")

T = TypeVar("T")


# ═══════════════════════════════════════════════════════════════════
# Retry Policy
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RetryPolicy:
    """Configuration for provisioner retry behavior."""
    max_attempts: int = 5
    backoff_base: float = 0.5      # seconds; delay = base * 2^attempt ± jitter
    backoff_max: float = 30.0      # cap on delay between retries
    jitter: float = 0.2            # ±20% randomization on backoff
    call_timeout_seconds: float | None = 60.0   # per-call deadline; None disables

    # Used when the caller passes no classifier
    retryable_exceptions: tuple = (
        TimeoutError,
        ConnectionError,
    )


DEFAULT_POLICY = RetryPolicy()


def get_retry_policy(config: dict[str, Any] | None = None) -> RetryPolicy:
    """Build a RetryPolicy from the `retry:` section of the config dict."""
    retry_cfg = (config or {}).get("retry") or {}
    if not retry_cfg:
        return DEFAULT_POLICY
    return RetryPolicy(
        max_attempts=int(retry_cfg.get("max_attempts", DEFAULT_POLICY.max_attempts)),
        backoff_base=float(retry_cfg.get("backoff_base", DEFAULT_POLICY.backoff_base)),
        backoff_max=float(retry_cfg.get("backoff_max", DEFAULT_POLICY.backoff_max)),
        jitter=float(retry_cfg.get("jitter", DEFAULT_POLICY.jitter)),
        call_timeout_seconds=retry_cfg.get(
            "call_timeout_seconds", DEFAULT_POLICY.call_timeout_seconds),
    )


# ═══════════════════════════════════════════════════════════════════
# Errors
# ═══════════════════════════════════════════════════════════════════

class DeadlineExceeded(TimeoutError):
    """A single call ran past its deadline. Always retryable."""

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} exceeded deadline of {timeout:.1f}s")


class RetryExhausted(Exception):
    """All attempts failed with retryable errors."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts: {last_error}"
        )


# ═══════════════════════════════════════════════════════════════════
# Deadline Enforcement
# ═══════════════════════════════════════════════════════════════════

_deadline_pool: ThreadPoolExecutor | None = None
_pool_lock = threading.Lock()


def _get_deadline_pool() -> ThreadPoolExecutor:
    global _deadline_pool
    with _pool_lock:
        if _deadline_pool is None:
            _deadline_pool = ThreadPoolExecutor(
                max_workers=32,
                thread_name_prefix="eph_deadline",
            )
        return _deadline_pool


def call_with_deadline(fn: Callable[[], T], timeout: float | None,
                       operation: str = "call",
                       on_abandoned: Callable[[T], None] | None = None) -> T:
    """
    Run fn with a deadline. Raises DeadlineExceeded when it is missed.

    A missed call is not interrupted: it keeps running in its worker
    thread and may still take effect. If it later succeeds, its result
    is passed to `on_abandoned` (on that worker thread) so the caller can
    undo work nobody is waiting for any more.
    """
    if not timeout or timeout <= 0:
        return fn()
    future = _get_deadline_pool().submit(fn)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        if future.done():
            # fn itself raised a TimeoutError
            raise
        if not future.cancel() and on_abandoned is not None:
            future.add_done_callback(
                lambda f: _deliver_late_result(f, operation, on_abandoned))
        raise DeadlineExceeded(operation, timeout) from None


def _deliver_late_result(future, operation: str, on_abandoned: Callable[[Any], None]) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    logger.info("%s completed after its deadline", operation)
    try:
        on_abandoned(future.result())
    except Exception:
        logger.exception("%s: handling the late result failed", operation)


# ═══════════════════════════════════════════════════════════════════
# Retry Logic
# ═══════════════════════════════════════════════════════════════════

def calculate_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Backoff delay for a 0-indexed attempt, with jitter."""
    base_delay = policy.backoff_base * (2 ** attempt)
    capped = min(base_delay, policy.backoff_max)
    jitter_range = capped * policy.jitter
    actual = capped + random.uniform(-jitter_range, jitter_range)
    return max(0.0, actual)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy | None = None,
    operation: str = "",
    is_retryable: Callable[[BaseException], bool] | None = None,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    on_abandoned: Callable[[T], None] | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> T:
    """
    Invoke fn with deadline, retry and backoff.

    Args:
        fn:           Zero-argument callable performing one attempt
        policy:       RetryPolicy (or default)
        operation:    Name used in logs and errors
        is_retryable: Classifier; defaults to policy.retryable_exceptions.
                      DeadlineExceeded is always retryable.
        on_retry:     Called as on_retry(attempt, error, delay) before
                      each backoff sleep (attempt is 1-indexed)
        on_abandoned: Receives the result of an attempt that succeeded after
                      its deadline had already been given up on
        sleep_fn:     Sleep function (injectable for testing)

    Returns:
        fn's return value from the first successful attempt

    Raises:
        RetryExhausted: every attempt failed with a retryable error
        Exception: the first non-retryable error, unchanged
    """
    if policy is None:
        policy = DEFAULT_POLICY
    operation = operation or getattr(fn, "__name__", "call")

    def _retryable(error: BaseException) -> bool:
        if isinstance(error, DeadlineExceeded):
            return True
        if is_retryable is not None:
            return is_retryable(error)
        return isinstance(error, policy.retryable_exceptions)

    last_error: BaseException | None = None
    attempts = max(1, policy.max_attempts)

    for attempt in range(attempts):
        try:
            return call_with_deadline(fn, policy.call_timeout_seconds, operation,
                                      on_abandoned)
        except Exception as e:
            last_error = e
            if not _retryable(e):
                logger.debug("%s non-retryable error: %s", operation, str(e)[:200])
                raise

            if attempt < attempts - 1:
                delay = calculate_backoff(attempt, policy)
                logger.warning(
                    "%s retryable error (attempt %d/%d): %s",
                    operation, attempt + 1, attempts, str(e)[:200],
                )
                if on_retry is not None:
                    on_retry(attempt + 1, e, delay)
                sleep_fn(delay)

    logger.error("%s exhausted %d attempts", operation, attempts)
    raise RetryExhausted(operation, attempts, last_error)
