"""Ordered fallback strategies with per-attempt wall-clock deadlines.

Every directory operation that has more than one way to succeed (transports,
bind identities, password-write mechanisms) is expressed as a list of
``Strategy`` objects run by ``run_fallback``. Adding a mechanism means adding
a list entry.
"""
from __future__ import annotations
import concurrent.futures
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Generic, Sequence, TypeVar

from identity_hub.core.errors import ConnectionUnavailable, DirectoryTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Strategy(Generic[T]):
    """One way of performing an operation.

    Attributes:
        name: Label used in logs and attempt records
        attempt: Zero-argument callable doing the work
        timeout: Wall-clock budget in seconds (None = no deadline)
        enabled: False skips the strategy without attempting it
    """
    name: str
    attempt: Callable[[], T]
    timeout: float | None = None
    enabled: bool = True


@dataclass(frozen=True)
class AttemptRecord:
    strategy: str
    outcome: str
    elapsed_ms: int
    detail: str = ""


@dataclass
class FallbackOutcome(Generic[T]):
    strategy: str
    value: T
    attempts: list[AttemptRecord] = field(default_factory=list)


def call_with_deadline(fn: Callable[[], T], timeout: float | None, label: str = "") -> T:
    """Run ``fn`` and give up waiting after ``timeout`` seconds.

    The worker thread is not interrupted; it finishes in the background and its
    result is discarded. Callers must not share state with it.

    Raises:
        DirectoryTimeout: The deadline passed before ``fn`` returned
    """
    if not timeout:
        return fn()

    executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="directory-strategy")
    future = executor.submit(fn)
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError:
        future.cancel()
        raise DirectoryTimeout(f"{label or 'directory operation'} exceeded {timeout:g}s")
    finally:
        executor.shutdown(wait=False)


def run_fallback(
    strategies: Sequence[Strategy[T]],
    *,
    operation: str,
    retry_on: tuple[type[BaseException], ...] = (ConnectionUnavailable,),
) -> FallbackOutcome[T]:
    """Try ``strategies`` in order and return the first success.

    Exceptions in ``retry_on`` (transport failures and timeouts by default)
    move on to the next strategy. Any other exception, such as rejected
    credentials, is terminal and propagates immediately.

    Raises:
        ConnectionUnavailable: Every strategy failed or was skipped; ``attempts``
            lists what was tried
    """
    attempts: list[AttemptRecord] = []
    for strategy in strategies:
        if not strategy.enabled:
            attempts.append(AttemptRecord(strategy.name, "skipped", 0, "disabled"))
            continue

        started = time.monotonic()
        try:
            value = call_with_deadline(strategy.attempt, strategy.timeout, f"{operation}/{strategy.name}")
        except retry_on as exc:
            outcome = "timeout" if isinstance(exc, DirectoryTimeout) else "unavailable"
            elapsed = _elapsed_ms(started)
            attempts.append(AttemptRecord(strategy.name, outcome, elapsed, str(exc)))
            logger.warning("%s: strategy %s %s after %dms: %s", operation, strategy.name, outcome, elapsed, exc)
            continue
        except Exception as exc:
            logger.info(
                "%s: strategy %s failed terminally after %dms (%s)",
                operation, strategy.name, _elapsed_ms(started), type(exc).__name__,
            )
            raise

        elapsed = _elapsed_ms(started)
        attempts.append(AttemptRecord(strategy.name, "success", elapsed))
        logger.info("%s: strategy %s succeeded in %dms", operation, strategy.name, elapsed)
        return FallbackOutcome(strategy=strategy.name, value=value, attempts=attempts)

    tried = ", ".join(f"{a.strategy}={a.outcome}" for a in attempts) or "none configured"
    raise ConnectionUnavailable(f"{operation}: all strategies failed ({tried})", attempts=attempts)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
