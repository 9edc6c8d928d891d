from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from bizplan_chat.errors import TransportFailure

DEFAULT_BACKOFF_BASE_SECONDS = 1.0
DEFAULT_BACKOFF_CAP_SECONDS = 30.0


def exponential_backoff(
    base: float = DEFAULT_BACKOFF_BASE_SECONDS,
    cap: float = DEFAULT_BACKOFF_CAP_SECONDS,
    *,
    jitter: bool = True,
    rng: Callable[[], float] = random.random,
) -> Callable[[int], float]:
    """Delay before the retry that follows ``attempt`` (1-based).

    ``min(cap, base * 2 ** (attempt - 1))``, scaled into ``[50%, 100%]`` when
    jitter is on.
    """

    def backoff(attempt: int) -> float:
        delay = min(cap, base * (2 ** max(0, attempt - 1)))
        if jitter:
            delay *= 0.5 + rng() * 0.5
        return delay

    return backoff


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default_factory=exponential_backoff)


@dataclass(frozen=True)
class Success:
    value: Any
    attempts: int
    retries: int = 0


@dataclass(frozen=True)
class FinalFailure:
    attempt: int
    max_attempts: int
    last_error: BaseException

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts


@dataclass(frozen=True)
class Cancelled:
    attempt: int
    # Result that completed after cancellation was requested; never applied.
    discarded: Any = None


RetryOutcome = Success | FinalFailure | Cancelled

OnRetry = Callable[[int, float, BaseException], None]


class _Aborted(Exception):
    def __init__(self, discarded: Any = None):
        super().__init__("aborted")
        self.discarded = discarded


def is_transient(error: BaseException) -> bool:
    return isinstance(error, TransportFailure) and error.transient


async def _sleep_unless_cancelled(signal: asyncio.Event, seconds: float) -> None:
    if seconds <= 0 or signal.is_set():
        await asyncio.sleep(0)
        return
    try:
        await asyncio.wait_for(signal.wait(), timeout=seconds)
    except TimeoutError:
        pass


async def _run_unless_cancelled(awaitable: Awaitable[Any], signal: asyncio.Event) -> Any:
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(signal.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()

    # Once cancellation is requested a late result is discarded.
    if not signal.is_set() and task.done() and not task.cancelled():
        return task.result()

    discarded = None
    try:
        discarded = await task
    except asyncio.CancelledError:
        pass
    except Exception as ex:
        logger.debug(f"Aborted attempt raised {type(ex).__name__}: {ex}")
    raise _Aborted(discarded)


class RetryCoordinator:
    """Runs one logical unit of work with bounded, cancellable retries.

    The same instance serves session creation and message sends; the policy
    passed to ``execute`` decides the attempt cap and backoff.
    """

    def __init__(self, *, label: str = "operation"):
        self._label = label

    async def execute(
        self,
        operation: Callable[[int], Awaitable[Any]],
        policy: RetryPolicy,
        *,
        signal: asyncio.Event | None = None,
        first_attempt: int = 1,
        on_retry: OnRetry | None = None,
        label: str | None = None,
    ) -> RetryOutcome:
        if first_attempt < 1 or first_attempt > policy.max_attempts:
            raise ValueError(
                f"first_attempt must be within 1..{policy.max_attempts}, got {first_attempt}"
            )
        signal = signal if signal is not None else asyncio.Event()
        label = label or self._label
        offset = first_attempt - 1
        attempt = first_attempt
        retries = 0

        def wait(retry_state: RetryCallState) -> float:
            return max(0.0, policy.backoff(retry_state.attempt_number + offset))

        def before_sleep(retry_state: RetryCallState) -> None:
            nonlocal retries
            retries += 1
            failed_attempt = retry_state.attempt_number + offset
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            reason = type(exc).__name__ if exc else "Unknown"
            logger.warning(
                f"{label}: {reason}. Retrying in {delay:.1f}s "
                f"(attempt {failed_attempt}/{policy.max_attempts})..."
            )
            if on_retry is not None and exc is not None:
                on_retry(failed_attempt, delay, exc)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts - offset),
            retry=retry_if_exception(is_transient),
            wait=wait,
            sleep=lambda seconds: _sleep_unless_cancelled(signal, seconds),
            before_sleep=before_sleep,
            reraise=True,
        )

        try:
            async for attempt_ctx in retrying:
                with attempt_ctx:
                    attempt = attempt_ctx.retry_state.attempt_number + offset
                    if signal.is_set():
                        raise _Aborted()
                    value = await _run_unless_cancelled(operation(attempt), signal)
        except _Aborted as ex:
            logger.info(f"{label}: cancelled at attempt {attempt}/{policy.max_attempts}")
            return Cancelled(attempt, ex.discarded)
        except Exception as ex:
            logger.error(f"{label}: giving up after attempt {attempt}/{policy.max_attempts}: {ex}")
            return FinalFailure(attempt, policy.max_attempts, ex)

        return Success(value, attempt, retries)
