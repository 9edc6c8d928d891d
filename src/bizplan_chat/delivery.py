from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime

from loguru import logger

from bizplan_chat.chat.events import (
    RETRY_FAILED,
    RETRY_INITIATED,
    RETRY_MAX_REACHED,
    RETRY_SUCCEEDED,
    EventEmitter,
)
from bizplan_chat.chat.message_store import MessageStore
from bizplan_chat.chat.models import Message, MessageStatus
from bizplan_chat.errors import InvalidTransition, SessionBusy
from bizplan_chat.retry import Cancelled, FinalFailure, RetryCoordinator, RetryOutcome, RetryPolicy, Success
from bizplan_chat.transport import AssistantReply
from bizplan_chat.wait_monitor import WaitTimeMonitor

Dispatch = Callable[[str, asyncio.Event], Awaitable[AssistantReply]]


def _utc_instant() -> datetime:
    return datetime.now(UTC)


@dataclass
class InFlightLock:
    message_id: str
    started_at: datetime
    signal: asyncio.Event = field(default_factory=asyncio.Event)
    released: asyncio.Event = field(default_factory=asyncio.Event)

    def cancel(self) -> None:
        self.signal.set()

    @property
    def cancel_requested(self) -> bool:
        return self.signal.is_set()


@dataclass(frozen=True)
class AiResponseLoading:
    is_loading: bool = False
    started_at: datetime | None = None


@dataclass(frozen=True)
class DeliveryReport:
    outcome: RetryOutcome
    message: Message | None
    reply: Message | None = None


class DeliveryController:
    """Owns the one-response-at-a-time rule for every session.

    A session is IDLE while it has no ``InFlightLock``. ``send`` and ``retry``
    take the lock, run the dispatch through the retry coordinator and always
    give the lock back, whatever the outcome.
    """

    def __init__(
        self,
        *,
        retry_coordinator: RetryCoordinator,
        policy: RetryPolicy,
        estimated_wait_seconds: float,
        events: EventEmitter | None = None,
        on_response_delayed: Callable[[str], None] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._retry = retry_coordinator
        self._policy = policy
        self._estimated_wait_seconds = estimated_wait_seconds
        self._events = events
        self._on_response_delayed = on_response_delayed
        self._clock = clock or _utc_instant
        self._locks: dict[str, InFlightLock] = {}
        self._monitors: dict[str, WaitTimeMonitor] = {}

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def estimated_wait_seconds(self) -> float:
        return self._estimated_wait_seconds

    def lock_for(self, session_key: str) -> InFlightLock | None:
        return self._locks.get(session_key)

    def has_in_flight(self, session_key: str) -> bool:
        return session_key in self._locks

    def loading(self, session_key: str) -> AiResponseLoading:
        lock = self._locks.get(session_key)
        if lock is None:
            return AiResponseLoading()
        return AiResponseLoading(is_loading=True, started_at=lock.started_at)

    def is_delayed(self, session_key: str) -> bool:
        monitor = self._monitors.get(session_key)
        return monitor is not None and monitor.exceeded

    async def send(self, session_key: str, store: MessageStore, content: str, dispatch: Dispatch) -> DeliveryReport:
        if self.has_in_flight(session_key):
            raise SessionBusy(f"A response is already in flight for session {session_key}")
        message = store.insert_optimistic(Message.user(session_key, content))
        return await self._deliver(session_key, store, message, dispatch)

    async def retry(
        self,
        session_key: str,
        store: MessageStore,
        message_id: str,
        dispatch: Dispatch,
    ) -> DeliveryReport:
        if self.has_in_flight(session_key):
            raise SessionBusy(f"A response is already in flight for session {session_key}")
        original = store.get(message_id)
        if not original.is_retryable:
            raise InvalidTransition(
                f"Message {message_id} cannot be retried "
                f"(status={original.status.value}, cancelled={original.cancelled})"
            )
        message = store.transition(message_id, MessageStatus.PENDING, retry_count=original.retry_count + 1)
        logger.info(f"Retrying message {message_id} (manual retry #{message.retry_count}, session={session_key})")
        self._emit(session_key, RETRY_INITIATED, {"message_id": message_id, "retry_count": message.retry_count})
        report = await self._deliver(session_key, store, message, dispatch)
        self._emit(
            session_key,
            RETRY_SUCCEEDED if isinstance(report.outcome, Success) else RETRY_FAILED,
            {"message_id": message_id, "retry_count": message.retry_count},
        )
        return report

    def cancel(self, session_key: str) -> bool:
        lock = self._locks.get(session_key)
        if lock is None:
            return False
        if not lock.cancel_requested:
            logger.info(f"Cancelling in-flight response for message {lock.message_id} (session={session_key})")
        lock.cancel()
        return True

    async def wait_idle(self, session_key: str) -> None:
        lock = self._locks.get(session_key)
        if lock is not None:
            await lock.released.wait()

    def forget(self, session_key: str) -> None:
        monitor = self._monitors.pop(session_key, None)
        if monitor is not None:
            monitor.reset()

    @asynccontextmanager
    async def hold(self, session_key: str, message_id: str) -> AsyncIterator[InFlightLock]:
        lock = self._acquire(session_key, message_id)
        try:
            yield lock
        finally:
            self._release(session_key, lock)

    async def _deliver(
        self,
        session_key: str,
        store: MessageStore,
        message: Message,
        dispatch: Dispatch,
    ) -> DeliveryReport:
        async with self.hold(session_key, message.id) as lock:

            async def attempt(_: int) -> AssistantReply:
                return await dispatch(message.content, lock.signal)

            def on_retry(failed_attempt: int, delay: float, error: BaseException) -> None:
                self._emit(
                    session_key,
                    RETRY_INITIATED,
                    {
                        "message_id": message.id,
                        "attempt": failed_attempt,
                        "max_attempts": self._policy.max_attempts,
                        "delay_seconds": round(delay, 3),
                        "error": str(error),
                    },
                )

            outcome = await self._retry.execute(
                attempt,
                self._policy,
                signal=lock.signal,
                on_retry=on_retry,
                label=f"send message {message.id[:8]}",
            )
            return self._settle(session_key, store, message, outcome)

    def _settle(self, session_key: str, store: MessageStore, message: Message, outcome: RetryOutcome) -> DeliveryReport:
        if isinstance(outcome, Success):
            reply: AssistantReply = outcome.value
            sent = store.transition(message.id, MessageStatus.SENT)
            confirmed = store.append_confirmed(
                Message.assistant(session_key, reply.assistant_reply, tokens_used=reply.tokens_used)
            )
            self._emit(
                session_key,
                "message.sent",
                {"message_id": message.id, "reply_id": confirmed.id, "attempts": outcome.attempts},
            )
            return DeliveryReport(outcome, sent, confirmed)

        if isinstance(outcome, FinalFailure):
            failed = store.transition(
                message.id,
                MessageStatus.FAILED,
                attempt_number=outcome.attempt,
                max_retries=outcome.max_attempts,
            )
            logger.warning(
                f"Message {message.id} failed after attempt {outcome.attempt}/{outcome.max_attempts}: "
                f"{outcome.last_error}"
            )
            self._emit(
                session_key,
                "message.failed",
                {
                    "message_id": message.id,
                    "attempt": outcome.attempt,
                    "max_attempts": outcome.max_attempts,
                    "error": str(outcome.last_error),
                },
            )
            if outcome.exhausted:
                self._emit(session_key, RETRY_MAX_REACHED, {"message_id": message.id})
            return DeliveryReport(outcome, failed)

        failed = store.transition(message.id, MessageStatus.FAILED, cancelled=True)
        self._emit(session_key, "message.cancelled", {"message_id": message.id, "attempt": outcome.attempt})
        return DeliveryReport(outcome, failed)

    def _acquire(self, session_key: str, message_id: str) -> InFlightLock:
        # No await between the check and the insert: atomic on the event loop.
        if session_key in self._locks:
            raise SessionBusy(f"A response is already in flight for session {session_key}")
        lock = InFlightLock(message_id=message_id, started_at=self._clock())
        self._locks[session_key] = lock
        monitor = self._monitors.setdefault(session_key, WaitTimeMonitor())
        monitor.arm(self._estimated_wait_seconds, lambda: self._response_delayed(session_key, lock))
        return lock

    def _release(self, session_key: str, lock: InFlightLock) -> None:
        monitor = self._monitors.get(session_key)
        if monitor is not None:
            monitor.reset()
        if self._locks.get(session_key) is lock:
            del self._locks[session_key]
        lock.released.set()

    def _response_delayed(self, session_key: str, lock: InFlightLock) -> None:
        logger.warning(
            f"Response for message {lock.message_id} is taking longer than "
            f"{self._estimated_wait_seconds:.0f}s (session={session_key})"
        )
        self._emit(
            session_key,
            "response.delayed",
            {"message_id": lock.message_id, "estimated_wait_seconds": self._estimated_wait_seconds},
        )
        if self._on_response_delayed is not None:
            self._on_response_delayed(session_key)

    def _emit(self, session_key: str, event_type: str, payload: dict) -> None:
        if self._events is not None:
            self._events.emit(session_key, event_type, payload)
