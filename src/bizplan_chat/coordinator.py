from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime

from loguru import logger

from bizplan_chat.chat import (
    ChatSession,
    CreationRetryInfo,
    CreationStatus,
    EventEmitter,
    Message,
    SessionContext,
)
from bizplan_chat.chat.models import DEFAULT_SESSION_TITLE
from bizplan_chat.chat.session_lifecycle import SessionLifecycle
from bizplan_chat.coordinator_config import CoordinatorConfig
from bizplan_chat.delivery import AiResponseLoading, DeliveryController, DeliveryReport, Dispatch
from bizplan_chat.errors import ChatError, CreationExhausted, SessionBusy, SessionNotFound, ValidationError
from bizplan_chat.retry import FinalFailure, RetryCoordinator
from bizplan_chat.transport import AssistantReply, ChatTransport, UsageReader
from bizplan_chat.usage_gate import SendDecision, UsageCounters, UsageLimits, can_send, raise_for_decision


class ChatCoordinator:
    """Presentation boundary of the business planner chat.

    Exposes the state a renderer needs (``messages``,
    ``session_creation_status``, ``ai_response_loading`` ...) and the user
    actions. Nothing here knows about a UI framework.
    """

    def __init__(
        self,
        *,
        transport: ChatTransport,
        usage_reader: UsageReader,
        config: CoordinatorConfig | None = None,
        events: EventEmitter | None = None,
        context: SessionContext | None = None,
        on_response_delayed: Callable[[str], None] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._config = config or CoordinatorConfig()
        self._transport = transport
        self._usage_reader = usage_reader
        self._events = events or EventEmitter()
        retry_coordinator = RetryCoordinator(label="chat")
        self._lifecycle = SessionLifecycle(
            transport=transport,
            retry_coordinator=retry_coordinator,
            policy=self._config.creation_policy,
            events=self._events,
            clock=clock,
        )
        self._delivery = DeliveryController(
            retry_coordinator=retry_coordinator,
            policy=self._config.message_policy,
            estimated_wait_seconds=self._config.estimated_wait_seconds,
            events=self._events,
            on_response_delayed=on_response_delayed,
            clock=clock,
        )
        self._active_key: str | None = None
        self._deleting: set[str] = set()
        if context is not None:
            self._active_key = self._lifecycle.new_session(context).key

    # -- state -------------------------------------------------------------

    @property
    def events(self) -> EventEmitter:
        return self._events

    @property
    def current_session(self) -> ChatSession | None:
        if self._active_key is None:
            return None
        return self._lifecycle.get(self._active_key)

    @property
    def sessions(self) -> list[ChatSession]:
        return self._lifecycle.sessions()

    @property
    def messages(self) -> tuple[Message, ...]:
        if self._active_key is None:
            return ()
        return self._lifecycle.store(self._active_key).list()

    @property
    def session_creation_status(self) -> CreationStatus:
        session = self.current_session
        return session.creation_status if session is not None else CreationStatus.NOT_STARTED

    @property
    def session_creation_retry_info(self) -> CreationRetryInfo:
        session = self.current_session
        if session is None:
            return CreationRetryInfo(max_attempts=self._config.creation_policy.max_attempts)
        return session.creation_retry

    @property
    def ai_response_loading(self) -> AiResponseLoading:
        if self._active_key is None:
            return AiResponseLoading()
        return self._delivery.loading(self._active_key)

    @property
    def estimated_wait_time(self) -> float:
        return self._config.estimated_wait_seconds

    @property
    def response_delayed(self) -> bool:
        return self._active_key is not None and self._delivery.is_delayed(self._active_key)

    @property
    def usage(self) -> UsageCounters:
        return self._usage_reader.read_usage()

    @property
    def usage_limits(self) -> UsageLimits:
        return self._config.limits

    def decision_for(self, text: str) -> SendDecision:
        key = self._active_key
        has_in_flight = key is not None and self._busy(key)
        return can_send(self._usage_reader.read_usage(), has_in_flight, len(text.strip()), self._config.limits)

    # -- actions -----------------------------------------------------------

    async def create_session(
        self,
        context: SessionContext,
        first_message: str | None = None,
        *,
        title: str | None = None,
    ) -> ChatSession:
        session = self._lifecycle.new_session(context, title=title)
        self._discard_unused_active()
        self._active_key = session.key
        if first_message is not None:
            await self.send_message(first_message)
        return session

    async def send_message(self, text: str) -> DeliveryReport:
        session = self._require_active()
        content = self._validated_content(text)

        usage = self._usage_reader.read_usage()
        decision = can_send(usage, self._busy(session.key), len(content), self._config.limits)
        if decision is not SendDecision.ALLOWED:
            logger.info(f"Send blocked for session {session.key}: {decision.value}")
            raise_for_decision(decision, usage)

        if session.is_established:
            store = self._lifecycle.store(session.key)
            return await self._delivery.send(session.key, store, content, self._dispatch_for(session))
        return await self._send_establishing(session, content)

    async def retry_send_message(self, message_id: str) -> DeliveryReport:
        session = self._require_active()
        self._ensure_not_deleting(session.key)
        store = self._lifecycle.store(session.key)
        if not session.is_established:
            if session.trigger_message_id == message_id:
                return await self.retry_create_session()
            raise ChatError(f"Message {message_id} has no established session to be retried against")
        return await self._delivery.retry(session.key, store, message_id, self._dispatch_for(session))

    async def retry_create_session(self) -> DeliveryReport:
        session = self._require_active()
        self._ensure_not_deleting(session.key)
        if session.creation_status is CreationStatus.FAILED:
            raise CreationExhausted(
                "Session creation failed permanently; start a new chat to try again.",
                attempt=session.creation_retry.attempt,
                max_attempts=session.creation_retry.max_attempts,
            )
        if session.creation_status is not CreationStatus.IN_PROGRESS or session.trigger_message_id is None:
            raise ChatError(f"Session {session.key} has no interrupted creation to retry")
        if self._delivery.has_in_flight(session.key):
            raise SessionBusy(f"Session {session.key} is already being created")
        return await self._run_establish(session, session.trigger_message_id)

    def cancel_ai_response(self) -> bool:
        if self._active_key is None:
            return False
        return self._delivery.cancel(self._active_key)

    async def load_sessions(self) -> list[ChatSession]:
        """Merge the sessions the server holds into the local registry."""
        page = 1
        while True:
            result = await self._transport.list_remote_sessions(page=page)
            for remote in result.sessions:
                if remote.status == "archived":
                    continue
                self._lifecycle.adopt(remote)
            if not result.has_next:
                break
            page += 1
        return self.sessions

    async def select_session(self, session_key: str) -> ChatSession:
        session = self._lifecycle.get(session_key)
        self._ensure_not_deleting(session_key)
        if not session.history_loaded and session.id is not None:
            # Loaded before the switch so nothing can be sent into a half-filled store.
            history = await self._transport.fetch_remote_messages(session.id)
            self._lifecycle.load_history(session_key, history)
        if session_key != self._active_key:
            self._discard_unused_active()
            self._active_key = session_key
            logger.info(f"Selected session {session_key}")
        return session

    async def delete_session(self, session_key: str) -> None:
        session = self._lifecycle.get(session_key)
        self._ensure_not_deleting(session_key)
        # Sends, retries and selects on the session are refused from here on.
        self._deleting.add(session_key)
        try:
            if self._delivery.cancel(session_key):
                await self._delivery.wait_idle(session_key)
            if session.id is not None:
                await self._transport.delete_remote_session(session.id)
            self._lifecycle.remove(session_key)
            self._delivery.forget(session_key)
        finally:
            self._deleting.discard(session_key)
        self._events.emit(session_key, "session.deleted", {"session_id": session.id})
        if session_key == self._active_key:
            self._active_key = self._lifecycle.new_session(session.context).key

    def clear_chat(self) -> ChatSession | None:
        session = self.current_session
        if session is None:
            return None
        self._discard_unused_active()
        fresh = self._lifecycle.new_session(session.context)
        self._active_key = fresh.key
        return fresh

    async def update_session_title(self, session_key: str, title: str) -> ChatSession:
        session = self._lifecycle.get(session_key)
        cleaned = self._lifecycle.validate_title(title)
        if session.id is not None:
            remote = await self._transport.update_remote_session(session.id, title=cleaned)
            cleaned = remote.title
        return self._lifecycle.rename(session_key, cleaned)

    # -- internals ---------------------------------------------------------

    async def _send_establishing(self, session: ChatSession, content: str) -> DeliveryReport:
        if session.creation_status is CreationStatus.FAILED:
            raise CreationExhausted(
                "Session creation failed permanently; start a new chat to try again.",
                attempt=session.creation_retry.attempt,
                max_attempts=session.creation_retry.max_attempts,
            )
        store = self._lifecycle.store(session.key)
        if session.trigger_message_id is not None:
            # A new message replaces the one that could not open the session.
            store.rollback(session.trigger_message_id)
        message = store.insert_optimistic(Message.user(session.key, content))
        return await self._run_establish(session, message.id)

    async def _run_establish(self, session: ChatSession, message_id: str) -> DeliveryReport:
        store = self._lifecycle.store(session.key)
        async with self._delivery.hold(session.key, message_id) as lock:
            outcome = await self._lifecycle.establish(session, message_id, lock.signal)

        if isinstance(outcome, FinalFailure) and session.creation_status is CreationStatus.FAILED:
            raise CreationExhausted(
                f"Could not start the session after {outcome.attempt} attempts: {outcome.last_error}",
                attempt=outcome.attempt,
                max_attempts=outcome.max_attempts,
                last_error=outcome.last_error,
            )

        message = store.get(message_id)
        reply = None
        if session.is_established:
            messages = store.list()
            reply = messages[-1] if messages and messages[-1].id != message_id else None
        return DeliveryReport(outcome, message, reply)

    def _dispatch_for(self, session: ChatSession) -> Dispatch:
        session_id = session.id
        if session_id is None:
            raise ChatError(f"Session {session.key} has no remote id yet")

        async def dispatch(content: str, signal: asyncio.Event) -> AssistantReply:
            return await self._transport.send_remote_message(session_id, content, signal)

        return dispatch

    def _validated_content(self, text: str) -> str:
        content = text.strip()
        if not content:
            raise_for_decision(SendDecision.BLOCKED_EMPTY)
        if len(content) > self._config.max_message_length:
            message = f"Message must be at most {self._config.max_message_length} characters."
            raise ValidationError(message, [message])
        return content

    def _require_active(self) -> ChatSession:
        session = self.current_session
        if session is None:
            raise SessionNotFound("No active session; create one with a business context first.")
        return session

    def _discard_unused_active(self) -> None:
        """Drop the active session if switching away would orphan it unused.

        A session the user has named is kept even before its first message.
        """
        session = self.current_session
        if session is None or session.id is not None or session.title != DEFAULT_SESSION_TITLE:
            return
        if self._busy(session.key) or len(self._lifecycle.store(session.key)) > 0:
            return
        self._lifecycle.remove(session.key)
        self._delivery.forget(session.key)

    def _busy(self, session_key: str) -> bool:
        return session_key in self._deleting or self._delivery.has_in_flight(session_key)

    def _ensure_not_deleting(self, session_key: str) -> None:
        if session_key in self._deleting:
            raise SessionBusy(f"Session {session_key} is being deleted")
