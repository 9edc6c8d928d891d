from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from loguru import logger

from bizplan_chat.chat.events import RETRY_INITIATED, RETRY_MAX_REACHED, EventEmitter, utc_now
from bizplan_chat.chat.message_store import MessageStore
from bizplan_chat.chat.models import (
    MAX_SESSION_TITLE_LENGTH,
    ChatSession,
    CreationRetryInfo,
    CreationStatus,
    Message,
    MessageStatus,
    Role,
    SessionContext,
)
from bizplan_chat.errors import (
    CreationExhausted,
    InvalidTransition,
    SessionNotFound,
    TransportFailure,
    ValidationError,
)
from bizplan_chat.retry import Cancelled, FinalFailure, RetryCoordinator, RetryOutcome, RetryPolicy, Success
from bizplan_chat.transport import ChatTransport, RemoteMessage, RemoteSession, SessionCreated


def _utc_instant() -> datetime:
    return datetime.now(UTC)


class SessionLifecycle:
    """Creates, selects and deletes chat sessions.

    Each session owns a creation state machine::

        NOT_STARTED -> IN_PROGRESS -> SUCCEEDED
                           |  ^
                           |  +-- failure with attempts left (retryable)
                           +----> FAILED (attempts exhausted)

    Only this class mutates ``ChatSession`` objects.
    """

    def __init__(
        self,
        *,
        transport: ChatTransport,
        retry_coordinator: RetryCoordinator,
        policy: RetryPolicy,
        events: EventEmitter | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._transport = transport
        self._retry = retry_coordinator
        self._policy = policy
        self._events = events
        self._clock = clock or _utc_instant
        self._sessions: dict[str, ChatSession] = {}
        self._stores: dict[str, MessageStore] = {}

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def new_session(self, context: SessionContext, *, title: str | None = None) -> ChatSession:
        context.validate()
        session = ChatSession(
            context=context,
            creation_retry=CreationRetryInfo(max_attempts=self._policy.max_attempts),
        )
        if title is not None:
            session.title = self.validate_title(title)
        self._sessions[session.key] = session
        self._stores[session.key] = MessageStore(session.key)
        logger.info(f"New chat session {session.key} ({context.business_type})")
        return session

    def get(self, session_key: str) -> ChatSession:
        session = self._sessions.get(session_key)
        if session is None:
            raise SessionNotFound(f"Session not found: {session_key}")
        return session

    def store(self, session_key: str) -> MessageStore:
        store = self._stores.get(session_key)
        if store is None:
            raise SessionNotFound(f"Session not found: {session_key}")
        return store

    def sessions(self) -> list[ChatSession]:
        return list(self._sessions.values())

    def remove(self, session_key: str) -> ChatSession:
        session = self.get(session_key)
        del self._sessions[session_key]
        del self._stores[session_key]
        logger.info(f"Removed chat session {session_key} (remote id={session.id})")
        return session

    def rename(self, session_key: str, title: str) -> ChatSession:
        session = self.get(session_key)
        session.title = self.validate_title(title)
        return session

    def find_remote(self, session_id: str) -> ChatSession | None:
        return next((s for s in self._sessions.values() if s.id == session_id), None)

    def adopt(self, remote: RemoteSession) -> ChatSession | None:
        """Register a session the server already holds, or refresh the known one.

        Returns ``None`` for a session without a usable business context.
        """
        known = self.find_remote(remote.session_id)
        if known is not None:
            known.title = remote.title
            return known
        if remote.context is None:
            logger.warning(f"Skipping remote session {remote.session_id}: no business context")
            return None
        session = ChatSession(
            context=remote.context,
            id=remote.session_id,
            title=remote.title,
            creation_status=CreationStatus.SUCCEEDED,
            creation_retry=CreationRetryInfo(max_attempts=self._policy.max_attempts),
            history_loaded=False,
        )
        if remote.created_at:
            session.created_at = remote.created_at
        self._sessions[session.key] = session
        self._stores[session.key] = MessageStore(session.key)
        logger.info(f"Adopted remote session {remote.session_id} as {session.key}")
        return session

    def load_history(self, session_key: str, history: list[RemoteMessage]) -> ChatSession:
        session = self.get(session_key)
        store = self.store(session_key)
        if session.history_loaded:
            return session
        messages = []
        for remote in history:
            try:
                role = Role(remote.role)
            except ValueError:
                logger.warning(f"Skipping message {remote.id} with unknown role {remote.role!r}")
                continue
            messages.append(
                Message(
                    id=remote.id or str(uuid4()),
                    session_key=session_key,
                    role=role,
                    content=remote.content,
                    status=MessageStatus.SENT,
                    created_at=remote.created_at or utc_now(),
                    tokens_used=remote.tokens_used,
                )
            )
        store.restore(messages)
        session.history_loaded = True
        logger.info(f"Loaded {len(messages)} messages for session {session_key}")
        return session

    async def establish(self, session: ChatSession, message_id: str, signal: asyncio.Event) -> RetryOutcome:
        """Create the remote session for the message that triggered it.

        The caller holds the delivery lock for ``session`` while this runs.
        Continues an interrupted attempt chain when the session is still
        IN_PROGRESS from an earlier failure.
        """
        if session.creation_status is CreationStatus.SUCCEEDED:
            raise InvalidTransition(f"Session {session.key} is already established")
        if session.creation_status is CreationStatus.FAILED:
            raise CreationExhausted(
                f"Session creation already failed after {session.creation_retry.attempt} attempts",
                attempt=session.creation_retry.attempt,
                max_attempts=session.creation_retry.max_attempts,
            )

        store = self.store(session.key)
        message = store.get(message_id)
        if message.status is MessageStatus.FAILED:
            message = store.transition(message_id, MessageStatus.PENDING, retry_count=message.retry_count + 1)

        first_attempt = session.creation_retry.attempt + 1
        session.creation_status = CreationStatus.IN_PROGRESS
        session.trigger_message_id = message_id
        session.creation_retry = replace(session.creation_retry, next_retry_at=None)
        logger.info(f"Creating session {session.key} (attempt {first_attempt}/{self._policy.max_attempts})")

        async def attempt(number: int) -> SessionCreated:
            session.creation_retry = replace(session.creation_retry, attempt=number)
            return await self._transport.create_remote_session(
                session.context,
                message.content,
                title=session.title,
            )

        outcome = await self._retry.execute(
            attempt,
            self._policy,
            signal=signal,
            first_attempt=first_attempt,
            on_retry=lambda failed, delay, error: self._record_retry(session, failed, delay, error),
            label=f"create session {session.key[:8]}",
        )
        self._apply_outcome(session, store, message, outcome)
        if isinstance(outcome, Cancelled) and isinstance(outcome.discarded, SessionCreated):
            await self._discard_late_session(outcome.discarded.session_id)
        return outcome

    def _apply_outcome(self, session: ChatSession, store: MessageStore, message: Message, outcome: RetryOutcome) -> None:
        if isinstance(outcome, Success):
            created: SessionCreated = outcome.value
            session.id = created.session_id
            session.creation_status = CreationStatus.SUCCEEDED
            session.trigger_message_id = None
            session.creation_retry = replace(
                session.creation_retry,
                attempt=outcome.attempts,
                next_retry_at=None,
                last_error=None,
            )
            store.transition(message.id, MessageStatus.SENT)
            store.append_confirmed(Message.assistant(session.key, created.assistant_reply, created.tokens_used))
            logger.info(f"Session {session.key} established as {created.session_id}")
            self._emit(session.key, "session.created", {"session_id": created.session_id, "attempts": outcome.attempts})
            return

        if isinstance(outcome, FinalFailure):
            error_text = str(outcome.last_error)
            if outcome.exhausted:
                session.creation_status = CreationStatus.FAILED
                session.trigger_message_id = None
                session.creation_retry = replace(
                    session.creation_retry,
                    attempt=outcome.attempt,
                    next_retry_at=None,
                    last_error=error_text,
                )
                store.rollback(message.id)
                logger.error(f"Session {session.key} could not be created after {outcome.attempt} attempts: {error_text}")
                self._emit(session.key, RETRY_MAX_REACHED, {"attempt": outcome.attempt})
            else:
                session.creation_retry = replace(
                    session.creation_retry,
                    attempt=outcome.attempt,
                    next_retry_at=self._clock() + timedelta(seconds=self._policy.backoff(outcome.attempt)),
                    last_error=error_text,
                )
                store.transition(
                    message.id,
                    MessageStatus.FAILED,
                    attempt_number=outcome.attempt,
                    max_retries=outcome.max_attempts,
                )
                logger.warning(
                    f"Session {session.key} creation stopped at attempt "
                    f"{outcome.attempt}/{outcome.max_attempts}: {error_text}"
                )
            self._emit(
                session.key,
                "session.creation_failed",
                {
                    "attempt": outcome.attempt,
                    "max_attempts": outcome.max_attempts,
                    "retryable": not outcome.exhausted,
                    "error": error_text,
                },
            )
            return

        if isinstance(outcome, Cancelled):
            session.creation_status = CreationStatus.NOT_STARTED
            session.trigger_message_id = None
            session.creation_retry = CreationRetryInfo(max_attempts=self._policy.max_attempts)
            store.transition(message.id, MessageStatus.FAILED, cancelled=True)
            logger.info(f"Session {session.key} creation cancelled at attempt {outcome.attempt}")
            self._emit(session.key, "message.cancelled", {"message_id": message.id, "attempt": outcome.attempt})
            return

        raise TypeError(f"Unknown retry outcome: {outcome!r}")

    async def _discard_late_session(self, session_id: str) -> None:
        logger.info(f"Deleting remote session {session_id} created after cancellation")
        try:
            await self._transport.delete_remote_session(session_id)
        except TransportFailure as ex:
            logger.warning(f"Could not delete remote session {session_id}: {ex}")

    def _record_retry(self, session: ChatSession, failed_attempt: int, delay: float, error: BaseException) -> None:
        session.creation_retry = replace(
            session.creation_retry,
            attempt=failed_attempt,
            next_retry_at=self._clock() + timedelta(seconds=delay),
            last_error=str(error),
        )
        self._emit(
            session.key,
            RETRY_INITIATED,
            {"attempt": failed_attempt, "max_attempts": self._policy.max_attempts, "error": str(error)},
        )

    @staticmethod
    def validate_title(title: str) -> str:
        cleaned = title.strip()
        if not cleaned:
            raise ValidationError("Session title must not be empty.", ["Session title must not be empty."])
        if len(cleaned) > MAX_SESSION_TITLE_LENGTH:
            message = f"Session title must be at most {MAX_SESSION_TITLE_LENGTH} characters."
            raise ValidationError(message, [message])
        return cleaned

    def _emit(self, session_key: str, event_type: str, payload: dict) -> None:
        if self._events is not None:
            self._events.emit(session_key, event_type, payload)
