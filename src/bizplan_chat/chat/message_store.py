from __future__ import annotations

from dataclasses import replace

from loguru import logger

from bizplan_chat.chat.models import Message, MessageStatus, Role
from bizplan_chat.errors import InvalidTransition, MessageNotFound, SingleFlightViolation

_ALLOWED_TRANSITIONS: dict[MessageStatus, frozenset[MessageStatus]] = {
    MessageStatus.PENDING: frozenset({MessageStatus.STREAMING, MessageStatus.SENT, MessageStatus.FAILED}),
    MessageStatus.STREAMING: frozenset({MessageStatus.SENT, MessageStatus.FAILED}),
    MessageStatus.FAILED: frozenset({MessageStatus.PENDING}),
    MessageStatus.SENT: frozenset(),
}
_IN_FLIGHT = frozenset({MessageStatus.PENDING, MessageStatus.STREAMING})
_TERMINAL = frozenset({MessageStatus.SENT, MessageStatus.FAILED})
_ROLLBACK_ALLOWED = frozenset({MessageStatus.PENDING, MessageStatus.FAILED})
_PATCHABLE = frozenset({"content", "attempt_number", "max_retries", "retry_count", "tokens_used", "cancelled"})


class MessageStore:
    """Insertion-ordered message log for one session.

    The store is the only writer of message state. Messages are frozen
    dataclasses, so callers can hold on to what ``list()`` returns without
    seeing later changes.
    """

    def __init__(self, session_key: str):
        self._session_key = session_key
        self._messages: list[Message] = []

    @property
    def session_key(self) -> str:
        return self._session_key

    def __len__(self) -> int:
        return len(self._messages)

    def list(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def get(self, message_id: str) -> Message:
        return self._messages[self._position(message_id)]

    def in_flight(self) -> Message | None:
        return next((m for m in self._messages if m.status in _IN_FLIGHT), None)

    def insert_optimistic(self, message: Message) -> Message:
        self._ensure_single_flight(message.id)
        if any(m.id == message.id for m in self._messages):
            raise InvalidTransition(f"Message already exists: {message.id}")
        pending = replace(
            message,
            session_key=self._session_key,
            status=MessageStatus.PENDING,
            attempt_number=None,
            max_retries=None,
            cancelled=False,
        )
        self._messages.append(pending)
        logger.debug(f"Optimistic insert {pending.id} (session={self._session_key}, role={pending.role.value})")
        return pending

    def append_confirmed(self, message: Message) -> Message:
        if message.role is not Role.ASSISTANT:
            raise InvalidTransition(f"Only assistant replies can be appended as sent: {message.id}")
        if any(m.id == message.id for m in self._messages):
            raise InvalidTransition(f"Message already exists: {message.id}")
        confirmed = replace(message, session_key=self._session_key, status=MessageStatus.SENT)
        self._messages.append(confirmed)
        logger.debug(f"Appended reply {confirmed.id} (session={self._session_key})")
        return confirmed

    def restore(self, messages: list[Message]) -> None:
        """Fill an empty store with history the server already holds."""
        if self._messages:
            raise InvalidTransition(f"Session {self._session_key} already has messages")
        restored = [replace(m, session_key=self._session_key, status=MessageStatus.SENT) for m in messages]
        if len({m.id for m in restored}) != len(restored):
            raise InvalidTransition(f"Duplicate message ids in history for session {self._session_key}")
        self._messages.extend(restored)
        logger.debug(f"Restored {len(restored)} messages (session={self._session_key})")

    def transition(self, message_id: str, new_status: MessageStatus, **patch) -> Message:
        position = self._position(message_id)
        current = self._messages[position]

        if new_status not in _ALLOWED_TRANSITIONS[current.status]:
            raise InvalidTransition(
                f"Cannot move message {message_id} from {current.status.value} to {new_status.value}"
            )
        unknown = set(patch) - _PATCHABLE
        if unknown:
            raise ValueError(f"Unsupported message fields: {', '.join(sorted(unknown))}")
        if "content" in patch and current.status in _TERMINAL:
            raise InvalidTransition(f"Content of message {message_id} is final")
        if new_status in _IN_FLIGHT:
            self._ensure_single_flight(message_id)

        changes: dict = {"status": new_status}
        if new_status is not MessageStatus.FAILED:
            changes.update(attempt_number=None, max_retries=None, cancelled=False)
        changes.update(patch)

        updated = replace(current, **changes)
        self._messages[position] = updated
        logger.debug(
            f"Message {message_id}: {current.status.value} -> {new_status.value} (session={self._session_key})"
        )
        return updated

    def rollback(self, message_id: str) -> Message:
        position = self._position(message_id)
        current = self._messages[position]
        if current.status not in _ROLLBACK_ALLOWED:
            raise InvalidTransition(f"Cannot roll back {current.status.value} message {message_id}")
        del self._messages[position]
        logger.debug(f"Rolled back message {message_id} (session={self._session_key})")
        return current

    def _position(self, message_id: str) -> int:
        for i, message in enumerate(self._messages):
            if message.id == message_id:
                return i
        raise MessageNotFound(f"Message not found: {message_id}")

    def _ensure_single_flight(self, message_id: str) -> None:
        active = self.in_flight()
        if active is not None and active.id != message_id:
            raise SingleFlightViolation(
                f"Message {active.id} is still {active.status.value} in session {self._session_key}"
            )
