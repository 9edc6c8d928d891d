from bizplan_chat.chat.events import ChatEvent, EventEmitter
from bizplan_chat.chat.message_store import MessageStore
from bizplan_chat.chat.models import (
    ChatSession,
    CreationRetryInfo,
    CreationStatus,
    Message,
    MessageStatus,
    Role,
    SessionContext,
)

__all__ = [
    "ChatEvent",
    "ChatSession",
    "CreationRetryInfo",
    "CreationStatus",
    "EventEmitter",
    "Message",
    "MessageStatus",
    "MessageStore",
    "Role",
    "SessionContext",
]
