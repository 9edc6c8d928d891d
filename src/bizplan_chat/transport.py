import asyncio
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from bizplan_chat.chat.models import DEFAULT_SESSION_TITLE, SessionContext
from bizplan_chat.usage_gate import UsageCounters


@dataclass(frozen=True)
class AssistantReply:
    assistant_reply: str
    tokens_used: int = 0


@dataclass(frozen=True)
class SessionCreated:
    session_id: str
    assistant_reply: str
    tokens_used: int = 0


@dataclass(frozen=True)
class RemoteSession:
    session_id: str
    title: str
    context: SessionContext | None
    status: str = "active"
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class RemoteSessionPage:
    sessions: tuple[RemoteSession, ...]
    page: int = 1
    has_next: bool = False


@dataclass(frozen=True)
class RemoteMessage:
    id: str
    role: str
    content: str
    tokens_used: int = 0
    created_at: str = ""


@runtime_checkable
class ChatTransport(Protocol):
    async def create_remote_session(
        self,
        context: SessionContext,
        first_message: str,
        *,
        title: str = DEFAULT_SESSION_TITLE,
    ) -> SessionCreated:
        """Create the remote session and answer its first message.

        Raises a ``TransportFailure`` subclass on failure. A session created
        remotely before the failure (or before the call was cancelled) must
        not be left behind.
        """
        ...

    async def send_remote_message(
        self,
        session_id: str,
        content: str,
        signal: asyncio.Event,
    ) -> AssistantReply:
        """Send one message. Must stop promptly once ``signal`` is set."""
        ...

    async def delete_remote_session(self, session_id: str) -> None: ...

    async def list_remote_sessions(self, *, page: int = 1, limit: int = 20) -> RemoteSessionPage: ...

    async def fetch_remote_messages(self, session_id: str) -> list[RemoteMessage]:
        """Conversation history of one session, oldest first."""
        ...

    async def update_remote_session(self, session_id: str, *, title: str) -> RemoteSession: ...


@runtime_checkable
class UsageReader(Protocol):
    def read_usage(self) -> UsageCounters:
        """Latest usage snapshot. The coordinator never refreshes it."""
        ...
