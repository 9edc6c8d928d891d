from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from uuid import uuid4

from bizplan_chat.chat.events import utc_now
from bizplan_chat.errors import ValidationError

DEFAULT_SESSION_TITLE = "Business Planning Session"
MAX_SESSION_TITLE_LENGTH = 255

_CONTEXT_LIMITS = {
    "business_type": ("Business type", 100),
    "target_market": ("Target market", 500),
    "challenge": ("Business challenge", 1000),
}
_MAX_ADDITIONAL_CONTEXT_LENGTH = 1000


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    SENT = "sent"
    FAILED = "failed"


class CreationStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class SessionContext:
    business_type: str
    target_market: str
    challenge: str
    created_at: str = field(default_factory=utc_now)
    additional_context: str | None = None

    def validate(self) -> None:
        problems: list[str] = []
        for attr, (label, limit) in _CONTEXT_LIMITS.items():
            value = getattr(self, attr) or ""
            if not value.strip():
                problems.append(f"{label} is required.")
            elif len(value) > limit:
                problems.append(f"{label} must be at most {limit} characters.")
        if self.additional_context and len(self.additional_context) > _MAX_ADDITIONAL_CONTEXT_LENGTH:
            problems.append(f"Additional context must be at most {_MAX_ADDITIONAL_CONTEXT_LENGTH} characters.")
        if problems:
            raise ValidationError(f"Validation failed: {' '.join(problems)}", problems)

    def to_dict(self) -> dict:
        data = {
            "business_type": self.business_type,
            "target_market": self.target_market,
            "challenge": self.challenge,
            "created_at": self.created_at,
        }
        if self.additional_context:
            data["additional_context"] = self.additional_context
        return data

    @classmethod
    def from_dict(cls, data: dict) -> SessionContext:
        context = cls(
            business_type=str(data.get("business_type") or ""),
            target_market=str(data.get("target_market") or ""),
            challenge=str(data.get("challenge") or ""),
            created_at=str(data.get("created_at") or utc_now()),
            additional_context=data.get("additional_context") or None,
        )
        context.validate()
        return context


@dataclass(frozen=True)
class Message:
    id: str
    session_key: str
    role: Role
    content: str
    status: MessageStatus = MessageStatus.PENDING
    created_at: str = field(default_factory=utc_now)
    attempt_number: int | None = None
    max_retries: int | None = None
    retry_count: int = 0
    tokens_used: int = 0
    cancelled: bool = False

    @classmethod
    def user(cls, session_key: str, content: str) -> Message:
        return cls(id=str(uuid4()), session_key=session_key, role=Role.USER, content=content)

    @classmethod
    def assistant(cls, session_key: str, content: str, tokens_used: int = 0) -> Message:
        return cls(
            id=str(uuid4()),
            session_key=session_key,
            role=Role.ASSISTANT,
            content=content,
            status=MessageStatus.SENT,
            tokens_used=tokens_used,
        )

    @property
    def is_retryable(self) -> bool:
        return self.status is MessageStatus.FAILED and not self.cancelled and self.role is Role.USER


@dataclass(frozen=True)
class CreationRetryInfo:
    attempt: int = 0
    max_attempts: int = 3
    next_retry_at: datetime | None = None
    last_error: str | None = None


@dataclass
class ChatSession:
    context: SessionContext
    key: str = field(default_factory=lambda: str(uuid4()))
    id: str | None = None
    title: str = DEFAULT_SESSION_TITLE
    creation_status: CreationStatus = CreationStatus.NOT_STARTED
    creation_retry: CreationRetryInfo = field(default_factory=CreationRetryInfo)
    trigger_message_id: str | None = None
    created_at: str = field(default_factory=utc_now)
    # False for sessions listed from the server until their messages are fetched.
    history_loaded: bool = True

    @property
    def is_established(self) -> bool:
        return self.creation_status is CreationStatus.SUCCEEDED
