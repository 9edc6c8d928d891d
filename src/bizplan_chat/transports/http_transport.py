from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any

import httpx
from loguru import logger

from bizplan_chat.chat.models import DEFAULT_SESSION_TITLE, SessionContext
from bizplan_chat.errors import NetworkError, RemoteQuotaError, ServerError, TransportFailure, ValidationError
from bizplan_chat.transport import AssistantReply, RemoteMessage, RemoteSession, RemoteSessionPage, SessionCreated
from bizplan_chat.usage_gate import SubscriptionStatus, UsageCounters

SESSIONS_PATH = "/api/business-planner/sessions"
CHAT_PATH = "/api/business-planner/chat"
USAGE_PATH = "/api/business-planner/usage"
EXPORT_PATH = "/api/business-planner/export"

_TIMEOUT_SECONDS = 30.0
_MAX_PAGE_SIZE = 100


def create_http_client(
    base_url: str,
    token: str | None = None,
    timeout: float = _TIMEOUT_SECONDS,
) -> httpx.AsyncClient:
    headers = {"Accept": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout)


def classify_status(status_code: int, error: dict) -> TransportFailure:
    """Map a non-2xx response onto the transport error taxonomy.

    402 (usage limit) and 429 (rate limit) will not clear up by retrying
    straight away; 5xx and the AI service outage (503) might.
    """
    code = error.get("code")
    message = error.get("message") or f"HTTP {status_code}"
    if status_code in (402, 429):
        return RemoteQuotaError(message, status_code=status_code, code=code)
    if status_code >= 500:
        return ServerError(message, status_code=status_code, code=code)
    return TransportFailure(message, status_code=status_code, code=code)


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    path: str,
    *,
    json: dict | None = None,
    params: dict | None = None,
) -> Any:
    """Issue one request and return the decoded body; non-2xx raises."""
    try:
        response = await client.request(method, path, json=json, params=params)
    except httpx.TimeoutException as ex:
        raise NetworkError(f"{method} {path} timed out", code="TIMEOUT") from ex
    except httpx.TransportError as ex:
        raise NetworkError(f"{method} {path} failed: {ex}", code="NETWORK_ERROR") from ex

    try:
        body = response.json()
    except ValueError:
        body = None

    if response.status_code >= 400:
        error = body.get("error") if isinstance(body, dict) else None
        failure = classify_status(response.status_code, error if isinstance(error, dict) else {})
        logger.debug(f"{method} {path} -> HTTP {response.status_code} ({failure.code}): {failure}")
        raise failure
    return body


async def call_api(
    client: httpx.AsyncClient,
    method: str,
    path: str,
    *,
    json: dict | None = None,
    params: dict | None = None,
) -> dict:
    """Issue one request and unwrap the ``{"data": ...}`` envelope."""
    body = await request_json(client, method, path, json=json, params=params)
    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, dict):
        raise TransportFailure(f"{method} {path} returned no data")
    return data


def parse_remote_session(raw: dict) -> RemoteSession:
    session_id = raw.get("id")
    if not session_id:
        raise TransportFailure("Session record without an id")
    context = None
    if isinstance(raw.get("context"), dict):
        try:
            context = SessionContext.from_dict(raw["context"])
        except ValidationError as ex:
            logger.warning(f"Session {session_id} has an unusable context: {ex}")
    return RemoteSession(
        session_id=str(session_id),
        title=str(raw.get("title") or DEFAULT_SESSION_TITLE),
        context=context,
        status=str(raw.get("status") or "active"),
        created_at=str(raw.get("created_at") or ""),
        updated_at=str(raw.get("updated_at") or ""),
    )


class HttpChatTransport:
    """``ChatTransport`` over the business planner REST API."""

    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    async def create_remote_session(
        self,
        context: SessionContext,
        first_message: str,
        *,
        title: str = DEFAULT_SESSION_TITLE,
    ) -> SessionCreated:
        created = await call_api(
            self._client,
            "POST",
            SESSIONS_PATH,
            json={"title": title, "context": context.to_dict()},
        )
        session = created.get("session") or {}
        session_id = session.get("id")
        if not session_id:
            raise TransportFailure("Session was created without an id")
        logger.info(f"Remote session {session_id} created")

        try:
            reply = await self._chat(session_id, first_message, context)
        except (TransportFailure, asyncio.CancelledError):
            # Creation is retried from scratch, so the half-made session must go.
            await asyncio.shield(self._discard(session_id))
            raise
        return SessionCreated(
            session_id=session_id,
            assistant_reply=reply.assistant_reply,
            tokens_used=reply.tokens_used,
        )

    async def send_remote_message(
        self,
        session_id: str,
        content: str,
        signal: asyncio.Event,
    ) -> AssistantReply:
        return await _abortable(self._chat(session_id, content), signal)

    async def delete_remote_session(self, session_id: str) -> None:
        try:
            await call_api(self._client, "DELETE", SESSIONS_PATH, params={"session_id": session_id})
        except TransportFailure as ex:
            if ex.status_code == 404:
                logger.info(f"Remote session {session_id} was already gone")
                return
            raise
        logger.info(f"Remote session {session_id} deleted")

    async def list_remote_sessions(self, *, page: int = 1, limit: int = 20) -> RemoteSessionPage:
        limit = max(1, min(limit, _MAX_PAGE_SIZE))
        data = await call_api(self._client, "GET", SESSIONS_PATH, params={"page": page, "limit": limit})
        records = data.get("data") or []
        sessions = []
        for raw in records:
            if not isinstance(raw, dict):
                continue
            try:
                sessions.append(parse_remote_session(raw))
            except TransportFailure as ex:
                logger.warning(f"Skipping session record: {ex}")
        return RemoteSessionPage(
            sessions=tuple(sessions),
            page=int(data.get("page") or page),
            has_next=bool(data.get("has_next")),
        )

    async def fetch_remote_messages(self, session_id: str) -> list[RemoteMessage]:
        # The export endpoint is the only one that returns a session's conversation.
        body = await request_json(
            self._client,
            "GET",
            EXPORT_PATH,
            params={"session_id": session_id, "format": "json", "include_metadata": "false"},
        )
        if not isinstance(body, list):
            raise TransportFailure(f"Unexpected export payload for session {session_id}")
        for entry in body:
            session = entry.get("session") if isinstance(entry, dict) else None
            if isinstance(session, dict) and session.get("id") == session_id:
                return [_parse_message(raw) for raw in entry.get("conversations") or [] if isinstance(raw, dict)]
        raise TransportFailure(f"Session {session_id} not found", status_code=404, code="NOT_FOUND")

    async def update_remote_session(self, session_id: str, *, title: str) -> RemoteSession:
        data = await call_api(self._client, "PUT", SESSIONS_PATH, json={"session_id": session_id, "title": title})
        logger.info(f"Remote session {session_id} renamed")
        return parse_remote_session(data)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _chat(self, session_id: str, content: str, context: SessionContext | None = None) -> AssistantReply:
        payload: dict[str, Any] = {"message": content, "session_id": session_id}
        if context is not None:
            payload["context"] = context.to_dict()
        data = await call_api(self._client, "POST", CHAT_PATH, json=payload)
        return AssistantReply(
            assistant_reply=str(data.get("message", "")),
            tokens_used=int(data.get("tokens_used") or 0),
        )

    async def _discard(self, session_id: str) -> None:
        try:
            await self.delete_remote_session(session_id)
        except TransportFailure as ex:
            logger.warning(f"Could not delete half-created session {session_id}: {ex}")


def _parse_message(raw: dict) -> RemoteMessage:
    return RemoteMessage(
        id=str(raw.get("id") or ""),
        role=str(raw.get("role") or ""),
        content=str(raw.get("content") or ""),
        tokens_used=int(raw.get("tokens_used") or 0),
        created_at=str(raw.get("created_at") or ""),
    )


class HttpUsageReader:
    """Caches the last usage snapshot; ``refresh`` fetches a new one."""

    def __init__(self, client: httpx.AsyncClient, *, initial: UsageCounters | None = None):
        self._client = client
        self._usage = initial or UsageCounters()

    def read_usage(self) -> UsageCounters:
        return self._usage

    async def refresh(self) -> UsageCounters:
        data = await call_api(self._client, "GET", USAGE_PATH)
        self._usage = parse_usage(data.get("usage") or {})
        return self._usage


def parse_usage(usage: dict) -> UsageCounters:
    raw_status = str(usage.get("subscription_status") or SubscriptionStatus.FREE.value)
    try:
        status = SubscriptionStatus(raw_status)
    except ValueError:
        logger.warning(f"Unknown subscription status {raw_status!r}; treating as free")
        status = SubscriptionStatus.FREE
    return UsageCounters(
        free_used=int(usage.get("free_conversations_used") or 0),
        paid_used=int(usage.get("paid_conversations_used") or 0),
        subscription_status=status,
    )


async def _abortable(awaitable: Awaitable[AssistantReply], signal: asyncio.Event) -> AssistantReply:
    request = asyncio.ensure_future(awaitable)
    if signal.is_set():
        request.cancel()
        raise TransportFailure("Request aborted before it was sent", code="ABORTED")
    waiter = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({request, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not request.done():
            request.cancel()
            await asyncio.wait({request})
    if request in done:
        return request.result()
    raise TransportFailure("Request aborted", code="ABORTED")
