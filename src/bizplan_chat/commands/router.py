from __future__ import annotations

from collections.abc import Awaitable, Callable


class CommandRouter:
    def __init__(
        self,
        *,
        on_help: Callable[[], Awaitable[None]],
        on_retry: Callable[[str], Awaitable[None]],
        on_cancel: Callable[[], Awaitable[None]],
        on_session: Callable[[str], Awaitable[None]],
        on_clear: Callable[[], Awaitable[None]],
        on_usage: Callable[[], Awaitable[None]],
        on_unknown: Callable[[str], None],
    ) -> None:
        self._on_help = on_help
        self._on_retry = on_retry
        self._on_cancel = on_cancel
        self._on_session = on_session
        self._on_clear = on_clear
        self._on_usage = on_usage
        self._on_unknown = on_unknown

    async def try_handle(self, user_message: str) -> bool:
        trimmed = user_message.strip()
        if not trimmed.startswith("/"):
            return False

        if trimmed == "/help":
            await self._on_help()
            return True
        if trimmed == "/retry" or trimmed.startswith("/retry "):
            await self._on_retry(trimmed)
            return True
        if trimmed == "/cancel":
            await self._on_cancel()
            return True
        if trimmed == "/session" or trimmed.startswith("/session "):
            await self._on_session(trimmed)
            return True
        if trimmed == "/clear":
            await self._on_clear()
            return True
        if trimmed == "/usage":
            await self._on_usage()
            return True

        self._on_unknown(trimmed)
        return True
