from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from loguru import logger

from bizplan_chat.chat.events import RETRY_INITIATED, ChatEvent
from bizplan_chat.chat.models import ChatSession, CreationStatus, Message
from bizplan_chat.commands.router import CommandRouter
from bizplan_chat.coordinator import ChatCoordinator
from bizplan_chat.delivery import DeliveryReport
from bizplan_chat.errors import ChatError, TransportFailure
from bizplan_chat.logging_config import session_context
from bizplan_chat.retry import Cancelled, FinalFailure, Success
from bizplan_chat.usage_gate import UsageCounters, remaining_conversations

HELP_TEXT = """Commands:
  /help                     Show this help
  /retry [message-id]       Retry the last failed message (or the given one)
  /cancel                   Stop waiting for the current response
  /session                  Show the current session
  /session list             List sessions (including ones saved on the server)
  /session new              Start a new session with the same business context
  /session select <key>     Switch to another session (key prefix is enough)
  /session delete [key]     Delete a session (defaults to the current one)
  /session name <title>     Rename the current session
  /clear                    Start over with an empty chat
  /usage                    Show remaining conversations
  exit | quit               Leave"""


class ChatConsole:
    """Line-oriented front end for ``ChatCoordinator``.

    Plain lines are sent as chat messages in the background so that
    ``/cancel`` can be typed while a response is pending.
    """

    def __init__(
        self,
        coordinator: ChatCoordinator,
        *,
        refresh_usage: Callable[[], Awaitable[UsageCounters]] | None = None,
        out: Callable[[str], None] = print,
    ) -> None:
        self._coordinator = coordinator
        self._refresh_usage = refresh_usage
        self._out = out
        self._pending: asyncio.Task | None = None
        self.router = CommandRouter(
            on_help=self._handle_help,
            on_retry=self._handle_retry,
            on_cancel=self._handle_cancel,
            on_session=self._handle_session,
            on_clear=self._handle_clear,
            on_usage=self._handle_usage,
            on_unknown=self._handle_unknown,
        )
        coordinator.events.subscribe(self._on_event)

    @property
    def busy(self) -> bool:
        return self._pending is not None and not self._pending.done()

    async def handle_line(self, line: str) -> None:
        if await self.router.try_handle(line):
            return
        self.submit(line)

    def submit(self, text: str) -> asyncio.Task | None:
        if self.busy:
            self._out("Still waiting for the previous response. Use /cancel to stop it.")
            return None
        with session_context(self._active_key()):
            self._pending = asyncio.create_task(self._run(self.send(text)))
        return self._pending

    async def wait_pending(self) -> None:
        if self._pending is not None:
            await self._pending

    async def close(self) -> None:
        if self.busy:
            self._coordinator.cancel_ai_response()
        await self.wait_pending()

    async def send(self, text: str) -> DeliveryReport | None:
        await self._refresh()
        try:
            report = await self._coordinator.send_message(text)
        except ChatError as ex:
            self._out(f"Not sent: {ex}")
            return None
        self._render(report)
        return report

    async def _run(self, work: Awaitable[object]) -> None:
        try:
            await work
        except Exception as ex:
            logger.error(f"Unhandled error: {ex}")
            self._out(f"Error: {ex}")

    async def _refresh(self) -> None:
        if self._refresh_usage is None:
            return
        try:
            await self._refresh_usage()
        except TransportFailure as ex:
            logger.warning(f"Could not refresh usage, using last known counters: {ex}")

    def _render(self, report: DeliveryReport) -> None:
        outcome = report.outcome
        if isinstance(outcome, Success):
            if report.reply is not None:
                self._out(f"assistant> {report.reply.content}")
            return
        if isinstance(outcome, FinalFailure):
            message_id = report.message.id[:8] if report.message else "?"
            self._out(
                f"Message {message_id} failed (attempt {outcome.attempt}/{outcome.max_attempts}): "
                f"{outcome.last_error}. Type /retry to try again."
            )
            return
        if isinstance(outcome, Cancelled):
            self._out("Response cancelled.")

    def _on_event(self, event: ChatEvent) -> None:
        if event.session_key != self._active_key():
            return
        if event.type == "response.delayed":
            self._out("This is taking longer than usual...")
        elif event.type == RETRY_INITIATED and "delay_seconds" in event.payload:
            self._out(
                f"Attempt {event.payload['attempt']}/{event.payload['max_attempts']} failed, "
                f"retrying in {event.payload['delay_seconds']:.1f}s"
            )

    def _active_key(self) -> str | None:
        session = self._coordinator.current_session
        return session.key if session is not None else None

    async def _handle_help(self) -> None:
        self._out(HELP_TEXT)

    async def _handle_retry(self, command: str) -> None:
        parts = command.split(maxsplit=1)
        target = self._find_retry_target(parts[1] if len(parts) > 1 else None)
        if target is None:
            self._out("Nothing to retry.")
            return
        if self.busy:
            self._out("Still waiting for the previous response. Use /cancel to stop it.")
            return
        with session_context(self._active_key()):
            self._pending = asyncio.create_task(self._run(self._retry(target.id)))

    async def _retry(self, message_id: str) -> None:
        await self._refresh()
        try:
            report = await self._coordinator.retry_send_message(message_id)
        except ChatError as ex:
            self._out(f"Retry failed: {ex}")
            return
        self._render(report)

    def _find_retry_target(self, prefix: str | None) -> Message | None:
        messages = self._coordinator.messages
        if prefix:
            matches = [m for m in messages if m.id.startswith(prefix)]
            return matches[0] if len(matches) == 1 else None
        for message in reversed(messages):
            if message.is_retryable:
                return message
        return None

    async def _handle_cancel(self) -> None:
        if self._coordinator.cancel_ai_response():
            self._out("Cancelling...")
        else:
            self._out("No response in flight.")

    async def _handle_session(self, command: str) -> None:
        parts = command.split(maxsplit=2)
        action = parts[1] if len(parts) > 1 else ""
        argument = parts[2].strip() if len(parts) > 2 else ""

        try:
            if action == "":
                current = self._coordinator.current_session
                self._out(self._describe(current) if current else "No active session.")
            elif action == "list":
                await self._sync_sessions()
                self._list_sessions()
            elif action == "new":
                current = self._coordinator.current_session
                if current is None:
                    self._out("No business context to start from.")
                    return
                session = await self._coordinator.create_session(current.context)
                self._out(f"Started session {session.key[:8]}.")
            elif action == "select":
                session = self._resolve(argument)
                if session is not None:
                    await self._coordinator.select_session(session.key)
                    self._out(f"Switched to {self._describe(session)}")
            elif action == "delete":
                session = self._resolve(argument) if argument else self._coordinator.current_session
                if session is not None:
                    await self._coordinator.delete_session(session.key)
                    self._out(f"Deleted session {session.key[:8]}.")
            elif action == "name":
                current = self._coordinator.current_session
                if current is None:
                    self._out("No active session.")
                    return
                renamed = await self._coordinator.update_session_title(current.key, argument)
                self._out(f"Renamed session to {renamed.title!r}.")
            else:
                self._out("Usage: /session [list|new|select <key>|delete [key]|name <title>]")
        except ChatError as ex:
            self._out(f"Session command failed: {ex}")

    async def _sync_sessions(self) -> None:
        try:
            await self._coordinator.load_sessions()
        except TransportFailure as ex:
            logger.warning(f"Could not load sessions from the server: {ex}")
            self._out("Could not reach the server; showing local sessions only.")

    def _list_sessions(self) -> None:
        current = self._coordinator.current_session
        sessions = self._coordinator.sessions
        if not sessions:
            self._out("No sessions.")
            return
        for session in sessions:
            marker = "*" if current is not None and session.key == current.key else " "
            self._out(f"{marker} {self._describe(session)}")

    def _resolve(self, prefix: str) -> ChatSession | None:
        if not prefix:
            self._out("A session key is required.")
            return None
        matches = [s for s in self._coordinator.sessions if s.key.startswith(prefix)]
        if len(matches) == 1:
            return matches[0]
        self._out(f"No session matches {prefix!r}." if not matches else f"{prefix!r} is ambiguous.")
        return None

    @staticmethod
    def _describe(session: ChatSession) -> str:
        status = session.creation_status.value
        if session.creation_status is CreationStatus.IN_PROGRESS and session.creation_retry.last_error:
            status += f", attempt {session.creation_retry.attempt}/{session.creation_retry.max_attempts}"
        return f"{session.key[:8]} {session.title!r} ({status})"

    async def _handle_clear(self) -> None:
        if self.busy:
            self._out("Still waiting for the previous response. Use /cancel to stop it.")
            return
        if self._coordinator.clear_chat() is None:
            self._out("No active session.")
        else:
            self._out("Chat cleared.")

    async def _handle_usage(self) -> None:
        await self._refresh()
        counters = self._coordinator.usage
        free_left, paid_left = remaining_conversations(counters, self._coordinator.usage_limits)
        self._out(
            f"Conversations left: {free_left} free, {paid_left} paid "
            f"(subscription: {counters.subscription_status.value})"
        )

    def _handle_unknown(self, command: str) -> None:
        self._out(f"Unknown command: {command}. Type /help for commands.")
