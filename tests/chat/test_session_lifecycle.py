import asyncio
import unittest
from datetime import UTC, datetime

from bizplan_chat.chat.events import EventEmitter
from bizplan_chat.chat.models import CreationStatus, Message, MessageStatus, Role
from bizplan_chat.chat.session_lifecycle import SessionLifecycle
from bizplan_chat.errors import (
    CreationExhausted,
    InvalidTransition,
    NetworkError,
    RemoteQuotaError,
    SessionNotFound,
    ValidationError,
)
from bizplan_chat.retry import Cancelled, FinalFailure, RetryCoordinator, Success
from bizplan_chat.transport import RemoteMessage, RemoteSession, SessionCreated
from fakes import HANG, FakeTransport, make_context, no_wait_policy, wait_for_call

_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class _Harness:
    def __init__(self, transport: FakeTransport | None = None) -> None:
        self.transport = transport or FakeTransport()
        self.events = EventEmitter()
        self.lifecycle = SessionLifecycle(
            transport=self.transport,
            retry_coordinator=RetryCoordinator(),
            policy=no_wait_policy(3),
            events=self.events,
            clock=lambda: _NOW,
        )
        self.session = self.lifecycle.new_session(make_context())
        self.store = self.lifecycle.store(self.session.key)

    def trigger(self, text: str = "Where do I start?") -> Message:
        return self.store.insert_optimistic(Message.user(self.session.key, text))

    async def establish(self, message: Message, signal: asyncio.Event | None = None):
        return await self.lifecycle.establish(self.session, message.id, signal or asyncio.Event())


class SessionLifecycleTests(unittest.TestCase):
    def test_new_session_validates_context(self) -> None:
        h = _Harness()
        with self.assertRaises(ValidationError) as ctx:
            h.lifecycle.new_session(make_context(business_type=" ", challenge="x" * 1001))
        self.assertEqual(2, len(ctx.exception.problems))
        self.assertEqual(1, len(h.lifecycle.sessions()))

    def test_successful_creation_uses_reply_from_creation(self) -> None:
        async def scenario():
            h = _Harness()
            message = h.trigger()
            outcome = await h.establish(message)
            return h, outcome

        h, outcome = asyncio.run(scenario())
        self.assertIsInstance(outcome, Success)
        self.assertEqual(CreationStatus.SUCCEEDED, h.session.creation_status)
        self.assertEqual("remote-1", h.session.id)
        self.assertIsNone(h.session.trigger_message_id)
        self.assertEqual([], h.transport.send_calls)
        messages = h.store.list()
        self.assertEqual([MessageStatus.SENT, MessageStatus.SENT], [m.status for m in messages])
        self.assertEqual(Role.ASSISTANT, messages[1].role)
        self.assertEqual(1, len(h.events.events(event_type="session.created")))

    def test_exhausted_creation_fails_and_rolls_back_trigger(self) -> None:
        async def scenario():
            h = _Harness()
            h.transport.create_script = [NetworkError("offline")] * 3
            outcome = await h.establish(h.trigger())
            return h, outcome

        h, outcome = asyncio.run(scenario())
        self.assertIsInstance(outcome, FinalFailure)
        self.assertTrue(outcome.exhausted)
        self.assertEqual(3, len(h.transport.create_calls))
        self.assertEqual(CreationStatus.FAILED, h.session.creation_status)
        self.assertEqual(3, h.session.creation_retry.attempt)
        self.assertEqual("offline", h.session.creation_retry.last_error)
        self.assertEqual(0, len(h.store))
        self.assertIsNone(h.session.id)
        self.assertEqual(1, len(h.events.events(event_type="retry.max_reached")))

    def test_failed_session_cannot_be_established_again(self) -> None:
        async def scenario():
            h = _Harness()
            h.transport.create_script = [NetworkError("offline")] * 3
            await h.establish(h.trigger())
            with self.assertRaises(CreationExhausted):
                await h.establish(h.trigger("again"))

        asyncio.run(scenario())

    def test_non_transient_failure_keeps_creation_retryable(self) -> None:
        async def scenario():
            h = _Harness()
            h.transport.create_script = [RemoteQuotaError("rate limited", status_code=429)]
            message = h.trigger()
            first = await h.establish(message)
            state_after_first = (h.session.creation_status, h.session.creation_retry)
            second = await h.establish(h.store.get(message.id))
            return h, message, first, state_after_first, second

        h, message, first, (status, retry_info), second = asyncio.run(scenario())
        self.assertEqual(FinalFailure(1, 3, first.last_error), first)
        self.assertEqual(CreationStatus.IN_PROGRESS, status)
        self.assertEqual(1, retry_info.attempt)
        self.assertIsNotNone(retry_info.next_retry_at)
        self.assertGreaterEqual(retry_info.next_retry_at, _NOW)

        # The second call continues the chain at attempt 2.
        self.assertEqual(Success(second.value, 2, 0), second)
        self.assertEqual(CreationStatus.SUCCEEDED, h.session.creation_status)
        sent = h.store.get(message.id)
        self.assertEqual(MessageStatus.SENT, sent.status)
        self.assertEqual(1, sent.retry_count)

    def test_cancel_during_creation_resets_to_not_started(self) -> None:
        async def scenario():
            h = _Harness()
            h.transport.create_script = [HANG]
            signal = asyncio.Event()
            message = h.trigger()
            task = asyncio.create_task(h.establish(message, signal))
            await wait_for_call(h.transport)
            self.assertEqual(CreationStatus.IN_PROGRESS, h.session.creation_status)
            signal.set()
            outcome = await asyncio.wait_for(task, timeout=1.0)
            return h, message, outcome

        h, message, outcome = asyncio.run(scenario())
        self.assertEqual(Cancelled(1), outcome)
        self.assertEqual(CreationStatus.NOT_STARTED, h.session.creation_status)
        self.assertEqual(0, h.session.creation_retry.attempt)
        self.assertTrue(h.store.get(message.id).cancelled)

    def test_established_session_rejects_second_creation(self) -> None:
        async def scenario():
            h = _Harness()
            await h.establish(h.trigger())
            with self.assertRaises(InvalidTransition):
                await h.establish(h.store.list()[0])

        asyncio.run(scenario())

    def test_creation_finishing_after_cancel_is_deleted_remotely(self) -> None:
        signal = asyncio.Event()

        class _LateTransport(FakeTransport):
            async def create_remote_session(self, context, first_message, *, title=""):
                # The user cancels while the reply is already on its way back.
                signal.set()
                return SessionCreated("remote-late", "Too late", 3)

        async def scenario():
            h = _Harness(_LateTransport())
            message = h.trigger()
            outcome = await h.establish(message, signal)
            return h, message, outcome

        h, message, outcome = asyncio.run(scenario())
        self.assertIsInstance(outcome, Cancelled)
        self.assertEqual("remote-late", outcome.discarded.session_id)
        self.assertEqual(["remote-late"], h.transport.deleted)
        self.assertIsNone(h.session.id)
        self.assertEqual(CreationStatus.NOT_STARTED, h.session.creation_status)
        self.assertTrue(h.store.get(message.id).cancelled)

    def test_creation_sends_the_session_title(self) -> None:
        async def scenario():
            h = _Harness()
            h.lifecycle.rename(h.session.key, "Coffee plan")
            await h.establish(h.trigger())
            return h

        self.assertEqual(["Coffee plan"], asyncio.run(scenario()).transport.create_titles)

    def test_adopt_remote_session_and_load_history(self) -> None:
        h = _Harness()
        adopted = h.lifecycle.adopt(RemoteSession("srv-9", "Menu pricing", make_context(), created_at="2026-02-01"))
        self.assertEqual(CreationStatus.SUCCEEDED, adopted.creation_status)
        self.assertFalse(adopted.history_loaded)
        self.assertEqual("2026-02-01", adopted.created_at)

        renamed = h.lifecycle.adopt(RemoteSession("srv-9", "Lunch pricing", make_context()))
        self.assertIs(adopted, renamed)
        self.assertEqual("Lunch pricing", adopted.title)
        self.assertIsNone(h.lifecycle.adopt(RemoteSession("srv-10", "Broken", None)))
        self.assertEqual(2, len(h.lifecycle.sessions()))

        h.lifecycle.load_history(
            adopted.key,
            [
                RemoteMessage("m1", "user", "Hi", 2),
                RemoteMessage("m2", "system", "ignored"),
                RemoteMessage("m3", "assistant", "Hello", 6),
            ],
        )
        messages = h.lifecycle.store(adopted.key).list()
        self.assertEqual([Role.USER, Role.ASSISTANT], [m.role for m in messages])
        self.assertTrue(all(m.status is MessageStatus.SENT for m in messages))
        self.assertTrue(adopted.history_loaded)

        # A second load is a no-op.
        h.lifecycle.load_history(adopted.key, [RemoteMessage("m4", "user", "again")])
        self.assertEqual(2, len(h.lifecycle.store(adopted.key)))

    def test_rename_and_remove(self) -> None:
        h = _Harness()
        h.lifecycle.rename(h.session.key, "  Coffee growth plan ")
        self.assertEqual("Coffee growth plan", h.session.title)
        with self.assertRaises(ValidationError):
            h.lifecycle.rename(h.session.key, "x" * 256)
        with self.assertRaises(ValidationError):
            h.lifecycle.rename(h.session.key, "   ")

        h.lifecycle.remove(h.session.key)
        with self.assertRaises(SessionNotFound):
            h.lifecycle.get(h.session.key)
        with self.assertRaises(SessionNotFound):
            h.lifecycle.store(h.session.key)


if __name__ == "__main__":
    unittest.main()
