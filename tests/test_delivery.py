import asyncio
import unittest

from bizplan_chat.chat.events import EventEmitter
from bizplan_chat.chat.message_store import MessageStore
from bizplan_chat.chat.models import MessageStatus, Role
from bizplan_chat.delivery import DeliveryController
from bizplan_chat.errors import InvalidTransition, NetworkError, SessionBusy
from bizplan_chat.retry import Cancelled, FinalFailure, RetryCoordinator, Success
from bizplan_chat.transport import AssistantReply
from fakes import HANG, FakeTransport, no_wait_policy, wait_for_call


class _Harness:
    def __init__(self, *, estimated_wait_seconds: float = 30.0) -> None:
        self.transport = FakeTransport()
        self.events = EventEmitter()
        self.delayed: list[str] = []
        self.store = MessageStore("s1")
        self.delivery = DeliveryController(
            retry_coordinator=RetryCoordinator(),
            policy=no_wait_policy(3),
            estimated_wait_seconds=estimated_wait_seconds,
            events=self.events,
            on_response_delayed=self.delayed.append,
        )

    async def dispatch(self, content: str, signal: asyncio.Event) -> AssistantReply:
        return await self.transport.send_remote_message("remote-1", content, signal)

    def send(self, text: str):
        return self.delivery.send("s1", self.store, text, self.dispatch)

    def event_types(self) -> list[str]:
        return [e.type for e in self.events.events("s1")]


class DeliveryControllerTests(unittest.TestCase):
    def test_successful_send_appends_reply_and_releases_lock(self) -> None:
        async def scenario():
            h = _Harness()
            report = await h.send("How do I price my coffee?")
            return h, report

        h, report = asyncio.run(scenario())
        self.assertIsInstance(report.outcome, Success)
        messages = h.store.list()
        self.assertEqual([Role.USER, Role.ASSISTANT], [m.role for m in messages])
        self.assertEqual(MessageStatus.SENT, messages[0].status)
        self.assertEqual("Reply to: How do I price my coffee?", report.reply.content)
        self.assertFalse(h.delivery.has_in_flight("s1"))
        self.assertFalse(h.delivery.loading("s1").is_loading)
        self.assertIn("message.sent", h.event_types())

    def test_transient_failures_are_retried_with_the_same_message(self) -> None:
        async def scenario():
            h = _Harness()
            h.transport.send_script = [NetworkError("drop"), NetworkError("drop"), AssistantReply("Here is a plan", 9)]
            report = await h.send("Plan please")
            return h, report

        h, report = asyncio.run(scenario())
        self.assertEqual(3, report.outcome.attempts)
        self.assertEqual(2, report.outcome.retries)
        self.assertEqual(3, len(h.transport.send_calls))
        self.assertEqual(2, len(h.store))
        self.assertEqual(report.message.id, h.store.list()[0].id)
        retries = h.events.events("s1", "retry.initiated")
        self.assertEqual([1, 2], [e.payload["attempt"] for e in retries])

    def test_exhausted_retries_mark_failed_then_manual_retry_reuses_identity(self) -> None:
        async def scenario():
            h = _Harness()
            h.transport.send_script = [NetworkError("down")] * 3
            failed = await h.send("Will this work?")
            self.assertFalse(h.delivery.has_in_flight("s1"))
            retried = await h.delivery.retry("s1", h.store, failed.message.id, h.dispatch)
            return h, failed, retried

        h, failed, retried = asyncio.run(scenario())
        self.assertEqual(FinalFailure(3, 3, failed.outcome.last_error), failed.outcome)
        self.assertEqual(MessageStatus.FAILED, failed.message.status)
        self.assertEqual((3, 3), (failed.message.attempt_number, failed.message.max_retries))

        self.assertIsInstance(retried.outcome, Success)
        self.assertEqual(failed.message.id, retried.message.id)
        self.assertEqual("Will this work?", retried.message.content)
        self.assertEqual(1, retried.message.retry_count)
        self.assertIsNone(retried.message.attempt_number)
        user_messages = [m for m in h.store.list() if m.role is Role.USER]
        self.assertEqual(1, len(user_messages))
        types = h.event_types()
        self.assertIn("retry.max_reached", types)
        self.assertIn("retry.succeeded", types)

    def test_cancel_marks_message_cancelled_and_blocks_retry(self) -> None:
        async def scenario():
            h = _Harness()
            h.transport.send_script = [HANG]
            task = asyncio.create_task(h.send("Long question"))
            await wait_for_call(h.transport)
            self.assertTrue(h.delivery.loading("s1").is_loading)
            self.assertTrue(h.delivery.cancel("s1"))
            report = await asyncio.wait_for(task, timeout=1.0)
            return h, report

        h, report = asyncio.run(scenario())
        self.assertEqual(Cancelled(1), report.outcome)
        self.assertTrue(report.message.cancelled)
        self.assertEqual(MessageStatus.FAILED, report.message.status)
        self.assertIsNone(report.message.attempt_number)
        self.assertFalse(h.delivery.has_in_flight("s1"))
        self.assertFalse(h.delivery.cancel("s1"))
        with self.assertRaises(InvalidTransition):
            asyncio.run(h.delivery.retry("s1", h.store, report.message.id, h.dispatch))

    def test_second_send_while_in_flight_is_rejected_without_mutation(self) -> None:
        async def scenario():
            h = _Harness()
            h.transport.send_script = [HANG]
            task = asyncio.create_task(h.send("first"))
            await wait_for_call(h.transport)
            with self.assertRaises(SessionBusy):
                await h.send("second")
            count = len(h.store)
            h.delivery.cancel("s1")
            await task
            return count

        self.assertEqual(1, asyncio.run(scenario()))

    def test_unexpected_error_still_releases_lock(self) -> None:
        async def scenario():
            h = _Harness()
            h.transport.send_script = [ValueError("bad payload")]
            report = await h.send("hello")
            return h, report

        h, report = asyncio.run(scenario())
        self.assertEqual(1, report.outcome.attempt)
        self.assertFalse(h.delivery.has_in_flight("s1"))
        self.assertEqual(MessageStatus.FAILED, h.store.get(report.message.id).status)

    def test_slow_response_is_reported_but_not_interrupted(self) -> None:
        async def scenario():
            h = _Harness(estimated_wait_seconds=0.01)
            h.transport.send_script = [HANG]
            task = asyncio.create_task(h.send("slow"))
            await asyncio.sleep(0.05)
            delayed_while_waiting = h.delivery.is_delayed("s1")
            still_loading = h.delivery.has_in_flight("s1")
            h.delivery.cancel("s1")
            await task
            return h, delayed_while_waiting, still_loading

        h, delayed_while_waiting, still_loading = asyncio.run(scenario())
        self.assertTrue(delayed_while_waiting)
        self.assertTrue(still_loading)
        self.assertEqual(["s1"], h.delayed)
        self.assertFalse(h.delivery.is_delayed("s1"))
        self.assertIn("response.delayed", h.event_types())

    def test_wait_idle_returns_after_release(self) -> None:
        async def scenario():
            h = _Harness()
            h.transport.send_script = [HANG]
            task = asyncio.create_task(h.send("x"))
            await wait_for_call(h.transport)
            h.delivery.cancel("s1")
            await asyncio.wait_for(h.delivery.wait_idle("s1"), timeout=1.0)
            idle = not h.delivery.has_in_flight("s1")
            await task
            return idle

        self.assertTrue(asyncio.run(scenario()))


if __name__ == "__main__":
    unittest.main()
