import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from bizplan_chat.app_config import _to_bool, load_json_config, parse_app_config, resolve_runtime_env
from bizplan_chat.bootstrap import build_coordinator_config


class AppConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        app = parse_app_config({})
        self.assertEqual(10, app.free_conversations_limit)
        self.assertEqual(50, app.paid_conversations_limit)
        self.assertEqual(2000, app.max_message_length)
        self.assertEqual(3, app.message_send_max_attempts)
        self.assertEqual(3, app.session_create_max_attempts)
        self.assertEqual(30.0, app.estimated_wait_seconds)
        self.assertEqual(30.0, app.request_timeout_seconds)
        self.assertTrue(app.backoff_jitter)
        self.assertEqual("INFO", app.log_level)
        self.assertIsNone(app.log_consumers)

    def test_overrides(self) -> None:
        app = parse_app_config(
            {
                "FreeConversationsLimit": "5",
                "MessageSendMaxAttempts": 4,
                "BackoffJitter": "off",
                "BackoffBaseSeconds": 0.5,
                "ApiBaseUrl": "https://planner.example.com/",
                "LogConsumers": [{"type": "console"}],
            }
        )
        self.assertEqual(5, app.free_conversations_limit)
        self.assertEqual(4, app.message_send_max_attempts)
        self.assertFalse(app.backoff_jitter)
        self.assertEqual("https://planner.example.com", app.api_base_url)
        self.assertEqual([{"type": "console"}], app.log_consumers)

    def test_attempt_limits_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            parse_app_config({"SessionCreateMaxAttempts": 0})

    def test_to_bool(self) -> None:
        self.assertTrue(_to_bool("yes"))
        self.assertFalse(_to_bool("0", default=True))
        self.assertTrue(_to_bool(None, default=True))

    def test_load_json_config_reads_working_directory(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            Path(tmp, "config.json").write_text('{"LogLevel": "DEBUG"}')
            with patch("bizplan_chat.app_config.Path.cwd", return_value=Path(tmp)):
                self.assertEqual({"LogLevel": "DEBUG"}, load_json_config())
        with tempfile.TemporaryDirectory() as tmp:
            with patch("bizplan_chat.app_config.Path.cwd", return_value=Path(tmp)):
                self.assertEqual({}, load_json_config())

    def test_runtime_env(self) -> None:
        with patch.dict(os.environ, {"BIZPLAN_API_BASE_URL": "https://x.test", "BIZPLAN_API_TOKEN": ""}):
            env = resolve_runtime_env()
        self.assertEqual("https://x.test", env.api_base_url)
        self.assertIsNone(env.api_token)

    def test_coordinator_config_follows_app_config(self) -> None:
        app = parse_app_config(
            {
                "PaidConversationsLimit": 20,
                "SessionCreateMaxAttempts": 5,
                "BackoffBaseSeconds": 2,
                "BackoffCapSeconds": 3,
                "BackoffJitter": False,
                "EstimatedWaitSeconds": 12,
            }
        )
        config = build_coordinator_config(app)
        self.assertEqual(20, config.limits.paid_limit)
        self.assertEqual(5, config.creation_policy.max_attempts)
        self.assertEqual(3, config.message_policy.max_attempts)
        self.assertEqual([2.0, 3.0], [config.message_policy.backoff(n) for n in (1, 2)])
        self.assertEqual(12.0, config.estimated_wait_seconds)


if __name__ == "__main__":
    unittest.main()
