from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_API_BASE_URL = "http://localhost:3000"


@dataclass
class RuntimeEnv:
    api_base_url: str | None
    api_token: str | None


@dataclass
class AppConfig:
    free_conversations_limit: int
    paid_conversations_limit: int
    max_message_length: int
    message_send_max_attempts: int
    session_create_max_attempts: int
    backoff_base_seconds: float
    backoff_cap_seconds: float
    backoff_jitter: bool
    estimated_wait_seconds: float
    request_timeout_seconds: float
    api_base_url: str
    log_level: str
    log_consumers: list | None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _positive_int(config: dict, key: str, default: int) -> int:
    value = int(config.get(key, default))
    if value < 1:
        raise ValueError(f"{key} must be at least 1 (got {value})")
    return value


def parse_app_config(config: dict) -> AppConfig:
    return AppConfig(
        free_conversations_limit=int(config.get("FreeConversationsLimit", 10)),
        paid_conversations_limit=int(config.get("PaidConversationsLimit", 50)),
        max_message_length=_positive_int(config, "MaxMessageLength", 2000),
        message_send_max_attempts=_positive_int(config, "MessageSendMaxAttempts", 3),
        session_create_max_attempts=_positive_int(config, "SessionCreateMaxAttempts", 3),
        backoff_base_seconds=float(config.get("BackoffBaseSeconds", 1.0)),
        backoff_cap_seconds=float(config.get("BackoffCapSeconds", 30.0)),
        backoff_jitter=_to_bool(config.get("BackoffJitter", True), default=True),
        estimated_wait_seconds=float(config.get("EstimatedWaitSeconds", 30)),
        request_timeout_seconds=float(config.get("RequestTimeoutSeconds", 30)),
        api_base_url=str(config.get("ApiBaseUrl", DEFAULT_API_BASE_URL)).rstrip("/"),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env() -> RuntimeEnv:
    return RuntimeEnv(
        api_base_url=os.environ.get("BIZPLAN_API_BASE_URL") or None,
        api_token=os.environ.get("BIZPLAN_API_TOKEN") or None,
    )
