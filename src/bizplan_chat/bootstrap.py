from __future__ import annotations

from dataclasses import dataclass

import httpx

from bizplan_chat.app_config import AppConfig, RuntimeEnv
from bizplan_chat.chat.events import EventEmitter
from bizplan_chat.coordinator import ChatCoordinator
from bizplan_chat.coordinator_config import CoordinatorConfig
from bizplan_chat.logging_config import setup_logging
from bizplan_chat.retry import RetryPolicy, exponential_backoff
from bizplan_chat.transports.http_transport import HttpChatTransport, HttpUsageReader, create_http_client
from bizplan_chat.usage_gate import UsageLimits


@dataclass
class AppRuntime:
    coordinator: ChatCoordinator
    transport: HttpChatTransport
    usage_reader: HttpUsageReader
    http_client: httpx.AsyncClient
    api_base_url: str
    log_descriptions: list[str]

    async def close(self) -> None:
        await self.http_client.aclose()


def build_coordinator_config(app: AppConfig) -> CoordinatorConfig:
    backoff = exponential_backoff(
        app.backoff_base_seconds,
        app.backoff_cap_seconds,
        jitter=app.backoff_jitter,
    )
    return CoordinatorConfig(
        limits=UsageLimits(
            free_limit=app.free_conversations_limit,
            paid_limit=app.paid_conversations_limit,
        ),
        max_message_length=app.max_message_length,
        message_policy=RetryPolicy(max_attempts=app.message_send_max_attempts, backoff=backoff),
        creation_policy=RetryPolicy(max_attempts=app.session_create_max_attempts, backoff=backoff),
        estimated_wait_seconds=app.estimated_wait_seconds,
    )


async def bootstrap_runtime(app: AppConfig, env: RuntimeEnv) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    api_base_url = env.api_base_url or app.api_base_url
    client = create_http_client(api_base_url, env.api_token, timeout=app.request_timeout_seconds)
    transport = HttpChatTransport(client)
    usage_reader = HttpUsageReader(client)

    coordinator = ChatCoordinator(
        transport=transport,
        usage_reader=usage_reader,
        config=build_coordinator_config(app),
        events=EventEmitter(),
    )

    return AppRuntime(
        coordinator=coordinator,
        transport=transport,
        usage_reader=usage_reader,
        http_client=client,
        api_base_url=api_base_url,
        log_descriptions=log_descriptions,
    )
