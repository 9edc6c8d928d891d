import asyncio
import sys

from dotenv import load_dotenv
from loguru import logger

from bizplan_chat.app_config import load_json_config, parse_app_config, resolve_runtime_env
from bizplan_chat.bootstrap import bootstrap_runtime
from bizplan_chat.chat.models import SessionContext
from bizplan_chat.console import ChatConsole
from bizplan_chat.errors import TransportFailure, ValidationError


async def _ask(prompt: str) -> str:
    return (await asyncio.to_thread(input, prompt)).strip()


async def _ask_context() -> SessionContext:
    print("Tell us about your business.")
    while True:
        context = SessionContext(
            business_type=await _ask("  business type> "),
            target_market=await _ask("  target market> "),
            challenge=await _ask("  main challenge> "),
            additional_context=await _ask("  anything else (optional)> ") or None,
        )
        try:
            context.validate()
            return context
        except ValidationError as ex:
            for problem in ex.problems:
                print(f"  - {problem}")


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    env = resolve_runtime_env()
    runtime = await bootstrap_runtime(app, env)
    coordinator = runtime.coordinator

    print("bizplan-chat (type 'exit' to quit, '/help' for commands)")
    print(f"API: {runtime.api_base_url}")
    if not env.api_token:
        print("Warning: BIZPLAN_API_TOKEN is not set; requests will be anonymous.")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    console = ChatConsole(coordinator, refresh_usage=runtime.usage_reader.refresh)

    try:
        try:
            await runtime.usage_reader.refresh()
        except TransportFailure as ex:
            logger.warning(f"Could not load usage: {ex}")

        try:
            saved = await coordinator.load_sessions()
            if saved:
                print(f"{len(saved)} saved session(s); use /session list and /session select to resume one.")
        except TransportFailure as ex:
            logger.warning(f"Could not load saved sessions: {ex}")

        try:
            context = await _ask_context()
        except (EOFError, KeyboardInterrupt):
            return
        await coordinator.create_session(context)
        print()

        while True:
            try:
                user_input = await asyncio.to_thread(input, "you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()

            if trimmed in ("exit", "quit"):
                break

            if not trimmed:
                continue

            try:
                await console.handle_line(trimmed)
            except Exception as ex:
                logger.error(f"Unhandled error: {ex}")
    finally:
        await console.close()
        await runtime.close()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()
