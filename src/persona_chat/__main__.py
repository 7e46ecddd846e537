import asyncio

from dotenv import load_dotenv
from loguru import logger

from persona_chat.app_config import load_json_config, parse_app_config, resolve_runtime_env
from persona_chat.bootstrap import bootstrap_runtime, shutdown_runtime


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    env = resolve_runtime_env(app.provider_name)
    runtime = await bootstrap_runtime(app, env)
    client = runtime.client

    session = runtime.sessions.active_session
    print("persona-chat (type 'exit' to quit, '/help' for commands)")
    print(f"Provider: {app.provider_name} | Model: {app.model}")
    print(f"API keys: {len(runtime.credentials)}")
    if session is not None:
        print(f"Chat: {session.title} ({len(session.messages)} messages)")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    try:
        while True:
            try:
                # Read off the loop so background auto-converse turns keep streaming.
                user_input = await asyncio.to_thread(input, client._USER_PROMPT)
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()

            if trimmed in ("exit", "quit"):
                break

            if not trimmed:
                continue

            try:
                await client.submit(trimmed)
                print()
            except Exception as ex:
                logger.error(f"Unhandled error: {ex}")
    finally:
        await shutdown_runtime(runtime)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
