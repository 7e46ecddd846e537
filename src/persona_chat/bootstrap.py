from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from persona_chat.app_config import AppConfig, RuntimeEnv
from persona_chat.chat_client import ChatClient
from persona_chat.client_config import ChatClientConfig
from persona_chat.credentials import CredentialRotator
from persona_chat.display_window import DisplayWindowManager
from persona_chat.logging_config import setup_logging
from persona_chat.memory import AsyncWriteSink, SessionStore, SqliteKeyValueStore
from persona_chat.memory.preferences import ExportConfiguration, load_export_configuration
from persona_chat.notifications import ConsoleToastChannel, ToastChannel
from persona_chat.provider import GenerationProvider, create_provider


@dataclass
class AppRuntime:
    client: ChatClient
    sessions: SessionStore
    credentials: CredentialRotator
    store: SqliteKeyValueStore
    write_sink: AsyncWriteSink
    export_configuration: ExportConfiguration
    log_descriptions: list[str]


async def bootstrap_runtime(
    app: AppConfig,
    env: RuntimeEnv,
    *,
    provider: GenerationProvider | None = None,
    toasts: ToastChannel | None = None,
) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    if toasts is None:
        toasts = ConsoleToastChannel(
            line_prefix=ChatClient._LINE_PREFIX,
            default_duration_seconds=app.toast_duration_seconds,
        )

    store_path = app.store_path
    if store_path != ":memory:":
        db_path = Path(store_path)
        if not db_path.is_absolute():
            db_path = Path.cwd() / db_path
        store_path = str(db_path)
    store = SqliteKeyValueStore(store_path)

    def on_persist_error(key: str, ex: Exception) -> None:
        toasts.show(f"Could not save {key}: {ex}", "error")

    write_sink = AsyncWriteSink(
        store,
        on_error=on_persist_error,
        flush_interval_seconds=app.persist_flush_interval_seconds,
    )
    await write_sink.start()

    sessions = SessionStore(write_sink, default_settings=app.default_settings())
    await sessions.load(store)

    credentials = CredentialRotator(sink=write_sink)
    await credentials.load(store)
    if len(credentials) == 0 and env.provider_api_key:
        credentials.add(env.provider_env_var, env.provider_api_key)
        logger.info(f"Seeded API key list from {env.provider_env_var}")
    if len(credentials) == 0:
        logger.warning(f"No API keys configured; set {env.provider_env_var} or use /keys add")

    display = DisplayWindowManager(sink=write_sink, default_count=app.max_initial_messages_displayed)
    await display.load(store)

    if sessions.active_session_id is None:
        sessions.create_session()

    client = ChatClient(
        ChatClientConfig(
            provider=provider or create_provider(app.provider_name),
            sessions=sessions,
            credentials=credentials,
            display=display,
            toasts=toasts,
            auto_turn_delay_seconds=app.auto_turn_delay_seconds,
            auto_error_retry_seconds=app.auto_error_retry_seconds,
        )
    )

    return AppRuntime(
        client=client,
        sessions=sessions,
        credentials=credentials,
        store=store,
        write_sink=write_sink,
        export_configuration=await load_export_configuration(store),
        log_descriptions=log_descriptions,
    )


async def shutdown_runtime(runtime: AppRuntime) -> None:
    await runtime.client.shutdown()
    await runtime.write_sink.close()
    runtime.store.close()
