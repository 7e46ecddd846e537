from __future__ import annotations

from dataclasses import asdict, dataclass, fields

from persona_chat.memory.store import KeyValueStore

EXPORT_CONFIGURATION_KEY = "export_configuration"


@dataclass
class ExportConfiguration:
    include_sessions: bool = True
    include_characters: bool = True
    include_request_logs: bool = False
    include_generation_times: bool = True
    include_display_config: bool = True
    include_api_keys: bool = False
    include_cached_audio: bool = False


async def load_export_configuration(store: KeyValueStore) -> ExportConfiguration:
    raw = await store.get(EXPORT_CONFIGURATION_KEY, {}) or {}
    names = {f.name for f in fields(ExportConfiguration)}
    return ExportConfiguration(**{k: bool(v) for k, v in raw.items() if k in names})


async def save_export_configuration(store: KeyValueStore, config: ExportConfiguration) -> None:
    await store.set(EXPORT_CONFIGURATION_KEY, asdict(config))
