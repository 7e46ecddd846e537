from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from persona_chat.memory.models import (
    DEFAULT_MODEL_ID,
    DEFAULT_SYSTEM_INSTRUCTION,
    DEFAULT_USER_PERSONA_INSTRUCTION,
    INITIAL_MESSAGES_COUNT,
    ChatSettings,
)

_PROVIDER_ENV_VARS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


@dataclass
class RuntimeEnv:
    provider_api_key: str
    provider_env_var: str


@dataclass
class AppConfig:
    provider_name: str
    model: str
    max_tokens: int
    temperature: float
    top_p: float
    top_k: int
    system_instruction: str
    user_persona_instruction: str
    context_window_messages: int | None
    max_initial_messages_displayed: int
    debug_api_requests: bool
    store_path: str
    persist_flush_interval_seconds: float
    auto_turn_delay_seconds: float
    auto_error_retry_seconds: float
    toast_duration_seconds: float
    log_level: str
    log_consumers: list | None

    def default_settings(self) -> ChatSettings:
        return ChatSettings(
            model=self.model,
            temperature=self.temperature,
            top_p=self.top_p,
            top_k=self.top_k,
            max_tokens=self.max_tokens,
            system_instruction=self.system_instruction,
            user_persona_instruction=self.user_persona_instruction,
            context_window_messages=self.context_window_messages,
            max_initial_messages_displayed=self.max_initial_messages_displayed,
            debug_api_requests=self.debug_api_requests,
        )


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


def _optional_int(value: object) -> int | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    parsed = int(value)
    return parsed if parsed > 0 else None


def parse_app_config(config: dict) -> AppConfig:
    return AppConfig(
        provider_name=config.get("Provider", "anthropic").strip().lower(),
        model=config.get("Model", DEFAULT_MODEL_ID),
        max_tokens=int(config.get("MaxTokens", 8192)),
        temperature=float(config.get("Temperature", 0.7)),
        top_p=float(config.get("TopP", 0.95)),
        top_k=int(config.get("TopK", 64)),
        system_instruction=config.get("SystemInstruction", DEFAULT_SYSTEM_INSTRUCTION),
        user_persona_instruction=config.get("UserPersonaInstruction", DEFAULT_USER_PERSONA_INSTRUCTION),
        context_window_messages=_optional_int(config.get("ContextWindowMessages")),
        max_initial_messages_displayed=int(config.get("MaxInitialMessagesDisplayed", INITIAL_MESSAGES_COUNT)),
        debug_api_requests=_to_bool(config.get("DebugApiRequests", False), default=False),
        store_path=str(config.get("StorePath", ".persona_chat/store.db")),
        persist_flush_interval_seconds=float(config.get("PersistFlushIntervalSeconds", 0.5)),
        auto_turn_delay_seconds=float(config.get("AutoTurnDelaySeconds", 1.0)),
        auto_error_retry_seconds=float(config.get("AutoErrorRetrySeconds", 30.0)),
        toast_duration_seconds=float(config.get("ToastDurationSeconds", 3.0)),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env(provider_name: str) -> RuntimeEnv:
    provider_env_var = _PROVIDER_ENV_VARS.get(provider_name, "ANTHROPIC_API_KEY")
    return RuntimeEnv(
        provider_api_key=os.environ.get(provider_env_var, ""),
        provider_env_var=provider_env_var,
    )
