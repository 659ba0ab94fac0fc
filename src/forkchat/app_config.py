from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from forkchat.streaming.client import ProviderConfig

API_KEY_ENV_VARS = ("FORKCHAT_API_KEY", "OPENAI_API_KEY")


@dataclass
class AppConfig:
    host: str
    model: str
    temperature: float
    idle_timeout_seconds: float
    connect_timeout_seconds: float
    retry_attempts: int
    db_path: str
    user_id: str
    system_prompt: str
    chat_id: str | None
    require_usage: bool
    log_level: str
    log_consumers: list | None


def load_json_config(path: Path | None = None) -> dict:
    config_path = path or Path.cwd() / "config.json"
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


def parse_app_config(config: dict) -> AppConfig:
    return AppConfig(
        host=str(config.get("Host", "https://api.openai.com")).rstrip("/"),
        model=config.get("Model", "gpt-4o-mini"),
        temperature=float(config.get("Temperature", 1.0)),
        idle_timeout_seconds=float(config.get("IdleTimeoutSeconds", 60)),
        connect_timeout_seconds=float(config.get("ConnectTimeoutSeconds", 10)),
        retry_attempts=int(config.get("RetryAttempts", 5)),
        db_path=str(config.get("DbPath", ".forkchat/chats.db")),
        user_id=str(config.get("UserId", "local")).strip() or "local",
        system_prompt=str(config.get("SystemPrompt", "You are a helpful assistant.")),
        chat_id=str(config.get("ChatId", "")).strip() or None,
        require_usage=_to_bool(config.get("RequireUsage", False), default=False),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_api_key() -> tuple[str, str]:
    """Return (api_key, env_var_name); the key is empty when none is set."""
    for name in API_KEY_ENV_VARS:
        value = os.environ.get(name, "")
        if value:
            return value, name
    return "", API_KEY_ENV_VARS[0]


def build_provider_config(app: AppConfig, api_key: str) -> ProviderConfig:
    return ProviderConfig(
        host=app.host,
        api_key=api_key,
        model=app.model,
        temperature=app.temperature,
        idle_timeout_seconds=app.idle_timeout_seconds,
        connect_timeout_seconds=app.connect_timeout_seconds,
        retry_attempts=app.retry_attempts,
    )
