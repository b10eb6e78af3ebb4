import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "GATEWAY_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = ("gemini_api_key", "openai_api_key", "anthropic_api_key", "tavily_api_key")
MASK = "********"

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant. Answer clearly and concisely, and say so when you are not sure."
)


class ProviderDefaults(BaseModel):
    """Cheap models used for housekeeping calls such as conversation titles."""

    gemini_title_model: str = "gemini-2.0-flash"
    openai_title_model: str = "gpt-4.1-mini"
    anthropic_title_model: str = "claude-3-haiku-20240307"
    gemini_default_model: str = "gemini-2.0-flash"
    openai_default_model: str = "gpt-4o"
    anthropic_default_model: str = "claude-3-5-sonnet-20241022"

    model_config = {"protected_namespaces": ()}


class AppSettings(BaseModel):
    gemini_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    openai_base_url: str = "https://api.openai.com/v1"
    anthropic_base_url: str = "https://api.anthropic.com/v1"
    anthropic_version: str = "2023-06-01"
    provider_models: ProviderDefaults = Field(default_factory=ProviderDefaults)

    primary_provider: str = "gemini"
    fallback_provider: str = "gemini"
    default_system_prompt: str = DEFAULT_SYSTEM_PROMPT

    tavily_api_key: Optional[str] = None
    search_max_results: int = 5

    request_timeout_s: float = 60.0
    stream_timeout_s: float = 60.0
    catalog_grace_period_hours: float = 72.0
    list_models_max_attempts: int = 3
    list_models_retry_delay_s: float = 5.0
    sync_models_on_startup: bool = False

    database_path: str = "gateway_data.db"
    upload_dir: str = "uploads"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = MASK
        return data

    def configured_providers(self) -> Dict[str, bool]:
        return {
            "gemini": bool(self.gemini_api_key),
            "openai": bool(self.openai_api_key),
            "anthropic": bool(self.anthropic_api_key),
        }

    model_config = {"protected_namespaces": ()}


def _as_bool(value: Any) -> bool:
    return str(value).strip().lower() in ENV_OVERRIDE_TRUE


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "gemini_api_key": os.getenv("GEMINI_API_KEY"),
        "openai_api_key": os.getenv("OPENAI_API_KEY"),
        "anthropic_api_key": os.getenv("ANTHROPIC_API_KEY"),
        "gemini_base_url": os.getenv("GEMINI_BASE_URL"),
        "openai_base_url": os.getenv("OPENAI_BASE_URL"),
        "anthropic_base_url": os.getenv("ANTHROPIC_BASE_URL"),
        "primary_provider": os.getenv("PRIMARY_PROVIDER"),
        "fallback_provider": os.getenv("FALLBACK_PROVIDER"),
        "default_system_prompt": os.getenv("DEFAULT_SYSTEM_PROMPT"),
        "tavily_api_key": os.getenv("TAVILY_API_KEY"),
        "search_max_results": os.getenv("SEARCH_MAX_RESULTS"),
        "request_timeout_s": os.getenv("REQUEST_TIMEOUT_S"),
        "stream_timeout_s": os.getenv("STREAM_TIMEOUT_S"),
        "catalog_grace_period_hours": os.getenv("CATALOG_GRACE_PERIOD_HOURS"),
        "list_models_max_attempts": os.getenv("LIST_MODELS_MAX_ATTEMPTS"),
        "list_models_retry_delay_s": os.getenv("LIST_MODELS_RETRY_DELAY_S"),
        "sync_models_on_startup": os.getenv("SYNC_MODELS_ON_STARTUP"),
        "database_path": os.getenv("DATABASE_PATH"),
        "upload_dir": os.getenv("UPLOAD_DIR"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "log_level": os.getenv("LOG_LEVEL"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("search_max_results", "list_models_max_attempts", "port"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in ("request_timeout_s", "stream_timeout_s", "catalog_grace_period_hours", "list_models_retry_delay_s"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    if "sync_models_on_startup" in cleaned:
        cleaned["sync_models_on_startup"] = _as_bool(cleaned["sync_models_on_startup"])
    return cleaned


def _env_overrides_config() -> bool:
    return _as_bool(os.getenv(ENV_OVERRIDE_KEY, ""))


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except (OSError, ValueError):
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    # Keys left blank in config.json still pick up the environment.
    for key in SECRET_FIELDS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
