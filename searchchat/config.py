import json
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "SEARCHCHAT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = (
    "openrouter_api_key",
    "tavily_api_key",
    "parallel_api_key",
    "exa_api_key",
    "openweather_api_key",
)

ModelClass = Literal["free", "premium", "super_premium"]
SearchBackendName = Literal["parallels", "tavily"]


class ModelSpec(BaseModel):
    model_id: str
    model_class: ModelClass = "free"
    supports_tools: bool = True
    enabled: bool = True

    model_config = {"protected_namespaces": (), "frozen": True}


def _default_catalog() -> Dict[str, ModelSpec]:
    return {
        "Gemini 2.5 Flash": ModelSpec(model_id="google/gemini-2.5-flash"),
        "Gemini 2.5 Flash Lite": ModelSpec(model_id="google/gemini-2.5-flash-lite"),
        "OpenAI 4.1 Mini": ModelSpec(model_id="openai/gpt-4.1-mini"),
        "OpenAI 5 Mini": ModelSpec(model_id="openai/gpt-5-mini"),
        "OpenAI 4.1": ModelSpec(model_id="openai/gpt-4.1", model_class="premium"),
        "OpenAI o4-mini": ModelSpec(model_id="openai/o4-mini", model_class="premium"),
        "Claude Sonnet 4": ModelSpec(model_id="anthropic/claude-sonnet-4", model_class="super_premium"),
        "Gemini 2.5 Pro": ModelSpec(model_id="google/gemini-2.5-pro", model_class="super_premium"),
    }


class AppSettings(BaseModel):
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_api_key: Optional[str] = None
    query_expansion_model: str = "openai/gpt-4.1-nano"

    tavily_api_key: Optional[str] = None
    parallel_api_key: Optional[str] = None
    exa_api_key: Optional[str] = None
    openweather_api_key: Optional[str] = None

    default_search_backend: SearchBackendName = "parallels"
    credit_timeout_s: float = 10.0
    search_timeout_s: float = 15.0
    query_expansion_timeout_s: float = 8.0
    max_tool_rounds: int = 4
    max_output_tokens: int = 4096

    guest_max_messages: int = 2
    guest_window_s: int = 24 * 60 * 60
    guest_model: str = "OpenAI 5 Mini"

    database_path: str = "searchchat.db"
    host: str = "0.0.0.0"
    port: int = 8000
    models: Dict[str, ModelSpec] = Field(default_factory=_default_catalog)

    def get_model(self, name: Optional[str]) -> Optional[ModelSpec]:
        if not name:
            return None
        return self.models.get(name)

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = "********"
        return data

    model_config = {"protected_namespaces": (), "frozen": True}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "openrouter_base_url": os.getenv("OPENROUTER_BASE_URL"),
        "openrouter_api_key": os.getenv("OPENROUTER_API_KEY"),
        "query_expansion_model": os.getenv("QUERY_EXPANSION_MODEL"),
        "tavily_api_key": os.getenv("TAVILY_API_KEY"),
        "parallel_api_key": os.getenv("PARALLELS_API_KEY") or os.getenv("PARALLEL_API_KEY"),
        "exa_api_key": os.getenv("EXA_API_KEY"),
        "openweather_api_key": os.getenv("OPENWEATHER_API_KEY"),
        "default_search_backend": os.getenv("DEFAULT_SEARCH_BACKEND"),
        "credit_timeout_s": os.getenv("CREDIT_TIMEOUT_S"),
        "search_timeout_s": os.getenv("SEARCH_TIMEOUT_S"),
        "query_expansion_timeout_s": os.getenv("QUERY_EXPANSION_TIMEOUT_S"),
        "max_tool_rounds": os.getenv("MAX_TOOL_ROUNDS"),
        "max_output_tokens": os.getenv("MAX_OUTPUT_TOKENS"),
        "guest_max_messages": os.getenv("GUEST_MAX_MESSAGES"),
        "guest_window_s": os.getenv("GUEST_WINDOW_S"),
        "guest_model": os.getenv("GUEST_MODEL"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("credit_timeout_s", "search_timeout_s", "query_expansion_timeout_s"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    for key in ("max_tool_rounds", "max_output_tokens", "guest_max_messages", "guest_window_s", "port"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    # Secrets live in the environment; an empty value in config.json must not mask them.
    for key in SECRET_FIELDS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    return AppSettings(**merged)
