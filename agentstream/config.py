import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "AGENTSTREAM_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
MASK = "********"


class EndpointConfig(BaseModel):
    base_url: str
    api_key: str = ""
    # Provider-side model name; empty means "send the public model id as-is".
    model_id: str = ""

    model_config = {"protected_namespaces": ()}


class AppSettings(BaseModel):
    gateway_endpoint: EndpointConfig = Field(
        default_factory=lambda: EndpointConfig(base_url="https://ai-gateway.vercel.sh/v1")
    )
    fallback_endpoint: EndpointConfig = Field(
        default_factory=lambda: EndpointConfig(base_url="https://api.x.ai/v1", model_id="grok-code-fast-1")
    )
    fallback_model_id: str = "xai/grok-code-fast-1"
    default_model: str = "anthropic/claude-sonnet-4.5"
    temperature: float = 0.5
    max_history_messages: int = 40
    database_path: str = "agentstream.db"
    host: str = "0.0.0.0"
    port: int = 8000

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in ("gateway_endpoint", "fallback_endpoint"):
            endpoint = data.get(key) or {}
            if endpoint.get("api_key"):
                endpoint["api_key"] = MASK
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "gateway_base_url": os.getenv("GATEWAY_BASE_URL"),
        "gateway_api_key": os.getenv("GATEWAY_API_KEY"),
        "fallback_base_url": os.getenv("FALLBACK_BASE_URL"),
        "fallback_api_key": os.getenv("FALLBACK_API_KEY"),
        "fallback_provider_model": os.getenv("FALLBACK_PROVIDER_MODEL"),
        "fallback_model_id": os.getenv("FALLBACK_MODEL_ID"),
        "default_model": os.getenv("DEFAULT_MODEL"),
        "temperature": os.getenv("TEMPERATURE"),
        "max_history_messages": os.getenv("MAX_HISTORY_MESSAGES"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    if "max_history_messages" in cleaned:
        cleaned["max_history_messages"] = int(cleaned["max_history_messages"])
    if "temperature" in cleaned:
        cleaned["temperature"] = float(cleaned["temperature"])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _fold_endpoint_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    """Move flat GATEWAY_*/FALLBACK_* values into their endpoint objects."""
    folded = dict(data)
    gateway = {
        "base_url": folded.pop("gateway_base_url", None),
        "api_key": folded.pop("gateway_api_key", None),
    }
    fallback = {
        "base_url": folded.pop("fallback_base_url", None),
        "api_key": folded.pop("fallback_api_key", None),
        "model_id": folded.pop("fallback_provider_model", None),
    }
    for key, flat in (("gateway_endpoint", gateway), ("fallback_endpoint", fallback)):
        flat = {k: v for k, v in flat.items() if v}
        if not flat:
            continue
        endpoint = folded.get(key)
        if not isinstance(endpoint, dict):
            endpoint = AppSettings().model_dump()[key]
        folded[key] = {**endpoint, **flat}
    return folded


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _fold_endpoint_fields(_load_from_env())
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
    # Keys are never written to config.json by the UI, so fill them from env when absent.
    for key in ("gateway_endpoint", "fallback_endpoint"):
        file_endpoint = merged.get(key)
        env_endpoint = env_data.get(key)
        if isinstance(file_endpoint, dict) and isinstance(env_endpoint, dict):
            if not file_endpoint.get("api_key") and env_endpoint.get("api_key"):
                merged[key] = {**file_endpoint, "api_key": env_endpoint["api_key"]}
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
