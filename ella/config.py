import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "ELLA_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_KEYS = ("google_api_key", "tavily_api_key", "nebius_api_key")


class AppSettings(BaseModel):
    # Providers
    google_api_key: Optional[str] = None
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_model: str = "gemini-2.5-flash"
    tavily_api_key: Optional[str] = None
    tavily_base_url: str = "https://api.tavily.com"
    nebius_api_key: Optional[str] = None
    image_base_url: str = "https://api.studio.nebius.com/v1"
    image_model: str = "black-forest-labs/flux-schnell"
    provider_timeout_s: float = 60.0

    # Storage / server
    database_path: str = "ella.db"
    host: str = "0.0.0.0"
    port: int = 8000

    # Identity headers set by the fronting auth provider
    auth_user_header: str = "X-User-Id"
    auth_plan_header: str = "X-User-Plan"
    pro_plan_name: str = "pro"

    # Background jobs
    job_max_attempts: int = 3
    job_retry_backoff_s: float = 1.0
    history_limit: int = 5

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_KEYS:
            if data.get(key):
                data[key] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "google_api_key": os.getenv("GOOGLE_API_KEY"),
        "gemini_base_url": os.getenv("GEMINI_BASE_URL"),
        "gemini_model": os.getenv("GEMINI_MODEL"),
        "tavily_api_key": os.getenv("TAVILY_API_KEY"),
        "tavily_base_url": os.getenv("TAVILY_BASE_URL"),
        "nebius_api_key": os.getenv("NEBIUS_API_KEY"),
        "image_base_url": os.getenv("IMAGE_BASE_URL"),
        "image_model": os.getenv("IMAGE_MODEL"),
        "provider_timeout_s": os.getenv("PROVIDER_TIMEOUT_S"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "auth_user_header": os.getenv("AUTH_USER_HEADER"),
        "auth_plan_header": os.getenv("AUTH_PLAN_HEADER"),
        "pro_plan_name": os.getenv("PRO_PLAN_NAME"),
        "job_max_attempts": os.getenv("JOB_MAX_ATTEMPTS"),
        "job_retry_backoff_s": os.getenv("JOB_RETRY_BACKOFF_S"),
        "history_limit": os.getenv("HISTORY_LIMIT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("port", "job_max_attempts", "history_limit"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in ("provider_timeout_s", "job_retry_backoff_s"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
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
        except ValueError:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    # Keys left empty in config.json still pick up the environment.
    for key in SECRET_KEYS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
