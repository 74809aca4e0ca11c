import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "WORKCHAT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = ("openai_api_key", "ticketing_token")

DEFAULT_ALLOWED_TOOLS = [
    "document_search",
    "vision_analysis",
    "web_search_preview",
    "code_interpreter",
    "image_generation",
]


class ImageDefaults(BaseModel):
    size: str = "auto"
    quality: str = "auto"
    output_format: str = "png"
    background: str = "auto"
    compression: Optional[int] = None

    model_config = {"protected_namespaces": ()}


class AppSettings(BaseModel):
    # Upstream model service (OpenAI-compatible Responses API)
    openai_base_url: str = "https://api.openai.com/v1"
    openai_api_key: Optional[str] = None
    model_small: str = "gpt-5-nano"
    model_medium: str = "gpt-5-mini"
    model_large: str = "gpt-5"
    fast_path_model: str = "gpt-5-nano"
    image_models: List[str] = Field(default_factory=lambda: ["gpt-image-1", "dall-e-3", "dall-e-2"])
    image_defaults: ImageDefaults = Field(default_factory=ImageDefaults)
    image_prompt_max_chars: int = 4000

    # Turn loop bounds
    max_tool_iterations: int = 8
    stream_timeout_s: float = 300.0
    request_timeout_s: float = 120.0
    tool_timeout_s: float = 60.0
    history_window: int = 5
    default_allowed_tools: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_TOOLS))

    # Persona
    assistant_name: str = "Emmie"
    organisation: str = "EMtek"
    locale_hint: str = "Use Australian English spelling and conventions."

    # Integrations
    ticketing_url: Optional[str] = None
    ticketing_auth_header: str = "Authorization"
    ticketing_token: Optional[str] = None
    hr_email_to: Optional[str] = None

    database_path: str = "workchat.db"
    media_dir: str = "media"
    media_base_url: str = "/media"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = "********"
        return data

    def model_for_tier(self, tier: str) -> str:
        return {
            "small": self.model_small,
            "medium": self.model_medium,
            "large": self.model_large,
        }.get(tier, self.model_medium)

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "openai_base_url": os.getenv("OPENAI_BASE_URL"),
        "openai_api_key": os.getenv("OPENAI_API_KEY"),
        "model_small": os.getenv("MODEL_SMALL"),
        "model_medium": os.getenv("MODEL_MEDIUM"),
        "model_large": os.getenv("MODEL_LARGE"),
        "fast_path_model": os.getenv("FAST_PATH_MODEL"),
        "image_models": os.getenv("IMAGE_MODELS"),
        "max_tool_iterations": os.getenv("MAX_TOOL_ITERATIONS"),
        "stream_timeout_s": os.getenv("STREAM_TIMEOUT_S"),
        "request_timeout_s": os.getenv("REQUEST_TIMEOUT_S"),
        "tool_timeout_s": os.getenv("TOOL_TIMEOUT_S"),
        "assistant_name": os.getenv("ASSISTANT_NAME"),
        "organisation": os.getenv("ORGANISATION"),
        "ticketing_url": os.getenv("TICKETING_URL"),
        "ticketing_auth_header": os.getenv("TICKETING_AUTH_HEADER"),
        "ticketing_token": os.getenv("TICKETING_TOKEN"),
        "hr_email_to": os.getenv("HR_EMAIL_TO"),
        "database_path": os.getenv("DATABASE_PATH"),
        "media_dir": os.getenv("MEDIA_DIR"),
        "media_base_url": os.getenv("MEDIA_BASE_URL"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "log_level": os.getenv("LOG_LEVEL"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "image_models" in cleaned:
        cleaned["image_models"] = [m.strip() for m in cleaned["image_models"].split(",") if m.strip()]
    if "max_tool_iterations" in cleaned:
        cleaned["max_tool_iterations"] = int(cleaned["max_tool_iterations"])
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    for key in ("stream_timeout_s", "request_timeout_s", "tool_timeout_s"):
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
        except json.JSONDecodeError:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    # Secrets are rarely committed to config.json; backfill them from the environment.
    for key in SECRET_FIELDS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
