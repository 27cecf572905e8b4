import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

logger = logging.getLogger("uvicorn.error")

DEFAULT_DATA_DIR = Path.home() / ".config" / "eigenAgent"
SETTINGS_FILENAME = "settings.json"
ENV_TRUE = {"1", "true", "yes", "on"}

DEFAULT_SYSTEM_PROMPT = """You are Eigen, a helpful AI assistant.

Rules:
- Use Markdown for formatting.
- Use LaTeX ($...$ / $$...$$) for math.
- If you don't know, say "I don't know"."""


class AppearanceSettings(BaseModel):
    theme: str = "dark"
    accent_color: str = "#3b82f6"
    font_size: str = "medium"


class DefaultSettings(BaseModel):
    model_id: Optional[str] = None
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    model_config = {"protected_namespaces": ()}


class BehaviorSettings(BaseModel):
    send_on_enter: bool = True
    streaming_enabled: bool = True
    context_length: int = 8192
    max_tokens: int = 8192


class ToolSettings(BaseModel):
    enabled_tools: List[str] = Field(default_factory=list)


class AppSettings(BaseModel):
    version: int = 1
    appearance: AppearanceSettings = Field(default_factory=AppearanceSettings)
    defaults: DefaultSettings = Field(default_factory=DefaultSettings)
    behavior: BehaviorSettings = Field(default_factory=BehaviorSettings)
    tools: ToolSettings = Field(default_factory=ToolSettings)


class RuntimeConfig(BaseModel):
    """Process-level configuration, read from the environment at startup."""

    data_dir: str = str(DEFAULT_DATA_DIR)
    settings_path: Optional[str] = None
    server_binary: str = "llama-server"
    server_host: str = "127.0.0.1"
    server_port: int = 8080
    readiness_timeout_s: int = 120
    models_watch_interval_s: float = 1.0
    bundled_catalog_path: Optional[str] = None
    autostart_model: bool = True
    host: str = "127.0.0.1"
    port: int = 8000

    @property
    def server_url(self) -> str:
        return f"http://{self.server_host}:{self.server_port}"

    @property
    def models_dir(self) -> Path:
        return Path(self.data_dir) / "models"

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir) / "eigenAgent.sqlite3"

    def resolved_settings_path(self) -> Path:
        if self.settings_path:
            return Path(self.settings_path)
        return Path(self.data_dir) / SETTINGS_FILENAME


def _load_from_env() -> Dict[str, Any]:
    load_dotenv()
    env_map = {
        "data_dir": os.getenv("EIGEN_DATA_DIR"),
        "settings_path": os.getenv("EIGEN_SETTINGS_PATH"),
        "server_binary": os.getenv("EIGEN_SERVER_BINARY"),
        "server_port": os.getenv("EIGEN_SERVER_PORT"),
        "readiness_timeout_s": os.getenv("EIGEN_READINESS_TIMEOUT"),
        "models_watch_interval_s": os.getenv("EIGEN_MODELS_WATCH_INTERVAL"),
        "bundled_catalog_path": os.getenv("EIGEN_BUNDLED_CATALOG"),
        "autostart_model": os.getenv("EIGEN_AUTOSTART_MODEL"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("server_port", "readiness_timeout_s", "port"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    if "models_watch_interval_s" in cleaned:
        cleaned["models_watch_interval_s"] = float(cleaned["models_watch_interval_s"])
    if "autostart_model" in cleaned:
        cleaned["autostart_model"] = str(cleaned["autostart_model"]).lower() in ENV_TRUE
    return cleaned


def load_runtime_config(**overrides: Any) -> RuntimeConfig:
    merged = {**_load_from_env(), **{k: v for k, v in overrides.items() if v is not None}}
    return RuntimeConfig(**merged)


def default_settings() -> AppSettings:
    return AppSettings()


def load_settings(path: Path) -> AppSettings:
    """Load user settings, writing defaults when the file does not exist yet."""
    if not path.exists():
        settings = default_settings()
        save_settings(settings, path)
        logger.info("Created default settings at %s", path)
        return settings
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        settings = AppSettings(**data)
    except Exception as exc:
        logger.warning("Failed to load settings from %s, using defaults: %s", path, exc)
        return default_settings()
    logger.info("Loaded settings from %s", path)
    return settings


def save_settings(settings: AppSettings, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(settings.model_dump_json(indent=2), encoding="utf-8")
