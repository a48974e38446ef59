import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "HARVEY_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class AppSettings(BaseModel):
    # Generative model (OpenAI-compatible chat completions endpoint)
    model_base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai"
    model_id: str = "gemini-2.5-flash"
    model_api_key: Optional[str] = None
    model_temperature: float = 0.7
    model_max_tokens: int = 8192
    model_timeout_s: float = 60.0

    # Downstream pricing services
    pricing_analysis_api_base_url: str = "http://127.0.0.1:8080"
    transformation_api_base_url: Optional[str] = None
    analysis_timeout_s: float = 30.0
    transformation_timeout_s: float = 60.0

    # Storage
    database_path: str = "harvey_data.db"
    upload_dir: str = "uploads"
    upload_max_mb: int = 10
    upload_max_files: int = 5
    allowed_extensions: List[str] = Field(default_factory=lambda: [".yaml", ".yml"])

    # Session lifecycle
    session_inactivity_hours: float = 24.0
    reaper_interval_s: float = 3600.0
    reaper_enabled: bool = True

    # Context policies
    auto_detect_pricing_uploads: bool = True
    auto_adopt_transformation_context: bool = True

    host: str = "0.0.0.0"
    port: int = 3001

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("model_api_key"):
            data["model_api_key"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "model_base_url": os.getenv("MODEL_BASE_URL"),
        "model_id": os.getenv("MODEL_ID"),
        "model_api_key": os.getenv("MODEL_API_KEY") or os.getenv("GEMINI_API_KEY"),
        "model_temperature": os.getenv("MODEL_TEMPERATURE"),
        "model_max_tokens": os.getenv("MODEL_MAX_TOKENS"),
        "model_timeout_s": os.getenv("MODEL_TIMEOUT_S"),
        "pricing_analysis_api_base_url": os.getenv("PRICING_ANALYSIS_API_BASE_URL"),
        "transformation_api_base_url": os.getenv("TRANSFORMATION_API_BASE_URL"),
        "analysis_timeout_s": os.getenv("ANALYSIS_TIMEOUT_S"),
        "transformation_timeout_s": os.getenv("TRANSFORMATION_TIMEOUT_S"),
        "database_path": os.getenv("DATABASE_PATH"),
        "upload_dir": os.getenv("UPLOAD_DIR"),
        "upload_max_mb": os.getenv("UPLOAD_MAX_MB"),
        "upload_max_files": os.getenv("UPLOAD_MAX_FILES"),
        "session_inactivity_hours": os.getenv("SESSION_INACTIVITY_HOURS"),
        "reaper_interval_s": os.getenv("REAPER_INTERVAL_S"),
        "auto_detect_pricing_uploads": os.getenv("AUTO_DETECT_PRICING_UPLOADS"),
        "auto_adopt_transformation_context": os.getenv("AUTO_ADOPT_TRANSFORMATION_CONTEXT"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("model_max_tokens", "upload_max_mb", "upload_max_files", "port"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in (
        "model_temperature",
        "model_timeout_s",
        "analysis_timeout_s",
        "transformation_timeout_s",
        "session_inactivity_hours",
        "reaper_interval_s",
    ):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    for key in ("auto_detect_pricing_uploads", "auto_adopt_transformation_context"):
        if key in cleaned:
            cleaned[key] = str(cleaned[key]).lower() in ENV_OVERRIDE_TRUE
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
    # Secrets are usually kept out of config.json.
    if not merged.get("model_api_key") and env_data.get("model_api_key"):
        merged["model_api_key"] = env_data["model_api_key"]
    return AppSettings(**merged)

