import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "TOOLFLOW_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class DedupConfig(BaseModel):
    exact_window_s: float = 10.0
    hash_window_s: float = 60.0
    recent_cache_window_s: float = 10.0
    recent_cache_max_entries: int = 100


class PollingConfig(BaseModel):
    interval_s: float = 2.0
    lookback_s: float = 60.0
    page_limit: int = 500


class ProgressConfig(BaseModel):
    start_delay_s: float = 0.1
    success_retention_s: float = 10.0
    failure_retention_s: float = 15.0
    min_executing_s: float = 0.5
    synthesized_start_s: float = 0.3
    event_gap_s: float = 0.05
    seen_grace_s: float = 60.0


class ExecutorConfig(BaseModel):
    parallel_groups: bool = False
    detect_dependencies: bool = True


class AppSettings(BaseModel):
    database_path: str = "toolflow.db"
    tool_gateway_url: str = "http://127.0.0.1:8787/execute"
    tool_gateway_api_key: Optional[str] = None
    tool_gateway_timeout_s: float = 60.0
    tool_gateway_max_retries: int = 1
    host: str = "0.0.0.0"
    port: int = 8000
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    progress: ProgressConfig = Field(default_factory=ProgressConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("tool_gateway_api_key"):
            data["tool_gateway_api_key"] = "********"
        return data


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "database_path": os.getenv("DATABASE_PATH"),
        "tool_gateway_url": os.getenv("TOOL_GATEWAY_URL"),
        "tool_gateway_api_key": os.getenv("TOOL_GATEWAY_API_KEY"),
        "tool_gateway_timeout_s": os.getenv("TOOL_GATEWAY_TIMEOUT_S"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "poll_interval_s": os.getenv("POLL_INTERVAL_S"),
        "parallel_groups": os.getenv("PARALLEL_GROUPS"),
    }
    cleaned: Dict[str, Any] = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "tool_gateway_timeout_s" in cleaned:
        cleaned["tool_gateway_timeout_s"] = float(cleaned["tool_gateway_timeout_s"])
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    # Nested sections are addressed by flat env keys.
    if "poll_interval_s" in cleaned:
        cleaned["polling"] = {"interval_s": float(cleaned.pop("poll_interval_s"))}
    if "parallel_groups" in cleaned:
        flag = str(cleaned.pop("parallel_groups")).strip().lower() in ENV_OVERRIDE_TRUE
        cleaned["executor"] = {"parallel_groups": flag}
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _merge_section(low: Any, high: Any) -> Dict[str, Any]:
    merged = dict(low) if isinstance(low, dict) else {}
    if isinstance(high, dict):
        merged.update(high)
    return merged


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
        low, high = file_data, env_data
    else:
        low, high = env_data, file_data
    merged = {**low, **high}
    for section in ("dedup", "polling", "progress", "executor"):
        if section in low or section in high:
            merged[section] = _merge_section(low.get(section), high.get(section))
    if not merged.get("tool_gateway_api_key") and env_data.get("tool_gateway_api_key"):
        merged["tool_gateway_api_key"] = env_data["tool_gateway_api_key"]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
