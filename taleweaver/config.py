"""Application settings (LLM connection, storage location, tunables).

Resolution order, later wins:
  1. Settings defaults
  2. {data_dir}/config.json
  3. environment variables (a .env file is loaded by the launcher and app)

update_settings() applies a partial update and persists it to config.json.
The data directory itself is never written to config.json.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from taleweaver.llm import ProviderFormat
from taleweaver.storage import DEFAULT_MAX_SLOTS, DEFAULT_SAVES_KEY

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"

_ENV_FIELDS: dict[str, str] = {
    "LLM_PROVIDER_URL": "provider_url",
    "LLM_API_KEY": "api_key",
    "LLM_PROVIDER_FORMAT": "provider_format",
    "LLM_MODEL": "model",
    "LLM_TIMEOUT": "timeout",
}


class Settings(BaseModel):
    data_dir: Path = DEFAULT_DATA_DIR
    provider_url: str = "http://localhost:5001"
    api_key: str = ""
    provider_format: ProviderFormat = "koboldcpp"
    model: str = ""
    timeout: float = 120.0
    history_window: int = 250
    max_save_slots: int = DEFAULT_MAX_SLOTS
    tab_prefetch_delay: float = 1.5
    save_notice_seconds: float = 3.0
    saves_key: str = DEFAULT_SAVES_KEY


def _config_path(data_dir: Path) -> Path:
    return data_dir / "config.json"


def get_settings(data_dir: Path | None = None) -> Settings:
    resolved = data_dir or Path(os.getenv("TALEWEAVER_DATA_DIR", str(DEFAULT_DATA_DIR)))
    fields: dict[str, Any] = {}

    path = _config_path(resolved)
    if path.is_file():
        stored = json.loads(path.read_text())
        for key, value in stored.items():
            if key in Settings.model_fields and key != "data_dir":
                fields[key] = value

    for env_name, field in _ENV_FIELDS.items():
        value = os.getenv(env_name)
        if value:
            fields[field] = value

    fields["data_dir"] = resolved
    return Settings.model_validate(fields)


def update_settings(settings: Settings, fields: dict[str, Any]) -> Settings:
    """Merge known fields into `settings` and persist. Returns the new Settings."""
    merged = settings.model_dump()
    for key, value in fields.items():
        if key in Settings.model_fields and key != "data_dir":
            merged[key] = value
    updated = Settings.model_validate(merged)

    settings.data_dir.mkdir(parents=True, exist_ok=True)
    stored = updated.model_dump(mode="json", exclude={"data_dir"})
    _config_path(settings.data_dir).write_text(json.dumps(stored, indent=2))
    return updated
