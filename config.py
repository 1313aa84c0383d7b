"""Configuration load/save for tarely."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

CONFIG_PATH = Path(__file__).resolve().parent / "config.json"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


class AppConfig(BaseModel):
    """Persisted application configuration."""

    web_ui_port: int = Field(default=8081, ge=1, le=65535, description="Port for the web API")
    database_path: str = Field(default="", description="Path to SQLite database file; empty = project dir / tarely.db")
    api_key: str = Field(default="", description="When set, API requests must send it in the X-API-Key header")
    debug: bool = Field(default=False, description="Log every API request and response status")
    log_level: str = Field(default="INFO", description="Root log level for run.py")

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = (value or "INFO").strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {list(LOG_LEVELS)}")
        return level

    def to_save_dict(self) -> dict[str, Any]:
        return self.model_dump()

    @classmethod
    def load(cls) -> "AppConfig":
        if not CONFIG_PATH.exists():
            return cls()
        raw = json.loads(CONFIG_PATH.read_text())
        return cls.model_validate(raw)

    def save(self) -> None:
        CONFIG_PATH.write_text(json.dumps(self.to_save_dict(), indent=2))


def load() -> AppConfig:
    """Load config from disk. Convenience alias for AppConfig.load()."""
    return AppConfig.load()
