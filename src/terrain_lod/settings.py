from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Mapping, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_TERRAIN_LOD_PREFIX = "TERRAIN_LOD_"


def _resolve_config_dir(environ: Optional[Mapping[str, str]] = None) -> Path:
    if environ is None:
        environ = os.environ
    explicit = environ.get(f"{_TERRAIN_LOD_PREFIX}CONFIG_DIR")
    if explicit:
        explicit_path = Path(explicit).expanduser()
        if not explicit_path.is_absolute():
            explicit_path = (Path.cwd() / explicit_path).resolve()
        return explicit_path

    cwd = Path.cwd()
    for candidate_root in (cwd, *cwd.parents):
        config_dir = candidate_root / "config"
        if (config_dir / "terrain-lod.yaml").is_file():
            return config_dir

    return cwd / "config"


class Settings(BaseSettings):
    """Process-level settings read from ``TERRAIN_LOD_*`` environment variables."""

    log_level: str = "INFO"
    debug: bool = False

    model_config = SettingsConfigDict(env_prefix=_TERRAIN_LOD_PREFIX, extra="ignore")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = (value or "").strip().upper()
        if normalized == "":
            return "INFO"
        if not isinstance(logging.getLevelName(normalized), int):
            raise ValueError(f"Invalid log level: {value!r}")
        return normalized


@lru_cache
def get_settings() -> Settings:
    return Settings()
