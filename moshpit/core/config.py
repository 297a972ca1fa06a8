"""Application configuration (Pydantic v2). Load from moshpit.yml with optional env override."""

import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, field_validator


DEFAULT_CONFIG_ENV_VAR = "MOSHPIT_CONFIG"
DEFAULT_CONFIG_FILENAME = "moshpit.yml"
FFMPEG_PATH_ENV_VAR = "FFMPEG_PATH"
LOG_LEVEL_ENV_VAR = "MOSHPIT_LOG_LEVEL"


class Settings(BaseModel):
    """
    Moshpit config loaded from YAML.

    When loading the default config, FFMPEG_PATH and MOSHPIT_LOG_LEVEL override the
    YAML values (but not when an explicit config_path is provided).
    """

    model_config = {"extra": "ignore"}

    ffmpeg_path: str = "ffmpeg"
    ffmpeg_log_path: str | None = None
    log_level: str = "WARNING"
    temp_dir: str | None = None
    avi_quality: float = 1.0
    mp4_quality: float = 1.0
    scene_threshold: float = 0.4

    @field_validator("avi_quality", "mp4_quality", "scene_threshold")
    @classmethod
    def unit_interval(cls, v: float) -> float:
        if v < 0 or v > 1:
            raise ValueError("must be a value between 0 and 1")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, v: Any) -> str:
        return str(v).upper()

    @field_validator("ffmpeg_log_path", "temp_dir", mode="before")
    @classmethod
    def empty_as_none(cls, v: Any) -> str | None:
        if v is not None and v != "":
            return str(v)
        return None


_config: Settings | None = None


class ConfigLoader:
    """
    Helper responsible for loading Settings from YAML and environment.

    - load_from_yaml(path, apply_env_override): read a YAML file and optionally apply env overrides.
    - load_default(): resolve the default config path from MOSHPIT_CONFIG / moshpit.yml and
      apply FFMPEG_PATH / MOSHPIT_LOG_LEVEL overrides when present.
    """

    def __init__(self, env: Mapping[str, str] | None = None) -> None:
        self._env: Mapping[str, str] = env if env is not None else os.environ

    def _apply_env(self, data: dict[str, Any]) -> dict[str, Any]:
        if self._env.get(FFMPEG_PATH_ENV_VAR):
            data["ffmpeg_path"] = self._env[FFMPEG_PATH_ENV_VAR]
        if self._env.get(LOG_LEVEL_ENV_VAR):
            data["log_level"] = self._env[LOG_LEVEL_ENV_VAR]
        return data

    def load_from_yaml(self, path: Path, apply_env_override: bool) -> Settings:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f)
        if not data:
            data = {}
        if apply_env_override:
            data = self._apply_env(data)
        return Settings.model_validate(data)

    def load_default(self) -> Settings:
        """Load the default Settings, using MOSHPIT_CONFIG or moshpit.yml when present."""
        path_str = self._env.get(DEFAULT_CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILENAME
        path = Path(path_str)
        if path.exists():
            return self.load_from_yaml(path, apply_env_override=True)
        return Settings.model_validate(self._apply_env({}))


_loader = ConfigLoader()


def get_config(config_path: str | Path | None = None) -> Settings:
    """
    Return singleton config.

    - If config_path is given, load from it (without env overrides) and update the cache.
    - Otherwise, return the cached config if available, or load via ConfigLoader.load_default().
    """
    global _config
    if config_path is not None:
        _config = _loader.load_from_yaml(Path(config_path), apply_env_override=False)
        return _config
    if _config is not None:
        return _config
    _config = _loader.load_default()
    return _config


def reset_config() -> None:
    """Clear cached config (for tests)."""
    global _config
    _config = None
