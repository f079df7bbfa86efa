# config.py
# Explicitly constructed settings. Nothing here is global: load_settings()
# returns a value that the caller hands to whatever builds a model gateway.
#
# File layout (config/config.toml):
#
#   [llm]
#   model = "gpt-4o"
#   base_url = "https://api.openai.com/v1"
#   api_key = ""
#   max_tokens = 4096
#   temperature = 0.0
#
#   [llm.vision]          # named profile, overrides only what it sets
#   model = "gpt-4o"
#
#   [workspace]
#   root = "workspace"

import os
import tomllib
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

DEFAULT_PROFILE = "default"
LLM_KEYS = ("model", "base_url", "api_key", "max_tokens", "temperature")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(Exception):
    """Raised when no usable configuration can be loaded."""


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class LLMSettings(BaseModel):
    model: str = Field(..., min_length=1)
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    max_tokens: int = Field(default=4096, gt=0)
    temperature: float = Field(default=0.0, ge=0.0)


class Settings(BaseModel):
    llm: dict[str, LLMSettings]
    workspace_root: Path = Path("workspace")

    def llm_for(self, profile: str = DEFAULT_PROFILE) -> LLMSettings:
        """Settings for a named profile. Unknown names are an error."""
        if profile not in self.llm:
            raise ConfigError(f"Unknown llm profile: {profile}")
        return self.llm[profile]

    @property
    def plans_dir(self) -> Path:
        return self.workspace_root / "plans"


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def find_config_file(base_dir: str | os.PathLike | None = None) -> Path:
    base = Path(base_dir) if base_dir is not None else Path.cwd()
    for name in ("config.toml", "config.example.toml"):
        candidate = base / "config" / name
        if candidate.is_file():
            return candidate
    raise ConfigError(f"No configuration file found in {base / 'config'}")


def build_settings(raw: dict[str, Any]) -> Settings:
    """Turn a parsed TOML document into Settings, expanding [llm.*] profiles."""
    llm_raw = raw.get("llm")
    if not isinstance(llm_raw, dict):
        raise ConfigError("llm configuration not found")

    base = {k: llm_raw[k] for k in LLM_KEYS if k in llm_raw}
    if not base.get("api_key"):
        base["api_key"] = os.getenv("OPENAI_API_KEY", "")
    if os.getenv("TASKPILOT_MODEL"):
        base["model"] = os.environ["TASKPILOT_MODEL"]

    profiles: dict[str, dict[str, Any]] = {DEFAULT_PROFILE: base}
    for name, value in llm_raw.items():
        if name in LLM_KEYS or not isinstance(value, dict):
            continue
        overrides = {k: v for k, v in value.items() if k in LLM_KEYS and v not in ("", None)}
        profiles[name] = {**base, **overrides}

    workspace = raw.get("workspace") or {}
    try:
        return Settings(
            llm={name: LLMSettings(**values) for name, values in profiles.items()},
            workspace_root=Path(workspace.get("root", "workspace")),
        )
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def load_settings(path: str | os.PathLike | None = None) -> Settings:
    """Read .env, then the TOML file at `path` (or the default location)."""
    load_dotenv()
    config_path = Path(path) if path is not None else find_config_file()
    try:
        with open(config_path, "rb") as fh:
            raw = tomllib.load(fh)
    except FileNotFoundError as exc:
        raise ConfigError(f"Configuration file not found: {config_path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Failed to parse {config_path}: {exc}") from exc
    return build_settings(raw)
