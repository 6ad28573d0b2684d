from __future__ import annotations

import ipaddress
import re
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..capture.specs import (
    BiasSpec,
    DarkSpec,
    parse_bias_set,
    parse_bias_sets,
    parse_dark_set,
    parse_dark_sets,
    parse_start_time,
)

_HOSTNAME_LABEL_RE = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")


class Settings(BaseSettings):
    """Runtime configuration for a calibration frame capture run."""

    model_config = SettingsConfigDict(env_prefix="SKYDARKS_", env_file=".env", extra="ignore")

    server_address: str = "localhost"
    server_port: int = Field(default=3040, ge=0, le=65535)
    command_timeout_seconds: float = Field(default=180.0, gt=0)

    use_cooler: bool = False
    cool_to: float = Field(default=-10.0, ge=-200.0, le=200.0)
    cool_start_tolerance: float = Field(default=1.0, ge=0.0, le=50.0)
    cool_wait_minutes: int = Field(default=30, ge=1, le=24 * 60)
    cool_poll_seconds: float = Field(default=60.0, gt=0)
    abort_on_cooling: bool = False
    cool_abort_tolerance: float = Field(default=3.0, ge=0.0, le=50.0)
    cooler_off_at_end: bool = False

    bias_frames: list[str] = Field(default_factory=list)
    dark_frames: list[str] = Field(default_factory=list)
    darks_first: bool = False
    no_bias: bool = False
    no_dark: bool = False
    clear_done: bool = False

    state_file: Path = Path("var") / "skydarks"
    state_file_per_temperature: bool = True
    start_at: Optional[str] = None

    verbosity: int = Field(default=1, ge=0, le=5)

    @field_validator("server_address")
    @classmethod
    def _check_server_address(cls, value: str) -> str:
        candidate = value.strip()
        if not is_valid_server_address(candidate):
            raise ValueError(f"invalid server address: {value}")
        return candidate

    @field_validator("bias_frames")
    @classmethod
    def _check_bias_frames(cls, values: list[str]) -> list[str]:
        for value in values:
            parse_bias_set(value)
        return values

    @field_validator("dark_frames")
    @classmethod
    def _check_dark_frames(cls, values: list[str]) -> list[str]:
        for value in values:
            parse_dark_set(value)
        return values

    @field_validator("start_at")
    @classmethod
    def _check_start_at(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value.strip():
            parse_start_time(value)
            return value.strip()
        return None

    def bias_specs(self) -> list[BiasSpec]:
        return parse_bias_sets(self.bias_frames)

    def dark_specs(self) -> list[DarkSpec]:
        return parse_dark_sets(self.dark_frames)


def is_valid_server_address(value: str) -> bool:
    """Accept an IP address, ``localhost``, or a syntactically valid host name."""
    if not value:
        return False
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        pass
    host = value.lower().rstrip(".")
    if host == "localhost":
        return True
    if len(host) > 253:
        return False
    labels = host.split(".")
    return all(_HOSTNAME_LABEL_RE.match(label) for label in labels)


def load_settings(config_path: Optional[str], **overrides) -> Settings:
    """Load settings, layering an optional YAML file and explicit overrides."""
    settings = Settings()
    if config_path:
        from .yaml_loader import load_yaml_settings

        settings = load_yaml_settings(settings, config_path)
    if overrides:
        merged = settings.model_dump()
        merged.update(overrides)
        settings = Settings(**merged)
    return settings
