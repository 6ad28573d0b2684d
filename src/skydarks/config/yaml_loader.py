from __future__ import annotations

from pathlib import Path

import yaml

from .settings import Settings


def load_yaml_settings(base_settings: Settings, config_path: str | Path) -> Settings:
    """Overlay settings from a YAML file onto the base `Settings` instance."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with path.open("r", encoding="utf-8") as stream:
        data = yaml.safe_load(stream) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Configuration file {config_path} must contain a mapping")

    merged = base_settings.model_dump()
    for key, value in data.items():
        name = str(key).replace("-", "_").lower()
        if name not in Settings.model_fields:
            raise ValueError(f"Unknown setting {key!r} in {config_path}")
        merged[name] = value

    return Settings(**merged)
