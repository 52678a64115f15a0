"""
Device configuration -- ~/.sktasks/config/config.yaml.

A broken or missing file never stops the tool: it logs a warning and
falls back to defaults.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .sync.models import SyncConfig

logger = logging.getLogger("sktasks.config")


def config_path(home: Path) -> Path:
    return home / "config" / "config.yaml"


def load_config(home: Path) -> SyncConfig:
    """Load sync configuration from disk."""
    config_file = config_path(home)
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            return SyncConfig(**data)
        except (yaml.YAMLError, ValidationError, TypeError) as exc:
            logger.warning("Failed to load config: %s", exc)
    return SyncConfig()


def save_config(home: Path, config: SyncConfig) -> Path:
    """Persist sync configuration to disk."""
    config_file = config_path(home)
    config_file.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="json")
    config_file.write_text(yaml.dump(data, default_flow_style=False), encoding="utf-8")
    return config_file
