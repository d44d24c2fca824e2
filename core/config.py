"""
Settings: defaults, then loopwork.yaml, then LOOPWORK_* environment.

The CLI applies its own options on top of whatever load_settings() returns.
"""
import os
import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "loopwork.yaml"
ENV_PREFIX = "LOOPWORK_"


@dataclass
class Settings:
    output_db: str | None = None          # None → in-memory output store
    trace_db: str = "./data/traces.db"
    log_level: str = "INFO"
    task_timeout: float | None = None     # default per-task timeout in seconds
    claude_cli: str = "claude"
    codex_cli: str = "codex"

    def merge(self, overrides: dict[str, Any]) -> "Settings":
        """Return a copy with known, non-None keys replaced."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            logger.warning(f"Ignoring unknown settings: {sorted(unknown)}")
        values = {k: v for k, v in overrides.items() if k in known and v is not None}
        if "task_timeout" in values:
            values["task_timeout"] = float(values["task_timeout"])
        return replace(self, **values)


def _from_env() -> dict[str, Any]:
    out = {}
    for f in fields(Settings):
        raw = os.environ.get(ENV_PREFIX + f.name.upper())
        if raw is not None and raw != "":
            out[f.name] = raw
    return out


def _from_yaml(path: Path) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
    return data


def load_settings(config_path: str | None = None) -> Settings:
    """Resolve settings from defaults, YAML file and environment."""
    settings = Settings()

    path = Path(config_path) if config_path else Path(DEFAULT_CONFIG_FILE)
    if path.exists():
        settings = settings.merge(_from_yaml(path))
        logger.debug(f"Loaded settings from {path}")
    elif config_path:
        raise FileNotFoundError(f"Config file not found: {config_path}")

    return settings.merge(_from_env())
