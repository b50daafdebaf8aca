"""
Casework - Configuration Loader

Settings come from up to four layers, later layers winning key by key:

  1. base YAML          config/casework.yaml
  2. environment YAML   config/{env}.yaml (CW_ENV, default "dev")
  3. environment vars   CW_DB_PATH, CW_LOG_LEVEL, ... and the generic
                        CW_CONFIG__section__key form
  4. explicit overrides passed by the caller (tests, embedding)

Usage:
    from core.config import load_config, get_config

    config = load_config(env="prod", project_root=".")
    radius = config.get("presence.radius_meters", 100)
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Iterator

import yaml

from core.errors import ValidationError

logger = logging.getLogger("casework.config")

DEFAULT_BASE_FILES = ["config/casework.yaml"]
GENERIC_PREFIX = "CW_CONFIG__"

ENV_VARS = (
    ("CW_DB_PATH", "database.path"),
    ("CW_LOG_LEVEL", "logging.level"),
    ("CW_JOURNEYS_FILE", "journeys.file"),
    ("CW_SINGLE_FLIGHT_BACKEND", "single_flight.backend"),
    ("CW_SINGLE_FLIGHT_LEASE_SECONDS", "single_flight.lease_seconds"),
    ("CW_AUTOMATION_MODE", "automation.mode"),
    ("CW_AUTOMATION_MAX_WORKERS", "automation.max_workers"),
    ("CW_PENDENCIES_ANSWERED_UNBLOCKS", "pendencies.answered_unblocks"),
    ("CW_PRESENCE_RADIUS_METERS", "presence.radius_meters"),
    ("CW_PRESENCE_TIME_ZONE", "presence.time_zone"),
)


class ConfigLoader:

    def __init__(
        self,
        env: str = "dev",
        project_root: str = ".",
        base_files: list[str] | None = None,
        overrides: dict[str, Any] | None = None,
    ):
        self.env = env
        self.project_root = Path(project_root)
        self.base_files = list(DEFAULT_BASE_FILES) if base_files is None else list(base_files)
        self.overrides = overrides or {}
        self._data: dict[str, Any] | None = None
        self._sources: list[str] = []

    def load(self) -> dict[str, Any]:
        """(Re)read every layer and return the merged settings."""
        data: dict[str, Any] = {}
        sources = []
        for label, layer in self._layers():
            data = _deep_merge(data, layer)
            sources.append(label)
        self._data, self._sources = data, sources
        logger.info("Config loaded: env=%s sources=%s", self.env, sources)
        return data

    def _layers(self) -> Iterator[tuple[str, dict[str, Any]]]:
        for rel in self.base_files:
            layer = _read_yaml(self.project_root / rel)
            if layer is not None:
                yield f"base:{rel}", layer
        overlay = f"config/{self.env}.yaml"
        layer = _read_yaml(self.project_root / overlay)
        if layer is not None:
            yield f"overlay:{overlay}", layer
        from_env = _env_layer(os.environ)
        if from_env:
            yield "env", from_env
        if self.overrides:
            yield "explicit", self.overrides

    def get(self, dotted_key: str, default: Any = None) -> Any:
        """Value at ``a.b.c``, or ``default`` when any segment is missing."""
        if self._data is None:
            self.load()
        node: Any = self._data
        for part in dotted_key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    @property
    def sources(self) -> list[str]:
        return list(self._sources)

    def resolve_path(self, relative: str) -> Path:
        """Config files name paths relative to the project root."""
        path = Path(relative)
        return path if path.is_absolute() else self.project_root / path


# ── Layers ──────────────────────────────────────────────────────────

def _read_yaml(path: Path) -> dict[str, Any] | None:
    if not path.is_file():
        return None
    with open(path) as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(f"{path} must hold a mapping at the top level")
    return data


def _env_layer(environ) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for var, dotted in ENV_VARS:
        if var in environ:
            _set_path(layer, dotted, _auto_convert(environ[var]))
    for var, raw in environ.items():
        if var.startswith(GENERIC_PREFIX):
            dotted = var[len(GENERIC_PREFIX):].lower().replace("__", ".")
            _set_path(layer, dotted, _auto_convert(raw))
    return layer


def _deep_merge(base: dict, overlay: dict) -> dict:
    """New dict with ``overlay`` merged into ``base``; nested dicts merge, the rest is replaced."""
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _set_path(target: dict, dotted: str, value: Any):
    *parents, leaf = dotted.split(".")
    for part in parents:
        target = target.setdefault(part, {})
    target[leaf] = value


def _auto_convert(raw: str) -> Any:
    """Environment strings read as YAML scalars: yes/no, ints and floats get typed."""
    try:
        value = yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw
    # "22:00" is a base-60 int in YAML 1.1; times stay strings
    if isinstance(value, (bool, int, float)) and ":" not in raw:
        return value
    return raw


# ── Process-wide instance ───────────────────────────────────────────

_instance: ConfigLoader | None = None


def get_config(env: str | None = None, project_root: str | None = None) -> ConfigLoader:
    """Shared loader for the running process; arguments only count on the first call."""
    global _instance
    if _instance is None:
        _instance = load_config(
            env=env or os.environ.get("CW_ENV", "dev"),
            project_root=project_root or os.environ.get("CW_PROJECT_ROOT", "."),
        )
    return _instance


def load_config(
    env: str = "dev",
    project_root: str = ".",
    base_files: list[str] | None = None,
    overrides: dict[str, Any] | None = None,
) -> ConfigLoader:
    """A fresh, already loaded loader (not the shared one)."""
    loader = ConfigLoader(env=env, project_root=project_root, base_files=base_files, overrides=overrides)
    loader.load()
    return loader


def reset_config():
    global _instance
    _instance = None
