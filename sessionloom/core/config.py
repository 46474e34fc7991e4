"""Configuration for sessionloom."""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Union

import yaml


_DEFAULT_CONFIG_PATH = "~/.sessionloom/config.yaml"
_DEFAULT_PROJECTS_DIR = "~/.claude/projects"

# Temp roots that may hold truncated subagent output files
_BUILTIN_TMP_ROOTS = ("/tmp", "/private/tmp")

# Keys stored as YAML lists; string values are comma-separated
_LIST_KEYS = ("trusted_tmp_roots",)


@dataclass
class Config:
    # Session logs
    projects_dir: str = _DEFAULT_PROJECTS_DIR

    # Full-output sidecars referenced by "[Truncated. Full output: ...]"
    output_ext: str = ".output"
    trusted_tmp_roots: List[str] = field(default_factory=list)

    log_level: str = "WARNING"

    @classmethod
    def load(cls, path: Optional[str] = None) -> Config:
        """Load config from YAML file, falling back to defaults."""
        config_path = _config_path(path)

        data: dict = {}
        if config_path.exists():
            try:
                with open(config_path) as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError):
                data = {}

        cfg = cls()

        if "projects_dir" in data:
            cfg.projects_dir = str(data["projects_dir"])
        if "output_ext" in data:
            cfg.output_ext = str(data["output_ext"])
        if data.get("trusted_tmp_roots"):
            cfg.trusted_tmp_roots = _as_list(data["trusted_tmp_roots"])
        if "log_level" in data:
            cfg.log_level = str(data["log_level"]).upper()

        # Environment overrides
        if env_dir := os.getenv("SESSIONLOOM_PROJECTS_DIR"):
            cfg.projects_dir = env_dir
        if env_level := os.getenv("SESSIONLOOM_LOG_LEVEL"):
            cfg.log_level = env_level.upper()

        return cfg

    @staticmethod
    def set_config(key: str, value: Union[str, List[str]], path: Optional[str] = None) -> None:
        """Write a single key to the config file, keeping the others.

        List keys (``trusted_tmp_roots``) accept a comma-separated string.
        """
        if key in _LIST_KEYS:
            value = _as_list(value)
        config_path = _config_path(path)
        data: dict = {}
        if config_path.exists():
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        data[key] = value
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=True)

    @property
    def resolved_projects_dir(self) -> Path:
        return Path(self.projects_dir).expanduser()

    @property
    def resolved_trusted_roots(self) -> List[str]:
        """Real paths of the allow-listed temp roots that exist on this host."""
        roots: List[str] = []
        for candidate in (tempfile.gettempdir(), *_BUILTIN_TMP_ROOTS, *self.trusted_tmp_roots):
            try:
                resolved = os.path.realpath(os.path.expanduser(candidate))
            except (OSError, ValueError):
                continue
            if os.path.isdir(resolved) and resolved not in roots:
                roots.append(resolved)
        return roots


def _config_path(path: Optional[str] = None) -> Path:
    return Path(
        path or os.getenv("SESSIONLOOM_CONFIG", _DEFAULT_CONFIG_PATH)
    ).expanduser()


def _as_list(value: Any) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if str(v).strip()]
    return [part.strip() for part in str(value).split(",") if part.strip()]
