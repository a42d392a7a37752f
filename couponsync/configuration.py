"""Layered configuration loading for CouponSync."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional, Tuple

import yaml

REPO_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_DIR = REPO_ROOT / "config"
DATA_DIR_ENV = "COUPONSYNC_DATA_DIR"
DEFAULT_DATA_DIR = "~/.couponsync"

DiagnosticLevel = Literal["info", "warning", "error"]
ConfigurationStatus = Literal["ready", "missing", "invalid"]


SchemaSpec = Dict[str, Any]

SYNC_ENTITY_TYPES = ("coupon", "membership", "user")
CONFLICT_STRATEGIES = ("newest_wins", "local_wins", "remote_wins")


CONFIG_SCHEMA: SchemaSpec = {
    "runtime": {
        "type": dict,
        "schema": {
            "name": {"type": str, "default": "CouponSync"},
            "user_id": {"type": str, "default": ""},
        },
        "default": {},
    },
    "logging": {
        "type": dict,
        "schema": {
            "level": {"type": str, "default": "INFO"},
            "structured": {"type": bool, "default": True},
        },
        "default": {},
    },
    "ui": {
        "type": dict,
        "schema": {
            "verbose": {"type": bool, "default": True},
        },
        "default": {},
    },
    "storage": {
        "type": dict,
        "schema": {
            "database": {"type": str, "default": "state/couponsync.db"},
            "retention_hours": {"type": int, "default": 168},
        },
        "default": {},
    },
    "remote": {
        "type": dict,
        "schema": {
            "base_url": {"type": str, "default": ""},
            "api_key": {"type": str, "default": ""},
            "timeout": {"type": (int, float), "default": 30},
        },
        "default": {},
    },
    "sync": {
        "type": dict,
        "schema": {
            "enabled": {"type": bool, "default": True},
            "entity_types": {
                "type": list,
                "item_type": str,
                "choices": SYNC_ENTITY_TYPES,
                "default_factory": lambda: ["coupon", "membership"],
            },
            "conflict_strategy": {
                "type": str,
                "choices": CONFLICT_STRATEGIES,
                "default": "newest_wins",
            },
            "auto_start": {"type": bool, "default": False},
        },
        "default": {},
    },
    "scheduler": {
        "type": dict,
        "schema": {
            "interval_minutes": {"type": (int, float), "default": 30},
            "backoff_base_seconds": {"type": (int, float), "default": 300},
            "backoff_multiplier": {"type": (int, float), "default": 2},
            "backoff_max_seconds": {"type": (int, float), "default": 3600},
            "max_workers": {"type": int, "default": 4},
        },
        "default": {},
    },
    "connectivity": {
        "type": dict,
        "schema": {
            "enabled": {"type": bool, "default": True},
            "checks": {"type": list, "item_type": str, "default_factory": list},
            "timeout": {"type": (int, float), "default": 3.0},
            "poll_interval": {"type": (int, float), "default": 15.0},
        },
        "default": {},
    },
    "api": {
        "type": dict,
        "schema": {
            "enabled": {"type": bool, "default": False},
            "host": {"type": str, "default": "127.0.0.1"},
            "port": {"type": int, "default": 8765},
            "cors_origins": {"type": list, "item_type": str, "default_factory": list},
        },
        "default": {},
    },
}


@dataclass
class Diagnostic:
    """Represents a configuration validation or loading issue."""

    level: DiagnosticLevel
    message: str
    source: Optional[Path] = None


@dataclass
class ConfigurationBundle:
    """All configuration data CouponSync needs at runtime."""

    data_dir: Path
    status: ConfigurationStatus
    merged: Dict[str, Any] = field(default_factory=dict)
    repo_defaults: Dict[str, Any] = field(default_factory=dict)
    user_overrides: Dict[str, Any] = field(default_factory=dict)
    files_loaded: List[Path] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    log_path: Optional[Path] = None

    def section(self, name: str) -> Dict[str, Any]:
        value = self.merged.get(name, {})
        return value if isinstance(value, dict) else {}

    @property
    def database_path(self) -> Path:
        raw = Path(str(self.section("storage").get("database", "state/couponsync.db")))
        return raw if raw.is_absolute() else self.data_dir / raw


def resolve_data_dir(
    env: Optional[Mapping[str, str]] = None,
    default: str = DEFAULT_DATA_DIR,
) -> Path:
    """Resolve the data directory from the environment."""

    env_source = env if env is not None else os.environ
    raw = env_source.get(DATA_DIR_ENV) or default
    return Path(raw).expanduser()


def load_runtime_configuration(data_dir: Optional[Path] = None) -> ConfigurationBundle:
    """Load repo defaults and the data directory's overrides."""

    resolved = data_dir or resolve_data_dir()
    diagnostics: List[Diagnostic] = []
    files_loaded: List[Path] = []

    repo_defaults, repo_files = _load_directory_configs(
        DEFAULT_CONFIG_DIR,
        diagnostics,
        label="repo defaults",
    )
    files_loaded.extend(repo_files)

    status: ConfigurationStatus = "ready"
    user_overrides: Dict[str, Any] = {}

    if not resolved.exists():
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Data directory '{resolved}' does not exist.",
            )
        )
        status = "missing"
    elif not resolved.is_dir():
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Data path '{resolved}' is not a directory.",
            )
        )
        status = "invalid"
    else:
        user_overrides, override_files = _load_directory_configs(
            resolved / "config",
            diagnostics,
            label="user overrides",
        )
        files_loaded.extend(override_files)

    merged = deepcopy(repo_defaults)
    _deep_merge_dicts(merged, user_overrides)

    _validate_schema(merged, diagnostics)

    if status == "ready" and any(diag.level == "error" for diag in diagnostics):
        status = "invalid"

    return ConfigurationBundle(
        data_dir=resolved,
        status=status,
        merged=merged,
        repo_defaults=repo_defaults,
        user_overrides=user_overrides,
        files_loaded=files_loaded,
        diagnostics=diagnostics,
    )


def _load_directory_configs(
    directory: Path,
    diagnostics: List[Diagnostic],
    label: str,
) -> Tuple[Dict[str, Any], List[Path]]:
    """Load every YAML file in a directory, merged in name order."""

    data: Dict[str, Any] = {}
    loaded_files: List[Path] = []

    if not directory.exists():
        diagnostics.append(
            Diagnostic(
                level="info",
                message=f"No configuration directory found at '{directory}' ({label}).",
                source=directory,
            )
        )
        return data, loaded_files

    if not directory.is_dir():
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Configuration path '{directory}' ({label}) is not a directory.",
                source=directory,
            )
        )
        return data, loaded_files

    yaml_files = sorted(directory.glob("*.yml")) + sorted(directory.glob("*.yaml"))

    for yaml_file in yaml_files:
        try:
            content = yaml.safe_load(yaml_file.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=f"Failed to parse '{yaml_file}': {exc}",
                    source=yaml_file,
                )
            )
            continue

        if content is None:
            loaded_files.append(yaml_file)
            continue

        if not isinstance(content, MutableMapping):
            diagnostics.append(
                Diagnostic(
                    level="warning",
                    message=f"Ignoring '{yaml_file}' because it does not contain a mapping.",
                    source=yaml_file,
                )
            )
            continue

        _deep_merge_dicts(data, dict(content))
        loaded_files.append(yaml_file)

    return data, loaded_files


def _deep_merge_dicts(dest: MutableMapping[str, Any], source: Mapping[str, Any]) -> None:
    for key, value in source.items():
        if (
            key in dest
            and isinstance(dest[key], MutableMapping)
            and isinstance(value, Mapping)
        ):
            _deep_merge_dicts(dest[key], value)
        else:
            dest[key] = deepcopy(value)


def _default_from_spec(spec: SchemaSpec) -> Any:
    if "default_factory" in spec and callable(spec["default_factory"]):
        return spec["default_factory"]()
    return deepcopy(spec.get("default"))


def _type_name(expected: Any) -> str:
    if isinstance(expected, tuple):
        return ", ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_schema(config: Dict[str, Any], diagnostics: List[Diagnostic]) -> None:
    _validate_section(config, CONFIG_SCHEMA, "config", diagnostics)


def _validate_section(
    target: Dict[str, Any],
    schema: SchemaSpec,
    path: str,
    diagnostics: List[Diagnostic],
) -> None:
    for key in list(target.keys()):
        if key not in schema:
            diagnostics.append(
                Diagnostic(
                    level="warning",
                    message=f"Unknown configuration key '{path}.{key}'.",
                )
            )

    for key, spec in schema.items():
        child_path = f"{path}.{key}"
        if key not in target:
            if "default" in spec or "default_factory" in spec:
                target[key] = _default_from_spec(spec)
            if spec.get("type") is dict:
                _validate_section(target[key], spec.get("schema", {}), child_path, diagnostics)
            continue

        value = target[key]
        expected_type = spec.get("type")
        choices = spec.get("choices")

        if expected_type is dict:
            if not isinstance(value, dict):
                diagnostics.append(
                    Diagnostic(level="error", message=f"'{child_path}' must be a mapping.")
                )
                target[key] = value = _default_from_spec(spec) or {}
            _validate_section(value, spec.get("schema", {}), child_path, diagnostics)
        elif expected_type is list:
            if not isinstance(value, list):
                diagnostics.append(
                    Diagnostic(level="error", message=f"'{child_path}' must be a list.")
                )
                target[key] = _default_from_spec(spec) or []
                continue
            item_type = spec.get("item_type")
            filtered: List[Any] = []
            for idx, item in enumerate(value):
                if item_type is not None and not isinstance(item, item_type):
                    diagnostics.append(
                        Diagnostic(
                            level="error",
                            message=f"'{child_path}[{idx}]' must be of type {_type_name(item_type)}.",
                        )
                    )
                elif choices and item not in choices:
                    diagnostics.append(
                        Diagnostic(
                            level="error",
                            message=f"'{child_path}[{idx}]' must be one of: {', '.join(choices)}.",
                        )
                    )
                else:
                    filtered.append(item)
            target[key] = filtered
        elif expected_type and (
            not isinstance(value, expected_type)
            # bool is an int subclass; reject it for numeric fields.
            or (isinstance(value, bool) and expected_type is not bool)
        ):
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=f"'{child_path}' must be of type {_type_name(expected_type)}.",
                )
            )
            target[key] = _default_from_spec(spec)
        elif choices and value not in choices:
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=f"'{child_path}' must be one of: {', '.join(choices)}.",
                )
            )
            target[key] = _default_from_spec(spec)


__all__ = [
    "CONFIG_SCHEMA",
    "ConfigurationBundle",
    "ConfigurationStatus",
    "DATA_DIR_ENV",
    "DEFAULT_CONFIG_DIR",
    "Diagnostic",
    "load_runtime_configuration",
    "resolve_data_dir",
]
