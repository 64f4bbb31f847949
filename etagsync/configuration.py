"""Home-directory-aware configuration loading for etagsync."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional, Tuple

import yaml

REPO_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_DIR = REPO_ROOT / "config"
DEFAULT_HOME = "~/.etagsync"

DiagnosticLevel = Literal["info", "warning", "error"]
ConfigurationStatus = Literal["ready", "missing", "invalid"]


SchemaSpec = Dict[str, Any]

SOURCE_SCHEMA: SchemaSpec = {
    "manifest_url": {"type": str},
    "target_dir": {"type": str, "default": ""},
}

CONFIG_SCHEMA: SchemaSpec = {
    "logging": {
        "type": dict,
        "schema": {
            "level": {"type": str, "default": "INFO"},
            "structured": {"type": bool, "default": True},
        },
        "default": {},
    },
    "sync": {
        "type": dict,
        "schema": {
            "policy": {
                "type": str,
                "choices": ("fail_fast", "aggregate"),
                "default": "fail_fast",
            },
            "workers": {"type": int, "default": 1},
            "lock_timeout": {"type": (int, float), "default": 0},
            "fetch_timeout": {"type": (int, float), "default": 30.0},
            "file_timeout": {"type": (int, float), "default": 60.0},
            "state_backend": {
                "type": str,
                "choices": ("json", "sqlite", "memory"),
                "default": "json",
            },
            "state_path": {"type": str, "default": "state/committed_tokens.json"},
            "sources": {
                "type": dict,
                "value_schema": SOURCE_SCHEMA,
                "default": {},
            },
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
    """All configuration data etagsync needs at runtime."""

    home_dir: Path
    status: ConfigurationStatus
    merged: Dict[str, Any] = field(default_factory=dict)
    repo_defaults: Dict[str, Any] = field(default_factory=dict)
    home_overrides: Dict[str, Any] = field(default_factory=dict)
    files_loaded: List[Path] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    log_path: Optional[Path] = None

    def source_ids(self) -> List[str]:
        sources = (self.merged.get("sync", {}) or {}).get("sources", {}) if self.merged else {}
        return sorted(sources)

    def source_config(self, source_id: str) -> Dict[str, Any]:
        sources = (self.merged.get("sync", {}) or {}).get("sources", {}) if self.merged else {}
        return dict(sources.get(source_id) or {})


def resolve_home_dir(
    env: Optional[Mapping[str, str]] = None,
    default: str = DEFAULT_HOME,
) -> Path:
    """Resolve the etagsync home directory from the environment."""

    env_source = env or os.environ
    raw = env_source.get("ETAGSYNC_HOME", default)
    return Path(raw).expanduser()


def load_runtime_configuration(home_dir: Optional[Path] = None) -> ConfigurationBundle:
    """Load configuration defaults and home-directory overrides."""

    resolved_home = home_dir or resolve_home_dir()
    diagnostics: List[Diagnostic] = []
    files_loaded: List[Path] = []

    repo_defaults, repo_files = _load_directory_configs(
        DEFAULT_CONFIG_DIR,
        diagnostics,
        label="repo defaults",
    )
    files_loaded.extend(repo_files)

    status: ConfigurationStatus = "ready"
    home_overrides: Dict[str, Any] = {}

    if not resolved_home.exists():
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Home directory '{resolved_home}' does not exist.",
            )
        )
        status = "missing"
    elif not resolved_home.is_dir():
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Home path '{resolved_home}' is not a directory.",
            )
        )
        status = "invalid"
    else:
        overrides_dir = resolved_home / "config"
        home_overrides, override_files = _load_directory_configs(
            overrides_dir,
            diagnostics,
            label="home overrides",
        )
        files_loaded.extend(override_files)

    merged = deepcopy(repo_defaults)
    _deep_merge_dicts(merged, home_overrides)

    _validate_schema(merged, diagnostics)

    if status == "ready" and any(diag.level == "error" for diag in diagnostics):
        status = "invalid"

    return ConfigurationBundle(
        home_dir=resolved_home,
        status=status,
        merged=merged,
        repo_defaults=repo_defaults,
        home_overrides=home_overrides,
        files_loaded=files_loaded,
        diagnostics=diagnostics,
    )


def _load_directory_configs(
    directory: Path,
    diagnostics: List[Diagnostic],
    label: str,
) -> Tuple[Dict[str, Any], List[Path]]:
    """Load all YAML files from a directory, merging them in order."""

    data: Dict[str, Any] = {}
    loaded_files: List[Path] = []

    if not directory.exists():
        diagnostics.append(
            Diagnostic(
                level="warning",
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

    if not loaded_files:
        diagnostics.append(
            Diagnostic(
                level="info",
                message=f"No YAML files found under '{directory}' ({label}).",
                source=directory,
            )
        )

    return data, loaded_files


def _deep_merge_dicts(dest: MutableMapping[str, Any], source: Mapping[str, Any]) -> None:
    """Recursively merge mapping values."""

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


def _validate_schema(config: Dict[str, Any], diagnostics: List[Diagnostic]) -> None:
    _validate_section(config, CONFIG_SCHEMA, "config", diagnostics)


def _validate_section(
    target: Dict[str, Any],
    schema: SchemaSpec,
    path: str,
    diagnostics: List[Diagnostic],
) -> None:
    if not isinstance(target, dict):
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Configuration section '{path}' must be a mapping.",
            )
        )
        return

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
                if spec.get("type") is dict and "schema" in spec:
                    _validate_section(target[key], spec["schema"], child_path, diagnostics)
            else:
                diagnostics.append(
                    Diagnostic(
                        level="error",
                        message=f"Missing required key '{child_path}'.",
                    )
                )
            continue

        value = target[key]
        expected_type = spec.get("type")

        if expected_type is dict:
            if not isinstance(value, dict):
                diagnostics.append(
                    Diagnostic(
                        level="error",
                        message=f"'{child_path}' must be a mapping.",
                    )
                )
                target[key] = _default_from_spec(spec) or {}
                continue
            if "value_schema" in spec:
                for name, item in value.items():
                    _validate_section(item, spec["value_schema"], f"{child_path}.{name}", diagnostics)
            else:
                _validate_section(value, spec.get("schema", {}), child_path, diagnostics)
        elif expected_type and (
            not isinstance(value, expected_type)
            or (isinstance(value, bool) and bool not in _as_tuple(expected_type))
        ):
            if isinstance(expected_type, tuple):
                type_name = ", ".join(t.__name__ for t in expected_type)
            else:
                type_name = expected_type.__name__
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=f"'{child_path}' must be of type {type_name}.",
                )
            )
            target[key] = _default_from_spec(spec)
        elif "choices" in spec and value not in spec["choices"]:
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=(
                        f"'{child_path}' must be one of "
                        f"{', '.join(spec['choices'])} (got '{value}')."
                    ),
                )
            )
            target[key] = _default_from_spec(spec)


def _as_tuple(expected_type: Any) -> Tuple[type, ...]:
    return expected_type if isinstance(expected_type, tuple) else (expected_type,)


__all__ = [
    "CONFIG_SCHEMA",
    "ConfigurationBundle",
    "ConfigurationStatus",
    "DEFAULT_CONFIG_DIR",
    "Diagnostic",
    "load_runtime_configuration",
    "resolve_home_dir",
]
