"""Configuration loading & validation.

- Per-section schemas live in `modcore.config.schemas.*`.
- `schema_version` missing → assume 1, warn (legacy files).
- Every known section is always present on the aggregated config (defaults
  apply when the YAML omits it).

Precedence (last wins): base.yaml → overrides.local.yaml → ENV (MODCORE__*).

Unknown keys are rejected at both the top level and inside sections.
"""
from __future__ import annotations

import os
import pathlib
import threading
from functools import lru_cache
from typing import Any, Dict, Type

import yaml
from modcore import metrics
from modcore.errors import validate_error_type
from modcore.log import get_logger
from pydantic import BaseModel, ConfigDict

from .schemas.mods import ModsConfig, PatchingConfig, ConflictsConfig
from .schemas.observability import LoggingConfig

log = get_logger("config")


class AggregatedConfig(BaseModel):
    schema_version: int = 1
    # Sub-schemas (opaque to this layer → Any, attached after validation)
    mods: Any | None = None
    patching: Any | None = None
    conflicts: Any | None = None
    logging: Any | None = None

    model_config = ConfigDict(extra="forbid")


DEFAULT_CONFIG_DIR = "configs"
ENV_PREFIX = "MODCORE__"

SUB_SCHEMA_CLASSES: Dict[str, Type[BaseModel]] = {
    "mods": ModsConfig,
    "patching": PatchingConfig,
    "conflicts": ConflictsConfig,
    "logging": LoggingConfig,
}


class ConfigError(Exception):
    pass


def _load_yaml_if_exists(path: pathlib.Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path.name}: top-level mapping expected")
    return data


def _merge_dict(
    base: Dict[str, Any], override: Dict[str, Any]
) -> Dict[str, Any]:
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            base[k] = _merge_dict(base[k], v)
        else:
            base[k] = v
    return base


def _cast_env_value(value: str) -> Any:
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    if "," in value:
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


def _apply_env(cfg: Dict[str, Any]) -> None:
    prefix_len = len(ENV_PREFIX)
    for env_key, value in os.environ.items():
        if not env_key.startswith(ENV_PREFIX):
            continue
        path_parts = env_key[prefix_len:].lower().split("__")
        target = cfg
        for part in path_parts[:-1]:
            if part not in target or not isinstance(target[part], dict):
                target[part] = {}
            target = target[part]
        target[path_parts[-1]] = _cast_env_value(value)
        dotted_path = ".".join(path_parts)
        metrics.inc("env_override_total", {"path": dotted_path})
        log.info(
            "config-env-override path=%s value=*** source=env", dotted_path
        )


_lock = threading.Lock()


def _resolve_config_dir() -> pathlib.Path:
    """Resolve config directory each call honoring env var changes."""
    return pathlib.Path(os.getenv("MODCORE_CONFIG_DIR", DEFAULT_CONFIG_DIR))


def _migrate_legacy(data: Dict[str, Any]) -> Dict[str, Any]:
    """Legacy files without `schema_version` are treated as version 1."""
    if "schema_version" not in data:
        log.warning("config-migration schema_version missing -> assuming 1")
        data["schema_version"] = 1
    return data


def _validate_sub_schemas(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Validate every known section (missing ones get defaults)."""
    validated: Dict[str, Any] = {}
    for name, cls in SUB_SCHEMA_CLASSES.items():
        try:
            validated[name] = cls.model_validate(raw.get(name) or {})
        except Exception as e:  # noqa: BLE001
            raise ConfigError(
                f"Validation failed for section '{name}': {e}"
            ) from e
    return validated


def _normalize_and_validate(raw: Dict[str, Any]) -> None:
    """Apply cross-field normalizations and bounds validation.

    Normalizations:
      - mods.scan_workers < 1 -> 1 (clip)
    Validations (error → raise):
      - mods.root_dir must be a non-empty string
    """
    errors: list[tuple[str, str, str]] = []  # (path, code, msg)
    mods = raw.get("mods")
    if isinstance(mods, dict):
        workers = mods.get("scan_workers")
        if isinstance(workers, int) and workers < 1:
            mods["scan_workers"] = 1
        if "root_dir" in mods:
            root_dir = mods["root_dir"]
            if not isinstance(root_dir, str) or not root_dir.strip():
                errors.append(
                    ("mods.root_dir", "config-invalid", "non-empty required")
                )

    if errors:
        for path, code, _ in errors:
            metrics.inc(
                "config_validation_errors_total",
                {"path": path, "code": code},
            )
            validate_error_type(code)
        details = ", ".join(f"{p}:{c}:{m}" for p, c, m in errors)
        raise ConfigError(f"config validation failed: {details}")


@lru_cache(maxsize=1)
def get_config() -> AggregatedConfig:  # noqa: D401
    with _lock:
        cfg_dir = _resolve_config_dir()
        base_cfg = _load_yaml_if_exists(cfg_dir / "base.yaml")
        overrides_cfg = _load_yaml_if_exists(cfg_dir / "overrides.local.yaml")
        merged = _merge_dict(base_cfg, overrides_cfg)
        _apply_env(merged)
        migrated = _migrate_legacy(merged)
        _normalize_and_validate(migrated)
        validated_sub = _validate_sub_schemas(migrated)
        try:
            agg = AggregatedConfig.model_validate(migrated)
        except Exception as e:  # noqa: BLE001
            raise ConfigError(str(e)) from e
        for k, v in validated_sub.items():
            setattr(agg, k, v)
        return agg


def clear_config_cache() -> None:
    """Clear cached config (primarily for tests)."""
    get_config.cache_clear()


def as_dict() -> Dict[str, Any]:
    cfg = get_config()
    out: Dict[str, Any] = {"schema_version": cfg.schema_version}
    for name in SUB_SCHEMA_CLASSES:
        out[name] = getattr(cfg, name).model_dump()
    return out
