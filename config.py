from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

"""Config loader and validator.

Provides `load_config` which accepts either a path to a YAML file,
a dictionary or None and returns a normalized configuration dict
using DEFAULTS for missing values.
"""


DEFAULTS: dict[str, Any] = {
    "tick_limit": 100000,
    "pause_tick": None,
    "steps_per_timer_tick": 10,
    "shift_flag_lsb": False,
    "load_font": True,
    "rng_seed": None,
    "lenient_log": False,
}


class ConfigError(ValueError):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def _as_bool(v: Any) -> bool:
    # YAML already yields bools; accept the usual strings from dict callers
    if isinstance(v, str):
        low = v.strip().lower()
        if low in ("1", "true", "yes", "on"):
            return True
        if low in ("0", "false", "no", "off", ""):
            return False
        msg = f"not a boolean: {v!r}"
        raise ValueError(msg)
    return bool(v)


def _convert_types(cfg: dict[str, Any]) -> None:
    """Normalize types for configuration values in-place.

    Raises ConfigError on conversion failure.
    """
    try:
        cfg["tick_limit"] = int(cfg.get("tick_limit", DEFAULTS["tick_limit"]))

        v = cfg.get("pause_tick")
        cfg["pause_tick"] = None if v is None else int(v)

        cfg["steps_per_timer_tick"] = int(cfg.get("steps_per_timer_tick", DEFAULTS["steps_per_timer_tick"]))

        v = cfg.get("rng_seed")
        cfg["rng_seed"] = None if v is None else int(v)

        for key in ("shift_flag_lsb", "load_font", "lenient_log"):
            cfg[key] = _as_bool(cfg.get(key, DEFAULTS[key]))
    except Exception as e:
        msg = f"Bad types in config: {e}"
        raise ConfigError(msg) from e


def _validate_cfg(cfg: dict[str, Any]) -> None:
    """Perform semantic validation on normalized config dict.

    Raises ConfigError on invalid values.
    """
    if cfg["tick_limit"] <= 0:
        msg = "tick_limit must be positive"
        raise ConfigError(msg)

    if cfg["pause_tick"] is not None and cfg["pause_tick"] < 0:
        msg = "pause_tick must be non-negative or null"
        raise ConfigError(msg)

    if cfg["steps_per_timer_tick"] <= 0:
        msg = "steps_per_timer_tick must be positive"
        raise ConfigError(msg)

    unknown = sorted(set(cfg) - set(DEFAULTS))
    if unknown:
        msg = f"Unknown config keys: {', '.join(unknown)}"
        raise ConfigError(msg)


def load_config(path_or_dict: str | dict[str, Any] | None = None) -> dict[str, Any]:
    """Load and normalize configuration.

    Accepts:
      - None -> returns DEFAULTS copy
      - dict -> overlay DEFAULTS with provided dict
      - str (path) -> load YAML and overlay DEFAULTS

    Returns a normalized dict or raises ConfigError.
    """
    if path_or_dict is None:
        cfg: dict[str, Any] = dict(DEFAULTS)
    elif isinstance(path_or_dict, dict):
        cfg = dict(DEFAULTS)
        cfg.update(path_or_dict)
    elif isinstance(path_or_dict, str):
        p = Path(path_or_dict)
        if not p.exists():
            msg = f"Config file not found: {path_or_dict}"
            raise ConfigError(msg)
        try:
            with p.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except Exception as e:
            msg = f"Failed to load config file {path_or_dict}: {e}"
            raise ConfigError(msg) from e
        if not isinstance(data, dict):
            msg = f"Config file {path_or_dict} does not contain a mapping"
            raise ConfigError(msg)
        cfg = dict(DEFAULTS)
        cfg.update(data)
    else:
        msg = "Unsupported config input"
        raise ConfigError(msg)

    # convert types and validate semantics
    _convert_types(cfg)
    _validate_cfg(cfg)

    return cfg
