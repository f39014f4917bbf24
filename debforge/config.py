# debforge/config.py
# -*- coding: utf-8 -*-
"""
debforge settings

One YAML or JSON file (first found: $DEBFORGE_CONFIG, ./debforge.{yaml,yml,json},
~/.config/debforge/config.yaml, /etc/debforge/config.yaml) layered over
DEFAULTS. Pipeline modules read it through get_config() and the section
helpers at the bottom; tests install their own with from_dict().
"""

from __future__ import annotations
import os
import json
import logging
import threading
from pathlib import Path
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, List, Tuple, Union

import yaml

from debforge.errors import ConfigError

# plain stdlib logger: debforge.logging configures itself from this module
logger = logging.getLogger("debforge.config")

# ----------------------------
# Defaults; every section a file may set
# ----------------------------
DEFAULTS: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
        "file": None,
        "color": True,
        "max_size": "10M",
        "backups": 5,
        "module_levels": {},
        "jsonl": {"enabled": False, "path": "~/.debforge/transparency.jsonl"},
    },
    "build": {
        # changelog timestamps come from here, never from the wall clock
        "source_date_epoch": 0,
        "output_dir": "~/.debforge/out",
    },
    "features": {
        "include_implicit_deps": False,
        "include_systemd_deps": False,
    },
    "rootfs": {
        "bootstrap": False,
    },
    "signing": {
        "enabled": True,
    },
    "distros": {},  # extra distro definitions: distros.<key> -> dict
}

ENV_VAR = "DEBFORGE_CONFIG"

# ----------------------------
# Loaded config
# ----------------------------
@dataclass
class Config:
    raw: Dict[str, Any] = field(default_factory=dict)     # as read from the file
    merged: Dict[str, Any] = field(default_factory=dict)  # DEFAULTS + raw, normalized
    path: Optional[Path] = None

    def get(self, path: str, default: Any = None) -> Any:
        """get("features.include_systemd_deps") style lookup; missing keys give ``default``."""
        parts = path.split(".") if path else []
        cur: Any = self.merged
        for p in parts:
            if isinstance(cur, dict) and p in cur:
                cur = cur[p]
            else:
                return default
        return cur

    def as_dict(self) -> Dict[str, Any]:
        return deepcopy(self.merged)

# ----------------------------
# Module state
# ----------------------------
_CONFIG: Optional[Config] = None
_CONFIG_LOCK = threading.RLock()

# ----------------------------
# Utilities
# ----------------------------
def _human_size_to_bytes(val: Union[str, int, None]) -> Optional[int]:
    if val is None:
        return None
    if isinstance(val, int):
        return val
    s = str(val).strip().upper()
    units = {"KB": 1024, "MB": 1024**2, "GB": 1024**3, "K": 1024, "M": 1024**2, "G": 1024**3}
    try:
        for suffix, mul in units.items():
            if s.endswith(suffix):
                num = float(s[: -len(suffix)].strip())
                return int(num * mul)
        return int(float(s))
    except ValueError:
        logger.warning("config: cannot parse human size '%s'", val)
        return None

def _expand_path(val: Optional[str]) -> Optional[str]:
    if val is None:
        return None
    return os.path.abspath(os.path.expanduser(os.path.expandvars(val)))

def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    res = deepcopy(a)
    for k, v in b.items():
        if k in res and isinstance(res[k], dict) and isinstance(v, dict):
            res[k] = _deep_merge(res[k], v)
        else:
            res[k] = deepcopy(v)
    return res

def _find_candidates(explicit: Optional[str] = None) -> List[Path]:
    candidates: List[Path] = []
    env = os.environ.get(ENV_VAR)
    if explicit:
        candidates.append(Path(explicit))
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path.cwd() / "debforge.yaml",
        Path.cwd() / "debforge.yml",
        Path.cwd() / "debforge.json",
        Path.home() / ".config" / "debforge" / "config.yaml",
        Path("/etc") / "debforge" / "config.yaml",
    ])
    return candidates

def _load_file(path: Path) -> Dict[str, Any]:
    try:
        txt = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"config: failed reading {path}: {e}") from e

    try:
        if path.suffix.lower() == ".json":
            data = json.loads(txt)
        else:
            data = yaml.safe_load(txt)
    except (yaml.YAMLError, ValueError) as e:
        raise ConfigError(f"config: cannot parse {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config: top level of {path} must be a mapping")
    return data

def _normalize_and_coerce(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Expand paths, turn logging.max_size into bytes, coerce epoch and flag values."""
    out = deepcopy(cfg)
    path_keys = [
        ("build", "output_dir"),
        ("logging", "file"),
    ]
    for section, key in path_keys:
        ref = out.get(section)
        if isinstance(ref, dict) and isinstance(ref.get(key), str):
            ref[key] = _expand_path(ref[key])

    jsonl = out.get("logging", {}).get("jsonl")
    if isinstance(jsonl, dict) and isinstance(jsonl.get("path"), str):
        jsonl["path"] = _expand_path(jsonl["path"])

    # Convert human sizes
    if isinstance(out.get("logging"), dict) and "max_size" in out["logging"]:
        ms = _human_size_to_bytes(out["logging"]["max_size"])
        if ms is not None:
            out["logging"]["max_size_bytes"] = ms

    # Coerce numbers
    build = out.get("build")
    if isinstance(build, dict) and "source_date_epoch" in build:
        try:
            build["source_date_epoch"] = int(build["source_date_epoch"])
        except (TypeError, ValueError):
            logger.debug("config: failed to coerce build.source_date_epoch", exc_info=True)

    for section, key in (("features", "include_implicit_deps"), ("features", "include_systemd_deps"),
                         ("rootfs", "bootstrap"), ("signing", "enabled")):
        ref = out.get(section)
        if isinstance(ref, dict) and isinstance(ref.get(key), str):
            ref[key] = ref[key].strip().lower() in ("1", "true", "yes", "on")

    return out

def _validate_structure(cfg: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """(ok, issues). load() only warns about issues unless fatal=True."""
    warnings: List[str] = []
    for k in cfg.keys():
        if k not in DEFAULTS:
            warnings.append(f"Unknown top-level config key: {k}")
    for section in DEFAULTS:
        if section in cfg and not isinstance(cfg[section], dict):
            warnings.append(f"{section} must be a mapping")
    build = cfg.get("build") if isinstance(cfg.get("build"), dict) else {}
    epoch = build.get("source_date_epoch")
    if not isinstance(epoch, int) or epoch < 0:
        warnings.append("build.source_date_epoch must be integer >= 0")
    features = cfg.get("features") if isinstance(cfg.get("features"), dict) else {}
    for key in ("include_implicit_deps", "include_systemd_deps"):
        if not isinstance(features.get(key), bool):
            warnings.append(f"features.{key} must be a boolean")
    distros = cfg.get("distros") if isinstance(cfg.get("distros"), dict) else {}
    for key, d in distros.items():
        if not isinstance(d, dict):
            warnings.append(f"distros.{key} must be a mapping")
        elif not d.get("image_ref"):
            warnings.append(f"distros.{key}.image_ref is required")
    return (len(warnings) == 0, warnings)

# ----------------------------
# Loading / reloading
# ----------------------------
def _find_path(explicit: Optional[str] = None) -> Optional[Path]:
    if explicit and not Path(explicit).exists():
        raise ConfigError(f"config: {explicit} does not exist")
    for p in _find_candidates(explicit):
        if p.exists():
            return p
    return None

def load(explicit_path: Optional[str] = None, fatal: bool = False) -> Config:
    """Find, read, merge and validate; the result becomes the module config."""
    global _CONFIG
    with _CONFIG_LOCK:
        cfg_path = _find_path(explicit_path)
        raw: Dict[str, Any] = {}
        if cfg_path:
            raw = _load_file(cfg_path)
        merged = _deep_merge(DEFAULTS, raw)
        normalized = _normalize_and_coerce(merged)
        ok, issues = _validate_structure(normalized)
        if not ok:
            msg = "config: " + "; ".join(issues)
            if fatal:
                raise ConfigError(msg)
            logger.warning(msg)
        cfg_obj = Config(raw=raw, merged=normalized, path=cfg_path)
        _CONFIG = cfg_obj
        logger.debug("config: loaded merged config (from=%s)", str(cfg_path) if cfg_path else "<defaults>")
        return cfg_obj

def from_dict(data: Dict[str, Any]) -> Config:
    """Install a config built from an in-memory override dict."""
    global _CONFIG
    with _CONFIG_LOCK:
        merged = _normalize_and_coerce(_deep_merge(DEFAULTS, data))
        _CONFIG = Config(raw=deepcopy(data), merged=merged)
        return _CONFIG

def get_config() -> Config:
    global _CONFIG
    with _CONFIG_LOCK:
        if _CONFIG is None:
            _CONFIG = load()
        return _CONFIG

def reload(explicit_path: Optional[str] = None) -> Config:
    return load(explicit_path)

def reset() -> None:
    """Forget the loaded config; the next get_config() reloads from disk."""
    global _CONFIG
    with _CONFIG_LOCK:
        _CONFIG = None

# ----------------------------
# Section helpers
# ----------------------------
def get_section(name: str) -> Dict[str, Any]:
    val = get_config().merged.get(name)
    return deepcopy(val) if isinstance(val, dict) else {}

def get_build_config() -> Dict[str, Any]:
    return get_section("build")

def feature_enabled(name: str) -> bool:
    return bool(get_config().get(f"features.{name}", False))

def validate_config() -> Tuple[bool, List[str]]:
    ok, issues = _validate_structure(get_config().merged)
    out_dir = get_config().get("build.output_dir")
    if out_dir:
        parent = Path(out_dir).parent
        if parent.exists() and not os.access(parent, os.W_OK):
            issues.append(f"build.output_dir parent {parent} not writable")
    return (len(issues) == 0, issues)
